from __future__ import annotations

from dataclasses import dataclass
import os

from txnsync.core.errors import ConfigError

DEFAULT_API_BASE_URL = "https://sandbox.leantech.me"
DEFAULT_SCOPE = "api"


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Engine configuration loaded at process startup."""

    api_base_url: str = DEFAULT_API_BASE_URL
    auth_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str = DEFAULT_SCOPE
    cache_dir: str = ".cache/txnsync"
    http_timeout_seconds: float = 30.0
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    inter_request_delay_seconds: float = 0.5
    max_concurrency: int = 1
    page_size: int = 50
    max_pages_per_account: int = 20
    max_cursor_retries: int = 2
    cache_ttl_ms: int = 3_600_000
    cache_max_age_ms: int = 86_400_000
    # YAML keyword rule table; the built-in rules are used when unset.
    rules_path: str | None = None


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")
    return value


def _optional_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def load_engine_config_from_env() -> EngineConfig:
    """Load engine config from TXNSYNC_* environment variables.

    Credentials are optional here; the CLI decides whether a static token or
    the client-credentials grant is used.
    """
    client_id = _optional_env("TXNSYNC_CLIENT_ID")
    client_secret = _optional_env("TXNSYNC_CLIENT_SECRET")
    auth_url = _optional_env("TXNSYNC_AUTH_URL")
    if (client_id is None) != (client_secret is None):
        raise ConfigError(
            "TXNSYNC_CLIENT_ID and TXNSYNC_CLIENT_SECRET must be set together"
        )
    if client_id is not None and auth_url is None:
        raise ConfigError("TXNSYNC_AUTH_URL is required when client credentials are set")

    return EngineConfig(
        api_base_url=os.environ.get("TXNSYNC_API_BASE_URL", DEFAULT_API_BASE_URL)
        .strip()
        .rstrip("/"),
        auth_url=auth_url,
        client_id=client_id,
        client_secret=client_secret,
        scope=os.environ.get("TXNSYNC_SCOPE", DEFAULT_SCOPE).strip() or DEFAULT_SCOPE,
        cache_dir=os.environ.get("TXNSYNC_CACHE_DIR", ".cache/txnsync").strip()
        or ".cache/txnsync",
        http_timeout_seconds=_float_env("TXNSYNC_HTTP_TIMEOUT_SECONDS", 30.0),
        max_attempts=_int_env("TXNSYNC_MAX_ATTEMPTS", 3),
        base_delay_seconds=_float_env("TXNSYNC_BASE_DELAY_SECONDS", 1.0),
        inter_request_delay_seconds=_float_env(
            "TXNSYNC_INTER_REQUEST_DELAY_SECONDS", 0.5
        ),
        max_concurrency=_int_env("TXNSYNC_MAX_CONCURRENCY", 1),
        page_size=_int_env("TXNSYNC_PAGE_SIZE", 50),
        max_pages_per_account=_int_env("TXNSYNC_MAX_PAGES_PER_ACCOUNT", 20),
        max_cursor_retries=_int_env("TXNSYNC_MAX_CURSOR_RETRIES", 2, minimum=0),
        cache_ttl_ms=_int_env("TXNSYNC_CACHE_TTL_MS", 3_600_000),
        cache_max_age_ms=_int_env("TXNSYNC_CACHE_MAX_AGE_MS", 86_400_000),
        rules_path=_optional_env("TXNSYNC_RULES_PATH"),
    )

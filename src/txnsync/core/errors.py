"""Error taxonomy for the sync engine."""

from __future__ import annotations

from collections.abc import Mapping, Sequence


class SyncError(Exception):
    """Base error for sync engine failures."""


class ConfigError(SyncError):
    """Missing or invalid engine configuration."""


class TransportError(SyncError):
    """Network failure or timeout that outlived the retry budget."""


class RateLimitedError(SyncError):
    """Upstream kept answering HTTP 429 after the retry budget was spent."""


class UnauthorizedError(SyncError):
    """Upstream answered HTTP 401 even after a credential refresh."""


class ApiStatusError(SyncError):
    """Upstream answered with a non-retryable error status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class MalformedResponseError(SyncError):
    """Response body could not be decoded or did not match the envelope."""


class CacheError(SyncError):
    """Persistent store read or write failed."""


class PartialFailureError(SyncError):
    """One or more accounts failed within a multi-account run."""

    def __init__(
        self,
        failed_account_ids: Sequence[str],
        errors: Mapping[str, BaseException] | None = None,
    ) -> None:
        self.failed_account_ids = list(failed_account_ids)
        self.errors = dict(errors or {})
        super().__init__(
            f"Failed to fetch transactions for account(s): "
            f"{', '.join(self.failed_account_ids)}"
        )

"""Transport call with retry, backoff and credential refresh."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

import httpx
import loguru
from loguru import logger

from txnsync.core.errors import (
    ApiStatusError,
    RateLimitedError,
    TransportError,
    UnauthorizedError,
)
from txnsync.infra.clients.auth import CredentialProvider

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ApiRequest:
    """An outgoing JSON request."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"

    def with_header(self, name: str, value: str) -> ApiRequest:
        return replace(self, headers={**self.headers, name: value})


class ExecutorLogger:
    """Handles all logging for RequestExecutor."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def rate_limited(self, url: str, delay: float, attempt: int, max_attempts: int) -> None:
        self._logger.bind(url=url, delay=delay, attempt=attempt).warning(
            "Rate limited (429). Retrying in {}s (attempt {} of {})",
            delay,
            attempt,
            max_attempts,
        )

    def network_error(
        self, url: str, error: str, delay: float, attempt: int, max_attempts: int
    ) -> None:
        self._logger.bind(url=url, error=error, delay=delay, attempt=attempt).warning(
            "Network error: {}. Retrying in {}s (attempt {} of {})",
            error,
            delay,
            attempt,
            max_attempts,
        )

    def token_refresh(self, url: str) -> None:
        self._logger.bind(url=url).info("Token rejected (401), refreshing credentials")

    def gave_up(self, url: str, reason: str, attempts: int) -> None:
        self._logger.bind(url=url, reason=reason, attempts=attempts).error(
            "Giving up on {} after {} attempt(s): {}", url, attempts, reason
        )


class RequestExecutor:
    """
    Executes API requests with the retry policy:

    - 429: exponential backoff, up to max_attempts
    - 401 on the first attempt: one credential refresh, not counted as an attempt
    - network failure or 5xx: exponential backoff, up to max_attempts

    Terminal failures are raised, never swallowed.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialProvider,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._credentials = credentials
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._logger = ExecutorLogger()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, attempt: int) -> float:
        return self._base_delay * 2 ** (attempt - 1)

    async def execute(
        self,
        request: ApiRequest,
        attempt: int = 1,
        *,
        _refreshed: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                request.method,
                request.url,
                json=request.body,
                headers=request.headers,
            )
        except httpx.TransportError as e:
            if attempt < self._max_attempts:
                delay = self.backoff_delay(attempt)
                self._logger.network_error(
                    request.url, str(e) or type(e).__name__, delay, attempt, self._max_attempts
                )
                await self._sleep(delay)
                return await self.execute(request, attempt + 1, _refreshed=_refreshed)
            self._logger.gave_up(request.url, "network error", attempt)
            raise TransportError(f"Network error calling {request.url}: {e}") from e

        status = response.status_code

        if status == 429:
            if attempt < self._max_attempts:
                delay = self.backoff_delay(attempt)
                self._logger.rate_limited(request.url, delay, attempt, self._max_attempts)
                await self._sleep(delay)
                return await self.execute(request, attempt + 1, _refreshed=_refreshed)
            self._logger.gave_up(request.url, "rate limited", attempt)
            raise RateLimitedError(
                f"Rate limited by {request.url} after {attempt} attempt(s)"
            )

        if status == 401:
            if attempt == 1 and not _refreshed:
                self._logger.token_refresh(request.url)
                token = await self._credentials.refresh_token()
                refreshed = request.with_header("Authorization", f"Bearer {token}")
                return await self.execute(refreshed, attempt, _refreshed=True)
            self._logger.gave_up(request.url, "unauthorized", attempt)
            raise UnauthorizedError(f"Unauthorized calling {request.url}: {response.text}")

        if status >= 500:
            if attempt < self._max_attempts:
                delay = self.backoff_delay(attempt)
                self._logger.network_error(
                    request.url, f"HTTP {status}", delay, attempt, self._max_attempts
                )
                await self._sleep(delay)
                return await self.execute(request, attempt + 1, _refreshed=_refreshed)
            self._logger.gave_up(request.url, f"HTTP {status}", attempt)
            raise TransportError(f"Server error ({status}) from {request.url}")

        if response.is_error:
            raise ApiStatusError(status, response.text)

        return response

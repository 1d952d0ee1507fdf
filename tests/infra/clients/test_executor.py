from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from txnsync.core.errors import (
    ApiStatusError,
    RateLimitedError,
    TransportError,
    UnauthorizedError,
)
from txnsync.infra.clients.executor import ApiRequest, RequestExecutor

URL = "https://api.example.test/data/v1/transactions"


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class MockCredentialProvider:
    def __init__(self, tokens: list[str]) -> None:
        self._tokens = tokens
        self._index = 0
        self.refresh_count = 0

    async def get_token(self) -> str:
        return self._tokens[self._index]

    async def refresh_token(self) -> str:
        self.refresh_count += 1
        self._index = min(self._index + 1, len(self._tokens) - 1)
        return self._tokens[self._index]


class ScriptedServer:
    """Answers requests from a list of status codes (or exceptions)."""

    def __init__(self, script: list[int | Exception]) -> None:
        self._script = script
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self._script[min(len(self.requests), len(self._script)) - 1]
        if isinstance(step, Exception):
            raise step
        return httpx.Response(step, json={"status": step})


def create_test_request() -> ApiRequest:
    return ApiRequest(
        url=URL,
        body={"entity_id": "E1"},
        headers={"Authorization": "Bearer token-1"},
    )


def run_execute(
    script: list[int | Exception],
    *,
    credentials: MockCredentialProvider | None = None,
) -> tuple[Callable[[], httpx.Response], ScriptedServer, SleepRecorder, MockCredentialProvider]:
    server = ScriptedServer(script)
    sleep = SleepRecorder()
    creds = credentials or MockCredentialProvider(["token-1", "token-2"])

    def _execute() -> httpx.Response:
        async def _impl() -> httpx.Response:
            async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
                executor = RequestExecutor(http, creds, max_attempts=3, base_delay=1.0, sleep=sleep)
                return await executor.execute(create_test_request())

        return asyncio.run(_impl())

    return _execute, server, sleep, creds


def test_success_returns_response_without_retry() -> None:
    execute, server, sleep, _ = run_execute([200])

    response = execute()

    assert response.status_code == 200
    assert len(server.requests) == 1
    assert sleep.delays == []


def test_rate_limited_backs_off_exponentially_then_fails() -> None:
    # setup
    execute, server, sleep, _ = run_execute([429, 429, 429])

    # act / assert
    with pytest.raises(RateLimitedError):
        execute()

    # attempt k waits base * 2^(k-1); the third attempt is terminal
    assert sleep.delays == [1.0, 2.0]
    assert len(server.requests) == 3


def test_rate_limited_then_success_retries_once() -> None:
    execute, server, sleep, _ = run_execute([429, 200])

    response = execute()

    assert response.status_code == 200
    assert sleep.delays == [1.0]
    assert len(server.requests) == 2


def test_unauthorized_refreshes_token_once_and_replaces_header() -> None:
    execute, server, sleep, creds = run_execute([401, 200])

    response = execute()

    assert response.status_code == 200
    assert creds.refresh_count == 1
    assert server.requests[0].headers["Authorization"] == "Bearer token-1"
    assert server.requests[1].headers["Authorization"] == "Bearer token-2"
    assert sleep.delays == []


def test_unauthorized_twice_fails_after_single_refresh() -> None:
    execute, server, _, creds = run_execute([401, 401])

    with pytest.raises(UnauthorizedError):
        execute()

    assert creds.refresh_count == 1
    assert len(server.requests) == 2


def test_refresh_retry_does_not_consume_rate_limit_budget() -> None:
    execute, server, sleep, creds = run_execute([401, 429, 429, 429])

    with pytest.raises(RateLimitedError):
        execute()

    assert creds.refresh_count == 1
    assert sleep.delays == [1.0, 2.0]
    assert len(server.requests) == 4


def test_unauthorized_after_rate_limit_is_not_refreshed() -> None:
    execute, _, _, creds = run_execute([429, 401])

    with pytest.raises(UnauthorizedError):
        execute()

    assert creds.refresh_count == 0


def test_network_errors_retry_then_raise_transport_error() -> None:
    boom = httpx.ConnectError("connection refused")
    execute, server, sleep, _ = run_execute([boom, boom, boom])

    with pytest.raises(TransportError):
        execute()

    assert sleep.delays == [1.0, 2.0]
    assert len(server.requests) == 3


def test_server_error_is_retried_like_network_failure() -> None:
    execute, server, sleep, _ = run_execute([503, 200])

    response = execute()

    assert response.status_code == 200
    assert sleep.delays == [1.0]
    assert len(server.requests) == 2


def test_client_error_raises_without_retry() -> None:
    execute, server, sleep, _ = run_execute([404])

    with pytest.raises(ApiStatusError) as exc_info:
        execute()

    assert exc_info.value.status_code == 404
    assert len(server.requests) == 1
    assert sleep.delays == []


def test_backoff_delay_doubles_per_attempt() -> None:
    executor = RequestExecutor(
        httpx.AsyncClient(), MockCredentialProvider(["t"]), base_delay=0.5
    )

    assert [executor.backoff_delay(k) for k in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

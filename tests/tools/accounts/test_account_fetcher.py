from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from txnsync.adapters.cache.cache_store import CacheStore
from txnsync.adapters.cache.kv_store import InMemoryKeyValueStore
from txnsync.adapters.cache.writer import BackgroundWriter
from txnsync.core.errors import MalformedResponseError, TransportError
from txnsync.infra.clients.bank_api import AccountsPayload, ApiAccount
from txnsync.models.account import Account
from txnsync.tools.accounts.account_fetcher import (
    AccountFetcher,
    normalize_accounts,
    validate_account_ids,
)

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000


class FakeClock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class MockBankClient:
    """Mock BankDataClient returning configured account payloads."""

    def __init__(self, responses: list[AccountsPayload | Exception]) -> None:
        self._responses = responses
        self.calls: list[str] = []

    async def post_accounts(self, entity_id: str) -> AccountsPayload:
        self.calls.append(entity_id)
        response = self._responses[min(len(self.calls), len(self._responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


def create_test_payload() -> AccountsPayload:
    return AccountsPayload(
        accounts=[
            ApiAccount(
                account_id="acc-1",
                name="Current Account",
                type="CURRENT",
                currency_code="AED",
                balance=Decimal("1500.25"),
                bank_name="Example Bank",
            ),
            ApiAccount(id="acc-2", name="Savings", type="SAVINGS"),
        ]
    )


def run_fetch(
    client: MockBankClient, cache: CacheStore, *, times: int = 1
) -> list[list[Account]]:
    async def _impl() -> list[list[Account]]:
        writer = BackgroundWriter()
        fetcher = AccountFetcher(client, cache, writer=writer, ttl_ms=HOUR_MS)  # type: ignore[arg-type]
        results = []
        for _ in range(times):
            results.append(await fetcher.fetch_accounts("E1"))
            await writer.flush()
        return results

    return asyncio.run(_impl())


def test_fetch_normalizes_identifier_and_caches() -> None:
    # setup
    client = MockBankClient([create_test_payload()])
    cache = CacheStore(InMemoryKeyValueStore(), clock=FakeClock())

    # act
    first, second = run_fetch(client, cache, times=2)

    # assert
    assert [a.id for a in first] == ["acc-1", "acc-2"]
    assert first[0].bank_name == "Example Bank"
    assert first[0].balance == Decimal("1500.25")
    assert second == first
    # second call was a cache hit
    assert client.calls == ["E1"]


def test_expired_cache_is_refetched() -> None:
    clock = FakeClock()
    client = MockBankClient([create_test_payload()])
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)
    run_fetch(client, cache)

    clock.now += HOUR_MS
    run_fetch(client, cache)

    assert client.calls == ["E1", "E1"]


def test_fetch_failure_serves_stale_cache() -> None:
    # setup
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)
    run_fetch(MockBankClient([create_test_payload()]), cache)
    clock.now += 10 * HOUR_MS

    # act
    (accounts,) = run_fetch(MockBankClient([TransportError("offline")]), cache)

    # assert
    assert [a.id for a in accounts] == ["acc-1", "acc-2"]


def test_fetch_failure_without_cache_propagates() -> None:
    cache = CacheStore(InMemoryKeyValueStore())

    with pytest.raises(TransportError):
        run_fetch(MockBankClient([TransportError("offline")]), cache)


def test_malformed_response_returns_empty_list() -> None:
    cache = CacheStore(InMemoryKeyValueStore())

    (accounts,) = run_fetch(MockBankClient([MalformedResponseError("bad json")]), cache)

    assert accounts == []


def test_empty_payload_returns_empty_list_and_is_not_cached() -> None:
    store = InMemoryKeyValueStore()
    client = MockBankClient([AccountsPayload()])

    results = run_fetch(client, CacheStore(store), times=2)

    assert results == [[], []]
    assert store.data == {}
    assert client.calls == ["E1", "E1"]


def test_normalize_skips_records_without_identifier() -> None:
    records = [ApiAccount(name="Orphan"), ApiAccount(account_id="acc-9")]

    accounts = normalize_accounts(records)

    assert [(a.id, a.name) for a in accounts] == [("acc-9", "acc-9")]


def test_validate_account_ids_drops_unknown_ids() -> None:
    accounts = [Account(id="A1", name="One"), Account(id="A2", name="Two")]

    assert validate_account_ids(["A2", "gone", "A1"], accounts) == ["A2", "A1"]

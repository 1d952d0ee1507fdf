from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import Decimal
import json

from txnsync.adapters.cache.cache_store import (
    ACCOUNTS_PREFIX,
    INDEX_KEY,
    MERGED_SCOPE,
    PAGE_SCOPE,
    TRANSACTION_PREFIX,
    CacheStore,
)
from txnsync.adapters.cache.kv_store import InMemoryKeyValueStore
from txnsync.core.errors import CacheError
from txnsync.models.account import Account
from txnsync.models.transaction import Transaction

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000


class FakeClock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FailingStore(InMemoryKeyValueStore):
    """Store whose writes always fail."""

    async def set(self, key: str, value: str) -> None:
        raise CacheError("disk full")

    async def remove_many(self, keys: Iterable[str]) -> None:
        raise CacheError("disk full")


def create_test_transaction(txn_id: str = "t1", day: int = 1) -> Transaction:
    return Transaction(
        id=txn_id,
        account_id="A1",
        occurred_at=datetime(2024, 1, day, tzinfo=UTC),
        amount=Decimal("-10.00"),
        description="Coffee",
    )


def test_fingerprint_ignores_account_order() -> None:
    forward = CacheStore.fingerprint("E1", ["A1", "A2"], "2024-01-01", "2024-01-31")
    backward = CacheStore.fingerprint("E1", ["A2", "A1"], "2024-01-01", "2024-01-31")

    assert forward == backward


def test_fingerprint_changes_with_query() -> None:
    base = CacheStore.fingerprint("E1", ["A1"], "2024-01-01", "2024-01-31")

    assert base != CacheStore.fingerprint("E2", ["A1"], "2024-01-01", "2024-01-31")
    assert base != CacheStore.fingerprint("E1", ["A1", "A2"], "2024-01-01", "2024-01-31")
    assert base != CacheStore.fingerprint("E1", ["A1"], "2024-01-02", "2024-01-31")


def test_page_scope_never_collides_with_merged_scope() -> None:
    merged = CacheStore.fingerprint("E1", ["A1"], "2024-01-01", "2024-01-31")
    page = CacheStore.fingerprint(
        "E1", ["A1"], "2024-01-01", "2024-01-31", scope=PAGE_SCOPE, page_size=50
    )
    smaller_page = CacheStore.fingerprint(
        "E1", ["A1"], "2024-01-01", "2024-01-31", scope=PAGE_SCOPE, page_size=10
    )

    assert merged == CacheStore.fingerprint(
        "E1", ["A1"], "2024-01-01", "2024-01-31", scope=MERGED_SCOPE
    )
    assert len({merged, page, smaller_page}) == 3


def test_is_valid_is_false_exactly_when_age_reaches_ttl() -> None:
    # setup
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)

    # act / assert
    clock.now = T0 + HOUR_MS - 1
    assert cache.is_valid(T0, HOUR_MS) is True
    clock.now = T0 + HOUR_MS
    assert cache.is_valid(T0, HOUR_MS) is False
    clock.now = T0 + HOUR_MS + 1
    assert cache.is_valid(T0, HOUR_MS) is False


def test_put_then_get_returns_entry_with_write_time() -> None:
    # setup
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)
    transactions = [create_test_transaction("t2", day=2), create_test_transaction("t1")]

    # act
    async def _impl():
        await cache.put("fp", transactions, {"entity_id": "E1"})
        return await cache.get("fp")

    entry = asyncio.run(_impl())

    # assert
    assert entry is not None
    assert entry.timestamp == T0
    assert [t.id for t in entry.transactions] == ["t2", "t1"]
    assert entry.transactions[0].amount == Decimal("-10.00")
    assert entry.params == {"entity_id": "E1"}


def test_put_overwrites_previous_entry_wholesale() -> None:
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)

    async def _impl():
        await cache.put("fp", [create_test_transaction("old")])
        clock.now += 1_000
        await cache.put("fp", [create_test_transaction("new")])
        return await cache.get("fp")

    entry = asyncio.run(_impl())

    assert entry is not None
    assert [t.id for t in entry.transactions] == ["new"]
    assert entry.timestamp == T0 + 1_000


def test_get_missing_or_corrupt_entry_returns_none() -> None:
    store = InMemoryKeyValueStore({TRANSACTION_PREFIX + "bad": "{not json"})
    cache = CacheStore(store)

    async def _impl():
        return await cache.get("missing"), await cache.get("bad")

    assert asyncio.run(_impl()) == (None, None)


def test_failed_write_is_swallowed() -> None:
    cache = CacheStore(FailingStore())

    async def _impl():
        await cache.put("fp", [create_test_transaction()])
        return await cache.get("fp")

    assert asyncio.run(_impl()) is None


def test_clear_older_than_removes_old_and_corrupt_entries() -> None:
    # setup
    clock = FakeClock()
    store = InMemoryKeyValueStore()
    cache = CacheStore(store, clock=clock)

    async def _impl() -> int:
        await cache.put("old", [create_test_transaction()])
        clock.now += 86_400_000
        await cache.put("exact", [create_test_transaction()])
        clock.now += 1
        await cache.put("fresh", [create_test_transaction()])
        store.data[TRANSACTION_PREFIX + "corrupt"] = "garbage"
        index = json.loads(store.data[INDEX_KEY])
        store.data[INDEX_KEY] = json.dumps([*index, "corrupt"])
        return await cache.clear_older_than(86_400_000)

    # act
    removed = asyncio.run(_impl())

    # assert
    # "old" is 86_400_001 ms old; "exact" is 1 ms old, "fresh" 0 ms old
    assert removed == 2
    assert TRANSACTION_PREFIX + "old" not in store.data
    assert TRANSACTION_PREFIX + "corrupt" not in store.data
    assert TRANSACTION_PREFIX + "exact" in store.data
    assert TRANSACTION_PREFIX + "fresh" in store.data
    assert json.loads(store.data[INDEX_KEY]) == ["exact", "fresh"]


def test_clear_older_than_keeps_entry_exactly_max_age_old() -> None:
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)

    async def _impl() -> int:
        await cache.put("fp", [create_test_transaction()])
        clock.now += 1_000
        return await cache.clear_older_than(1_000)

    assert asyncio.run(_impl()) == 0


def test_clear_all_removes_owned_keys_only() -> None:
    # setup
    store = InMemoryKeyValueStore({"user_preferences": "{}"})
    cache = CacheStore(store)
    account = Account(id="A1", name="Current")

    async def _impl() -> int:
        await cache.put("fp1", [create_test_transaction()])
        await cache.put("fp2", [create_test_transaction()])
        await cache.put_accounts("E1", [account])
        return await cache.clear_all()

    # act
    removed = asyncio.run(_impl())

    # assert
    assert removed == 3
    assert store.data == {"user_preferences": "{}"}


def test_clear_transactions_keeps_accounts() -> None:
    store = InMemoryKeyValueStore()
    cache = CacheStore(store)

    async def _impl() -> int:
        await cache.put("fp", [create_test_transaction()])
        await cache.put_accounts("E1", [Account(id="A1", name="Current")])
        return await cache.clear_transactions()

    assert asyncio.run(_impl()) == 1
    assert list(store.data) == [ACCOUNTS_PREFIX + "E1"]


def test_accounts_round_trip_with_timestamp() -> None:
    clock = FakeClock()
    cache = CacheStore(InMemoryKeyValueStore(), clock=clock)
    accounts = [Account(id="A1", name="Current", balance=Decimal("120.50"))]

    async def _impl():
        await cache.put_accounts("E1", accounts)
        return await cache.get_accounts("E1"), await cache.get_accounts("E2")

    cached, missing = asyncio.run(_impl())

    assert cached is not None
    assert cached.accounts == accounts
    assert cached.timestamp == T0
    assert missing is None

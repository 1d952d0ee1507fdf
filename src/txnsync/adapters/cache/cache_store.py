from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
import hashlib
import json
import time
from typing import Any

import loguru
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from txnsync.adapters.cache.kv_store import KeyValueStore
from txnsync.models.account import Account
from txnsync.models.transaction import Transaction

TRANSACTION_PREFIX = "transaction_cache:"
ACCOUNTS_PREFIX = "accounts:"
INDEX_KEY = "cache_keys_list"

MERGED_SCOPE = "merged"
PAGE_SCOPE = "page"

DEFAULT_TTL_MS = 3_600_000
DEFAULT_MAX_AGE_MS = 86_400_000

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def stable_key(payload: Any) -> str:
    """
    Deterministic SHA256 hex digest over a canonical JSON serialization.
    """
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class CacheEntry(BaseModel):
    fingerprint: str
    transactions: list[Transaction]
    timestamp: int
    params: dict[str, Any] = Field(default_factory=dict)


class CachedAccounts(BaseModel):
    entity_id: str
    accounts: list[Account]
    timestamp: int


class CacheLogger:
    """Handles all logging for CacheStore."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def stored(self, key: str, count: int) -> None:
        self._logger.bind(key=key, count=count).debug(
            "Cached {} record(s) under {}", count, key
        )

    def write_failed(self, key: str, error: BaseException) -> None:
        self._logger.bind(key=key, error=str(error)).warning(
            "Cache write failed for {}: {}", key, error
        )

    def read_failed(self, key: str, error: BaseException) -> None:
        self._logger.bind(key=key, error=str(error)).warning(
            "Cache read failed for {}: {}", key, error
        )

    def corrupt_entry(self, key: str) -> None:
        self._logger.bind(key=key).warning("Ignoring unreadable cache entry {}", key)

    def cleared(self, count: int, reason: str) -> None:
        self._logger.bind(count=count, reason=reason).info(
            "Removed {} cache entr(ies) ({})", count, reason
        )


class CacheStore:
    """
    Fingerprinted transaction cache on top of a key-value store.

    Entries are overwritten wholesale, never merged. Every write is
    best-effort: failures are logged and never raised to the caller.
    """

    def __init__(self, store: KeyValueStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock
        self._index_lock = asyncio.Lock()
        self._logger = CacheLogger()

    @staticmethod
    def fingerprint(
        entity_id: str,
        account_ids: Sequence[str],
        start_date: str,
        end_date: str,
        *,
        scope: str = MERGED_SCOPE,
        page_size: int | None = None,
    ) -> str:
        """
        Key for one cached query.

        The merged multi-account set and single-account pages live in
        separate scopes; page entries also key on page_size.
        """
        payload: dict[str, Any] = {
            "scope": scope,
            "entity_id": entity_id,
            "account_ids": sorted(account_ids),
            "start_date": start_date,
            "end_date": end_date,
        }
        if page_size is not None:
            payload["page_size"] = page_size
        return stable_key(payload)

    def now(self) -> int:
        return self._clock()

    def is_valid(self, timestamp: int, ttl_ms: int = DEFAULT_TTL_MS) -> bool:
        return self._clock() - timestamp < ttl_ms

    # -------- Transactions --------

    async def put(
        self,
        fingerprint: str,
        transactions: Sequence[Transaction],
        params: dict[str, Any] | None = None,
    ) -> None:
        key = TRANSACTION_PREFIX + fingerprint
        entry = CacheEntry(
            fingerprint=fingerprint,
            transactions=list(transactions),
            timestamp=self._clock(),
            params=params or {},
        )
        try:
            await self._store.set(key, entry.model_dump_json())
            await self._add_to_index(fingerprint)
        except Exception as e:  # noqa: BLE001 - cache writes are best-effort
            self._logger.write_failed(key, e)
            return
        self._logger.stored(key, len(entry.transactions))

    async def get(self, fingerprint: str) -> CacheEntry | None:
        key = TRANSACTION_PREFIX + fingerprint
        try:
            raw = await self._store.get(key)
        except Exception as e:  # noqa: BLE001
            self._logger.read_failed(key, e)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            self._logger.corrupt_entry(key)
            return None

    # -------- Accounts --------

    async def put_accounts(self, entity_id: str, accounts: Sequence[Account]) -> None:
        key = ACCOUNTS_PREFIX + entity_id
        cached = CachedAccounts(
            entity_id=entity_id, accounts=list(accounts), timestamp=self._clock()
        )
        try:
            await self._store.set(key, cached.model_dump_json())
        except Exception as e:  # noqa: BLE001
            self._logger.write_failed(key, e)
            return
        self._logger.stored(key, len(cached.accounts))

    async def get_accounts(self, entity_id: str) -> CachedAccounts | None:
        key = ACCOUNTS_PREFIX + entity_id
        try:
            raw = await self._store.get(key)
        except Exception as e:  # noqa: BLE001
            self._logger.read_failed(key, e)
            return None
        if raw is None:
            return None
        try:
            return CachedAccounts.model_validate_json(raw)
        except ValidationError:
            self._logger.corrupt_entry(key)
            return None

    # -------- Housekeeping --------

    async def clear_all(self) -> int:
        """Remove every entry this cache owns, including the key index."""
        return await self._clear_matching(
            (TRANSACTION_PREFIX, ACCOUNTS_PREFIX), reason="clear all"
        )

    async def clear_transactions(self) -> int:
        return await self._clear_matching((TRANSACTION_PREFIX,), reason="transactions")

    async def clear_older_than(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        """Remove indexed entries older than max_age_ms, or unreadable ones."""
        async with self._index_lock:
            fingerprints = await self._read_index()
            if not fingerprints:
                return 0

            now = self._clock()
            stale: list[str] = []
            for fingerprint in fingerprints:
                entry = await self.get(fingerprint)
                if entry is None or now - entry.timestamp > max_age_ms:
                    stale.append(fingerprint)

            if not stale:
                return 0

            try:
                await self._store.remove_many(TRANSACTION_PREFIX + fp for fp in stale)
                stale_set = set(stale)
                remaining = [fp for fp in fingerprints if fp not in stale_set]
                await self._store.set(INDEX_KEY, json.dumps(remaining))
            except Exception as e:  # noqa: BLE001
                self._logger.write_failed(INDEX_KEY, e)
                return 0

        self._logger.cleared(len(stale), reason=f"older than {max_age_ms}ms")
        return len(stale)

    async def _clear_matching(self, prefixes: tuple[str, ...], *, reason: str) -> int:
        async with self._index_lock:
            try:
                keys = await self._store.list_keys()
                doomed = [k for k in keys if k.startswith(prefixes)]
                await self._store.remove_many([*doomed, INDEX_KEY])
            except Exception as e:  # noqa: BLE001
                self._logger.write_failed(",".join(prefixes), e)
                return 0
        self._logger.cleared(len(doomed), reason=reason)
        return len(doomed)

    async def _read_index(self) -> list[str]:
        try:
            raw = await self._store.get(INDEX_KEY)
        except Exception as e:  # noqa: BLE001
            self._logger.read_failed(INDEX_KEY, e)
            return []
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            self._logger.corrupt_entry(INDEX_KEY)
            return []
        if not isinstance(data, list):
            self._logger.corrupt_entry(INDEX_KEY)
            return []
        return [str(item) for item in data]

    async def _add_to_index(self, fingerprint: str) -> None:
        async with self._index_lock:
            fingerprints = await self._read_index()
            if fingerprint in fingerprints:
                return
            fingerprints.append(fingerprint)
            await self._store.set(INDEX_KEY, json.dumps(fingerprints))

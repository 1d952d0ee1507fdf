from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
import enum
from typing import Any

import loguru
from loguru import logger

from txnsync.adapters.cache.cache_store import DEFAULT_TTL_MS, CacheEntry, CacheStore
from txnsync.adapters.cache.writer import BackgroundWriter
from txnsync.core.errors import PartialFailureError, SyncError
from txnsync.models.account import Account
from txnsync.models.transaction import Transaction, sort_newest_first
from txnsync.tools.sync.paginator import AccountPaginator, TransactionPage
from txnsync.tools.sync.throttle import RequestThrottle

MAX_PAGES_PER_ACCOUNT = 20
MAX_CURSOR_RETRIES = 2


class RunState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    PAGING = "paging"
    LOADING_MORE = "loading_more"
    MERGED = "merged"


@dataclass
class AccountCursor:
    """Pagination state for one account within one aggregation run."""

    account_id: str
    next_page: int = 1
    has_more: bool = True
    retry_count: int = 0
    loading: bool = False
    pages_loaded: int = 0
    total_loaded: int = 0


@dataclass(frozen=True, slots=True)
class AggregationQuery:
    entity_id: str
    account_ids: tuple[str, ...]
    start_date: str
    end_date: str
    page_size: int = 50

    @property
    def fingerprint(self) -> str:
        return CacheStore.fingerprint(
            self.entity_id, self.account_ids, self.start_date, self.end_date
        )

    def params(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "account_ids": sorted(self.account_ids),
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


@dataclass(frozen=True, slots=True)
class AggregationResult:
    """Outcome of an aggregation run or load-more pass."""

    transactions: list[Transaction] = field(default_factory=list)
    failed_account_ids: list[str] = field(default_factory=list)
    errors: Mapping[str, BaseException] = field(default_factory=dict)
    has_more: bool = False
    from_cache: bool = False
    stale: bool = False
    # A newer run replaced this one before it finished; nothing was applied.
    superseded: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.failed_account_ids)

    def raise_for_partial_failure(self) -> None:
        if self.failed_account_ids:
            raise PartialFailureError(self.failed_account_ids, self.errors)


def merge_transactions(
    existing: Iterable[Transaction], incoming: Iterable[Transaction]
) -> list[Transaction]:
    """Dedupe by id (last write wins) and return newest first."""
    merged: dict[str, Transaction] = {t.id: t for t in existing}
    for txn in incoming:
        merged[txn.id] = txn
    return sort_newest_first(list(merged.values()))


class AggregatorLogger:
    """Handles all logging for MultiAccountAggregator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_start(self, query: AggregationQuery, generation: int) -> None:
        self._logger.bind(
            entity_id=query.entity_id,
            accounts=len(query.account_ids),
            generation=generation,
        ).info(
            "Loading transactions for {} account(s) from {} to {} (run {})",
            len(query.account_ids),
            query.start_date,
            query.end_date,
            generation,
        )

    def cache_hit(self, fingerprint: str, count: int) -> None:
        self._logger.bind(fingerprint=fingerprint, count=count).info(
            "Using cached transactions ({} records)", count
        )

    def stale_fallback(self, fingerprint: str, count: int) -> None:
        self._logger.bind(fingerprint=fingerprint, count=count).warning(
            "All accounts failed, using expired cached transactions ({} records)",
            count,
        )

    def account_failed(self, account_id: str, error: BaseException, retry_count: int) -> None:
        self._logger.bind(
            account_id=account_id, error=str(error), retry_count=retry_count
        ).warning(
            "Account {} failed (failure #{}): {}", account_id, retry_count, error
        )

    def page_cap_reached(self, account_id: str, cap: int) -> None:
        self._logger.bind(account_id=account_id, cap=cap).warning(
            "Account {} still reports more data after {} pages, stopping", account_id, cap
        )

    def discarded(self, account_id: str, generation: int) -> None:
        self._logger.bind(account_id=account_id, generation=generation).debug(
            "Discarding result for account {} from superseded run {}",
            account_id,
            generation,
        )

    def load_more_skipped(self, reason: str) -> None:
        self._logger.bind(reason=reason).debug("Not loading more: {}", reason)

    def run_complete(self, total: int, failed: Sequence[str], has_more: bool) -> None:
        self._logger.bind(total=total, failed=list(failed), has_more=has_more).info(
            "Merged {} transactions ({} failed account(s), has_more={})",
            total,
            len(failed),
            has_more,
        )


class MultiAccountAggregator:
    """
    Orchestrates per-account pagination for one query at a time.

    State machine: IDLE -> INITIALIZING -> PAGING -> MERGED -> IDLE, with
    LOADING_MORE re-entering PAGING for accounts whose cursor still has more.
    Every page result is applied only while the run that requested it is
    still the active one (same generation and fingerprint).
    """

    def __init__(
        self,
        paginator: AccountPaginator,
        cache: CacheStore,
        *,
        throttle: RequestThrottle | None = None,
        writer: BackgroundWriter | None = None,
        accounts: Iterable[Account] = (),
        max_pages_per_account: int = MAX_PAGES_PER_ACCOUNT,
        max_cursor_retries: int = MAX_CURSOR_RETRIES,
        cache_ttl_ms: int = DEFAULT_TTL_MS,
    ) -> None:
        self._paginator = paginator
        self._cache = cache
        self._throttle = throttle or RequestThrottle()
        self._writer = writer or BackgroundWriter()
        self._accounts_by_id: dict[str, Account] = {a.id: a for a in accounts}
        self._max_pages = max_pages_per_account
        self._max_cursor_retries = max_cursor_retries
        self._cache_ttl_ms = cache_ttl_ms
        self._logger = AggregatorLogger()

        self._state = RunState.IDLE
        self._generation = 0
        self._query: AggregationQuery | None = None
        self._active_fingerprint: str | None = None
        self._cursors: dict[str, AccountCursor] = {}
        self._working: dict[str, Transaction] = {}
        self._failures: dict[str, BaseException] = {}
        self._degraded: set[str] = set()

    # -------- Introspection --------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is not RunState.IDLE

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def query(self) -> AggregationQuery | None:
        return self._query

    @property
    def active_fingerprint(self) -> str | None:
        return self._active_fingerprint

    @property
    def cursors(self) -> dict[str, AccountCursor]:
        return dict(self._cursors)

    @property
    def transactions(self) -> list[Transaction]:
        return sort_newest_first(list(self._working.values()))

    def set_accounts(self, accounts: Iterable[Account]) -> None:
        self._accounts_by_id = {a.id: a for a in accounts}

    def reset(self) -> None:
        """Drop all run state; any in-flight page result will be discarded."""
        self._generation += 1
        self._state = RunState.IDLE
        self._query = None
        self._active_fingerprint = None
        self._cursors = {}
        self._working = {}
        self._failures = {}
        self._degraded = set()

    async def flush(self) -> None:
        await self._writer.flush()

    # -------- Runs --------

    async def load_initial(
        self,
        entity_id: str,
        account_ids: Sequence[str],
        start_date: str,
        end_date: str,
        *,
        page_size: int = 50,
        force_refresh: bool = False,
    ) -> AggregationResult:
        """
        Start a new aggregation run for the query.

        A fresh cache entry short-circuits the run. Otherwise every account
        is paged through the throttle until it reports no more data or hits
        the per-account page cap. If every account fails, an expired cache
        entry is served; with no cache a PartialFailureError is raised.
        """
        query = AggregationQuery(
            entity_id=entity_id,
            account_ids=tuple(dict.fromkeys(account_ids)),
            start_date=start_date,
            end_date=end_date,
            page_size=page_size,
        )
        self._generation += 1
        generation = self._generation
        fingerprint = query.fingerprint

        self._state = RunState.INITIALIZING
        self._query = query
        self._active_fingerprint = fingerprint
        self._cursors = {aid: AccountCursor(account_id=aid) for aid in query.account_ids}
        self._working = {}
        self._failures = {}
        self._degraded = set()
        self._logger.run_start(query, generation)

        try:
            if not query.account_ids:
                return AggregationResult()

            cached: CacheEntry | None = None
            if not force_refresh:
                cached = await self._cache.get(fingerprint)
                if not self._is_current(generation, fingerprint):
                    return AggregationResult(superseded=True)
                if cached is not None and self._cache.is_valid(
                    cached.timestamp, self._cache_ttl_ms
                ):
                    self._adopt_cache_entry(cached, query.page_size)
                    self._logger.cache_hit(fingerprint, len(cached.transactions))
                    return AggregationResult(
                        transactions=self.transactions,
                        has_more=self._any_cursor_has_more(),
                        from_cache=True,
                    )

            self._state = RunState.PAGING
            self._throttle.reset()
            await self._page_accounts(generation, query, list(query.account_ids))
            if not self._is_current(generation, fingerprint):
                return AggregationResult(superseded=True)

            failed = self._failed_ids(query)
            if failed and len(failed) == len(query.account_ids):
                if cached is None:
                    cached = await self._cache.get(fingerprint)
                    if not self._is_current(generation, fingerprint):
                        return AggregationResult(superseded=True)
                errors = {aid: self._failures[aid] for aid in failed}
                if cached is None:
                    raise PartialFailureError(failed, errors)
                self._adopt_cache_entry(cached, query.page_size)
                self._logger.stale_fallback(fingerprint, len(cached.transactions))
                return AggregationResult(
                    transactions=self.transactions,
                    failed_account_ids=failed,
                    errors=errors,
                    has_more=self._any_cursor_has_more(),
                    from_cache=True,
                    stale=True,
                )

            self._state = RunState.MERGED
            result = self._snapshot()
            self._write_back(query, result)
            self._logger.run_complete(
                len(result.transactions), result.failed_account_ids, result.has_more
            )
            return result
        finally:
            if self._is_current(generation, fingerprint):
                self._state = RunState.IDLE

    async def load_more(self) -> AggregationResult:
        """
        Continue paging accounts whose cursor still has more data.

        No-op (returns the current snapshot) while a run is in progress or
        when nothing is left to load.
        """
        if self.is_running:
            self._logger.load_more_skipped("a run is already in progress")
            return self._snapshot()
        query = self._query
        if query is None:
            self._logger.load_more_skipped("no active query")
            return AggregationResult()

        eligible = [
            c.account_id
            for c in self._cursors.values()
            if c.has_more and not c.loading
        ]
        if not eligible:
            self._logger.load_more_skipped("no account has more data")
            return self._snapshot()

        generation = self._generation
        fingerprint = query.fingerprint
        self._state = RunState.LOADING_MORE
        try:
            self._throttle.reset()
            self._state = RunState.PAGING
            await self._page_accounts(generation, query, eligible)
            if not self._is_current(generation, fingerprint):
                return AggregationResult(superseded=True)
            self._state = RunState.MERGED
            result = self._snapshot()
            self._write_back(query, result)
            self._logger.run_complete(
                len(result.transactions), result.failed_account_ids, result.has_more
            )
            return result
        finally:
            if self._is_current(generation, fingerprint):
                self._state = RunState.IDLE

    # -------- Internal helpers --------

    def _is_current(self, generation: int, fingerprint: str) -> bool:
        return (
            generation == self._generation
            and fingerprint == self._active_fingerprint
        )

    def _failed_ids(self, query: AggregationQuery) -> list[str]:
        return [aid for aid in query.account_ids if aid in self._failures]

    def _snapshot(self) -> AggregationResult:
        query = self._query
        failed = self._failed_ids(query) if query is not None else []
        return AggregationResult(
            transactions=self.transactions,
            failed_account_ids=failed,
            errors={aid: self._failures[aid] for aid in failed},
            has_more=self._any_cursor_has_more(),
        )

    def _any_cursor_has_more(self) -> bool:
        return any(c.has_more for c in self._cursors.values())

    def _cache_params(self, query: AggregationQuery) -> dict[str, Any]:
        return {
            **query.params(),
            "page_size": query.page_size,
            "cursors": {
                c.account_id: {"next_page": c.next_page, "has_more": c.has_more}
                for c in self._cursors.values()
            },
        }

    def _write_back(self, query: AggregationQuery, result: AggregationResult) -> None:
        # Only a clean merged set is cached: no failed account, no malformed page.
        if result.failed_account_ids or self._degraded:
            return
        self._writer.schedule(
            self._cache.put(query.fingerprint, result.transactions, self._cache_params(query))
        )

    def _adopt_cache_entry(self, entry: CacheEntry, page_size: int) -> None:
        """Load a cached merged set and resume each cursor where it stopped.

        Cursor positions are translated to the current page size, rounding
        down so no record is skipped; re-fetched records merge by id.
        """
        self._working = {t.id: t for t in entry.transactions}
        saved = entry.params.get("cursors")
        cached_page_size = entry.params.get("page_size")
        for cursor in self._cursors.values():
            state = saved.get(cursor.account_id) if isinstance(saved, dict) else None
            if (
                not isinstance(state, dict)
                or state.get("has_more") is not True
                or not isinstance(cached_page_size, int)
                or not isinstance(state.get("next_page"), int)
            ):
                cursor.has_more = False
                continue
            loaded = (state["next_page"] - 1) * cached_page_size
            cursor.next_page = loaded // page_size + 1
            cursor.has_more = True

    async def _page_accounts(
        self, generation: int, query: AggregationQuery, account_ids: Sequence[str]
    ) -> None:
        cursors = self._cursors
        await asyncio.gather(
            *(
                self._page_account(generation, query, cursors[account_id])
                for account_id in account_ids
            )
        )

    async def _page_account(
        self, generation: int, query: AggregationQuery, cursor: AccountCursor
    ) -> None:
        if cursor.loading:
            return
        cursor.loading = True
        try:
            async with self._throttle.slot():
                await self._drain_cursor(generation, query, cursor)
        finally:
            cursor.loading = False

    async def _drain_cursor(
        self, generation: int, query: AggregationQuery, cursor: AccountCursor
    ) -> None:
        fingerprint = query.fingerprint
        pages_this_pass = 0
        while cursor.has_more and pages_this_pass < self._max_pages:
            if not self._is_current(generation, fingerprint):
                return
            page_number = cursor.next_page
            try:
                page = await self._paginator.fetch_page(
                    query.entity_id,
                    cursor.account_id,
                    query.start_date,
                    query.end_date,
                    page_number,
                    query.page_size,
                )
            except SyncError as e:
                if not self._is_current(generation, fingerprint):
                    self._logger.discarded(cursor.account_id, generation)
                    return
                cursor.retry_count += 1
                cursor.has_more = cursor.retry_count <= self._max_cursor_retries
                self._failures[cursor.account_id] = e
                self._logger.account_failed(cursor.account_id, e, cursor.retry_count)
                return

            if not self._is_current(generation, fingerprint):
                self._logger.discarded(cursor.account_id, generation)
                return

            self._apply_page(cursor, page)
            pages_this_pass += 1
            cursor.pages_loaded += 1
            cursor.total_loaded += len(page.transactions)
            cursor.has_more = page.has_more
            if page.has_more:
                cursor.next_page = page_number + 1
            self._failures.pop(cursor.account_id, None)

        if cursor.has_more and cursor.account_id not in self._failures:
            self._logger.page_cap_reached(cursor.account_id, self._max_pages)

    def _apply_page(self, cursor: AccountCursor, page: TransactionPage) -> None:
        if page.malformed:
            self._degraded.add(cursor.account_id)
        account = self._accounts_by_id.get(cursor.account_id)
        for txn in page.transactions:
            enriched = txn.with_account(account) if self._accounts_by_id else txn
            self._working[enriched.id] = enriched

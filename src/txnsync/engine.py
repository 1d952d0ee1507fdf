from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger
import yaml

from txnsync.adapters.cache.cache_store import PAGE_SCOPE, CacheStore
from txnsync.adapters.cache.kv_store import FileKeyValueStore, KeyValueStore
from txnsync.adapters.cache.writer import BackgroundWriter
from txnsync.analytics.summary import FinancialSummary, summarize
from txnsync.core.config import EngineConfig
from txnsync.core.errors import ConfigError, SyncError
from txnsync.infra.clients.auth import ClientCredentialsProvider, CredentialProvider
from txnsync.infra.clients.bank_api import BankDataClient
from txnsync.infra.clients.executor import RequestExecutor
from txnsync.models.account import Account
from txnsync.models.transaction import Transaction
from txnsync.taxonomy.categorizer import Categorizer, CategoryResult
from txnsync.taxonomy.rules import load_rules_from_yaml
from txnsync.tools.accounts.account_fetcher import AccountFetcher
from txnsync.tools.sync.aggregator import AggregationResult, MultiAccountAggregator
from txnsync.tools.sync.paginator import AccountPaginator, TransactionPage
from txnsync.tools.sync.throttle import RequestThrottle

Sleep = Callable[[float], Awaitable[Any]]
Closer = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class MultiAccountPage:
    """One page sliced out of the merged multi-account result."""

    transactions: list[Transaction] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False
    failed_account_ids: list[str] = field(default_factory=list)
    from_cache: bool = False
    stale: bool = False
    superseded: bool = False


class SyncEngine:
    """
    Public surface of the sync engine.

    Wires the account fetcher, paginator, aggregator, cache, categorizer
    and summary together. Use ``SyncEngine.from_config`` to build the full
    graph from an EngineConfig.
    """

    def __init__(
        self,
        *,
        client: BankDataClient,
        cache: CacheStore,
        config: EngineConfig | None = None,
        throttle: RequestThrottle | None = None,
        writer: BackgroundWriter | None = None,
        categorizer: Categorizer | None = None,
        closers: Sequence[Closer] = (),
    ) -> None:
        self._config = config or EngineConfig()
        self._cache = cache
        self._writer = writer or BackgroundWriter()
        self._categorizer = categorizer or Categorizer()
        self._closers = list(closers)
        self._accounts: list[Account] = []

        self._account_fetcher = AccountFetcher(
            client, cache, writer=self._writer, ttl_ms=self._config.cache_ttl_ms
        )
        self._paginator = AccountPaginator(client)
        self._aggregator = MultiAccountAggregator(
            self._paginator,
            cache,
            throttle=throttle
            or RequestThrottle(
                max_concurrency=self._config.max_concurrency,
                spacing=self._config.inter_request_delay_seconds,
            ),
            writer=self._writer,
            max_pages_per_account=self._config.max_pages_per_account,
            max_cursor_retries=self._config.max_cursor_retries,
            cache_ttl_ms=self._config.cache_ttl_ms,
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        credentials: CredentialProvider | None = None,
        store: KeyValueStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> SyncEngine:
        """Build an engine and its collaborators from configuration.

        Raises:
            ConfigError: If no credentials are given and the config has no
                client credentials either, or if the rule file cannot be
                loaded.
        """
        if credentials is None and not (
            config.client_id and config.client_secret and config.auth_url
        ):
            raise ConfigError(
                "No credentials: pass a token or set TXNSYNC_CLIENT_ID, "
                "TXNSYNC_CLIENT_SECRET and TXNSYNC_AUTH_URL"
            )
        categorizer = load_categorizer(config.rules_path)

        closers: list[Closer] = []
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
            closers.append(http_client.aclose)

        if credentials is None:
            assert config.auth_url and config.client_id and config.client_secret  # noqa: S101
            credentials = ClientCredentialsProvider(
                auth_url=config.auth_url,
                client_id=config.client_id,
                client_secret=config.client_secret,
                scope=config.scope,
                http_client=http_client,
            )

        executor = RequestExecutor(
            http_client,
            credentials,
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            sleep=sleep,
        )
        client = BankDataClient(
            executor, credentials, base_url=config.api_base_url, scope=config.scope
        )
        cache = CacheStore(store if store is not None else FileKeyValueStore(config.cache_dir))
        throttle = RequestThrottle(
            max_concurrency=config.max_concurrency,
            spacing=config.inter_request_delay_seconds,
            sleep=sleep,
        )
        return cls(
            client=client,
            cache=cache,
            config=config,
            throttle=throttle,
            categorizer=categorizer,
            closers=closers,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def aggregator(self) -> MultiAccountAggregator:
        return self._aggregator

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts)

    # -------- Accounts --------

    async def fetch_accounts(self, entity_id: str) -> list[Account]:
        accounts = await self._account_fetcher.fetch_accounts(entity_id)
        self._accounts = accounts
        self._aggregator.set_accounts(accounts)
        return accounts

    # -------- Transactions --------

    async def fetch_transactions(
        self,
        entity_id: str,
        account_id: str,
        start_date: str,
        end_date: str,
        page: int = 1,
        page_size: int | None = None,
    ) -> TransactionPage:
        """
        Fetch one page for one account.

        Page 1 is served from a fresh cache entry when one exists, and from
        an expired one when the fetch fails. Later pages always hit the API.
        """
        page_size = page_size or self._config.page_size
        fingerprint = CacheStore.fingerprint(
            entity_id,
            [account_id],
            start_date,
            end_date,
            scope=PAGE_SCOPE,
            page_size=page_size,
        )

        cached = None
        if page == 1:
            cached = await self._cache.get(fingerprint)
            if cached is not None and self._cache.is_valid(
                cached.timestamp, self._config.cache_ttl_ms
            ):
                logger.bind(account_id=account_id).debug(
                    "Serving cached first page for account {}", account_id
                )
                return _page_from_cache(cached.transactions, cached.params)

        try:
            result = await self._paginator.fetch_page(
                entity_id, account_id, start_date, end_date, page, page_size
            )
        except SyncError as e:
            if cached is None:
                raise
            logger.bind(account_id=account_id, error=str(e)).warning(
                "Fetch failed for account {}, serving expired cache: {}", account_id, e
            )
            return _page_from_cache(cached.transactions, cached.params)

        result = self._enrich_page(account_id, result)
        if page == 1 and not result.malformed:
            params = {
                "entity_id": entity_id,
                "account_ids": [account_id],
                "start_date": start_date,
                "end_date": end_date,
                "page_size": page_size,
                "total_count": result.total_count,
                "has_more": result.has_more,
            }
            self._writer.schedule(self._cache.put(fingerprint, result.transactions, params))
        return result

    async def fetch_transactions_multi_account(
        self,
        entity_id: str,
        account_ids: Sequence[str],
        start_date: str,
        end_date: str,
        page: int = 1,
        page_size: int | None = None,
        *,
        force_refresh: bool = False,
    ) -> MultiAccountPage:
        """
        Return one page of the merged, newest-first transaction set.

        Page 1 (or a new query) starts an aggregation run. Later pages of the
        same query slice the merged set, loading more from accounts that
        still have data when the slice runs past what is loaded.

        Raises:
            PartialFailureError: If every account failed and nothing is cached.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        page_size = page_size or self._config.page_size
        fingerprint = CacheStore.fingerprint(entity_id, account_ids, start_date, end_date)

        if page == 1 or force_refresh or self._aggregator.active_fingerprint != fingerprint:
            result = await self._aggregator.load_initial(
                entity_id,
                account_ids,
                start_date,
                end_date,
                page_size=page_size,
                force_refresh=force_refresh,
            )
        else:
            result = self._current_result()

        while (
            not result.superseded
            and result.has_more
            and len(result.transactions) < page * page_size
        ):
            loaded_before = len(result.transactions)
            result = await self._aggregator.load_more()
            if len(result.transactions) == loaded_before:
                break

        if result.superseded:
            return MultiAccountPage(superseded=True)
        return _slice(result, page, page_size)

    async def load_more(self) -> AggregationResult:
        return await self._aggregator.load_more()

    def _current_result(self) -> AggregationResult:
        cursors = self._aggregator.cursors
        return AggregationResult(
            transactions=self._aggregator.transactions,
            has_more=any(c.has_more for c in cursors.values()),
        )

    def _enrich_page(self, account_id: str, page: TransactionPage) -> TransactionPage:
        if not self._accounts:
            return page
        account = next((a for a in self._accounts if a.id == account_id), None)
        return TransactionPage(
            transactions=[t.with_account(account) for t in page.transactions],
            total_count=page.total_count,
            has_more=page.has_more,
            malformed=page.malformed,
        )

    # -------- Cache housekeeping --------

    async def clear_all_cache(self) -> int:
        self._aggregator.reset()
        return await self._cache.clear_all()

    async def clear_old_cache(self, max_age_ms: int | None = None) -> int:
        return await self._cache.clear_older_than(
            max_age_ms if max_age_ms is not None else self._config.cache_max_age_ms
        )

    async def clear_transactions_cache(self) -> int:
        self._aggregator.reset()
        return await self._cache.clear_transactions()

    # -------- Categorization and totals --------

    def classify(self, transaction: Transaction, is_pending: bool | None = None) -> CategoryResult:
        pending = transaction.pending if is_pending is None else is_pending
        return self._categorizer.classify(transaction, pending)

    def summarize(
        self, transactions: Iterable[Transaction], *, full_breakdown: bool = False
    ) -> FinancialSummary:
        return summarize(
            transactions, full_breakdown=full_breakdown, categorizer=self._categorizer
        )

    # -------- Lifecycle --------

    async def flush(self) -> None:
        await self._writer.flush()

    async def aclose(self) -> None:
        await self.flush()
        for close in self._closers:
            await close()
        self._closers = []


def load_categorizer(rules_path: str | None) -> Categorizer:
    """Categorizer over the YAML rule table at rules_path, or the built-in rules."""
    if not rules_path:
        return Categorizer()
    try:
        rules = load_rules_from_yaml(rules_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot load category rules from {rules_path}: {e}") from e
    logger.bind(rules_path=rules_path, rules=len(rules)).info(
        "Loaded {} category rule(s) from {}", len(rules), rules_path
    )
    return Categorizer(rules)


def _page_from_cache(
    transactions: list[Transaction], params: dict[str, Any]
) -> TransactionPage:
    total = params.get("total_count")
    has_more = params.get("has_more")
    return TransactionPage(
        transactions=list(transactions),
        total_count=total if isinstance(total, int) else len(transactions),
        has_more=has_more if isinstance(has_more, bool) else False,
    )


def _slice(result: AggregationResult, page: int, page_size: int) -> MultiAccountPage:
    start = (page - 1) * page_size
    end = start + page_size
    merged = result.transactions
    return MultiAccountPage(
        transactions=merged[start:end],
        total_count=len(merged),
        has_more=len(merged) > end or result.has_more,
        failed_account_ids=list(result.failed_account_ids),
        from_cache=result.from_cache,
        stale=result.stale,
    )

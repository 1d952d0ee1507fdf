from __future__ import annotations

from collections.abc import Iterable, Sequence

import loguru
from loguru import logger

from txnsync.adapters.cache.cache_store import DEFAULT_TTL_MS, CacheStore
from txnsync.adapters.cache.writer import BackgroundWriter
from txnsync.core.errors import MalformedResponseError, SyncError
from txnsync.infra.clients.bank_api import ApiAccount, BankDataClient
from txnsync.models.account import Account


class AccountFetcherLogger:
    """Handles all logging for AccountFetcher."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def cache_hit(self, entity_id: str, count: int) -> None:
        self._logger.bind(entity_id=entity_id, count=count).info(
            "Using cached accounts for entity {} ({} accounts)", entity_id, count
        )

    def fetch_start(self, entity_id: str) -> None:
        self._logger.bind(entity_id=entity_id).info(
            "Fetching accounts for entity {}", entity_id
        )

    def fetch_complete(self, entity_id: str, count: int) -> None:
        self._logger.bind(entity_id=entity_id, count=count).info(
            "Fetched {} account(s) for entity {}", count, entity_id
        )

    def empty_payload(self, entity_id: str) -> None:
        self._logger.bind(entity_id=entity_id).warning(
            "Accounts response for entity {} carried no accounts", entity_id
        )

    def skipped_record(self, name: str | None) -> None:
        self._logger.bind(name=name).warning(
            "Skipping account record without an identifier ({})", name
        )

    def stale_fallback(self, entity_id: str, error: BaseException) -> None:
        self._logger.bind(entity_id=entity_id, error=str(error)).warning(
            "Using expired cached accounts for entity {} due to fetch error: {}",
            entity_id,
            error,
        )


def normalize_accounts(records: Iterable[ApiAccount]) -> list[Account]:
    """Map API account records onto Account, moving the identifier into id."""
    log = AccountFetcherLogger()
    accounts: list[Account] = []
    for record in records:
        identifier = record.identifier
        if not identifier:
            log.skipped_record(record.name)
            continue
        accounts.append(
            Account(
                id=identifier,
                name=record.name or identifier,
                type=record.type,
                currency_code=record.currency_code,
                balance=record.balance,
                bank_identifier=record.bank_identifier,
                bank_name=record.bank_name,
                owner_name=record.owner_name,
            )
        )
    return accounts


def validate_account_ids(
    saved_account_ids: Sequence[str], accounts: Sequence[Account]
) -> list[str]:
    """Keep only the saved selection ids that still name an available account."""
    available = {account.id for account in accounts}
    return [account_id for account_id in saved_account_ids if account_id in available]


class AccountFetcher:
    """Retrieves and normalizes the account list for an entity."""

    def __init__(
        self,
        client: BankDataClient,
        cache: CacheStore,
        *,
        writer: BackgroundWriter | None = None,
        ttl_ms: int = DEFAULT_TTL_MS,
    ) -> None:
        self._client = client
        self._cache = cache
        self._writer = writer or BackgroundWriter()
        self._ttl_ms = ttl_ms
        self._logger = AccountFetcherLogger()

    async def fetch_accounts(self, entity_id: str) -> list[Account]:
        """
        Return accounts for an entity.

        Fresh cache wins. On a failed fetch any cached list is served
        regardless of age; with no cache the error propagates. An empty or
        undecodable payload yields an empty list.
        """
        cached = await self._cache.get_accounts(entity_id)
        if cached is not None and self._cache.is_valid(cached.timestamp, self._ttl_ms):
            self._logger.cache_hit(entity_id, len(cached.accounts))
            return list(cached.accounts)

        self._logger.fetch_start(entity_id)
        try:
            payload = await self._client.post_accounts(entity_id)
        except MalformedResponseError as e:
            if cached is not None:
                self._logger.stale_fallback(entity_id, e)
                return list(cached.accounts)
            self._logger.empty_payload(entity_id)
            return []
        except SyncError as e:
            if cached is not None:
                self._logger.stale_fallback(entity_id, e)
                return list(cached.accounts)
            raise

        accounts = normalize_accounts(payload.accounts)
        if not accounts:
            self._logger.empty_payload(entity_id)
            return []

        self._writer.schedule(self._cache.put_accounts(entity_id, accounts))
        self._logger.fetch_complete(entity_id, len(accounts))
        return accounts

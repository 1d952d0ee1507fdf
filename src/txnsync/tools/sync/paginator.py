from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
import re

import loguru
from loguru import logger

from txnsync.adapters.cache.cache_store import stable_key
from txnsync.core.errors import MalformedResponseError
from txnsync.infra.clients.bank_api import (
    ApiTransaction,
    BankDataClient,
    TransactionsPayload,
)
from txnsync.models.transaction import Transaction, parse_occurred_at

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True, slots=True)
class TransactionPage:
    """One page of transactions for one account."""

    transactions: list[Transaction] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False
    # Set when the response could not be decoded; the page is empty.
    malformed: bool = False


class PaginatorLogger:
    """Handles all logging for AccountPaginator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def fetch_start(self, account_id: str, page: int, page_size: int) -> None:
        self._logger.bind(account_id=account_id, page=page, page_size=page_size).debug(
            "Fetching page {} for account {} (page size {})",
            page,
            account_id,
            page_size,
        )

    def fetch_complete(
        self, account_id: str, page: int, raw_count: int, kept_count: int, has_more: bool
    ) -> None:
        self._logger.bind(
            account_id=account_id,
            page=page,
            raw=raw_count,
            kept=kept_count,
            has_more=has_more,
        ).info(
            "Account {} page {}: {} received, {} in range, has_more={}",
            account_id,
            page,
            raw_count,
            kept_count,
            has_more,
        )

    def malformed_page(self, account_id: str, page: int, error: BaseException) -> None:
        self._logger.bind(account_id=account_id, page=page, error=str(error)).warning(
            "Malformed response for account {} page {}, treating as empty: {}",
            account_id,
            page,
            error,
        )


def _amount_key(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def synthetic_transaction_id(
    account_id: str,
    server_transaction_id: str | None,
    occurred_at: str,
    amount: Decimal,
) -> str:
    """Deterministic id for records the server sent without one.

    The same underlying record always maps to the same id, so refetching a
    page merges instead of duplicating.
    """
    digest = stable_key(
        [account_id, server_transaction_id or "", occurred_at, _amount_key(amount)]
    )
    return f"{account_id}-{digest[:16]}"


def resolve_has_more(
    payload: TransactionsPayload, *, raw_count: int, offset: int, page_size: int
) -> bool:
    """
    Decide whether another page exists.

    An explicit hasMore flag is authoritative; otherwise total_count decides;
    otherwise a full page is taken to mean more data.
    """
    if raw_count == 0:
        return False
    if payload.has_more is not None:
        return payload.has_more
    if payload.total_count is not None:
        return offset + raw_count < payload.total_count
    return raw_count >= page_size


def to_transaction(record: ApiTransaction, account_id: str) -> Transaction:
    occurred_at = parse_occurred_at(record.raw_occurred_at) or EPOCH
    insights = record.insights
    transaction_id = record.id or synthetic_transaction_id(
        account_id,
        record.transaction_id,
        occurred_at.isoformat(),
        record.amount,
    )
    return Transaction(
        id=transaction_id,
        account_id=account_id,
        occurred_at=occurred_at,
        amount=record.amount,
        description=record.description or "",
        upstream_description=insights.description if insights else None,
        upstream_category=insights.category if insights else None,
        upstream_confidence=insights.category_confidence if insights else None,
        currency_code=record.currency_code,
        pending=record.pending,
    )


def _date_window(start_date: str, end_date: str) -> tuple[date, date] | None:
    if not (ISO_DATE_PATTERN.match(start_date) and ISO_DATE_PATTERN.match(end_date)):
        return None
    return date.fromisoformat(start_date), date.fromisoformat(end_date)


class AccountPaginator:
    """Fetches one page of transactions for one account."""

    def __init__(self, client: BankDataClient) -> None:
        self._client = client
        self._logger = PaginatorLogger()

    async def fetch_page(
        self,
        entity_id: str,
        account_id: str,
        start_date: str,
        end_date: str,
        page: int = 1,
        page_size: int = 50,
    ) -> TransactionPage:
        """
        Fetch a single page.

        Transport, rate-limit and auth failures propagate after the executor's
        retry budget. A malformed page is logged and returned empty with
        has_more=False so one bad page does not abort a run.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        offset = (page - 1) * page_size
        self._logger.fetch_start(account_id, page, page_size)
        try:
            payload = await self._client.post_transactions(
                entity_id=entity_id,
                account_id=account_id,
                from_date=start_date,
                to_date=end_date,
                limit=page_size,
                offset=offset,
            )
        except MalformedResponseError as e:
            self._logger.malformed_page(account_id, page, e)
            return TransactionPage(malformed=True)

        raw_count = len(payload.transactions)
        has_more = resolve_has_more(
            payload, raw_count=raw_count, offset=offset, page_size=page_size
        )
        transactions = [to_transaction(r, account_id) for r in payload.transactions]

        window = _date_window(start_date, end_date)
        if window is not None:
            first_day, last_day = window
            transactions = [
                t for t in transactions if first_day <= t.occurred_on <= last_day
            ]

        self._logger.fetch_complete(
            account_id, page, raw_count, len(transactions), has_more
        )
        total_count = (
            payload.total_count if payload.total_count is not None else len(transactions)
        )
        return TransactionPage(
            transactions=transactions, total_count=total_count, has_more=has_more
        )

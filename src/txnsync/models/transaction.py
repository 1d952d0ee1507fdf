from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, field_validator

if TYPE_CHECKING:
    from txnsync.models.account import Account


class Transaction(BaseModel):
    """
    A normalized transaction record.

    Note: amount sign carries direction (positive = inflow, negative = outflow).
    The upstream_* fields are whatever classification the data provider
    attached; they are passed through untouched.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    occurred_at: datetime
    amount: Decimal
    description: str = ""
    upstream_description: str | None = None
    upstream_category: str | None = None
    upstream_confidence: float | None = None
    currency_code: str | None = None
    pending: bool = False
    # Joined from the owning Account, at most once.
    account_name: str | None = None
    account_type: str | None = None

    @field_validator("occurred_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def occurred_on(self) -> date:
        return self.occurred_at.date()

    @property
    def is_enriched(self) -> bool:
        return self.account_name is not None or self.account_type is not None

    def with_account(self, account: Account | None) -> Transaction:
        """Return a copy carrying the account's name and type.

        Already-enriched records are returned unchanged.
        """
        if self.is_enriched:
            return self
        if account is None:
            return self.model_copy(
                update={"account_name": "Unknown Account", "account_type": "Unknown"}
            )
        return self.model_copy(
            update={"account_name": account.name, "account_type": account.type}
        )


def parse_occurred_at(value: str | None) -> datetime | None:
    """Parse an upstream timestamp or date string into an aware datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def sort_newest_first(transactions: list[Transaction]) -> list[Transaction]:
    """Canonical order: occurred_at descending, ties broken by id descending."""
    return sorted(transactions, key=lambda t: (t.occurred_at, t.id), reverse=True)

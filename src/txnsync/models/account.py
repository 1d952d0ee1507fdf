from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class Account(BaseModel):
    """A linked bank account as returned by the accounts endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str | None = None
    currency_code: str | None = None
    balance: Decimal | None = None
    bank_identifier: str | None = None
    bank_name: str | None = None
    owner_name: str | None = None

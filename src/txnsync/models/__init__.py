"""Domain records shared across the engine."""

from txnsync.models.account import Account
from txnsync.models.transaction import Transaction, parse_occurred_at, sort_newest_first

__all__ = [
    "Account",
    "Transaction",
    "parse_occurred_at",
    "sort_newest_first",
]

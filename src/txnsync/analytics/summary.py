from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType

from txnsync.models.transaction import Transaction
from txnsync.taxonomy.categorizer import Categorizer
from txnsync.taxonomy.rules import Category

ZERO = Decimal("0")


def _frozen(totals: dict[Category, Decimal]) -> Mapping[Category, Decimal]:
    return MappingProxyType(dict(sorted(totals.items(), key=lambda kv: kv[0].value)))


@dataclass(frozen=True, slots=True)
class FinancialSummary:
    """Totals over a transaction set. Amounts are non-negative except balance."""

    income: Decimal = ZERO
    expenses: Decimal = ZERO
    pending_amount: Decimal = ZERO
    balance: Decimal = ZERO
    category_totals: Mapping[Category, Decimal] = field(default_factory=dict)
    inflow_categories: Mapping[Category, Decimal] = field(default_factory=dict)
    expense_categories: Mapping[Category, Decimal] = field(default_factory=dict)
    transaction_count: int = 0


def summarize(
    transactions: Iterable[Transaction],
    *,
    full_breakdown: bool = False,
    categorizer: Categorizer | None = None,
) -> FinancialSummary:
    """
    Reduce transactions to income, expense and pending totals.

    Pure: the input is only read, and the same input always gives the same
    totals. Zero amounts are ignored.

    Args:
        transactions: Records to total.
        full_breakdown: When True, category_totals also covers income and
            pending records; by default it holds settled outflows only.
            inflow_categories and expense_categories always split every
            record by sign, pending ones included.
        categorizer: Categorizer used for the per-category totals.

    Returns:
        FinancialSummary with balance = income - expenses.
    """
    categorizer = categorizer or Categorizer()
    income = ZERO
    expenses = ZERO
    pending_amount = ZERO
    category_totals: dict[Category, Decimal] = {}
    inflow_categories: dict[Category, Decimal] = {}
    expense_categories: dict[Category, Decimal] = {}
    count = 0

    for txn in transactions:
        amount = txn.amount
        if amount == 0:
            continue
        count += 1
        magnitude = abs(amount)
        category = categorizer.classify(txn, txn.pending).category

        if amount > 0:
            inflow_categories[category] = inflow_categories.get(category, ZERO) + amount
        else:
            expense_categories[category] = (
                expense_categories.get(category, ZERO) + magnitude
            )

        if txn.pending:
            pending_amount += magnitude
        elif amount > 0:
            income += amount
        else:
            expenses += magnitude

        if full_breakdown or (not txn.pending and amount < 0):
            category_totals[category] = category_totals.get(category, ZERO) + magnitude

    return FinancialSummary(
        income=income,
        expenses=expenses,
        pending_amount=pending_amount,
        balance=income - expenses,
        category_totals=_frozen(category_totals),
        inflow_categories=_frozen(inflow_categories),
        expense_categories=_frozen(expense_categories),
        transaction_count=count,
    )

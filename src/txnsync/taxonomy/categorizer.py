from __future__ import annotations

from dataclasses import dataclass

from txnsync.models.transaction import Transaction
from txnsync.taxonomy.rules import DEFAULT_RULES, Category, CategoryRule, RuleTable

# Upstream categories that mark an inflow as a deposit rather than income.
DEPOSIT_SIGNALS = frozenset({"deposit", "transfer_in", "transfer in", "refund"})

# Description keywords that mark an inflow as a deposit rather than income.
DEFAULT_DEPOSIT_RULE = CategoryRule(
    Category.DEPOSIT,
    (
        "deposit",
        "credit",
        "transfer in",
        "money received",
        "incoming",
        "refund",
        "cashback",
        "reimbursement",
        "returned",
        "money back",
    ),
    priority=0,
)


@dataclass(frozen=True, slots=True)
class CategoryResult:
    category: Category
    confidence: float | None = None


class Categorizer:
    """
    Assigns each transaction one category from the closed taxonomy.

    Rule order:
    1. pending transactions are always ``pending``
    2. inflows are ``deposit`` when upstream or the description says so,
       otherwise ``income``
    3. outflows go through the keyword rule table
    4. anything unmatched is ``other``
    """

    def __init__(
        self,
        rules: RuleTable = DEFAULT_RULES,
        *,
        deposit_rule: CategoryRule = DEFAULT_DEPOSIT_RULE,
    ) -> None:
        if deposit_rule.category is not Category.DEPOSIT:
            raise ValueError(f"Deposit rule must assign {Category.DEPOSIT}")
        self._rules = rules
        self._deposit_rule = deposit_rule

    @property
    def rules(self) -> RuleTable:
        return self._rules

    def classify(self, transaction: Transaction, is_pending: bool) -> CategoryResult:
        confidence = transaction.upstream_confidence

        if is_pending:
            return CategoryResult(Category.PENDING, confidence)

        text = " ".join(
            part
            for part in (transaction.description, transaction.upstream_description)
            if part
        )

        if transaction.amount > 0:
            if _has_deposit_signal(transaction.upstream_category) or (
                self._deposit_rule.matches(text)
            ):
                return CategoryResult(Category.DEPOSIT, confidence)
            return CategoryResult(Category.INCOME, confidence)

        matched = self._rules.match(text)
        return CategoryResult(matched or Category.OTHER, confidence)


def _has_deposit_signal(upstream_category: str | None) -> bool:
    if not upstream_category:
        return False
    return upstream_category.strip().lower() in DEPOSIT_SIGNALS

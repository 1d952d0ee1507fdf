"""Closed reporting taxonomy and rule-based categorization."""

from txnsync.taxonomy.categorizer import (
    DEFAULT_DEPOSIT_RULE,
    DEPOSIT_SIGNALS,
    Categorizer,
    CategoryResult,
)
from txnsync.taxonomy.rules import (
    DEFAULT_RULES,
    Category,
    CategoryRule,
    RuleTable,
    load_rules_from_yaml,
)

__all__ = [
    "Category",
    "CategoryResult",
    "CategoryRule",
    "Categorizer",
    "DEFAULT_DEPOSIT_RULE",
    "DEFAULT_RULES",
    "DEPOSIT_SIGNALS",
    "RuleTable",
    "load_rules_from_yaml",
]

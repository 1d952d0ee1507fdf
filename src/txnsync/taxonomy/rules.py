from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
import enum
from pathlib import Path
import re
from typing import Any

import yaml


class Category(enum.StrEnum):
    FOOD = "food"
    TRANSPORT = "transport"
    UTILITIES = "utilities"
    HOUSING = "housing"
    SHOPPING = "shopping"
    HEALTH = "health"
    EDUCATION = "education"
    ENTERTAINMENT = "entertainment"
    CHARITY = "charity"
    INCOME = "income"
    DEPOSIT = "deposit"
    PENDING = "pending"
    OTHER = "other"


# Categories assigned by the categorizer itself, never by a keyword rule.
RESERVED_CATEGORIES = frozenset({Category.INCOME, Category.DEPOSIT, Category.PENDING, Category.OTHER})


@dataclass(frozen=True)
class CategoryRule:
    """One row of the rule table: a category, its keywords and its priority.

    Lower priority numbers are evaluated first. Keywords match on word
    boundaries, case-insensitively.
    """

    category: Category
    keywords: tuple[str, ...]
    priority: int
    _pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.keywords:
            raise ValueError(f"Rule for {self.category} has no keywords")
        alternatives = "|".join(
            re.escape(k.strip().lower()) for k in sorted(self.keywords, key=len, reverse=True)
        )
        object.__setattr__(
            self, "_pattern", re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)
        )

    def matches(self, text: str) -> bool:
        return self._pattern.search(text) is not None


class RuleTable:
    """Ordered, immutable set of category rules."""

    def __init__(self, rules: Iterable[CategoryRule]) -> None:
        ordered = sorted(rules, key=lambda r: (r.priority, r.category.value))
        seen: set[Category] = set()
        for rule in ordered:
            if rule.category in RESERVED_CATEGORIES:
                raise ValueError(f"Category {rule.category} cannot be assigned by a rule")
            if rule.category in seen:
                raise ValueError(f"Duplicate rule for category {rule.category}")
            seen.add(rule.category)
        self._rules: tuple[CategoryRule, ...] = tuple(ordered)

    @property
    def rules(self) -> tuple[CategoryRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def match(self, text: str) -> Category | None:
        """Return the first matching category in priority order."""
        if not text or not text.strip():
            return None
        for rule in self._rules:
            if rule.matches(text):
                return rule.category
        return None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RuleTable:
        """
        Build a table from ``{"rules": [{"category", "keywords", "priority"}]}``.

        Raises:
            ValueError: If a category is outside the taxonomy or a row is malformed.
        """
        rows = data.get("rules")
        if not isinstance(rows, list):
            raise ValueError("Rule file must contain a 'rules' list")
        rules: list[CategoryRule] = []
        for index, row in enumerate(rows):
            if not isinstance(row, Mapping):
                raise ValueError(f"Rule #{index} must be a mapping")
            raw_category = str(row.get("category", "")).strip().lower()
            try:
                category = Category(raw_category)
            except ValueError as e:
                raise ValueError(f"Rule #{index}: unknown category {raw_category!r}") from e
            keywords = row.get("keywords")
            if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
                raise ValueError(f"Rule #{index}: keywords must be a list of strings")
            priority = row.get("priority", (index + 1) * 10)
            if not isinstance(priority, int):
                raise ValueError(f"Rule #{index}: priority must be an integer")
            rules.append(CategoryRule(category, tuple(keywords), priority))
        return cls(rules)


def load_rules_from_yaml(path: str | Path) -> RuleTable:
    """Load a rule table from a YAML file."""
    with Path(path).open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Rule file {path} must contain a mapping")
    return RuleTable.from_mapping(data)


def _rule(category: Category, priority: int, keywords: Sequence[str]) -> CategoryRule:
    return CategoryRule(category, tuple(keywords), priority)


DEFAULT_RULES = RuleTable(
    [
        _rule(
            Category.FOOD,
            10,
            [
                "restaurant", "restaurants", "cafe", "coffee", "grocery", "groceries",
                "food", "meal", "pizza", "burger", "bakery", "supermarket", "dining",
            ],
        ),
        _rule(
            Category.TRANSPORT,
            20,
            [
                "uber", "lyft", "taxi", "transport", "bus", "train", "metro", "fuel",
                "gas station", "parking", "car", "vehicle",
            ],
        ),
        _rule(
            Category.UTILITIES,
            30,
            [
                "electric", "electricity", "water", "gas", "internet", "phone", "bill",
                "utility", "utilities", "broadband", "telecom",
            ],
        ),
        _rule(
            Category.HOUSING,
            40,
            [
                "rent", "mortgage", "apartment", "house", "housing", "accommodation",
                "property", "real estate", "home",
            ],
        ),
        _rule(
            Category.SHOPPING,
            50,
            [
                "shop", "store", "mall", "retail", "amazon", "ebay", "clothing",
                "fashion", "purchase", "online",
            ],
        ),
        _rule(
            Category.HEALTH,
            60,
            [
                "doctor", "hospital", "medical", "pharmacy", "health", "dental", "clinic",
                "medicine", "insurance", "healthcare", "protect plus", "premium",
                "coverage", "wellness",
            ],
        ),
        _rule(
            Category.EDUCATION,
            70,
            [
                "school", "college", "university", "course", "class", "tuition",
                "education", "book", "books", "learning", "study",
            ],
        ),
        _rule(
            Category.ENTERTAINMENT,
            80,
            [
                "movie", "cinema", "theater", "netflix", "spotify", "disney", "hulu",
                "hbo", "game", "games", "entertainment", "concert", "ticket",
                "subscription", "streaming", "music", "video", "play", "show",
            ],
        ),
        _rule(
            Category.CHARITY,
            90,
            ["donation", "donate", "charity", "nonprofit", "ngo", "foundation", "giving"],
        ),
    ]
)

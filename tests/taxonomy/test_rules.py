from __future__ import annotations

from pathlib import Path

import pytest

from txnsync.taxonomy.categorizer import Categorizer
from txnsync.taxonomy.rules import (
    DEFAULT_RULES,
    Category,
    CategoryRule,
    RuleTable,
    load_rules_from_yaml,
)

CONFIGS_DIR = Path(__file__).resolve().parents[2] / "configs"


def test_default_rules_are_ordered_by_priority() -> None:
    priorities = [rule.priority for rule in DEFAULT_RULES.rules]

    assert priorities == sorted(priorities)
    assert DEFAULT_RULES.rules[0].category is Category.FOOD
    assert len(DEFAULT_RULES) == 9


def test_rule_matching_is_case_insensitive_and_multiword() -> None:
    rule = CategoryRule(Category.TRANSPORT, ("gas station",), priority=1)

    assert rule.matches("ADNOC GAS STATION 12")
    assert not rule.matches("gas bill")


def test_table_match_returns_none_without_hit() -> None:
    table = RuleTable([CategoryRule(Category.FOOD, ("pizza",), priority=1)])

    assert table.match("Pizza Hut") is Category.FOOD
    assert table.match("Hardware store") is None
    assert table.match("") is None


def test_reserved_categories_cannot_be_rules() -> None:
    with pytest.raises(ValueError, match="cannot be assigned"):
        RuleTable([CategoryRule(Category.INCOME, ("salary",), priority=1)])


def test_duplicate_categories_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        RuleTable(
            [
                CategoryRule(Category.FOOD, ("pizza",), priority=1),
                CategoryRule(Category.FOOD, ("burger",), priority=2),
            ]
        )


def test_rule_without_keywords_rejected() -> None:
    with pytest.raises(ValueError):
        CategoryRule(Category.FOOD, (), priority=1)


def test_load_rules_from_bundled_yaml() -> None:
    table = load_rules_from_yaml(CONFIGS_DIR / "category_rules.yaml")
    categorizer = Categorizer(table)

    assert len(table) == 9
    assert table.match("Careem ride") is Category.TRANSPORT
    assert table.match("noon.com order") is Category.SHOPPING
    assert categorizer.rules is table


def test_load_rules_rejects_unknown_category(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_text(
        "rules:\n  - category: crypto\n    priority: 5\n    keywords: [binance]\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="unknown category"):
        load_rules_from_yaml(path)


def test_load_rules_requires_rules_list(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_text("categories: {}\n", encoding="utf-8")

    with pytest.raises(ValueError, match="'rules' list"):
        load_rules_from_yaml(path)


def test_priority_defaults_follow_file_order() -> None:
    table = RuleTable.from_mapping(
        {
            "rules": [
                {"category": "shopping", "keywords": ["mall"]},
                {"category": "food", "keywords": ["food court"]},
            ]
        }
    )

    # "mall food court" hits both; shopping comes first in the file
    assert table.match("Mall food court") is Category.SHOPPING

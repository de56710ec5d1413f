import json
from dataclasses import replace

import pytest

from compliance_scout.knowledge_base import (
    applicable_entries,
    entry_applies,
    knowledge_base_stats,
    load_knowledge_base,
)
from compliance_scout.models import BusinessProfile, KnowledgeBaseConditions, KnowledgeBaseEntry


def entry(entry_id="custom", **conditions):
    return KnowledgeBaseEntry(
        id=entry_id,
        category="federal",
        requirement=f"Requirement {entry_id}",
        conditions=KnowledgeBaseConditions(**conditions),
        priority="required",
        description="",
    )


@pytest.mark.parametrize("employees,expected", [(49, False), (50, True), (100, True)])
def test_min_employee_threshold_is_inclusive(restaurant_profile, employees, expected):
    profile = replace(restaurant_profile, employee_count=employees)
    assert entry_applies(entry(min_employees=50), profile) is expected


def test_ada_applies_from_fifteen_employees(restaurant_profile):
    ids_at_15 = {e.id for e in applicable_entries(restaurant_profile)}
    ids_at_14 = {e.id for e in applicable_entries(replace(restaurant_profile, employee_count=14))}

    assert "fed-ada" in ids_at_15
    assert "fed-ada" not in ids_at_14
    assert "fed-ein" in ids_at_14


def test_state_and_industry_conditions(restaurant_profile):
    california_only = entry("ca", state="CA")
    food_only = entry("food", industry=("restaurant", "food"))
    texas_retail = BusinessProfile(state="Texas", industry="Retail", employee_count=3)

    assert entry_applies(california_only, restaurant_profile)
    assert not entry_applies(california_only, texas_retail)
    assert entry_applies(food_only, restaurant_profile)
    assert not entry_applies(food_only, texas_retail)


def test_max_employees_and_unknown_revenue():
    small = BusinessProfile(state="CA", industry="Retail", employee_count=10)
    assert entry_applies(entry(max_employees=10), small)
    assert not entry_applies(entry(max_employees=9), small)
    # Revenue is unknown, so the condition cannot exclude the entry
    assert entry_applies(entry(revenue=1_000_000), small)
    assert not entry_applies(entry(revenue=1_000_000), replace(small, annual_revenue=999_999))


def test_packaged_catalog_for_restaurant(restaurant_profile):
    ids = {e.id for e in applicable_entries(restaurant_profile)}

    assert {"fed-ein", "fed-ada", "ca-sos-registration", "ind-food-permit"} <= ids
    texas = replace(restaurant_profile, state="Texas")
    assert not any(e.id.startswith("ca-") for e in applicable_entries(texas))


def test_catalog_is_cached_and_custom_files_load(tmp_path):
    assert load_knowledge_base() is load_knowledge_base()

    path = tmp_path / "kb.json"
    path.write_text(json.dumps([
        {"id": "x", "category": "state", "requirement": "X", "priority": "critical",
         "conditions": {"industry": "Bakery", "state": "ny"}},
    ]))
    (custom,) = load_knowledge_base(str(path))
    assert custom.conditions.industry == ("bakery",)
    assert custom.conditions.state == "NY"
    assert custom.description == ""


def test_stats_counts_categories_and_thresholds():
    stats = knowledge_base_stats([entry("a"), entry("b", min_employees=15), entry("c", min_employees=15)])

    assert stats["total_requirements"] == 3
    assert stats["by_category"] == {"federal": 3}
    assert stats["by_employee_threshold"] == {"0+ employees": 1, "15+ employees": 2}

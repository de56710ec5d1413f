"""
Static catalog of expected compliance obligations.

The catalog is loaded once per process from data/knowledge_base.json and
shared read-only across concurrent runs. Extending it is a data change.
"""
import json
from collections import Counter
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from compliance_scout.models import BusinessProfile, KnowledgeBaseConditions, KnowledgeBaseEntry

DEFAULT_KNOWLEDGE_BASE_PATH = Path(__file__).parent / "data" / "knowledge_base.json"


def _parse_entry(raw: dict) -> KnowledgeBaseEntry:
    cond = raw.get("conditions") or {}
    industry = cond.get("industry") or ()
    if isinstance(industry, str):
        industry = (industry,)
    conditions = KnowledgeBaseConditions(
        min_employees=cond.get("min_employees"),
        max_employees=cond.get("max_employees"),
        industry=tuple(i.lower() for i in industry),
        state=cond["state"].upper() if cond.get("state") else None,
        revenue=cond.get("revenue"),
        has_physical_location=cond.get("has_physical_location"),
    )
    return KnowledgeBaseEntry(
        id=raw["id"],
        category=raw["category"],
        requirement=raw["requirement"],
        conditions=conditions,
        priority=raw["priority"],
        description=raw.get("description", ""),
        citation=raw.get("citation"),
        penalty=raw.get("penalty"),
        common_name=raw.get("common_name"),
    )


@lru_cache(maxsize=None)
def load_knowledge_base(path: Optional[str] = None) -> Tuple[KnowledgeBaseEntry, ...]:
    """
    Load and cache the catalog.

    Args:
        path (str): Optional alternative JSON file; defaults to the packaged seed list.

    Returns:
        Tuple[KnowledgeBaseEntry, ...]: Immutable catalog.
    """
    source = Path(path) if path else DEFAULT_KNOWLEDGE_BASE_PATH
    with open(source, encoding="utf-8") as f:
        entries = tuple(_parse_entry(raw) for raw in json.load(f))
    logger.debug(f"📚 Loaded {len(entries)} knowledge base entries from {source.name}")
    return entries


def entry_applies(entry: KnowledgeBaseEntry, profile: BusinessProfile) -> bool:
    """True iff every defined condition of `entry` is satisfied by `profile`."""
    c = entry.conditions
    employees = profile.employee_count

    if c.min_employees is not None and employees < c.min_employees:
        return False
    if c.max_employees is not None and employees > c.max_employees:
        return False
    if c.industry:
        industry = profile.industry.lower()
        if not any(keyword in industry for keyword in c.industry):
            return False
    if c.state is not None and profile.state_code != c.state:
        return False
    # Unknown revenue or physical presence cannot rule an obligation out
    if c.revenue is not None and profile.annual_revenue is not None and profile.annual_revenue < c.revenue:
        return False
    if (
        c.has_physical_location is not None
        and profile.has_physical_location is not None
        and profile.has_physical_location != c.has_physical_location
    ):
        return False
    return True


def applicable_entries(
    profile: BusinessProfile,
    entries: Optional[Iterable[KnowledgeBaseEntry]] = None,
) -> List[KnowledgeBaseEntry]:
    """
    Filter the catalog down to the obligations that apply to `profile`.

    Args:
        profile (BusinessProfile): Business being analysed.
        entries: Catalog to filter; defaults to the packaged knowledge base.

    Returns:
        List[KnowledgeBaseEntry]: Applicable entries in catalog order.
    """
    catalog = load_knowledge_base() if entries is None else entries
    return [entry for entry in catalog if entry_applies(entry, profile)]


def knowledge_base_stats(entries: Optional[Iterable[KnowledgeBaseEntry]] = None) -> Dict[str, object]:
    """Summary counts by category and employee threshold."""
    catalog = list(load_knowledge_base() if entries is None else entries)
    by_category = Counter(e.category for e in catalog)
    by_threshold = Counter(f"{e.conditions.min_employees or 0}+ employees" for e in catalog)
    return {
        "total_requirements": len(catalog),
        "by_category": dict(by_category),
        "by_employee_threshold": dict(by_threshold),
    }

"""
Merges requirement records from all scraped sources.

Stage 1 removes exact-key duplicates. Stage 2 asks the LLM to merge
near-duplicates inside one jurisdiction at a time; its answer is a set of
indices into the input, so merged records only ever contain input facts.
"""
import json
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from loguru import logger

from compliance_scout.clients import OpenAIClient
from compliance_scout.errors import AuthenticationError
from compliance_scout.events import (
    AggregationCompleteEvent,
    AiDeduplicationCompleteEvent,
    AiDeduplicationFailedEvent,
    ProgressTracker,
)
from compliance_scout.llm_json import complete_or_none, parse_or_fallback
from compliance_scout.models import BatchScrapeResult, BusinessProfile, Requirement

BACKFILL_FIELDS = ("deadline", "penalty", "frequency", "citation")
MERGE_FIELDS = ("form_number", "deadline", "frequency", "penalty", "applies_condition", "citation")


def dedupe_key(requirement: Requirement) -> str:
    """Form number when present, else source + name; always scoped to the jurisdiction."""
    if requirement.form_number:
        key = f"form:{requirement.form_number}"
    else:
        key = f"{requirement.source}:{requirement.name}"
    return f"{requirement.source_type}|{key}".lower()


def _copy(requirement: Requirement) -> Requirement:
    return replace(requirement, metadata=dict(requirement.metadata))


def _backfill(kept: Requirement, other: Requirement, fields: Sequence[str]) -> Requirement:
    updates = {f: getattr(other, f) for f in fields if not getattr(kept, f) and getattr(other, f)}
    return replace(kept, **updates) if updates else kept


def deduplicate_by_key(requirements: Sequence[Requirement]) -> List[Requirement]:
    """
    Exact-key deduplication. The first occurrence wins; later duplicates only
    fill its empty deadline, penalty, frequency and citation fields.

    Inputs are never mutated and the operation is idempotent.
    """
    seen: Dict[str, Requirement] = {}
    for requirement in requirements:
        key = dedupe_key(requirement)
        if key not in seen:
            seen[key] = _copy(requirement)
        else:
            seen[key] = _backfill(seen[key], requirement, BACKFILL_FIELDS)
    return list(seen.values())


def group_by_jurisdiction(requirements: Sequence[Requirement]) -> Dict[str, List[Requirement]]:
    groups: Dict[str, List[Requirement]] = {}
    for requirement in requirements:
        groups.setdefault(requirement.source_type, []).append(requirement)
    return groups


def _dedup_prompt(jurisdiction: str, group: Sequence[Requirement], profile: BusinessProfile) -> str:
    items = json.dumps(
        [
            {
                "index": i,
                "name": r.name,
                "description": r.description[:400],
                "source": r.source,
                "sourceUrl": r.source_url,
                "formNumber": r.form_number,
                "deadline": r.deadline,
                "penalty": r.penalty,
            }
            for i, r in enumerate(group)
        ],
        indent=2,
    )
    return f"""You are a US compliance deduplication expert. Consolidate duplicate requirements and remove irrelevant ones WITHOUT inventing new information.

BUSINESS PROFILE
{profile.describe()}

RAW {jurisdiction.upper()} REQUIREMENTS ({len(group)} total)
{items}

All of these requirements share the jurisdiction "{jurisdiction}". Do not change it.

DUPLICATE DETECTION
- HARD MATCHES: same form number, or same agency + same license/permit
- SOFT MATCHES: similar names (e.g. "Seller's Permit" and "Sales Tax Permit"), same topic with overlapping description
- Keep the most complete record (form numbers, deadlines, penalties) and prefer .gov sources

IRRELEVANCE FILTER
Only drop items that are clearly wrong for this business: wrong industry (e.g. a mining permit for a restaurant),
unrelated professional licenses, exotic permits. If unsure whether a requirement applies, keep it as "conditional".

RULES
- Never invent forms, deadlines or penalties; you can only reference input items by index
- Never drop every item: at least one requirement must remain

RETURN JSON ONLY
{{
  "requirements": [
    {{"index": 0, "mergedIndices": [3, 5], "priority": "essential|conditional|unlikely", "applicability": "Short explanation"}}
  ]
}}"""


def _merge_group(parsed: dict, jurisdiction: str, group: Sequence[Requirement]) -> List[Requirement]:
    items = parsed["requirements"]
    if not isinstance(items, list):
        raise TypeError("requirements is not a list")

    used = set()
    merged_records: List[Requirement] = []
    for item in items:
        index = int(item["index"])
        if not 0 <= index < len(group) or index in used:
            continue
        used.add(index)
        record = _copy(group[index])

        merged_names = []
        for other_index in item.get("mergedIndices") or []:
            other_index = int(other_index)
            if not 0 <= other_index < len(group) or other_index in used:
                continue
            used.add(other_index)
            record = _backfill(record, group[other_index], MERGE_FIELDS)
            merged_names.append(group[other_index].name)

        record.metadata.update({
            "priority": item.get("priority"),
            "merged_from": merged_names,
            "applicability": item.get("applicability"),
        })
        merged_records.append(replace(record, source_type=jurisdiction))

    if not merged_records:
        raise ValueError(f"empty answer for the {jurisdiction} group")
    return merged_records


async def deduplicate_with_ai(requirements: Sequence[Requirement], profile: BusinessProfile) -> List[Requirement]:
    """
    Semantic deduplication, one LLM call per jurisdiction group.

    A group whose answer is empty or unparseable keeps its stage-1 records, so
    every input jurisdiction is present in the output.

    Args:
        requirements (Sequence[Requirement]): Stage-1 output.
        profile (BusinessProfile): Business used to judge relevance.

    Returns:
        List[Requirement]: Merged records, grouped by jurisdiction.
    """
    client = OpenAIClient()
    deduplicated: List[Requirement] = []
    for jurisdiction, group in group_by_jurisdiction(requirements).items():
        if len(group) < 2:
            deduplicated.extend(group)
            continue

        text = await complete_or_none(client, _dedup_prompt(jurisdiction, group, profile), f"{jurisdiction} deduplication")
        merged = parse_or_fallback(
            text,
            lambda parsed, j=jurisdiction, g=group: _merge_group(parsed, j, g),
            lambda g=group: list(g),
            shape=dict,
            context=f"{jurisdiction} deduplication",
        )
        logger.debug(f"🧹 {jurisdiction}: {len(group)} -> {len(merged)} requirements")
        deduplicated.extend(merged)
    return deduplicated


async def aggregate(
    results: Sequence[BatchScrapeResult],
    profile: BusinessProfile,
    tracker: Optional[ProgressTracker] = None,
) -> List[Requirement]:
    """
    Flatten successful scrape results and run both deduplication stages.

    Stage 2 is an enhancement: if it fails as a whole the stage-1 result is
    returned unchanged.
    """
    tracker = tracker or ProgressTracker()
    collected = [r for result in results if result.success for r in result.requirements]
    stage_one = deduplicate_by_key(collected)
    tracker.emit(
        AggregationCompleteEvent(
            total_found=len(collected),
            after_dedup=len(stage_one),
            message=f"Aggregated {len(collected)} requirements into {len(stage_one)} unique records",
        ),
        phase="processing",
        fraction=0.0,
    )
    if not stage_one:
        return stage_one

    try:
        final = await deduplicate_with_ai(stage_one, profile)
    except AuthenticationError:
        raise
    except Exception as e:
        logger.warning(f"⚠️ AI deduplication failed, keeping basic deduplication: {e}")
        tracker.emit(
            AiDeduplicationFailedEvent(error=str(e), message="AI deduplication failed, using basic deduplication"),
            phase="processing",
            fraction=0.2,
        )
        return stage_one

    tracker.emit(
        AiDeduplicationCompleteEvent(
            after_dedup=len(final),
            duplicates_removed=len(stage_one) - len(final),
            message=f"AI removed {len(stage_one) - len(final)} duplicate or irrelevant requirements",
        ),
        phase="processing",
        fraction=0.2,
    )
    logger.info(f"📊 Deduplicated {len(collected)} -> {len(stage_one)} -> {len(final)} requirements")
    return final

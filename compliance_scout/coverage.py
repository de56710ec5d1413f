"""
Coverage and gap analysis of discovered requirements against the knowledge base.
"""
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from compliance_scout.config import CONFIDENCE_WEIGHTS, JURISDICTION_WEIGHTS, KEYWORD_MATCH_THRESHOLD
from compliance_scout.knowledge_base import applicable_entries
from compliance_scout.models import (
    JURISDICTIONS,
    BusinessProfile,
    ConfidenceDistribution,
    CoverageReport,
    GapAnalysis,
    IndustryCoverage,
    JurisdictionCoverage,
    KnowledgeBaseEntry,
    Requirement,
)

STOPWORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
CATEGORY_ORDER = {"federal": 0, "state": 1, "industry": 2, "city": 3}
PRIORITY_SEVERITY = {"critical": "critical", "required": "high", "recommended": "medium"}
CRITICAL_PENALTY_TERMS = ("criminal", "closure")


def normalize_name(text: Optional[str]) -> str:
    """Lowercase alphanumerics only."""
    return re.sub(r"[^a-z0-9]", "", (text or "").lower())


def extract_keywords(text: Optional[str]) -> Set[str]:
    words = (re.sub(r"[^a-z0-9]", "", w) for w in (text or "").lower().split())
    return {w for w in words if len(w) > 2 and w not in STOPWORDS}


def keyword_overlap(a: Set[str], b: Set[str]) -> float:
    """Jaccard overlap of two keyword sets."""
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def requirement_matches(
    entry: KnowledgeBaseEntry,
    requirement: Requirement,
    threshold: float = KEYWORD_MATCH_THRESHOLD,
) -> bool:
    """
    Whether a discovered requirement satisfies a catalog entry.

    Tries an exact normalized-name match (against the canonical and the common
    name), then keyword overlap at `threshold`, then identical citations.
    """
    names = [n for n in (entry.requirement, entry.common_name) if n]
    found = normalize_name(requirement.name)
    if found and any(normalize_name(n) == found for n in names):
        return True

    found_keywords = extract_keywords(requirement.name)
    if any(keyword_overlap(extract_keywords(n), found_keywords) >= threshold for n in names):
        return True

    if entry.citation and requirement.citation:
        return normalize_name(entry.citation) == normalize_name(requirement.citation)
    return False


def is_covered(entry: KnowledgeBaseEntry, requirements: Iterable[Requirement]) -> bool:
    return any(requirement_matches(entry, r) for r in requirements)


def gap_severity(entry: KnowledgeBaseEntry) -> str:
    """Priority mapped to severity, upgraded to critical for criminal or closure penalties."""
    penalty = (entry.penalty or "").lower()
    if any(term in penalty for term in CRITICAL_PENALTY_TERMS):
        return "critical"
    return PRIORITY_SEVERITY.get(entry.priority, "low")


def generate_search_intents(entry: KnowledgeBaseEntry, profile: BusinessProfile) -> List[str]:
    """Follow-up search phrases that could locate a missing requirement."""
    intents = [f"{entry.requirement} requirements"]
    if entry.category == "state":
        intents.append(f"{profile.state} {entry.requirement}")
    elif entry.category == "city" and profile.city:
        intents.append(f"{profile.city} {entry.requirement}")
    elif entry.category == "industry":
        intents.append(f"{profile.industry} {entry.requirement}")
    if entry.citation:
        intents.append(f"{entry.citation} compliance requirements")
    if entry.conditions.min_employees:
        intents.append(f"{entry.requirement} {entry.conditions.min_employees} employees")
    return intents


def identify_gaps(
    requirements: Sequence[Requirement],
    expected: Sequence[KnowledgeBaseEntry],
    profile: BusinessProfile,
) -> List[GapAnalysis]:
    """Expected entries with no matching requirement, sorted by severity then jurisdiction."""
    gaps = [
        GapAnalysis(
            category=entry.category,
            requirement=entry.requirement,
            severity=gap_severity(entry),
            description=entry.description,
            penalty=entry.penalty,
            suggested_search_intents=generate_search_intents(entry, profile),
            applicable_conditions=entry.conditions,
            citation=entry.citation,
        )
        for entry in expected
        if not is_covered(entry, requirements)
    ]
    return sorted(gaps, key=lambda g: (SEVERITY_ORDER[g.severity], CATEGORY_ORDER.get(g.category, len(CATEGORY_ORDER))))


def _percentage(found: int, expected: int) -> int:
    if expected <= 0:
        return 100
    return int(min(100, max(0, round(found / expected * 100))))


def jurisdiction_coverage(
    requirements: Sequence[Requirement],
    expected: Sequence[KnowledgeBaseEntry],
) -> Dict[str, JurisdictionCoverage]:
    """
    Per-jurisdiction coverage. `found` counts discovered requirements of the
    jurisdiction, `expected` counts its applicable non-recommended entries.
    """
    coverage = {}
    for jurisdiction in JURISDICTIONS:
        found = [r for r in requirements if r.source_type == jurisdiction]
        entries = [e for e in expected if e.category == jurisdiction]
        expected_count = sum(1 for e in entries if e.priority != "recommended")
        coverage[jurisdiction] = JurisdictionCoverage(
            found=len(found),
            expected=expected_count,
            percentage=_percentage(len(found), expected_count),
            requirements=[r.name for r in found],
            missing_requirements=[e.requirement for e in entries if not is_covered(e, requirements)],
        )
    return coverage


def industry_coverage(
    requirements: Sequence[Requirement],
    expected: Sequence[KnowledgeBaseEntry],
) -> IndustryCoverage:
    industry_entries = [e for e in expected if e.category == "industry" or e.conditions.industry]
    names = [e.common_name or e.requirement for e in industry_entries]
    found = [name for e, name in zip(industry_entries, names) if is_covered(e, requirements)]
    return IndustryCoverage(
        score=_percentage(len(found), len(names)),
        expected_requirements=names,
        found_requirements=found,
        missing_requirements=[n for n in names if n not in found],
    )


def confidence_distribution(requirements: Sequence[Requirement]) -> ConfidenceDistribution:
    """Percentage of requirements per confidence level."""
    total = len(requirements) or 1
    levels = [r.confidence_level for r in requirements]

    def pct(count: int) -> int:
        return int(round(count / total * 100))

    return ConfidenceDistribution(
        high=pct(levels.count("HIGH")),
        medium=pct(levels.count("MEDIUM")),
        low=pct(levels.count("LOW")),
        unverified=pct(sum(1 for level in levels if level not in CONFIDENCE_WEIGHTS)),
    )


def confidence_multiplier(requirements: Sequence[Requirement]) -> float:
    """(HIGH×1.0 + MEDIUM×0.7 + LOW×0.4) / total; 0 when nothing was found."""
    if not requirements:
        return 0.0
    levels = [r.confidence_level for r in requirements]
    counts = np.array([levels.count(level) for level in CONFIDENCE_WEIGHTS], dtype=float)
    weights = np.array(list(CONFIDENCE_WEIGHTS.values()))
    return float(np.dot(counts, weights) / len(requirements))


def overall_score(coverage: Dict[str, JurisdictionCoverage], requirements: Sequence[Requirement]) -> int:
    """
    Weighted jurisdiction coverage scaled by the confidence multiplier.

    Args:
        coverage (Dict[str, JurisdictionCoverage]): Output of `jurisdiction_coverage`.
        requirements (Sequence[Requirement]): Discovered requirements.

    Returns:
        int: Score in [0, 100].
    """
    percentages = np.array([coverage[j].percentage for j in JURISDICTIONS], dtype=float)
    weights = np.array([JURISDICTION_WEIGHTS[j] for j in JURISDICTIONS])
    score = float(np.dot(weights, percentages)) * confidence_multiplier(requirements)
    return int(round(float(np.clip(score, 0, 100))))


def assess_risk(gaps: Sequence[GapAnalysis], score: int) -> str:
    critical = sum(1 for g in gaps if g.severity == "critical")
    high = sum(1 for g in gaps if g.severity == "high")

    if critical > 2 or score < 40:
        return "critical"
    if critical > 0 or high > 3 or score < 60:
        return "high"
    if high > 0 or score < 80:
        return "medium"
    return "low"


def coverage_recommendations(
    gaps: Sequence[GapAnalysis],
    requirements: Sequence[Requirement],
    coverage: Dict[str, JurisdictionCoverage],
) -> List[str]:
    """Short free-text recommendations for the coverage report."""
    recommendations = []
    critical = [g for g in gaps if g.severity == "critical"]
    if critical:
        recommendations.append(f"⚠️ Address {len(critical)} critical compliance gaps immediately to avoid penalties")

    low_confidence = [r for r in requirements if r.confidence_level == "LOW"]
    if len(low_confidence) > 3:
        recommendations.append(f"🔍 Verify {len(low_confidence)} low-confidence requirements with official sources")

    if any(g.category == "federal" for g in gaps):
        recommendations.append("📋 Review federal compliance requirements comprehensively")
    if coverage["state"].percentage < 50:
        recommendations.append("🏛️ Research state-level registrations, taxes and employment rules")

    industry_gaps = [g for g in gaps if g.category == "industry"]
    if industry_gaps:
        recommendations.append(f"🏢 Complete industry-specific compliance review for {len(industry_gaps)} requirements")
    return recommendations


def completeness_score(requirements: Sequence[Requirement], expected: Sequence[KnowledgeBaseEntry]) -> int:
    """Share of critical expected entries that were found."""
    critical = [e for e in expected if e.priority == "critical"]
    found = sum(1 for e in critical if is_covered(e, requirements))
    return _percentage(found, len(critical))


def data_quality_score(requirements: Sequence[Requirement]) -> int:
    """Average of four quality signals per requirement: citation, .gov source, HIGH confidence, actionable detail."""
    if not requirements:
        return 0
    points = 0
    for r in requirements:
        points += bool(r.citation)
        points += ".gov" in (r.source_url or "")
        points += r.confidence_level == "HIGH"
        points += bool(r.deadline or r.form_number)
    return int(round(points / (len(requirements) * 4) * 100))


def analyze(
    requirements: Sequence[Requirement],
    profile: BusinessProfile,
    entries: Optional[Iterable[KnowledgeBaseEntry]] = None,
) -> Tuple[CoverageReport, List[GapAnalysis]]:
    """
    Score discovered requirements against the catalog entries that apply to `profile`.

    Args:
        requirements: Final, deduplicated requirements (read-only here).
        profile: Business being analysed.
        entries: Catalog override; defaults to the packaged knowledge base.

    Returns:
        Tuple[CoverageReport, List[GapAnalysis]]: Report and the sorted gap list.
    """
    expected = applicable_entries(profile, entries)
    gaps = identify_gaps(requirements, expected, profile)
    by_jurisdiction = jurisdiction_coverage(requirements, expected)
    score = overall_score(by_jurisdiction, requirements)

    report = CoverageReport(
        overall_score=score,
        jurisdiction_coverage=by_jurisdiction,
        industry_coverage=industry_coverage(requirements, expected),
        confidence_distribution=confidence_distribution(requirements),
        risk_level=assess_risk(gaps, score),
        gaps=gaps,
        recommendations=coverage_recommendations(gaps, requirements, by_jurisdiction),
        completeness_score=completeness_score(requirements, expected),
        data_quality_score=data_quality_score(requirements),
    )
    logger.info(
        f"📈 Coverage {score}% ({report.risk_level} risk): {len(expected)} expected, "
        f"{len(requirements)} found, {len(gaps)} gaps"
    )
    return report, gaps

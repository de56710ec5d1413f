"""
Turns gaps, deadlines and coverage into a prioritized action list.
"""
import calendar
import re
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from compliance_scout.coverage import normalize_name
from compliance_scout.models import CoverageReport, Deadline, GapAnalysis, Recommendation, Requirement

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
TIMEFRAME_ORDER = {"immediate": 0, "within_7_days": 1, "within_30_days": 2, "within_90_days": 3, "annual": 4}

# (pattern, month, day); day 0 means the last day of the month
_ANNUAL_PATTERNS = (
    (re.compile(r"\bQ1\b|first quarter", re.IGNORECASE), 3, 31),
    (re.compile(r"\bQ2\b|second quarter", re.IGNORECASE), 6, 30),
    (re.compile(r"\bQ3\b|third quarter", re.IGNORECASE), 9, 30),
    (re.compile(r"\bQ4\b|fourth quarter", re.IGNORECASE), 12, 31),
    (re.compile(r"April 15|tax day", re.IGNORECASE), 4, 15),
    (re.compile(r"March 15", re.IGNORECASE), 3, 15),
    (re.compile(r"January 31", re.IGNORECASE), 1, 31),
    (re.compile(r"December 31|year end", re.IGNORECASE), 12, 31),
)
_MONTHLY_RE = re.compile(r"monthly|each month|every month", re.IGNORECASE)
_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_WITHIN_RE = re.compile(r"within (\d+) days", re.IGNORECASE)


def parse_deadline(text: str, today: date) -> Optional[Tuple[date, bool]]:
    """
    Resolve a free-text deadline to (due date, is_recurring), or None.

    Recurring dates that already passed this year roll over to next year.
    """
    for pattern, month, day in _ANNUAL_PATTERNS:
        if pattern.search(text):
            due = date(today.year, month, day)
            if due < today:
                due = due.replace(year=today.year + 1)
            return due, True

    if _MONTHLY_RE.search(text):
        last_day = calendar.monthrange(today.year, today.month)[1]
        return date(today.year, today.month, last_day), True

    match = _DATE_RE.search(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        try:
            return date(year, month, day), False
        except ValueError:
            return None

    match = _WITHIN_RE.search(text)
    if match:
        return today + timedelta(days=int(match.group(1))), False
    return None


def detect_upcoming_deadlines(requirements: Sequence[Requirement], today: Optional[date] = None) -> List[Deadline]:
    """
    Deadlines of all requirements whose deadline text can be resolved to a date.

    Args:
        requirements: Requirements to scan.
        today: Reference date, defaults to the current date.

    Returns:
        List[Deadline]: Sorted by days until due, most urgent first.
    """
    today = today or date.today()
    deadlines = []
    for requirement in requirements:
        if not requirement.deadline:
            continue
        parsed = parse_deadline(requirement.deadline, today)
        if parsed is None:
            continue
        due, recurring = parsed
        days = (due - today).days

        if days < 0:
            category = "overdue"
        elif days <= 7:
            category = "due_soon"
        elif days <= 30:
            category = "upcoming"
        else:
            category = "recurring" if recurring else "upcoming"

        deadlines.append(Deadline(
            requirement=requirement.name,
            deadline=requirement.deadline,
            days_until_due=days,
            category=category,
            penalty=requirement.penalty,
        ))
    return sorted(deadlines, key=lambda d: d.days_until_due)


def _cost_savings(requirements: Sequence[Requirement]) -> List[Dict[str, str]]:
    opportunities = []

    prefixes: Dict[str, int] = {}
    for requirement in requirements:
        key = normalize_name(requirement.name)[:20]
        prefixes[key] = prefixes.get(key, 0) + 1
    duplicates = max(prefixes.values(), default=0)
    if duplicates > 1:
        opportunities.append({
            "title": "Consolidate Duplicate Requirements",
            "description": f"Found {duplicates} similar requirements that may be consolidated",
            "action": "Review and consolidate overlapping compliance efforts",
            "savings": "Reduce redundant compliance work by 20-30%",
        })

    recurring = [
        r for r in requirements
        if re.search(r"quarterly|monthly", f"{r.deadline or ''} {r.frequency or ''}", re.IGNORECASE)
    ]
    if len(recurring) > 3:
        opportunities.append({
            "title": "Automate Recurring Compliance Tasks",
            "description": f"{len(recurring)} requirements have recurring deadlines",
            "action": "Implement compliance automation tools for recurring tasks",
            "savings": "Save 10-15 hours per month on compliance tasks",
        })

    tax_related = [r for r in requirements if "tax" in r.name.lower() or "941" in r.name or "W-2" in r.name]
    if len(tax_related) > 2:
        opportunities.append({
            "title": "Consolidate Tax Filings",
            "description": "Multiple tax-related requirements could be handled together",
            "action": "Use integrated tax software or service for all tax compliance",
            "savings": "Reduce tax compliance costs by 25-40%",
        })
    return opportunities


def _optimizations(requirements: Sequence[Requirement]) -> List[Dict[str, str]]:
    optimizations = []
    if len(requirements) > 20:
        optimizations.append({
            "title": "Implement Compliance Management System",
            "description": f"Managing {len(requirements)} compliance requirements manually is inefficient",
            "action": "Deploy a compliance management platform to track all requirements",
            "effort": "moderate",
        })

    undocumented = sum(1 for r in requirements if r.confidence_level in ("LOW", "MEDIUM"))
    if undocumented > 10:
        optimizations.append({
            "title": "Improve Compliance Documentation",
            "description": f"{undocumented} requirements need better documentation",
            "action": "Create a centralized compliance documentation repository",
            "effort": "moderate",
        })

    if sum(1 for r in requirements if len(r.description) > 200) > 5:
        optimizations.append({
            "title": "Compliance Training Program",
            "description": "Multiple complex requirements indicate training needs",
            "action": "Develop compliance training for staff on critical requirements",
            "effort": "significant",
        })

    with_deadlines = sum(1 for r in requirements if r.deadline)
    if with_deadlines > 5:
        optimizations.append({
            "title": "Create Compliance Calendar",
            "description": f"{with_deadlines} requirements have specific deadlines to track",
            "action": "Implement a compliance calendar with automated reminders",
            "effort": "minimal",
        })

    vendor_related = [r for r in requirements if re.search(r"insurance|permit|license", r.name, re.IGNORECASE)]
    if len(vendor_related) > 5:
        optimizations.append({
            "title": "Consolidate Compliance Vendors",
            "description": "Multiple permits, licenses, and insurance requirements",
            "action": "Use a single compliance service provider for multiple requirements",
            "effort": "moderate",
        })
    return optimizations


def generate_recommendations(
    coverage: CoverageReport,
    requirements: Sequence[Requirement],
    gaps: Sequence[GapAnalysis],
    today: Optional[date] = None,
) -> List[Recommendation]:
    """
    Build the prioritized action list.

    Args:
        coverage (CoverageReport): Coverage analysis of the run.
        requirements (Sequence[Requirement]): Final requirements.
        gaps (Sequence[GapAnalysis]): Missing expected requirements.
        today (date): Reference date for deadline detection.

    Returns:
        List[Recommendation]: Sorted by priority, then timeframe.
    """
    recommendations: List[Recommendation] = []

    def add(**fields) -> None:
        recommendations.append(Recommendation(id=f"rec-{len(recommendations) + 1}", **fields))

    for gap in [g for g in gaps if g.severity == "critical"][:3]:
        penalty = f" Non-compliance penalty: {gap.penalty}" if gap.penalty else ""
        add(
            priority="critical",
            category="gap",
            title=f"Missing Critical Requirement: {gap.requirement}",
            description=gap.description,
            action=f"Immediately research and implement {gap.requirement} compliance.{penalty}",
            impact="Legal compliance and risk mitigation",
            timeframe="immediate",
            estimated_effort="significant",
            related_requirements=list(gap.suggested_search_intents),
        )

    for deadline in detect_upcoming_deadlines(requirements, today):
        if deadline.category not in ("overdue", "due_soon"):
            continue
        overdue = deadline.category == "overdue"
        add(
            priority="critical" if overdue else "high",
            category="deadline",
            title=f"OVERDUE: {deadline.requirement}" if overdue else f"Due Soon: {deadline.requirement}",
            description=(
                f"This requirement is overdue by {abs(deadline.days_until_due)} days"
                if overdue else f"This requirement is due in {deadline.days_until_due} days"
            ),
            action="Complete and submit required filing or action immediately",
            impact=deadline.penalty or "Avoid penalties and maintain compliance",
            timeframe="immediate",
            estimated_effort="moderate",
        )

    low_confidence = [r for r in requirements if r.confidence_level == "LOW"][:5]
    if low_confidence:
        add(
            priority="medium",
            category="verification",
            title=f"Verify {len(low_confidence)} Low-Confidence Requirements",
            description=f"{len(low_confidence)} requirements need manual verification to ensure accuracy",
            action="Review and verify these requirements with official sources or legal counsel",
            impact="Ensure compliance accuracy and reduce risk",
            timeframe="within_7_days",
            estimated_effort="moderate",
            related_requirements=[r.name for r in low_confidence],
        )

    for opportunity in _cost_savings(requirements)[:2]:
        add(
            priority="low",
            category="cost_saving",
            title=opportunity["title"],
            description=opportunity["description"],
            action=opportunity["action"],
            impact="Reduce compliance costs",
            timeframe="within_30_days",
            estimated_effort="minimal",
            potential_savings=opportunity["savings"],
        )

    for optimization in _optimizations(requirements)[:3]:
        add(
            priority="medium",
            category="optimization",
            title=optimization["title"],
            description=optimization["description"],
            action=optimization["action"],
            impact="Improve compliance efficiency",
            timeframe="within_90_days",
            estimated_effort=optimization["effort"],
        )

    if coverage.overall_score < 60:
        add(
            priority="high",
            category="gap",
            title="Low Overall Compliance Coverage",
            description=f"Your compliance coverage is at {coverage.overall_score}%, indicating significant gaps",
            action="Conduct a comprehensive compliance audit with professional assistance",
            impact="Identify and address all compliance gaps",
            timeframe="within_7_days",
            estimated_effort="significant",
        )

    federal = coverage.jurisdiction_coverage["federal"]
    if federal.percentage < 70:
        add(
            priority="high",
            category="gap",
            title="Federal Compliance Gaps",
            description=f"Federal compliance is at {federal.percentage}% ({federal.found}/{federal.expected} requirements found)",
            action="Review IRS, DOL, and other federal agency requirements",
            impact="Avoid federal penalties and enforcement actions",
            timeframe="immediate",
            estimated_effort="significant",
        )

    state = coverage.jurisdiction_coverage["state"]
    if state.percentage < 70:
        add(
            priority="high",
            category="gap",
            title="State Compliance Gaps",
            description=f"State compliance is at {state.percentage}% ({state.found}/{state.expected} requirements found)",
            action="Review state-specific business requirements and registrations",
            impact="Maintain state business authorization",
            timeframe="within_7_days",
            estimated_effort="moderate",
        )

    industry = coverage.industry_coverage
    if industry.score < 60:
        add(
            priority="medium",
            category="gap",
            title="Industry-Specific Compliance Gaps",
            description=(
                f"Industry compliance is at {industry.score}% ({len(industry.found_requirements)}/"
                f"{len(industry.expected_requirements)} requirements found)"
            ),
            action="Consult industry associations and specialized compliance resources",
            impact="Meet industry standards and requirements",
            timeframe="within_30_days",
            estimated_effort="moderate",
        )

    return prioritize_recommendations(recommendations)


def prioritize_recommendations(recommendations: Sequence[Recommendation]) -> List[Recommendation]:
    return sorted(recommendations, key=lambda r: (PRIORITY_ORDER[r.priority], TIMEFRAME_ORDER[r.timeframe]))

"""
End-to-end compliance check: discovery, filtering, scraping, aggregation and analysis.
"""
import time
import uuid
from typing import Dict, List, Optional, Sequence

from loguru import logger

from compliance_scout.aggregator import aggregate
from compliance_scout.classifier import classify_requirements, classify_urls
from compliance_scout.coverage import analyze
from compliance_scout.discovery import discover
from compliance_scout.errors import AuthenticationError, NoSourcesFoundError, PipelineError, ScrapingFailedError
from compliance_scout.events import CompleteEvent, ErrorEvent, ProgressSink, ProgressTracker, UrlsFilteredEvent
from compliance_scout.models import (
    JURISDICTIONS,
    BusinessProfile,
    PipelineResult,
    Requirement,
    RequirementStatistics,
)
from compliance_scout.recommendations import generate_recommendations
from compliance_scout.scraper import scrape_all


def organize_requirements(requirements: Sequence[Requirement]) -> Dict[str, List[Requirement]]:
    """Group requirements by jurisdiction; every jurisdiction key is present."""
    organized: Dict[str, List[Requirement]] = {j: [] for j in JURISDICTIONS}
    for requirement in requirements:
        organized.setdefault(requirement.source_type, []).append(requirement)
    return organized


async def run_compliance_check(
    profile: BusinessProfile,
    check_id: Optional[str] = None,
    sink: Optional[ProgressSink] = None,
) -> PipelineResult:
    """
    Run a full compliance check for one business profile.

    Args:
        profile (BusinessProfile): Business to research.
        check_id (str): Run identifier; generated if omitted.
        sink (ProgressSink): Optional callable receiving progress events.

    Returns:
        PipelineResult: Requirements, coverage report, gaps, recommendations and statistics.

    Raises:
        PipelineError: On fatal conditions (missing or rejected credentials, no
            sources found, every scrape failed). An `error` event is emitted first.
    """
    check_id = check_id or str(uuid.uuid4())
    tracker = ProgressTracker(sink)
    start = time.perf_counter()
    logger.info(f"🚀 [{check_id}] Compliance check for {profile.industry} in {profile.location}")

    try:
        discovered = await discover(profile, tracker)
        if not discovered:
            raise NoSourcesFoundError("No compliance sources found. Please try again.")

        classified = await classify_urls(discovered, profile)
        breakdown = {j: sum(1 for u in classified if u.category == j) for j in JURISDICTIONS}
        tracker.emit(
            UrlsFilteredEvent(
                selected=len(classified),
                total=len(discovered),
                breakdown=breakdown,
                message=f"Selected {len(classified)} most authoritative sources",
            ),
            phase="filtering",
            fraction=1.0,
        )
        if not classified:
            raise NoSourcesFoundError("No URLs to scrape after filtering")

        results = await scrape_all(classified, profile, tracker)
        scraped = sum(1 for r in results if r.success)
        if scraped == 0:
            raise ScrapingFailedError(f"All {len(results)} sources failed to scrape")

        aggregated = await aggregate(results, profile, tracker)
        requirements = await classify_requirements(aggregated, profile)

        coverage, gaps = analyze(requirements, profile)
        recommendations = generate_recommendations(coverage, requirements, gaps)

        organized = organize_requirements(requirements)
        statistics = RequirementStatistics(
            total=len(requirements),
            federal=len(organized["federal"]),
            state=len(organized["state"]),
            city=len(organized["city"]),
            industry=len(organized["industry"]),
            sources_scraped=scraped,
            sources_failed=len(results) - scraped,
        )
    except AuthenticationError as e:
        logger.error(f"❌ [{check_id}] Provider rejected credentials: {e}")
        tracker.emit(ErrorEvent(error=str(e), message="Compliance check failed"))
        raise PipelineError(f"Authentication failed: {e}") from e
    except Exception as e:
        logger.error(f"❌ [{check_id}] Compliance check failed: {e}")
        tracker.emit(ErrorEvent(error=str(e), message="Compliance check failed"))
        raise

    tracker.emit(
        CompleteEvent(
            total_rules=statistics.total,
            sources=statistics.sources_scraped,
            stats={j: getattr(statistics, j) for j in ("total",) + JURISDICTIONS},
            message=f"Complete! Found {statistics.total} requirements from {statistics.sources_scraped} sources",
        ),
        phase="processing",
        fraction=1.0,
    )
    logger.info(f"🏁 [{check_id}] Done in {time.perf_counter() - start:.2f}s: {statistics.total} requirements")
    return PipelineResult(
        check_id=check_id,
        requirements=requirements,
        coverage=coverage,
        gaps=gaps,
        recommendations=recommendations,
        statistics=statistics,
    )

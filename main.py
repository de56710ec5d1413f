import os
import asyncio
import pandas as pd
import csv
from typing import List, Optional
import sys
from loguru import logger

from compliance_scout.models import BusinessProfile, PipelineResult
from compliance_scout.pipeline import run_compliance_check
from compliance_scout.errors import PipelineError
from compliance_scout.events import ProgressEvent
from compliance_scout.config import INPUT_CSV, OUTPUT_CSV, GAPS_CSV, BATCH_SIZE, LOG_LEVEL
from compliance_scout.clients import FirecrawlClient, PerplexityClient

REQUIREMENT_COLUMNS = [
    "Profile", "Jurisdiction", "Name", "Source", "Source URL", "Form", "Deadline", "Frequency", "Penalty", "Category",
]
GAP_COLUMNS = ["Profile", "Jurisdiction", "Requirement", "Severity", "Penalty", "Search intents", "Coverage score", "Risk"]


def load_profiles_from_csv(file_path: str, nrows: int = None) -> List[BusinessProfile]:
    """Load business profiles from CSV and convert to BusinessProfile objects."""
    df = pd.read_csv(file_path, nrows=nrows)
    profiles = []
    for _, row in df.iterrows():
        # Helper to safely extract values from pandas Series, converting NaN to None
        def safe_get(col):
            if col not in row.index:
                return None
            val = row[col]
            if pd.isna(val):
                return None
            return val

        employees = 0
        if safe_get("Employees") is not None:
            try:
                employees = int(row["Employees"])
            except (ValueError, TypeError):
                employees = 0

        revenue = None
        if safe_get("Annual revenue") is not None:
            try:
                revenue = float(row["Annual revenue"])
            except (ValueError, TypeError):
                revenue = None

        factors = []
        if safe_get("Special factors") is not None:
            factors = [f.strip() for f in str(row["Special factors"]).split(";") if f.strip()]

        physical = safe_get("Physical location")
        if physical is not None:
            physical = str(physical).strip().lower() in ("1", "true", "yes", "y")

        naics = safe_get("NAICS")
        profile = BusinessProfile(
            state=str(row["State"]),
            industry=str(row["Industry"]),
            city=safe_get("City"),
            naics_code=str(naics) if naics is not None else None,
            employee_count=max(employees, 0),
            annual_revenue=revenue,
            special_factors=tuple(factors),
            has_physical_location=physical,
        )
        profiles.append(profile)
    return profiles


def batch_iter(profiles: List[BusinessProfile], batch_size: int):
    """
    Yield index and BusinessProfile slices of size `batch_size` for batched processing.
    """
    n = len(profiles)
    for i in range(0, n, batch_size):
        yield i, profiles[i:i+batch_size]


def log_progress(event: ProgressEvent):
    logger.debug(f"📣 {event.progress if event.progress is not None else '--'}% {event.type}: {event.message}")


async def process_profile(profile: BusinessProfile) -> Optional[PipelineResult]:
    """
    Run one business profile through the full compliance pipeline.

    Args:
        profile (BusinessProfile): Input business profile.

    Returns:
        PipelineResult, or None if the run hit a fatal condition.
    """
    try:
        return await run_compliance_check(profile, sink=log_progress)
    except PipelineError as e:
        logger.error(f"❌ Skipping {profile.industry} in {profile.location}: {e}")
        return None


async def close_clients():
    # Only clients that were actually created hold an HTTP session
    for client_cls in (PerplexityClient, FirecrawlClient):
        if client_cls._instance is not None and client_cls._initialized:
            await client_cls().close()


async def main():
    """
    Orchestrate the full batch processing pipeline.

    - Loads business profiles from the input CSV.
    - Processes each batch asynchronously.
    - Writes requirements and gaps incrementally to the output CSVs.
    """
    # Initialize logs
    logger.remove()  # Remove default handler
    logger.add(sys.stderr, level=LOG_LEVEL, format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>")

    all_profiles = load_profiles_from_csv(INPUT_CSV)

    # Initialize output files
    for path, columns in ((OUTPUT_CSV, REQUIREMENT_COLUMNS), (GAPS_CSV, GAP_COLUMNS)):
        if os.path.exists(path):
            os.remove(path)
        with open(path, "w", newline="") as f:
            csv.writer(f).writerow(columns)

    # Process in batches, but use async.gather for parallelism within each batch
    try:
        for start_idx, batch_profiles in batch_iter(all_profiles, BATCH_SIZE):
            logger.info(f"Processing profiles {start_idx}..{start_idx + len(batch_profiles) - 1}")

            results = await asyncio.gather(*[process_profile(profile) for profile in batch_profiles])

            with open(OUTPUT_CSV, "a", newline="") as req_f, open(GAPS_CSV, "a", newline="") as gap_f:
                req_writer = csv.writer(req_f)
                gap_writer = csv.writer(gap_f)
                for profile, result in zip(batch_profiles, results):
                    if result is None:
                        continue
                    label = f"{profile.industry} | {profile.location}"
                    for r in result.requirements:
                        req_writer.writerow([
                            label, r.source_type, r.name, r.source, r.source_url,
                            r.form_number, r.deadline, r.frequency, r.penalty, r.category,
                        ])
                    for gap in result.gaps:
                        gap_writer.writerow([
                            label, gap.category, gap.requirement, gap.severity, gap.penalty,
                            "; ".join(gap.suggested_search_intents),
                            result.coverage.overall_score, result.coverage.risk_level,
                        ])
    finally:
        # Cleanup: close HTTP sessions to prevent unclosed connector warnings
        await close_clients()

if __name__ == "__main__":
    asyncio.run(main())

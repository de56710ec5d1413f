"""
Batch scraper: fans scrape requests out in bounded chunks and turns pages into Requirement records.

Extraction is two-tier. Schema-guided extraction by the scrape provider comes
first; pages that yield nothing structured but carry real text go through the
regex extractor in `extract_requirements_from_text`.
"""
import asyncio
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

from loguru import logger
from rapidfuzz import fuzz, utils

from compliance_scout.classifier import get_basic_category
from compliance_scout.clients import FirecrawlClient
from compliance_scout.config import (
    CHUNK_DELAY_SECONDS,
    DEFAULT_WAIT_MS,
    GOV_SITE_WAIT_MS,
    MIN_FALLBACK_TEXT_LENGTH,
    RATE_LIMIT_COOLDOWN_SECONDS,
    RETRY_WAIT_MS,
    SCRAPE_CHUNK_SIZE,
    USE_BATCH_SCRAPE,
)
from compliance_scout.errors import AuthenticationError, MissingCredentialsError, ScrapeError
from compliance_scout.events import ProgressTracker, ScrapingSiteEvent, SiteCompleteEvent, SiteFailedEvent
from compliance_scout.models import (
    BatchScrapeResult,
    BusinessProfile,
    ClassifiedUrl,
    Requirement,
    ScrapeResponse,
)

COMPLIANCE_EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "requirements": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Name of the requirement or form"},
                    "description": {"type": "string", "description": "What needs to be done"},
                    "agency": {"type": "string", "description": "Government agency (IRS, DOL, etc.)"},
                    "formNumber": {"type": "string", "description": "Form number if applicable (e.g., Form 941)"},
                    "deadline": {"type": "string", "description": "Filing deadline or due date"},
                    "frequency": {"type": "string", "description": "How often (annual, quarterly, etc.)"},
                    "penalty": {"type": "string", "description": "Penalty for non-compliance"},
                    "appliesWhen": {"type": "string", "description": "Conditions when this applies"},
                    "citation": {"type": "string", "description": "Legal citation (e.g., 29 CFR 1910.1200)"},
                },
                "required": ["name", "description", "agency"],
            },
        }
    },
    "required": ["requirements"],
}

AGENCY_FOCUS = {
    "irs.gov": "Focus on tax forms, payment deadlines, and tax penalties.",
    "dol.gov": "Focus on labor laws, employee rights, and workplace requirements.",
    "osha.gov": "Focus on safety requirements, training, and compliance standards.",
}

AGENCY_DOMAINS = (
    ("irs.gov", "IRS"),
    ("dol.gov", "DOL"),
    ("osha.gov", "OSHA"),
    ("epa.gov", "EPA"),
    ("fda.gov", "FDA"),
    ("sba.gov", "SBA"),
    ("eeoc.gov", "EEOC"),
    ("ftc.gov", "FTC"),
)

FORM_RE = re.compile(r"\bForm\s+((?=[A-Z0-9-]*\d)[A-Z0-9]+(?:-[A-Z0-9]+)*)", re.IGNORECASE)
MUST_RE = re.compile(
    r"\bmust\s+(file|submit|register|obtain|maintain|comply|pay|post|display|renew)\b([^.\n]+)",
    re.IGNORECASE,
)
DEADLINE_RE = re.compile(r"\bdeadline\s*:\s*([^.\n]+)", re.IGNORECASE)
PENALTY_RE = re.compile(r"\bpenalt(?:y|ies)\s*:\s*([^.\n]+)", re.IGNORECASE)

NEAR_DUPLICATE_SCORE = 90
CONTEXT_CHARS = 200

UrlInput = Union[str, ClassifiedUrl]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def is_gov_site(url: str) -> bool:
    return ".gov" in url or ".state." in url


def _domain(url: str) -> str:
    try:
        host = urlparse(url).hostname or url
    except ValueError:
        return url
    return host[4:] if host.startswith("www.") else host


def build_extraction_prompt(url: str, profile: BusinessProfile) -> str:
    """
    Extraction instructions for one page. Filtering by industry and location
    happens here, in the prompt, so the provider returns only relevant rules.
    """
    factors = ", ".join(profile.special_factors) or "none"
    prompt = f"""Extract ALL compliance requirements, regulations, forms, deadlines, and penalties from this page
that apply to a {profile.industry} business in {profile.location} with {profile.employee_count} employees.
Special factors: {factors}

Include:
- Tax requirements and forms
- Labor law requirements
- Safety regulations
- Licensing requirements
- Filing deadlines
- Penalties for non-compliance
- Conditions when requirements apply (employee thresholds, revenue, etc.)

EXCLUDE requirements that only apply to other industries or other states/cities.
Be thorough and extract every applicable requirement mentioned on the page."""
    for domain, focus in AGENCY_FOCUS.items():
        if domain in url:
            return f"{prompt}\n{focus}"
    return prompt


def extract_agency(url: str) -> str:
    """Agency name guessed from the URL."""
    for domain, agency in AGENCY_DOMAINS:
        if domain in url:
            return agency
    if ".state." in url:
        return "State Agency"
    if ".city." in url or ".local." in url or "county" in url.lower():
        return "Local Agency"
    return "Government Agency"


def categorize_requirement(agency: Optional[str], url: str) -> str:
    """Topical category (Tax, Employment, Safety...) from agency name, then URL."""
    if agency:
        agency = agency.lower()
        if "irs" in agency:
            return "Tax"
        if "dol" in agency or "labor" in agency:
            return "Employment"
        if "osha" in agency:
            return "Safety"
        if "epa" in agency:
            return "Environmental"
        if "fda" in agency:
            return "Health"

    url = url.lower()
    if "tax" in url:
        return "Tax"
    if "labor" in url or "employment" in url:
        return "Employment"
    if "safety" in url or "osha" in url:
        return "Safety"
    if "license" in url or "permit" in url:
        return "Licensing"
    return "General"


def _new_requirement(
    name: str,
    description: str,
    source: str,
    url: str,
    source_type: str,
    extracted_at: str,
    extraction: str,
    **fields,
) -> Requirement:
    return Requirement(
        id=str(uuid.uuid4()),
        name=name,
        description=description,
        source=source,
        source_url=url,
        source_type=source_type,
        category=categorize_requirement(source, url),
        metadata={"extracted_at": extracted_at, "jurisdiction": source_type, "extraction": extraction},
        **fields,
    )


def _context(text: str, position: int, length: int = CONTEXT_CHARS) -> str:
    start = max(0, position - length // 2)
    end = min(len(text), position + length // 2)
    context = re.sub(r"\s+", " ", text[start:end]).strip()
    if start > 0:
        context = "..." + context
    if end < len(text):
        context = context + "..."
    return context


def _is_near_duplicate(candidate: Requirement, kept: Sequence[Requirement]) -> bool:
    for other in kept:
        if candidate.form_number or other.form_number:
            if candidate.form_number == other.form_number:
                return True
            continue
        if candidate.name != other.name:
            continue
        score = fuzz.token_sort_ratio(candidate.description, other.description, processor=utils.default_process)
        if score >= NEAR_DUPLICATE_SCORE:
            return True
    return False


def extract_requirements_from_text(
    text: str,
    url: str,
    source_type: str,
    extracted_at: Optional[str] = None,
) -> List[Requirement]:
    """
    Regex fallback extractor for pages without structured results.

    Matches "Form <id>", "must <verb> ...", "deadline: ..." and "penalty: ...".
    Deadline and penalty phrases are attached to the closest preceding
    requirement that lacks one, otherwise they become records of their own.

    Args:
        text (str): Plain text or markdown of the page.
        url (str): Source URL.
        source_type (str): Jurisdiction assigned to the page.
        extracted_at (str): ISO timestamp stored in metadata.

    Returns:
        List[Requirement]: Minimal records with near-duplicates removed.
    """
    if not text:
        return []
    extracted_at = extracted_at or _now()
    agency = extract_agency(url)

    matches: List[Tuple[int, str, re.Match]] = []
    for kind, pattern in (("form", FORM_RE), ("must", MUST_RE), ("deadline", DEADLINE_RE), ("penalty", PENALTY_RE)):
        matches.extend((m.start(), kind, m) for m in pattern.finditer(text))
    matches.sort(key=lambda item: item[0])

    found: List[Requirement] = []
    last: Optional[Requirement] = None
    for position, kind, match in matches:
        if kind == "form":
            form_number = match.group(1).upper()
            last = _new_requirement(
                f"Form {form_number}", _context(text, position), agency, url, source_type, extracted_at, "text",
                form_number=form_number,
            )
            found.append(last)
        elif kind == "must":
            action = match.group(1).lower()
            description = match.group(2).strip()
            if not 10 < len(description) < 500:
                continue
            last = _new_requirement(
                f"{action.capitalize()} requirement", f"Must {action} {description}", agency, url, source_type,
                extracted_at, "text",
            )
            found.append(last)
        elif kind == "deadline":
            deadline = match.group(1).strip()
            if last is not None and not last.deadline:
                last.deadline = deadline
            else:
                found.append(_new_requirement(
                    "Filing deadline", f"Deadline: {deadline}", agency, url, source_type, extracted_at, "text",
                    deadline=deadline,
                ))
        else:
            penalty = match.group(1).strip()
            if last is not None and not last.penalty:
                last.penalty = penalty
            else:
                found.append(_new_requirement(
                    "Non-compliance penalty", f"Penalty: {penalty}", agency, url, source_type, extracted_at, "text",
                    penalty=penalty,
                ))

    unique: List[Requirement] = []
    for requirement in found:
        if not _is_near_duplicate(requirement, unique):
            unique.append(requirement)
    logger.debug(f"🔤 Regex fallback found {len(unique)} requirements on {url}")
    return unique


def requirements_from_scrape(
    response: ScrapeResponse,
    source_type: str,
    extracted_at: Optional[str] = None,
) -> List[Requirement]:
    """Requirement records from the schema-guided extraction of one page."""
    extracted_at = extracted_at or _now()
    items = (response.structured_json or {}).get("requirements")
    if not isinstance(items, list):
        return []

    requirements = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = _text(item.get("name"))
        description = _text(item.get("description")) or ""
        if not name and not description:
            continue
        agency = _text(item.get("agency")) or extract_agency(response.url)
        requirements.append(_new_requirement(
            name or "Unnamed requirement",
            description,
            agency,
            _text(item.get("sourceUrl")) or response.url,
            source_type,
            extracted_at,
            "schema",
            form_number=_text(item.get("formNumber")),
            deadline=_text(item.get("deadline")),
            frequency=_text(item.get("frequency")),
            penalty=_text(item.get("penalty")),
            applies_condition=_text(item.get("appliesWhen")),
            citation=_text(item.get("citation")),
        ))
    return requirements


def _extract(response: ScrapeResponse, source_type: str) -> Tuple[List[Requirement], bool]:
    """Schema results, or regex results when the schema yields nothing but the text is non-trivial."""
    extracted_at = _now()
    requirements = requirements_from_scrape(response, source_type, extracted_at)
    if requirements or len(response.plain_text.strip()) <= MIN_FALLBACK_TEXT_LENGTH:
        return requirements, False
    return extract_requirements_from_text(response.plain_text, response.url, source_type, extracted_at), True


async def scrape_url(
    url: str,
    profile: BusinessProfile,
    source_type: Optional[str] = None,
    cooldown: float = RATE_LIMIT_COOLDOWN_SECONDS,
) -> Tuple[BatchScrapeResult, bool]:
    """
    Scrape one URL and extract its requirements.

    When the provider keeps rate limiting the request, waits `cooldown` seconds
    and retries exactly once with a markdown-only request, then uses the regex
    extractor.

    Args:
        url (str): Page to scrape.
        profile (BusinessProfile): Business used to tailor the extraction prompt.
        source_type (str): Jurisdiction for the extracted records; derived from the URL if omitted.
        cooldown (float): Seconds to wait before the reduced retry.

    Returns:
        Tuple[BatchScrapeResult, bool]: The result and whether the regex fallback was used.

    Raises:
        ScrapeError: If the reduced retry is rate limited too.
    """
    source_type = source_type or get_basic_category(url, profile.state)
    client = FirecrawlClient()
    start = time.perf_counter()

    response = await client.scrape(
        url,
        extraction_schema=COMPLIANCE_EXTRACTION_SCHEMA,
        extraction_prompt=build_extraction_prompt(url, profile),
        wait_ms=GOV_SITE_WAIT_MS if is_gov_site(url) else DEFAULT_WAIT_MS,
    )

    if response is None:
        logger.warning(f"⏳ Rate limited on {url}, cooling down {cooldown}s before a reduced retry")
        await asyncio.sleep(cooldown)
        response = await client.scrape(url, wait_ms=RETRY_WAIT_MS, max_retries=0)
        if response is None:
            raise ScrapeError(f"Rate limited scraping {url}")
        extracted_at = _now()
        requirements = extract_requirements_from_text(response.plain_text, url, source_type, extracted_at)
        used_fallback = True
    else:
        requirements, used_fallback = _extract(response, source_type)
        extracted_at = requirements[0].metadata["extracted_at"] if requirements else _now()

    logger.debug(f"✅ Scraped {url}: {len(requirements)} requirements in {time.perf_counter() - start:.2f}s")
    result = BatchScrapeResult(
        url=url,
        success=True,
        requirements=requirements,
        markdown=response.plain_text,
        extracted_at=extracted_at,
    )
    return result, used_fallback


def _target(item: UrlInput, profile: BusinessProfile) -> Tuple[str, str]:
    if isinstance(item, ClassifiedUrl):
        return item.url, item.category
    return item, get_basic_category(item, profile.state)


def _failed(url: str, error: BaseException, tracker: ProgressTracker) -> BatchScrapeResult:
    message = str(error) or type(error).__name__
    logger.warning(f"❌ Failed to scrape {url}: {message}")
    tracker.emit(SiteFailedEvent(url=url, error=message, message=f"Failed to scrape {_domain(url)}"))
    return BatchScrapeResult(url=url, success=False, error=message, extracted_at=_now())


def _site_complete(
    result: BatchScrapeResult,
    used_fallback: bool,
    index: int,
    total: int,
    tracker: ProgressTracker,
) -> None:
    tracker.emit(
        SiteCompleteEvent(
            url=result.url,
            rules_found=len(result.requirements),
            used_text_fallback=used_fallback,
            message=f"Found {len(result.requirements)} requirements from {_domain(result.url)}",
        ),
        phase="scraping",
        fraction=(index + 1) / total,
    )


async def _scrape_one(
    url: str,
    source_type: str,
    profile: BusinessProfile,
    index: int,
    total: int,
    tracker: ProgressTracker,
) -> BatchScrapeResult:
    tracker.emit(
        ScrapingSiteEvent(url=url, index=index + 1, total=total, message=f"Scraping {_domain(url)}..."),
        phase="scraping",
        fraction=index / total,
    )
    result, used_fallback = await scrape_url(url, profile, source_type)
    _site_complete(result, used_fallback, index, total, tracker)
    return result


async def _scrape_chunk(
    chunk: Sequence[Tuple[str, str]],
    offset: int,
    total: int,
    profile: BusinessProfile,
    tracker: ProgressTracker,
) -> List[BatchScrapeResult]:
    outcomes = await asyncio.gather(
        *[
            _scrape_one(url, source_type, profile, offset + i, total, tracker)
            for i, (url, source_type) in enumerate(chunk)
        ],
        return_exceptions=True,
    )
    results = []
    for (url, _), outcome in zip(chunk, outcomes):
        if isinstance(outcome, (AuthenticationError, MissingCredentialsError)):
            raise outcome
        if isinstance(outcome, BaseException):
            results.append(_failed(url, outcome, tracker))
        else:
            results.append(outcome)
    return results


async def _scrape_chunk_batch(
    chunk: Sequence[Tuple[str, str]],
    offset: int,
    total: int,
    profile: BusinessProfile,
    tracker: ProgressTracker,
) -> Optional[List[BatchScrapeResult]]:
    """Scrape a chunk with one provider batch job. Returns None when the batch job is unusable."""
    urls = [url for url, _ in chunk]
    for i, url in enumerate(urls):
        tracker.emit(
            ScrapingSiteEvent(url=url, index=offset + i + 1, total=total, message=f"Scraping {_domain(url)}..."),
            phase="scraping",
            fraction=(offset + i) / total,
        )

    responses = await FirecrawlClient().scrape_many(
        urls,
        extraction_schema=COMPLIANCE_EXTRACTION_SCHEMA,
        extraction_prompt=build_extraction_prompt("", profile),
        wait_ms=GOV_SITE_WAIT_MS if any(is_gov_site(u) for u in urls) else DEFAULT_WAIT_MS,
    )
    if responses is None:
        return None

    results = []
    for i, ((url, source_type), response) in enumerate(zip(chunk, responses)):
        if not response.success:
            results.append(_failed(url, ScrapeError("Page missing from batch scrape results"), tracker))
            continue
        requirements, used_fallback = _extract(response, source_type)
        result = BatchScrapeResult(
            url=url, success=True, requirements=requirements, markdown=response.plain_text, extracted_at=_now()
        )
        _site_complete(result, used_fallback, offset + i, total, tracker)
        results.append(result)
    return results


async def scrape_all(
    urls: Sequence[UrlInput],
    profile: BusinessProfile,
    tracker: Optional[ProgressTracker] = None,
    chunk_size: int = SCRAPE_CHUNK_SIZE,
    chunk_delay: float = CHUNK_DELAY_SECONDS,
    use_batch: bool = USE_BATCH_SCRAPE,
) -> List[BatchScrapeResult]:
    """
    Scrape every URL in sequential chunks with full concurrency inside each chunk.

    A failing URL never cancels its siblings. Batch mode, when enabled, is
    abandoned for the rest of the run as soon as one batch job fails.

    Args:
        urls: Plain URLs or ClassifiedUrls (whose category becomes the records' jurisdiction).
        profile: Business being researched.
        tracker: Optional progress emitter.
        chunk_size: URLs per chunk.
        chunk_delay: Seconds to pause between chunks.
        use_batch: Prefer the provider's batch endpoint.

    Returns:
        List[BatchScrapeResult]: Exactly one result per input URL, in input order.
    """
    tracker = tracker or ProgressTracker()
    targets = [_target(item, profile) for item in urls]
    total = len(targets)
    results: List[BatchScrapeResult] = []
    batch_enabled = use_batch
    start = time.perf_counter()

    for offset in range(0, total, chunk_size):
        chunk = targets[offset:offset + chunk_size]
        chunk_results = None
        if batch_enabled:
            try:
                chunk_results = await _scrape_chunk_batch(chunk, offset, total, profile, tracker)
            except (AuthenticationError, MissingCredentialsError):
                raise
            except Exception as e:
                logger.warning(f"⚠️ Batch scrape failed ({e}), switching to individual scrapes")
            if chunk_results is None:
                batch_enabled = False
        if chunk_results is None:
            chunk_results = await _scrape_chunk(chunk, offset, total, profile, tracker)
        results.extend(chunk_results)

        if offset + chunk_size < total and chunk_delay > 0:
            await asyncio.sleep(chunk_delay)

    succeeded = sum(1 for r in results if r.success)
    found = sum(len(r.requirements) for r in results)
    logger.info(
        f"🕸️ Scraped {succeeded}/{total} sources, found {found} requirements "
        f"in {time.perf_counter() - start:.2f}s"
    )
    return results

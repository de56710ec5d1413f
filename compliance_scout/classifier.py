"""
Relevance and jurisdiction classification for URLs and requirements.

The LLM is the primary classifier. A deterministic keyword/domain classifier
backs it up so that every item always ends up in one of the four
jurisdictions, even when the LLM is unavailable or answers garbage.
"""
import json
from dataclasses import replace
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from loguru import logger

from compliance_scout.clients import OpenAIClient
from compliance_scout.config import REQUIREMENT_CLASSIFY_BATCH_SIZE
from compliance_scout.geography import STATE_CODES, VALID_CODES, state_code
from compliance_scout.llm_json import complete_or_none, parse_or_fallback
from compliance_scout.models import (
    JURISDICTIONS,
    BusinessProfile,
    ClassifiedUrl,
    DiscoveredUrl,
    Requirement,
)

FEDERAL_DOMAINS = (
    "irs.gov", "dol.gov", "osha.gov", "epa.gov", "fda.gov", "sba.gov",
    "eeoc.gov", "ftc.gov", "uscis.gov", "ssa.gov", "usda.gov", "fincen.gov",
    "ttb.gov", "dhs.gov", "nlrb.gov", "treasury.gov", "hhs.gov", "cms.gov",
    "cdc.gov", "ada.gov", "healthcare.gov", "usa.gov", "ecfr.gov",
    "federalregister.gov", "e-verify.gov",
)
# Checked against the host only
LOCAL_MARKERS = (
    "cityof", "city.", ".city", "municipal", "township", "parish", "borough",
    "villageof", "townof", "local",
)
FEDERAL_AGENCY_NAMES = (
    "irs", "internal revenue", "department of labor", "dol", "osha", "epa",
    "environmental protection", "fda", "food and drug", "ftc", "federal trade",
    "sba", "small business administration", "eeoc", "equal employment",
    "uscis", "homeland security", "social security", "fincen", "federal", "u.s.",
    "united states",
)
LOCAL_AGENCY_NAMES = (
    "county", "city of", "city ", "municipal", "township", "parish", "borough",
    "village of", "town of", "local",
)
LOCAL_ALIASES = {"county", "local", "municipal", "municipality", "township", "parish", "borough", "regional"}

_COMPACT_STATE_NAMES = {name.replace(" ", ""): code for name, code in STATE_CODES.items()}


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def get_basic_category(url: str, state: Optional[str] = None) -> str:
    """
    Deterministic URL classifier. Never raises; always returns one of
    federal, state, city or industry.

    Args:
        url (str): URL to classify.
        state (str): Optional profile state (name or code) to recognise its domains.

    Returns:
        str: Jurisdiction.
    """
    lower = (url or "").lower()
    host = _host(lower) or lower

    if "county" in lower:
        return "city"

    labels = host.split(".")
    government = host.endswith(".gov") or host.endswith(".us")
    if government:
        if ".state." in f".{host}.":
            return "state"
        if len(labels) >= 2:
            sld = labels[-2]
            if sld.upper() in VALID_CODES or sld in _COMPACT_STATE_NAMES:
                return "state"
        code = state_code(state) if state else None
        if code and f".{code.lower()}." in f".{host}.":
            return "state"

    # Whole labels only: calepa.ca.gov is not epa.gov
    if any(host == domain or host.endswith("." + domain) for domain in FEDERAL_DOMAINS):
        return "federal"
    if any(marker in host for marker in LOCAL_MARKERS):
        return "city"
    return "city" if government else "industry"


def normalize_jurisdiction(value: Optional[str]) -> Optional[str]:
    """Map an LLM-provided jurisdiction onto the four valid values, or None."""
    if not value:
        return None
    cleaned = str(value).strip().lower()
    if cleaned in JURISDICTIONS:
        return cleaned
    if cleaned in LOCAL_ALIASES:
        return "city"
    return None


def fallback_category(discovered: DiscoveredUrl, state: Optional[str] = None) -> str:
    """
    Deterministic category for a discovered URL. Prefers the domain rules and
    falls back to the category of the search that found the URL.
    """
    category = get_basic_category(discovered.url, state)
    if category == "industry" and discovered.source_query_category != "industry":
        return "city" if discovered.source_query_category == "local" else discovered.source_query_category
    return category


def infer_source_type(requirement: Requirement, state: Optional[str] = None) -> str:
    """Keyword rules on the agency name, then the URL rules."""
    source = f" {requirement.source or ''} ".lower()

    if any(name in source for name in LOCAL_AGENCY_NAMES):
        return "city"
    if any(f" {name} " in source or source.strip().startswith(name) for name in FEDERAL_AGENCY_NAMES):
        return "federal"
    if "state" in source:
        return "state"
    if state:
        code = state_code(state)
        names = {state.lower()}
        if code:
            names.add(code.lower())
        if any(f" {n} " in source for n in names):
            return "state"
    return get_basic_category(requirement.source_url, state)


def _url_prompt(urls: Sequence[DiscoveredUrl], profile: BusinessProfile) -> str:
    listing = "\n".join(f"{i}. {u.title}: {u.url}" for i, u in enumerate(urls))
    return f"""You are a US business compliance analyst. Classify and filter URLs for THIS specific business.

BUSINESS PROFILE:
{profile.describe()}

URLs TO ANALYZE:
{listing}

CLASSIFICATION INSTRUCTIONS:
For each URL, determine:

1. RELEVANCE: Is this URL relevant to compliance obligations for THIS specific business?
   Consider location ({profile.location}), industry ({profile.industry}), employee thresholds
   ({profile.employee_count} employees) and the special factors above.

2. CATEGORY (if relevant):
   - "federal": US federal government (IRS, DOL, OSHA, EPA, FDA, FTC, EEOC, etc.)
   - "state": {profile.state} state-level requirement
   - "city": ANY local government including city, municipal, county, township, parish (IMPORTANT: Use "city" for ALL local government levels including county)
   - "industry": Industry associations, standards bodies, trade organizations

   CRITICAL: There is NO "county" category. County-level requirements MUST be classified as "city".

EXCLUDE:
- News articles, blogs without official citations
- Pages unrelated to this location/industry
- General information without specific requirements

Return ONLY a JSON array (relevant URLs only):
[{{"index": 0, "category": "federal|state|city|industry", "relevant": true}}]"""


async def classify_urls(urls: Sequence[DiscoveredUrl], profile: BusinessProfile) -> List[ClassifiedUrl]:
    """
    Classify discovered URLs by jurisdiction and drop irrelevant ones.

    Args:
        urls: Deduplicated discovery output.
        profile: Business profile used as classification context.

    Returns:
        List[ClassifiedUrl]: Relevant URLs with a valid jurisdiction.
    """
    if not urls:
        return []

    def build(parsed: list) -> List[ClassifiedUrl]:
        classified: List[ClassifiedUrl] = []
        seen = set()
        for item in parsed:
            index = int(item["index"])
            if not 0 <= index < len(urls) or index in seen:
                continue
            seen.add(index)
            if item.get("relevant", True) is False:
                continue
            d = urls[index]
            category = normalize_jurisdiction(item.get("category")) or fallback_category(d, profile.state)
            classified.append(ClassifiedUrl(d.url, d.title, d.source_query_category, category, True))
        return classified

    def fallback() -> List[ClassifiedUrl]:
        return [
            ClassifiedUrl(d.url, d.title, d.source_query_category, fallback_category(d, profile.state), True)
            for d in urls
        ]

    text = await complete_or_none(OpenAIClient(), _url_prompt(urls, profile), "URL classification")
    classified = parse_or_fallback(text, build, fallback, shape=list, context="URL classification")
    logger.info(f"🧭 Classified {len(classified)} relevant URLs from {len(urls)} total")
    return classified


def _requirement_prompt(batch: Sequence[Requirement], profile: BusinessProfile) -> str:
    items = json.dumps(
        [
            {"index": i, "name": r.name, "description": r.description[:300], "source": r.source, "url": r.source_url}
            for i, r in enumerate(batch)
        ],
        indent=2,
    )
    return f"""You are a compliance expert. Classify requirements by jurisdiction for THIS specific business.

BUSINESS PROFILE:
{profile.describe()}

REQUIREMENTS TO CLASSIFY:
{items}

For each requirement, identify the sourceType:
- "federal": US federal requirement (IRS, DOL, OSHA, EPA, FDA, FTC, SBA, EEOC, etc.)
- "state": {profile.state} state requirement
- "city": ALL local government requirements (city, municipal, county, township, parish - ANY local/regional government below state level)
- "industry": Industry association or private standard

CRITICAL: There is NO "county" category. County-level requirements MUST be classified as "city".
NEVER return "county" as a sourceType.

Return ONLY a valid JSON array with no additional text:
[{{"index": 0, "sourceType": "federal"}}, {{"index": 1, "sourceType": "state"}}]"""


def _ensure_valid(requirement: Requirement, state: Optional[str]) -> Requirement:
    if requirement.source_type in JURISDICTIONS:
        return requirement
    return replace(requirement, source_type=infer_source_type(requirement, state))


async def classify_requirements(requirements: Sequence[Requirement], profile: BusinessProfile) -> List[Requirement]:
    """
    Assign each requirement its jurisdiction, in batches.

    Returns:
        List[Requirement]: New records; every source_type is one of the four jurisdictions.
    """
    classified: List[Requirement] = []
    client = OpenAIClient() if requirements else None

    for start in range(0, len(requirements), REQUIREMENT_CLASSIFY_BATCH_SIZE):
        batch = list(requirements[start:start + REQUIREMENT_CLASSIFY_BATCH_SIZE])

        def build(parsed: list, batch=batch) -> List[Requirement]:
            updated = list(batch)
            for item in parsed:
                index = int(item["index"])
                source_type = normalize_jurisdiction(item.get("sourceType"))
                if 0 <= index < len(updated) and source_type:
                    updated[index] = replace(updated[index], source_type=source_type)
            return updated

        def fallback(batch=batch) -> List[Requirement]:
            return list(batch)

        text = await complete_or_none(client, _requirement_prompt(batch, profile), "requirement classification")
        classified.extend(parse_or_fallback(text, build, fallback, shape=list, context="requirement classification"))

    return [_ensure_valid(r, profile.state) for r in classified]

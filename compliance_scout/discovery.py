"""
URL discovery: four concurrent category searches merged into one URL set.
"""
import asyncio
import time
from typing import Dict, List, Optional, Tuple

from loguru import logger

from compliance_scout.clients import PerplexityClient
from compliance_scout.errors import AuthenticationError
from compliance_scout.events import ProgressTracker, QueryBuildingEvent, UrlsDiscoveredEvent
from compliance_scout.models import QUERY_CATEGORIES, BusinessProfile, DiscoveredUrl, SearchResponse

FEDERAL_DOMAINS = [
    "irs.gov", "dol.gov", "osha.gov", "eeoc.gov", "ftc.gov",
    "fda.gov", "epa.gov", "sba.gov", "healthcare.gov", "ada.gov",
]


def state_domains(profile: BusinessProfile) -> List[str]:
    """Domain allow-list for the state search, e.g. ca.gov and state.ca.us."""
    code = profile.state_code
    compact = profile.state.lower().replace(" ", "")
    domains = []
    if code:
        domains += [f"{code.lower()}.gov", f"state.{code.lower()}.us"]
    domains.append(f"{compact}.gov")
    # de-duplicate while keeping order
    return list(dict.fromkeys(domains))


def _factors_line(profile: BusinessProfile, prefix: str = "- ") -> str:
    return f"{prefix}Special factors: {', '.join(profile.special_factors)}\n" if profile.special_factors else ""


def _naics(profile: BusinessProfile) -> str:
    return f"(NAICS {profile.naics_code})" if profile.naics_code else ""


def build_federal_query(profile: BusinessProfile) -> str:
    revenue = f"${profile.annual_revenue:,.0f}" if profile.annual_revenue else "not specified"
    return f"""Find ALL federal compliance requirements, licenses, permits, and registrations required for a {profile.industry} business {_naics(profile)} in the United States.

Business characteristics:
- Industry: {profile.industry}
- Employees: {profile.employee_count}
- Annual Revenue: {revenue}
{_factors_line(profile)}
I need COMPREHENSIVE information on:
1. IRS tax requirements (EIN, tax forms, filing schedules)
2. Department of Labor requirements (FLSA, wage laws, workplace posters)
3. OSHA safety requirements specific to {profile.industry}
4. EEOC and employment law compliance
5. EPA environmental requirements if applicable
6. FDA requirements if handling food/beverages
7. ADA compliance requirements
8. Healthcare and benefits requirements

Return the OFFICIAL .gov URLs for each requirement. Focus on requirements that DEFINITELY apply to this specific business type and size."""


def build_state_query(profile: BusinessProfile) -> str:
    return f"""Find ALL {profile.state} state compliance requirements, licenses, permits, and registrations for a {profile.industry} business {_naics(profile)}.

Business details:
- State: {profile.state}
- Industry: {profile.industry}
- Employees: {profile.employee_count}
{_factors_line(profile)}
I need COMPREHENSIVE {profile.state} state requirements for:
1. State business registration and licensing
2. State tax registration and requirements
3. State employment laws and workers' compensation
4. State-specific safety regulations
5. State sales tax permit if selling products
6. State unemployment and disability insurance
7. Industry-specific state regulations

Return the OFFICIAL {profile.state} state government URLs. Focus on requirements specific to {profile.state} that apply to {profile.industry} businesses."""


def build_local_query(profile: BusinessProfile) -> str:
    return f"""Find ALL local government compliance requirements, business licenses, permits, and regulations for a {profile.industry} business in {profile.location} {_naics(profile)}.

Location: {profile.location}
Industry: {profile.industry}
{_factors_line(profile, prefix="")}
I need COMPREHENSIVE local requirements including:
1. City/County business license requirements
2. Local zoning permits and regulations
3. Building and occupancy permits
4. Health department permits (especially for {profile.industry})
5. Fire department permits and inspections
6. Local tax registrations
7. Signage and special use permits

Search for official city, county, and municipal government websites for {profile.location}. Include both city-specific and county-level requirements."""


def build_industry_query(profile: BusinessProfile) -> str:
    return f"""Find ALL industry-specific compliance requirements, standards, certifications, and regulations for a {profile.industry} business {_naics(profile)} operating in {profile.state}.

Industry: {profile.industry}
NAICS: {profile.naics_code or 'not specified'}
State: {profile.state}
{_factors_line(profile, prefix="")}
I need COMPREHENSIVE industry requirements including:
1. Industry-specific licenses and certifications
2. Professional and trade association requirements
3. Industry-specific insurance requirements
4. Industry-specific training requirements
5. Equipment and facility standards
6. Customer protection regulations for {profile.industry}

Focus on requirements specific to the {profile.industry} industry."""


def build_category_searches(profile: BusinessProfile) -> List[Tuple[str, str, Optional[List[str]], str]]:
    """(category, prompt, domain filter, context size) for each of the four searches."""
    searches = {
        "federal": (build_federal_query(profile), FEDERAL_DOMAINS, "high"),
        "state": (build_state_query(profile), state_domains(profile), "high"),
        "local": (build_local_query(profile), None, "medium"),
        "industry": (build_industry_query(profile), None, "medium"),
    }
    return [(category, *searches[category]) for category in QUERY_CATEGORIES]


async def _search_one(
    client: PerplexityClient,
    category: str,
    prompt: str,
    domain_filter: Optional[List[str]],
    context_size: str,
) -> Optional[SearchResponse]:
    start = time.perf_counter()
    logger.debug(f"▶️ START {category} search")
    response = await client.search(prompt, domain_filter=domain_filter, context_size=context_size)
    duration = time.perf_counter() - start
    if response is None:
        logger.warning(f"⏱️ {category} search rate limited out after {duration:.2f}s")
    else:
        logger.debug(f"✅ {category} search returned {len(response.result_urls)} URLs in {duration:.2f}s")
    return response


async def discover(profile: BusinessProfile, tracker: Optional[ProgressTracker] = None) -> List[DiscoveredUrl]:
    """
    Run the federal, state, local and industry searches concurrently and merge their URLs.

    A failed category contributes zero URLs. An authentication failure aborts discovery.

    Args:
        profile (BusinessProfile): Business being researched.
        tracker (ProgressTracker): Optional progress emitter.

    Returns:
        List[DiscoveredUrl]: URLs deduplicated by exact string, first occurrence wins.
    """
    tracker = tracker or ProgressTracker()
    tracker.emit(
        QueryBuildingEvent(
            message="Building comprehensive compliance queries...",
            details=f"Analyzing {profile.industry} in {profile.location}",
        ),
        phase="discovery",
        fraction=0.0,
    )

    client = PerplexityClient()
    searches = build_category_searches(profile)
    start = time.perf_counter()
    results = await asyncio.gather(
        *[_search_one(client, category, prompt, domains, size) for category, prompt, domains, size in searches],
        return_exceptions=True,
    )
    logger.info(f"🔎 All {len(searches)} searches settled in {time.perf_counter() - start:.2f}s")

    # Authentication problems are fatal regardless of what the other categories returned
    for result in results:
        if isinstance(result, AuthenticationError):
            raise result

    discovered: Dict[str, DiscoveredUrl] = {}
    breakdown: Dict[str, int] = {}
    failed: List[str] = []
    for (category, *_), result in zip(searches, results):
        if isinstance(result, BaseException):
            logger.warning(f"⚠️ {category} search failed: {result}")
            failed.append(category)
            breakdown[category] = 0
            continue
        if result is None:
            failed.append(category)
            breakdown[category] = 0
            continue
        breakdown[category] = len(result.result_urls)
        for hit in result.result_urls:
            if hit.url not in discovered:
                discovered[hit.url] = DiscoveredUrl(url=hit.url, title=hit.title, source_query_category=category)

    urls = list(discovered.values())
    tracker.emit(
        UrlsDiscoveredEvent(
            count=len(urls),
            breakdown=breakdown,
            failed_categories=failed,
            message=f"Found {len(urls)} compliance sources from {len(searches)} parallel searches",
        ),
        phase="discovery",
        fraction=1.0,
    )
    return urls

import asyncio
from contextlib import contextmanager

import pytest
from unittest.mock import AsyncMock, patch

from compliance_scout import run_compliance_check
from compliance_scout.errors import (
    AuthenticationError,
    MissingCredentialsError,
    NoSourcesFoundError,
    PipelineError,
    ProviderError,
    ScrapingFailedError,
)
from compliance_scout.models import SearchHit, SearchResponse, ScrapeResponse

SEARCH_RESULTS = {
    "federal": ["https://www.irs.gov/ein"],
    "state": ["https://www.cdtfa.ca.gov/sellers-permit"],
    "local": ["https://sf.gov/register-business"],
    "industry": ["https://www.restaurant.org/food-safety"],
}

PAGES = {
    "https://www.irs.gov/ein": {"name": "Employer Identification Number (EIN)", "agency": "IRS", "formNumber": "SS-4"},
    "https://www.cdtfa.ca.gov/sellers-permit": {"name": "Seller's Permit", "agency": "CDTFA"},
    "https://sf.gov/register-business": {"name": "Business Registration Certificate", "agency": "SF Treasurer"},
    "https://www.restaurant.org/food-safety": {"name": "Food Handler Certification", "agency": "ServSafe"},
}


async def search(prompt, domain_filter=None, context_size="medium"):
    if domain_filter and "irs.gov" in domain_filter:
        category = "federal"
    elif domain_filter:
        category = "state"
    elif "local government" in prompt:
        category = "local"
    else:
        category = "industry"
    return SearchResponse(result_urls=[SearchHit(url=u, title=u) for u in SEARCH_RESULTS[category]])


async def scrape(url, **kwargs):
    item = dict(PAGES[url], description=f"Obtain the {PAGES[url]['name']}")
    return ScrapeResponse(url=url, plain_text=f"# {item['name']}", structured_json={"requirements": [item]})


@contextmanager
def providers(search_effect=search, scrape_effect=scrape, llm_reply="no JSON here"):
    with patch("compliance_scout.discovery.PerplexityClient") as perplexity, \
            patch("compliance_scout.classifier.OpenAIClient") as classifier_llm, \
            patch("compliance_scout.scraper.FirecrawlClient") as firecrawl, \
            patch("compliance_scout.aggregator.OpenAIClient") as aggregator_llm:
        perplexity.return_value.search = AsyncMock(side_effect=search_effect)
        classifier_llm.return_value.complete = AsyncMock(return_value=llm_reply)
        firecrawl.return_value.scrape = AsyncMock(side_effect=scrape_effect)
        aggregator_llm.return_value.complete = AsyncMock(return_value=llm_reply)
        yield


@pytest.mark.asyncio
async def test_full_check_for_restaurant(restaurant_profile, sink):
    with providers():
        result = await run_compliance_check(restaurant_profile, check_id="check-1", sink=sink)

    assert result.check_id == "check-1"
    assert result.statistics.total == 4
    assert (result.statistics.federal, result.statistics.state, result.statistics.city,
            result.statistics.industry) == (1, 1, 1, 1)
    assert result.statistics.sources_scraped == 4
    assert result.statistics.sources_failed == 0

    gap_names = {g.requirement for g in result.gaps}
    assert "Employer Identification Number (EIN)" not in gap_names
    assert "Food Handler Certification" not in gap_names
    assert "ADA Compliance" in gap_names
    assert result.coverage.jurisdiction_coverage["federal"].found == 1
    assert result.recommendations[0].priority == "critical"

    assert sink.types[:3] == ["query-building", "urls-discovered", "urls-filtered"]
    assert sink.types[-3:] == ["aggregation-complete", "ai-deduplication-complete", "complete"]
    assert sink.types.count("site-complete") == 4
    progress = [e.progress for e in sink.events if e.progress is not None]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert sink.events[-1].stats["federal"] == 1


@pytest.mark.asyncio
async def test_partial_scrape_failure_still_completes(restaurant_profile, sink):
    async def flaky(url, **kwargs):
        if "sf.gov" in url:
            raise asyncio.TimeoutError()
        return await scrape(url)

    with providers(scrape_effect=flaky):
        result = await run_compliance_check(restaurant_profile, sink=sink)

    assert result.statistics.sources_failed == 1
    assert result.statistics.city == 0
    assert sink.types.count("site-failed") == 1
    assert sink.types[-1] == "complete"


@pytest.mark.asyncio
async def test_no_urls_discovered_is_fatal(restaurant_profile, sink):
    async def empty(prompt, domain_filter=None, context_size="medium"):
        return SearchResponse(result_urls=[])

    with providers(search_effect=empty):
        with pytest.raises(NoSourcesFoundError):
            await run_compliance_check(restaurant_profile, sink=sink)

    assert sink.types[-1] == "error"
    assert "urls-filtered" not in sink.types


@pytest.mark.asyncio
async def test_everything_filtered_out_is_fatal(restaurant_profile, sink):
    with providers(llm_reply="[]"):
        with pytest.raises(NoSourcesFoundError):
            await run_compliance_check(restaurant_profile, sink=sink)

    assert sink.of_type("urls-filtered")[0].selected == 0
    assert sink.types[-1] == "error"


@pytest.mark.asyncio
async def test_all_scrapes_failing_is_fatal(restaurant_profile, sink):
    with providers(scrape_effect=ProviderError("Firecrawl API error (500)", status=500)):
        with pytest.raises(ScrapingFailedError):
            await run_compliance_check(restaurant_profile, sink=sink)

    assert sink.types.count("site-failed") == 4
    assert sink.types[-1] == "error"


@pytest.mark.asyncio
async def test_rejected_credentials_abort_the_run(restaurant_profile, sink):
    with providers(search_effect=AuthenticationError("Perplexity authentication failed", status=401)):
        with pytest.raises(PipelineError) as exc_info:
            await run_compliance_check(restaurant_profile, sink=sink)

    assert isinstance(exc_info.value.__cause__, AuthenticationError)
    assert sink.types == ["query-building", "error"]


@pytest.mark.asyncio
async def test_missing_api_key_is_fatal(restaurant_profile, sink):
    with patch("compliance_scout.clients.perplexity_client.PERPLEXITY_API_KEY", None):
        with pytest.raises(MissingCredentialsError):
            await run_compliance_check(restaurant_profile, sink=sink)

    assert sink.events[-1].type == "error"
    assert "PERPLEXITY_API_KEY" in sink.events[-1].error

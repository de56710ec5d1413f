import asyncio

import pytest
from unittest.mock import AsyncMock, call, patch

from compliance_scout.errors import AuthenticationError, ProviderError, ScrapeError
from compliance_scout.events import ProgressTracker
from compliance_scout.models import ClassifiedUrl, ScrapeResponse
from compliance_scout.scraper import (
    extract_agency,
    extract_requirements_from_text,
    requirements_from_scrape,
    scrape_all,
    scrape_url,
)

PAYROLL_PAGE = (
    "Employers must file Form 941 each quarter to report withheld income taxes. "
    "Deadline: last day of the month after the quarter ends. "
    "Penalty: 5% of the unpaid tax for each month the return is late."
)

URLS = [f"https://www.example{i}.gov/page" for i in range(5)]


def structured(url, *names):
    return ScrapeResponse(
        url=url,
        plain_text=f"# {url}",
        structured_json={"requirements": [{"name": n, "description": f"{n} details", "agency": "IRS"} for n in names]},
    )


def scrape_returning(failures=None):
    failures = failures or {}

    async def scrape(url, **kwargs):
        if url in failures:
            raise failures[url]
        return structured(url, f"Requirement from {url}")

    return scrape


def test_regex_fallback_attaches_deadline_and_penalty_to_the_form():
    found = extract_requirements_from_text(PAYROLL_PAGE, "https://www.irs.gov/941", "federal")

    form = next(r for r in found if r.form_number == "941")
    assert form.name == "Form 941"
    assert form.deadline == "last day of the month after the quarter ends"
    assert form.penalty == "5% of the unpaid tax for each month the return is late"
    assert form.source == "IRS"
    assert form.category == "Tax"
    assert form.metadata["extraction"] == "text"

    must = next(r for r in found if r.name == "File requirement")
    assert must.description.startswith("Must file Form 941 each quarter")
    assert all(r.source_type == "federal" for r in found)


def test_regex_fallback_standalone_deadline_and_near_duplicates():
    text = (
        "Deadline: January 31. "
        "You must register your business with the city clerk. "
        "You must register your business with the city clerk office. "
        "Form W-2 and Form w-2 are listed twice."
    )
    found = extract_requirements_from_text(text, "https://www.cityof.example.gov/", "city")

    names = [r.name for r in found]
    assert names.count("Filing deadline") == 1
    assert names.count("Register requirement") == 1
    assert names.count("Form W-2") == 1
    assert found[0].deadline == "January 31"


def test_regex_fallback_skips_short_must_phrases():
    assert extract_requirements_from_text("You must pay it.", "https://x.gov", "state") == []
    assert extract_requirements_from_text("", "https://x.gov", "state") == []


def test_requirements_from_scrape_maps_schema_fields():
    response = ScrapeResponse(
        url="https://www.dol.gov/whd/flsa",
        structured_json={"requirements": [
            {"name": "Minimum wage", "description": "Pay at least $7.25", "formNumber": "", "frequency": "ongoing",
             "citation": "29 USC 206", "appliesWhen": "All covered employers"},
            {"name": "", "description": ""},
            "garbage",
        ]},
    )
    (requirement,) = requirements_from_scrape(response, "federal")

    assert requirement.source == "DOL"
    assert requirement.form_number is None
    assert requirement.frequency == "ongoing"
    assert requirement.applies_condition == "All covered employers"
    assert requirement.category == "Employment"
    assert requirement.metadata["jurisdiction"] == "federal"
    assert requirement.metadata["extraction"] == "schema"


def test_extract_agency():
    assert extract_agency("https://www.osha.gov/x") == "OSHA"
    assert extract_agency("https://tax.state.ny.us/") == "State Agency"
    assert extract_agency("https://www.alamedacounty.gov/") == "Local Agency"
    assert extract_agency("https://www.ca.gov/") == "Government Agency"


@pytest.mark.asyncio
async def test_scrape_url_waits_longer_on_gov_sites(restaurant_profile):
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        scrape = MockClient.return_value.scrape = AsyncMock(side_effect=scrape_returning())
        await scrape_url("https://www.irs.gov/ein", restaurant_profile)
        await scrape_url("https://www.restaurant.org/", restaurant_profile)

    gov_kwargs = scrape.call_args_list[0].kwargs
    assert gov_kwargs["wait_ms"] == 3000
    assert "Focus on tax forms" in gov_kwargs["extraction_prompt"]
    assert "Restaurant business in San Francisco, California" in gov_kwargs["extraction_prompt"]
    assert gov_kwargs["extraction_schema"]["required"] == ["requirements"]
    assert scrape.call_args_list[1].kwargs["wait_ms"] == 1000


@pytest.mark.asyncio
async def test_scrape_url_uses_text_fallback_when_schema_is_empty(restaurant_profile):
    url = "https://www.irs.gov/941"
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape = AsyncMock(
            return_value=ScrapeResponse(url=url, plain_text=PAYROLL_PAGE, structured_json={"requirements": []})
        )
        result, used_fallback = await scrape_url(url, restaurant_profile)

    assert used_fallback
    assert result.success
    assert any(r.form_number == "941" for r in result.requirements)
    assert all(r.source_type == "federal" for r in result.requirements)


@pytest.mark.asyncio
async def test_scrape_url_rate_limited_retries_once_with_reduced_request(restaurant_profile):
    url = "https://www.irs.gov/941"
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        scrape = MockClient.return_value.scrape = AsyncMock(
            side_effect=[None, ScrapeResponse(url=url, plain_text=PAYROLL_PAGE)]
        )
        result, used_fallback = await scrape_url(url, restaurant_profile, cooldown=0)

    assert scrape.await_count == 2
    assert scrape.call_args_list[1] == call(url, wait_ms=2000, max_retries=0)
    assert used_fallback
    assert result.markdown == PAYROLL_PAGE
    assert result.requirements


@pytest.mark.asyncio
async def test_scrape_url_gives_up_when_reduced_retry_is_rate_limited(restaurant_profile):
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape = AsyncMock(return_value=None)
        with pytest.raises(ScrapeError):
            await scrape_url("https://www.irs.gov/941", restaurant_profile, cooldown=0)


@pytest.mark.asyncio
async def test_one_failure_does_not_cancel_siblings(restaurant_profile, sink):
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape = AsyncMock(
            side_effect=scrape_returning({URLS[2]: asyncio.TimeoutError()})
        )
        results = await scrape_all(URLS, restaurant_profile, ProgressTracker(sink), chunk_delay=0, use_batch=False)

    assert [r.url for r in results] == URLS
    assert [r.success for r in results] == [True, True, False, True, True]
    assert results[2].error == "TimeoutError"
    assert results[2].requirements == []
    assert len(sink.of_type("site-failed")) == 1
    assert len(sink.of_type("site-complete")) == 4
    assert max(e.progress for e in sink.events if e.progress is not None) == 90


@pytest.mark.asyncio
async def test_chunks_keep_input_order_and_classified_categories(restaurant_profile):
    targets = [
        ClassifiedUrl(url, url, "state", "state") if i % 2 else url
        for i, url in enumerate(URLS)
    ]

    async def slow_first(url, **kwargs):
        # Later URLs in a chunk finish first
        await asyncio.sleep(0.01 * (5 - URLS.index(url)))
        return structured(url, "Business license")

    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape = AsyncMock(side_effect=slow_first)
        results = await scrape_all(targets, restaurant_profile, chunk_size=2, chunk_delay=0, use_batch=False)

    assert [r.url for r in results] == URLS
    assert [r.requirements[0].source_type for r in results] == ["city", "state", "city", "state", "city"]


@pytest.mark.asyncio
async def test_each_chunk_settles_before_the_next_starts(restaurant_profile):
    real_sleep = asyncio.sleep
    timeline = []

    async def recorded(url, **kwargs):
        timeline.append(("start", url))
        await real_sleep(0.01 * (5 - URLS.index(url)))
        timeline.append(("end", url))
        return structured(url, "Business license")

    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient, \
            patch("compliance_scout.scraper.asyncio.sleep", new_callable=AsyncMock) as pause:
        MockClient.return_value.scrape = AsyncMock(side_effect=recorded)
        results = await scrape_all(URLS, restaurant_profile, chunk_size=2, chunk_delay=1.5, use_batch=False)

    assert all(r.success for r in results)
    chunks = [URLS[0:2], URLS[2:4], URLS[4:]]
    for previous, following in zip(chunks, chunks[1:]):
        last_end = max(timeline.index(("end", url)) for url in previous)
        first_start = min(timeline.index(("start", url)) for url in following)
        assert last_end < first_start
    assert pause.await_args_list == [call(1.5), call(1.5)]


@pytest.mark.asyncio
async def test_authentication_errors_abort_scraping(restaurant_profile):
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape = AsyncMock(
            side_effect=scrape_returning({URLS[1]: AuthenticationError("bad key", status=401)})
        )
        with pytest.raises(AuthenticationError):
            await scrape_all(URLS, restaurant_profile, chunk_delay=0, use_batch=False)


@pytest.mark.asyncio
async def test_batch_failure_switches_to_individual_scrapes_for_the_run(restaurant_profile):
    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        scrape_many = MockClient.return_value.scrape_many = AsyncMock(side_effect=ProviderError("batch job failed"))
        scrape = MockClient.return_value.scrape = AsyncMock(side_effect=scrape_returning())
        results = await scrape_all(URLS[:4], restaurant_profile, chunk_size=2, chunk_delay=0, use_batch=True)

    assert scrape_many.await_count == 1
    assert scrape.await_count == 4
    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_batch_scrape_marks_missing_pages_failed(restaurant_profile, sink):
    async def scrape_many(urls, **kwargs):
        return [structured(urls[0], "Seller's permit"), ScrapeResponse(url=urls[1], success=False)]

    with patch("compliance_scout.scraper.FirecrawlClient") as MockClient:
        MockClient.return_value.scrape_many = AsyncMock(side_effect=scrape_many)
        results = await scrape_all(
            URLS[:2], restaurant_profile, ProgressTracker(sink), chunk_delay=0, use_batch=True
        )

    assert [r.success for r in results] == [True, False]
    assert results[0].requirements[0].name == "Seller's permit"
    assert sink.types.count("site-failed") == 1

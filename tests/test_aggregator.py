import json

import pytest
from unittest.mock import AsyncMock, patch

from compliance_scout.aggregator import aggregate, dedupe_key, deduplicate_by_key, deduplicate_with_ai
from compliance_scout.errors import AuthenticationError
from compliance_scout.events import ProgressTracker
from compliance_scout.models import BatchScrapeResult


def test_dedupe_key_prefers_form_number_and_scopes_by_jurisdiction(req):
    assert dedupe_key(req("Quarterly return", form_number="941")) == "federal|form:941"
    assert dedupe_key(req("Seller's Permit", "state", source="CDTFA")) == "state|cdtfa:seller's permit"


def test_first_occurrence_wins_and_later_duplicates_backfill(req):
    first = req("Form 941", form_number="941", deadline="April 30")
    second = req("Employer's Quarterly Federal Tax Return", form_number="941",
                 deadline="July 31", penalty="Up to 15%", citation="26 CFR 31.6011(a)-1")

    (merged,) = deduplicate_by_key([first, second])

    assert merged.name == "Form 941"
    assert merged.deadline == "April 30"
    assert merged.penalty == "Up to 15%"
    assert merged.citation == "26 CFR 31.6011(a)-1"
    # inputs untouched
    assert first.penalty is None
    assert merged is not first
    assert merged.metadata is not first.metadata


def test_deduplicate_by_key_is_idempotent_and_keeps_jurisdictions_apart(req):
    records = [
        req("Business license", "city", source="City Clerk"),
        req("Business license", "state", source="City Clerk"),
        req("business LICENSE", "city", source="city clerk", penalty="Fines"),
        req("Form I-9", form_number="I-9"),
    ]
    once = deduplicate_by_key(records)
    twice = deduplicate_by_key(once)

    assert [(r.name, r.source_type) for r in once] == [
        ("Business license", "city"),
        ("Business license", "state"),
        ("Form I-9", "federal"),
    ]
    assert once[0].penalty == "Fines"
    assert [(r.name, r.source_type, r.penalty) for r in twice] == [
        (r.name, r.source_type, r.penalty) for r in once
    ]


@pytest.mark.asyncio
async def test_ai_merge_uses_indices_and_keeps_jurisdiction(req, restaurant_profile):
    state = [
        req("Seller's Permit", "state", source="CDTFA"),
        req("Sales Tax Permit", "state", source="CDTFA", deadline="Before first sale", citation="Cal. Rev. & Tax. Code 6066"),
        req("Mining permit", "state", source="Dept. of Conservation"),
    ]
    federal = [req("EIN", form_number="SS-4")]
    reply = json.dumps({"requirements": [
        {"index": 0, "mergedIndices": [1], "priority": "essential", "applicability": "Sells taxable food"},
    ]})

    with patch("compliance_scout.aggregator.OpenAIClient") as MockClient:
        complete = MockClient.return_value.complete = AsyncMock(return_value=reply)
        result = await deduplicate_with_ai(state + federal, restaurant_profile)

    # single-record groups never reach the LLM
    assert complete.await_count == 1
    assert "RAW STATE REQUIREMENTS (3 total)" in complete.await_args.args[0]

    merged = result[0]
    assert merged.name == "Seller's Permit"
    assert merged.source_type == "state"
    assert merged.deadline == "Before first sale"
    assert merged.citation == "Cal. Rev. & Tax. Code 6066"
    assert merged.metadata["merged_from"] == ["Sales Tax Permit"]
    assert merged.metadata["priority"] == "essential"
    assert [r.name for r in result] == ["Seller's Permit", "EIN"]
    assert state[0].deadline is None


@pytest.mark.asyncio
async def test_unusable_answers_fall_back_per_group(req, restaurant_profile):
    records = [
        req("A", "state", source="CDTFA"),
        req("B", "state", source="EDD"),
        req("C", "city", source="City Clerk"),
        req("D", "city", source="Fire Dept"),
    ]
    replies = ['{"requirements": []}', "Sorry, I can't do that."]

    with patch("compliance_scout.aggregator.OpenAIClient") as MockClient:
        MockClient.return_value.complete = AsyncMock(side_effect=replies)
        result = await deduplicate_with_ai(records, restaurant_profile)

    assert [r.name for r in result] == ["A", "B", "C", "D"]
    assert {r.source_type for r in result} == {"state", "city"}


@pytest.mark.asyncio
async def test_aggregate_emits_events_and_skips_failed_results(req, restaurant_profile, sink):
    results = [
        BatchScrapeResult(url="https://www.irs.gov/a", success=True, requirements=[req("EIN"), req("EIN")]),
        BatchScrapeResult(url="https://www.irs.gov/b", success=False, requirements=[req("Ghost")], error="boom"),
        BatchScrapeResult(url="https://sf.gov/c", success=True, requirements=[req("Business license", "city")]),
    ]
    with patch("compliance_scout.aggregator.OpenAIClient") as MockClient:
        complete = MockClient.return_value.complete = AsyncMock()
        final = await aggregate(results, restaurant_profile, ProgressTracker(sink))

    complete.assert_not_awaited()
    assert [r.name for r in final] == ["EIN", "Business license"]
    assert sink.types == ["aggregation-complete", "ai-deduplication-complete"]
    assert sink.events[0].total_found == 3
    assert sink.events[0].after_dedup == 2
    assert sink.events[1].duplicates_removed == 0


@pytest.mark.asyncio
async def test_aggregate_keeps_stage_one_when_ai_stage_fails(req, restaurant_profile, sink):
    results = [BatchScrapeResult(url="u", success=True, requirements=[req("EIN"), req("W-2")])]
    with patch("compliance_scout.aggregator.deduplicate_with_ai", AsyncMock(side_effect=RuntimeError("model down"))):
        final = await aggregate(results, restaurant_profile, ProgressTracker(sink))

    assert [r.name for r in final] == ["EIN", "W-2"]
    assert sink.types == ["aggregation-complete", "ai-deduplication-failed"]
    assert sink.events[-1].error == "model down"


@pytest.mark.asyncio
async def test_aggregate_propagates_authentication_errors(req, restaurant_profile):
    results = [BatchScrapeResult(url="u", success=True, requirements=[req("EIN"), req("W-2")])]
    with patch("compliance_scout.aggregator.OpenAIClient") as MockClient:
        MockClient.return_value.complete = AsyncMock(side_effect=AuthenticationError("bad key", status=401))
        with pytest.raises(AuthenticationError):
            await aggregate(results, restaurant_profile)


@pytest.mark.asyncio
async def test_aggregate_empty_input_skips_ai(restaurant_profile, sink):
    with patch("compliance_scout.aggregator.OpenAIClient") as MockClient:
        assert await aggregate([], restaurant_profile, ProgressTracker(sink)) == []
        MockClient.assert_not_called()
    assert sink.types == ["aggregation-complete"]

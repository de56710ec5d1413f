import pytest
from unittest.mock import AsyncMock, MagicMock

from compliance_scout.errors import AuthenticationError, ProviderError
from compliance_scout.llm_json import complete_or_none, extract_json, parse_or_fallback


def test_extract_json_handles_fences_and_surrounding_prose():
    assert extract_json('```json\n[{"index": 0}]\n```') == [{"index": 0}]
    assert extract_json('Sure! Here you go: [1, 2, 3] Let me know.') == [1, 2, 3]
    assert extract_json('Result: {"requirements": []} done', shape=dict) == {"requirements": []}


def test_extract_json_rejects_garbage_and_wrong_shape():
    assert extract_json(None) is None
    assert extract_json("I could not classify these URLs.") is None
    assert extract_json('{"a": 1}', shape=list) is None
    assert extract_json("[1, 2", shape=list) is None


def test_parse_or_fallback_uses_fallback_when_build_fails():
    def build(parsed):
        return [item["index"] for item in parsed]

    assert parse_or_fallback('[{"index": 3}]', build, lambda: ["fallback"]) == [3]
    assert parse_or_fallback('[{"idx": 3}]', build, lambda: ["fallback"]) == ["fallback"]
    assert parse_or_fallback("not json", build, lambda: ["fallback"]) == ["fallback"]
    assert parse_or_fallback(None, build, lambda: ["fallback"]) == ["fallback"]


@pytest.mark.asyncio
async def test_complete_or_none_swallows_provider_errors_but_not_auth():
    client = MagicMock()
    client.complete = AsyncMock(side_effect=ProviderError("server error", status=500))
    assert await complete_or_none(client, "prompt") is None

    client.complete = AsyncMock(side_effect=AuthenticationError("bad key", status=401))
    with pytest.raises(AuthenticationError):
        await complete_or_none(client, "prompt")

    client.complete = AsyncMock(return_value="[]")
    assert await complete_or_none(client, "prompt") == "[]"

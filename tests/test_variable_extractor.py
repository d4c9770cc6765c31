import pytest

from voice_relay.domain.extraction.variable_extractor import VariableExtractor, parse_extraction
from voice_relay.domain.models.workflow import ExtractionPlan

from conftest import FakeCompletionClient

PLAN = ExtractionPlan(output=["name", "date"])


@pytest.mark.asyncio
async def test_extracts_declared_fields():
    client = FakeCompletionClient(completion='{"name": "Sam", "date": "July 3"}')
    extractor = VariableExtractor(client, model="test-model")

    result = await extractor.extract_variables("My name is Sam, the date is July 3", PLAN)

    assert result == {"name": "Sam", "date": "July 3"}
    system_prompt = client.complete_calls[0][0]["content"]
    assert "- name" in system_prompt and "- date" in system_prompt
    assert client.complete_calls[0][1] == {"role": "user", "content": "My name is Sam, the date is July 3"}


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    "Sure! The name is Sam.",
    '["Sam", "July 3"]',
    '{"name": "Sam",',
    "",
])
async def test_malformed_output_yields_empty_mapping(raw):
    extractor = VariableExtractor(FakeCompletionClient(completion=raw), model="test-model")
    assert await extractor.extract_variables("My name is Sam", PLAN) == {}


@pytest.mark.asyncio
async def test_upstream_failure_yields_empty_mapping():
    extractor = VariableExtractor(FakeCompletionClient(completion=RuntimeError("down")), model="test-model")
    assert await extractor.extract_variables("My name is Sam", PLAN) == {}


@pytest.mark.asyncio
async def test_no_plan_skips_the_model():
    client = FakeCompletionClient()
    extractor = VariableExtractor(client, model="test-model")

    assert await extractor.extract_variables("hello", None) == {}
    assert await extractor.extract_variables("hello", ExtractionPlan()) == {}
    assert client.complete_calls == []


def test_parse_drops_unplanned_null_and_blank_values():
    raw = '```json\n{"name": " Sam ", "date": null, "email": "x@y.z"}\n```'
    assert parse_extraction(raw, PLAN) == {"name": "Sam"}
    assert parse_extraction('{"name": ""}', PLAN) == {}

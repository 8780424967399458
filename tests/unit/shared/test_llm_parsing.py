"""
Tests for JSON extraction from generated text and the request_json boundary.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from learncore.shared.exceptions import AIResponseParseError
from learncore.shared.llm import extract_json_object, request_json
from learncore.shared.result import FallbackReason


def test_extracts_first_object_from_prose():
    """Test that surrounding prose and markdown fences are ignored."""
    text = 'Here is the analysis:\n```json\n{"visual_score": 70, "auditory_score": 20}\n```\nThanks'

    assert extract_json_object(text) == {"visual_score": 70, "auditory_score": 20}


def test_braces_inside_strings_do_not_break_nesting():
    text = '{"reason": "uses {curly} braces and \\"quotes\\"", "nested": {"a": 1}} trailing }'

    parsed = extract_json_object(text)

    assert parsed["reason"] == 'uses {curly} braces and "quotes"'
    assert parsed["nested"] == {"a": 1}


def test_only_first_balanced_block_is_used():
    parsed = extract_json_object('{"first": 1} and {"second": 2}')
    assert parsed == {"first": 1}


@pytest.mark.parametrize("text", [
    "",
    "no json here",
    '{"unterminated": 1',
    "{not: valid json}",
])
def test_unusable_text_raises_parse_error(text):
    with pytest.raises(AIResponseParseError):
        extract_json_object(text)


@pytest.mark.asyncio
async def test_request_json_without_generator():
    """Test that a missing collaborator is reported, not raised."""
    result = await request_json(None, "prompt")

    assert not result.is_ok
    assert result.reason == FallbackReason.UNAVAILABLE


@pytest.mark.asyncio
async def test_request_json_generator_error():
    generator = AsyncMock()
    generator.generate.side_effect = RuntimeError("quota exceeded")

    result = await request_json(generator, "prompt")

    assert result.reason == FallbackReason.UNAVAILABLE
    assert "quota exceeded" in result.detail


@pytest.mark.asyncio
async def test_request_json_timeout():
    """Test that a slow collaborator is abandoned after the timeout."""

    class SlowGenerator:
        async def generate(self, prompt):
            await asyncio.sleep(5)
            return "{}"

    result = await request_json(SlowGenerator(), "prompt", timeout=0.01)

    assert result.reason == FallbackReason.TIMEOUT


@pytest.mark.asyncio
async def test_request_json_unparsable_reply(mock_generator):
    mock_generator.set_response("I think the student is mostly visual.")

    result = await request_json(mock_generator, "prompt")

    assert result.reason == FallbackReason.UNPARSABLE


@pytest.mark.asyncio
async def test_request_json_missing_keys(mock_generator):
    mock_generator.set_response({"visual_score": 10})

    result = await request_json(mock_generator, "prompt", required_keys=("visual_score", "auditory_score"))

    assert result.reason == FallbackReason.INVALID_PAYLOAD
    assert "auditory_score" in result.detail


@pytest.mark.asyncio
async def test_request_json_success(mock_generator):
    mock_generator.set_response('Sure! {"visual_score": 10, "auditory_score": 20}')

    result = await request_json(mock_generator, "prompt", required_keys=("visual_score",))

    assert result.is_ok
    assert result.value == {"visual_score": 10, "auditory_score": 20}
    mock_generator.generate.assert_awaited_once_with("prompt")

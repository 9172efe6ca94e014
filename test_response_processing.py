#!/usr/bin/env python3
"""
Tests for non-streaming response translation (OpenRouter → Anthropic).
"""

import asyncio

from cache_control import CacheControlMetadata
from pricing import PricingRateCache
from response_processor import openai_response_to_anthropic_message

MODEL = "anthropic/claude-sonnet-4.5"


def seeded_cache() -> PricingRateCache:
    cache = PricingRateCache(url="http://pricing.invalid/models")
    cache.load({MODEL: {"prompt": "0.000001", "completion": "0.000002"}})
    return cache


def translate(message: dict, finish_reason="stop", usage=None, cache_metadata=None):
    response = {
        "id": "gen-1",
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "cost": 0.00002},
    }
    return asyncio.run(openai_response_to_anthropic_message(response, MODEL, cache_metadata, seeded_cache()))


def test_text_response():
    result = translate({"role": "assistant", "content": "Hello!"})
    message = result.message

    assert message["type"] == "message"
    assert message["role"] == "assistant"
    assert message["id"].startswith("msg_")
    assert message["model"] == MODEL
    assert message["content"] == [{"type": "text", "text": "Hello!"}]
    assert message["stop_reason"] == "end_turn"
    assert message["stop_sequence"] is None
    assert message["usage"] == result.billing.usage
    print("✓ text_response passed")


def test_tool_calls_map_to_tool_use():
    result = translate(
        {
            "role": "assistant",
            "content": "Let me check.",
            "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}},
                {"type": "function", "function": {"name": "broken", "arguments": "{not json"}},
            ],
        },
        finish_reason="tool_calls",
    )
    content = result.message["content"]

    assert content[0] == {"type": "text", "text": "Let me check."}
    assert content[1] == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"}}
    assert content[2]["name"] == "broken"
    assert content[2]["input"] == {}
    assert content[2]["id"].startswith("toolu_")
    assert result.message["stop_reason"] == "tool_use"
    print("✓ tool_calls_map_to_tool_use passed")


def test_length_finish_reason_still_ends_turn():
    result = translate({"role": "assistant", "content": "cut"}, finish_reason="length")

    assert result.message["stop_reason"] == "end_turn"


def test_reasoning_details_become_thinking_blocks():
    result = translate({
        "role": "assistant",
        "content": "42",
        "reasoning": "ignored because details exist",
        "reasoning_details": [
            {"type": "reasoning.text", "text": "step one", "signature": "sig-1"},
            {"type": "reasoning.encrypted", "data": "opaque=="},
        ],
    })
    content = result.message["content"]

    assert content[0] == {"type": "thinking", "thinking": "step one", "signature": "sig-1"}
    assert content[1] == {"type": "redacted_thinking", "data": "opaque=="}
    assert content[2] == {"type": "text", "text": "42"}


def test_plain_reasoning_string_fallback():
    result = translate({"role": "assistant", "content": "ok", "reasoning": "thinking aloud"})

    assert result.message["content"][0] == {"type": "thinking", "thinking": "thinking aloud"}


def test_annotations_become_web_search_result_first():
    result = translate({
        "role": "assistant",
        "content": "Per the docs...",
        "annotations": [
            {"type": "url_citation", "url_citation": {"url": "https://a.example", "title": "A"}},
            {"type": "url_citation", "url": "https://b.example", "title": "B"},
        ],
    })
    content = result.message["content"]

    assert content[0]["type"] == "server_tool_use"
    assert content[0]["name"] == "web_search"
    assert content[0]["input"] == {"query": ""}
    assert content[1]["type"] == "web_search_tool_result"
    assert content[1]["tool_use_id"] == content[0]["id"]
    assert content[1]["content"] == [
        {"type": "web_search_result", "url": "https://a.example", "title": "A"},
        {"type": "web_search_result", "url": "https://b.example", "title": "B"},
    ]
    assert content[2]["type"] == "text"
    print("✓ annotations_become_web_search_result_first passed")


def test_usage_carries_inferred_cache_writes():
    result = translate(
        {"role": "assistant", "content": "hi"},
        usage={"prompt_tokens": 500, "completion_tokens": 200, "prompt_tokens_details": {"cached_tokens": 0}, "cost": 0.00102},
        cache_metadata=CacheControlMetadata(ttl_mode="ephemeral_1h"),
    )

    assert result.message["usage"]["cache_creation_input_tokens"] == 60
    assert result.billing.estimation["source"] == "inferred"


def test_empty_choices_are_tolerated():
    response = {"choices": [], "usage": {}}
    result = asyncio.run(openai_response_to_anthropic_message(response, MODEL, None, seeded_cache()))

    assert result.message["content"] == []
    assert result.message["stop_reason"] == "end_turn"


def test_non_object_completion_is_tolerated():
    for response in ([], "oops", {"choices": {"0": {"message": {"content": "x"}}}}, {"choices": [{"message": "x"}]}):
        result = asyncio.run(openai_response_to_anthropic_message(response, MODEL, None, seeded_cache()))

        assert result.message["content"] == []
        assert result.message["stop_reason"] == "end_turn"
        assert result.message["usage"]["input_tokens"] == 0


def test_opaque_reasoning_data_without_text_is_redacted():
    result = translate({
        "role": "assistant",
        "content": "ok",
        "reasoning_details": [{"type": "reasoning.summary", "data": "blob"}],
    })

    assert result.message["content"][0] == {"type": "redacted_thinking", "data": "blob"}

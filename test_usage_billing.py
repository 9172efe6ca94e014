#!/usr/bin/env python3
"""
Tests for usage reconciliation and cache-write inference.

Rates used throughout: prompt $1/M tokens, completion $2/M tokens, so cache
reads cost $0.1/M, 5m writes $1.25/M and 1h writes $2/M.
"""

import asyncio

import pytest

from cache_control import CacheControlMetadata, TTL_MODE_1H, TTL_MODE_MIXED
from pricing import PricingRateCache
from usage_billing import (
    SOURCE_INFERRED,
    SOURCE_UNAVAILABLE,
    SOURCE_UPSTREAM_DETAILED,
    SOURCE_UPSTREAM_SIMPLE,
    compute_usage_metrics,
    normalize_tokens,
    round_currency,
    round_half_up,
)

MODEL = "anthropic/claude-sonnet-4.5"


def seeded_cache(table=None) -> PricingRateCache:
    cache = PricingRateCache(url="http://pricing.invalid/models")
    if table is None:
        table = {MODEL: {"prompt": "0.000001", "completion": "0.000002"}}
    cache.load(table)
    return cache


def compute(usage, ttl_mode=None, cache=None):
    metadata = CacheControlMetadata(ttl_mode=ttl_mode) if ttl_mode else None
    return asyncio.run(compute_usage_metrics(usage, MODEL, metadata, cache or seeded_cache()))


def openrouter_usage(prompt, completion, cached, cost=None, **extra) -> dict:
    usage = {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "prompt_tokens_details": {"cached_tokens": cached},
    }
    if cost is not None:
        usage["cost"] = cost
    usage.update(extra)
    return usage


def test_round_currency_and_token_normalization():
    assert round_currency(0.0001250000001) == 0.000125
    assert round_currency(-0.0000000001) == 0.0
    assert round_currency(float("nan")) == 0.0
    assert normalize_tokens(None) == 0
    assert normalize_tokens(-3) == 0
    assert normalize_tokens("12") == 12
    assert normalize_tokens(float("inf")) == 0
    assert normalize_tokens(2.5) == 3
    assert normalize_tokens(3.5) == 4
    assert round_half_up(0.5) == 1
    assert round_half_up(-2.5) == -2


def test_infer_5m_cache_writes_from_residual_cost():
    """Residual cost after input/output/read legs is explained by 5m writes."""
    result = compute(openrouter_usage(1000, 400, 200, cost=0.001745))

    assert result.usage["input_tokens"] == 800
    assert result.usage["output_tokens"] == 400
    assert result.usage["cache_read_input_tokens"] == 200
    assert result.usage["cache_creation_input_tokens"] == 100
    assert result.usage["cache_creation"] == {"ephemeral_5m_input_tokens": 100, "ephemeral_1h_input_tokens": 0}
    assert result.costs.write == pytest.approx(0.000125)
    assert result.costs.total == pytest.approx(0.001745)
    assert result.costs.residual == pytest.approx(0.0, abs=1e-6)
    assert result.estimation["source"] == SOURCE_INFERRED
    assert result.estimation["inferred"] is True
    assert result.debug["inference"]["notes"] == []
    print("✓ infer_5m_cache_writes_from_residual_cost passed")


def test_infer_1h_cache_writes():
    result = compute(openrouter_usage(500, 200, 0, cost=0.00102), ttl_mode=TTL_MODE_1H)

    assert result.usage["cache_creation_input_tokens"] == 60
    assert result.usage["cache_creation"] == {"ephemeral_5m_input_tokens": 0, "ephemeral_1h_input_tokens": 60}
    assert result.costs.write == pytest.approx(0.00012)
    assert result.debug["inference"]["write_rate_used"] == pytest.approx(2e-6)


def test_negative_residual_is_clamped():
    result = compute(openrouter_usage(100, 50, 0, cost=0.00019))

    assert result.usage["cache_creation_input_tokens"] == 0
    assert "negative_residual_clamped" in result.debug["inference"]["notes"]
    assert result.debug["costs"]["residual_before_clamp"] < 0
    assert result.debug["costs"]["residual_after_clamp"] == 0.0
    assert result.costs.total == pytest.approx(0.00019)
    print("✓ negative_residual_is_clamped passed")


def test_mixed_ttl_uses_5m_rate_and_hides_breakdown():
    result = compute(openrouter_usage(800, 300, 100, cost=0.00141), ttl_mode=TTL_MODE_MIXED)

    assert result.usage["cache_creation_input_tokens"] == 80
    assert result.usage["cache_creation"] is None
    assert "mixed_ttl_ambiguous" in result.debug["inference"]["notes"]
    assert result.costs.write == pytest.approx(0.0001)


def test_upstream_detailed_breakdown_wins():
    usage = openrouter_usage(
        500, 10, 0, cost=1.0,
        cache_creation={"ephemeral_5m_input_tokens": 20, "ephemeral_1h_input_tokens": 30},
        cache_creation_input_tokens=999,
    )

    result = compute(usage)

    assert result.estimation["source"] == SOURCE_UPSTREAM_DETAILED
    assert result.usage["cache_creation_input_tokens"] == 50
    assert result.usage["cache_creation"] == {"ephemeral_5m_input_tokens": 20, "ephemeral_1h_input_tokens": 30}
    assert result.costs.write == pytest.approx(20 * 1.25e-6 + 30 * 2e-6)
    assert result.debug["inference"]["needed"] is False


def test_upstream_simple_count_is_trusted():
    usage = openrouter_usage(300, 120, 20, cost=0.5, cache_creation_input_tokens=40)

    result = compute(usage, ttl_mode=TTL_MODE_1H)

    assert result.estimation["source"] == SOURCE_UPSTREAM_SIMPLE
    assert result.usage["cache_creation_input_tokens"] == 40
    assert result.usage["cache_creation"] is None
    assert result.costs.write == pytest.approx(0.00008)


def test_upstream_simple_count_clamped_to_prompt():
    usage = openrouter_usage(30, 1, 0, cost=0.5, cache_creation_input_tokens=40)

    result = compute(usage)

    assert result.usage["cache_creation_input_tokens"] == 30
    assert "write_tokens_clamped" in result.debug["inference"]["notes"]


def test_inferred_writes_clamped_to_prompt_tokens():
    result = compute(openrouter_usage(10, 0, 0, cost=0.01))

    assert result.usage["cache_creation_input_tokens"] == 10
    assert "write_tokens_clamped" in result.debug["inference"]["notes"]


def test_missing_cost_is_unavailable():
    result = compute(openrouter_usage(100, 10, 0))

    assert result.estimation["source"] == SOURCE_UNAVAILABLE
    assert result.usage["cache_creation_input_tokens"] == 0
    assert "missing_actual_cost" in result.debug["inference"]["notes"]
    assert result.costs.actual is None
    assert result.costs.total == pytest.approx(0.00012)


def test_missing_pricing_is_unavailable():
    result = compute(openrouter_usage(100, 10, 0, cost=0.5), cache=seeded_cache({}))

    assert result.estimation["source"] == SOURCE_UNAVAILABLE
    assert result.pricing["source"] == "missing"
    assert "missing_pricing" in result.debug["inference"]["notes"]
    assert result.usage["cache_creation_input_tokens"] == 0
    assert result.costs.total == pytest.approx(0.5)


def test_reasoning_tokens_only_when_present():
    plain = compute(openrouter_usage(10, 5, 0, cost=0.00002))
    assert "reasoning_tokens" not in plain.usage

    with_reasoning = compute(openrouter_usage(
        10, 5, 0, cost=0.00002, completion_tokens_details={"reasoning_tokens": 7}
    ))
    assert with_reasoning.usage["reasoning_tokens"] == 7


def test_total_matches_actual_cost_whenever_present():
    for cost in (0.0, 0.000001, 0.00141, 2.5):
        result = compute(openrouter_usage(800, 300, 100, cost=cost))
        assert result.estimation["source"] == SOURCE_INFERRED
        assert result.costs.total == pytest.approx(cost, abs=1e-6)
        assert result.usage["cache_creation_input_tokens"] >= 0
        assert result.usage["cache_creation_input_tokens"] <= 800

    cases = [
        (
            SOURCE_UPSTREAM_DETAILED,
            openrouter_usage(500, 10, 0, cost=0.0123, cache_creation={"ephemeral_5m_input_tokens": 20, "ephemeral_1h_input_tokens": 30}),
            seeded_cache(),
        ),
        (SOURCE_UPSTREAM_SIMPLE, openrouter_usage(300, 120, 20, cost=0.5, cache_creation_input_tokens=40), seeded_cache()),
        (SOURCE_UNAVAILABLE, openrouter_usage(100, 10, 0, cost=0.00077), seeded_cache({})),
    ]
    for source, usage, cache in cases:
        result = compute(usage, cache=cache)
        assert result.estimation["source"] == source
        assert result.costs.actual is not None
        assert result.costs.total == pytest.approx(result.costs.actual)
        assert result.costs.total == pytest.approx(usage["cost"], abs=1e-6)


def test_no_usage_at_all():
    result = compute(None)

    assert result.usage["input_tokens"] == 0
    assert result.usage["output_tokens"] == 0
    assert result.estimation["source"] == SOURCE_UNAVAILABLE


def test_debug_payload_shape():
    result = compute(openrouter_usage(1000, 400, 200, cost=0.001745))

    assert set(result.debug) == {"model", "price_version", "price_source", "rates", "usage", "ttl", "costs", "inference", "rounding"}
    assert result.debug["price_source"] == "cache"
    assert result.debug["price_version"] is not None
    assert result.debug["rates"]["cache_read"] == pytest.approx(1e-7)
    assert result.debug["rates"]["cache_write_ephemeral_5m"] == pytest.approx(1.25e-6)
    assert result.debug["rates"]["cache_write_ephemeral_1h"] == pytest.approx(2e-6)
    assert result.debug["ttl"]["mode"] == "ephemeral_5m"
    assert result.debug["rounding"] == {"precision": 1e-6}

"""
Usage and billing reconciliation for OpenRouter responses.

OpenRouter reports an aggregate `cost` and coarse token counts. Anthropic
clients expect input / output / cache-read / cache-write tokens. When upstream
does not report cache writes, they are inferred from the part of the cost that
input, output and cache reads do not explain.

Every clamp lands in `debug.inference.notes`; nothing negative reaches the
client.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from cache_control import (
    CacheControlMetadata,
    DEFAULT_CACHE_METADATA,
    TTL_MODE_1H,
    TTL_MODE_MIXED,
)
from pricing import PricingRateCache, pricing_cache as default_pricing_cache

logger = logging.getLogger(__name__)

PRECISION = 1e-6
CACHE_READ_MULTIPLIER = 0.1
CACHE_WRITE_MULTIPLIER_5M = 1.25
CACHE_WRITE_MULTIPLIER_1H = 2.0

SOURCE_UPSTREAM_DETAILED = "upstream_detailed"
SOURCE_UPSTREAM_SIMPLE = "upstream_simple"
SOURCE_INFERRED = "inferred"
SOURCE_UNAVAILABLE = "unavailable"


@dataclass
class TokenBreakdown:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_creation: int = 0


@dataclass
class CostBreakdown:
    input: float = 0.0
    output: float = 0.0
    read: float = 0.0
    write: float = 0.0
    total: float = 0.0
    residual: float = 0.0
    actual: Optional[float] = None


@dataclass
class BillingResult:
    usage: dict
    tokens: TokenBreakdown
    costs: CostBreakdown
    debug: dict
    estimation: dict = field(default_factory=dict)
    pricing: dict = field(default_factory=dict)


def round_half_up(value: float) -> int:
    """Nearest integer, halves rounded up."""
    return math.floor(value + 0.5)


def round_currency(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    rounded = round_half_up(value / PRECISION) * PRECISION
    # avoid float noise such as 0.00012500000000000001 and negative zero
    rounded = float(f"{rounded:.6f}")
    return 0.0 if rounded == 0 else rounded


def safe_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def normalize_tokens(value: Any) -> int:
    """Non-negative integer token count; None, junk and non-finite values become 0."""
    num = safe_number(value)
    if num is None:
        return 0
    rounded = round_half_up(num)
    return rounded if rounded > 0 else 0


def clamp_write_tokens(write_tokens: int, prompt_tokens: int) -> int:
    if write_tokens < 0:
        return 0
    if write_tokens > prompt_tokens:
        return prompt_tokens
    return write_tokens


def derive_write_rate(ttl_mode: str, prompt_rate: Optional[float]) -> Optional[float]:
    """Cache-write rate for the TTL tier. `mixed` deliberately uses the cheaper 5m tier."""
    if not prompt_rate or prompt_rate <= 0:
        return None
    if ttl_mode == TTL_MODE_1H:
        return prompt_rate * CACHE_WRITE_MULTIPLIER_1H
    return prompt_rate * CACHE_WRITE_MULTIPLIER_5M


def _reasoning_tokens(usage: dict) -> int:
    if usage.get("reasoning_tokens") is not None:
        return normalize_tokens(usage.get("reasoning_tokens"))
    details = usage.get("completion_tokens_details")
    if isinstance(details, dict):
        return normalize_tokens(details.get("reasoning_tokens"))
    return 0


def _has_detailed_breakdown(breakdown: Any) -> bool:
    return isinstance(breakdown, dict) and (
        breakdown.get("ephemeral_5m_input_tokens") is not None
        or breakdown.get("ephemeral_1h_input_tokens") is not None
    )


def _public_breakdown(source: str, ttl_mode: str, write_tokens: int, upstream_breakdown: Any) -> Optional[dict]:
    if source == SOURCE_UPSTREAM_DETAILED:
        return {
            "ephemeral_5m_input_tokens": normalize_tokens(upstream_breakdown.get("ephemeral_5m_input_tokens")),
            "ephemeral_1h_input_tokens": normalize_tokens(upstream_breakdown.get("ephemeral_1h_input_tokens")),
        }
    if source != SOURCE_INFERRED or ttl_mode == TTL_MODE_MIXED:
        return None
    if ttl_mode == TTL_MODE_1H:
        return {"ephemeral_5m_input_tokens": 0, "ephemeral_1h_input_tokens": write_tokens}
    return {"ephemeral_5m_input_tokens": write_tokens, "ephemeral_1h_input_tokens": 0}


async def compute_usage_metrics(
    usage: Optional[dict],
    model: str,
    cache_metadata: Optional[CacheControlMetadata] = None,
    pricing_cache: Optional[PricingRateCache] = None,
) -> BillingResult:
    """
    Reconcile an OpenRouter usage block into Anthropic usage plus a cost breakdown.

    Cache-write tokens come from, in order: an upstream 5m/1h breakdown, an
    upstream scalar `cache_creation_input_tokens`, inference from the residual
    cost, or zero when cost or pricing is unavailable.
    """
    upstream = usage if isinstance(usage, dict) else {}
    cache_metadata = cache_metadata or DEFAULT_CACHE_METADATA
    ttl_mode = cache_metadata.ttl_mode
    pricing_cache = pricing_cache or default_pricing_cache

    prompt_tokens = normalize_tokens(upstream.get("prompt_tokens"))
    completion_tokens = normalize_tokens(upstream.get("completion_tokens"))
    reasoning_tokens = _reasoning_tokens(upstream)
    prompt_details = upstream.get("prompt_tokens_details")
    cache_read_tokens = normalize_tokens(prompt_details.get("cached_tokens") if isinstance(prompt_details, dict) else None)

    input_tokens = max(0, prompt_tokens - cache_read_tokens)
    output_tokens = completion_tokens
    actual_cost = safe_number(upstream.get("cost"))

    pricing, pricing_source = await pricing_cache.resolve(model)
    prompt_rate = pricing.prompt if pricing else None
    completion_rate = pricing.completion if pricing else None
    read_rate = prompt_rate * CACHE_READ_MULTIPLIER if prompt_rate else None
    write_rate_5m = prompt_rate * CACHE_WRITE_MULTIPLIER_5M if prompt_rate else None
    write_rate_1h = prompt_rate * CACHE_WRITE_MULTIPLIER_1H if prompt_rate else None

    cost_input_raw = input_tokens * prompt_rate if prompt_rate else None
    cost_output_raw = output_tokens * completion_rate if completion_rate else None
    cost_read_raw = cache_read_tokens * read_rate if read_rate else None
    cost_write_raw = 0.0

    write_tokens = 0
    writes_raw = 0.0
    residual_before_clamp = None
    residual_after_clamp = None
    notes: list[str] = []
    inference_needed = False
    inference_performed = False
    write_rate_used = None

    upstream_breakdown = upstream.get("cache_creation")
    simple_writes = upstream.get("cache_creation_input_tokens")

    if _has_detailed_breakdown(upstream_breakdown):
        source = SOURCE_UPSTREAM_DETAILED
        five = normalize_tokens(upstream_breakdown.get("ephemeral_5m_input_tokens"))
        one = normalize_tokens(upstream_breakdown.get("ephemeral_1h_input_tokens"))
        write_tokens = five + one
        if write_rate_5m:
            cost_write_raw += five * write_rate_5m
        if write_rate_1h:
            cost_write_raw += one * write_rate_1h

    elif simple_writes is not None:
        source = SOURCE_UPSTREAM_SIMPLE
        reported = normalize_tokens(simple_writes)
        write_tokens = clamp_write_tokens(reported, prompt_tokens)
        if write_tokens != reported:
            notes.append("write_tokens_clamped")
        rate = write_rate_1h if ttl_mode == TTL_MODE_1H else write_rate_5m
        if rate:
            write_rate_used = rate
            cost_write_raw = write_tokens * rate

    else:
        inference_needed = True
        source = SOURCE_INFERRED
        legs_known = cost_input_raw is not None and cost_output_raw is not None and cost_read_raw is not None
        if actual_cost is not None and legs_known:
            known_cost = cost_input_raw + cost_output_raw + cost_read_raw
            residual_before_clamp = actual_cost - known_cost
            if residual_before_clamp < 0:
                notes.append("negative_residual_clamped")
            residual_after_clamp = residual_before_clamp if residual_before_clamp > 0 else 0.0

            rate = derive_write_rate(ttl_mode, prompt_rate)
            if rate:
                write_rate_used = rate
                inference_performed = True
                writes_raw = residual_after_clamp / rate
                rounded_writes = round_half_up(writes_raw)
                clamped_writes = clamp_write_tokens(rounded_writes, prompt_tokens)
                if clamped_writes != rounded_writes:
                    notes.append("write_tokens_clamped")
                write_tokens = clamped_writes
                if ttl_mode == TTL_MODE_MIXED:
                    notes.append("mixed_ttl_ambiguous")
                cost_write_raw = write_tokens * rate
            else:
                source = SOURCE_UNAVAILABLE
                notes.append("missing_write_rate")
        else:
            source = SOURCE_UNAVAILABLE
            if actual_cost is None:
                notes.append("missing_actual_cost")
            if not legs_known:
                notes.append("missing_pricing")

    if not math.isfinite(cost_write_raw) or cost_write_raw < 0:
        cost_write_raw = 0.0

    cost_input = round_currency(cost_input_raw) if cost_input_raw is not None else 0.0
    cost_output = round_currency(cost_output_raw) if cost_output_raw is not None else 0.0
    cost_read = round_currency(cost_read_raw) if cost_read_raw is not None else 0.0
    cost_write = round_currency(cost_write_raw)
    legs_total = cost_input + cost_output + cost_read + cost_write

    actual_rounded = round_currency(actual_cost) if actual_cost is not None else None
    if actual_rounded is not None:
        total_cost = actual_rounded
        residual_cost = round_currency(actual_rounded - legs_total)
    else:
        total_cost = round_currency(legs_total)
        residual_cost = 0.0

    usage_result: dict[str, Any] = {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_read_input_tokens": cache_read_tokens,
        "cache_creation_input_tokens": write_tokens,
        "cache_creation": _public_breakdown(source, ttl_mode, write_tokens, upstream_breakdown),
    }
    if reasoning_tokens > 0:
        usage_result["reasoning_tokens"] = reasoning_tokens

    tokens = TokenBreakdown(
        input=input_tokens,
        output=output_tokens,
        cache_read=cache_read_tokens,
        cache_creation=write_tokens,
    )
    costs = CostBreakdown(
        input=cost_input,
        output=cost_output,
        read=cost_read,
        write=cost_write,
        total=total_cost,
        residual=residual_cost,
        actual=actual_rounded,
    )

    debug = {
        "model": model,
        "price_version": pricing_cache.version,
        "price_source": pricing_source,
        "rates": {
            "prompt": prompt_rate,
            "completion": completion_rate,
            "cache_read": read_rate,
            "cache_write_ephemeral_5m": write_rate_5m,
            "cache_write_ephemeral_1h": write_rate_1h,
            "catalog_cache_read": pricing.input_cache_read if pricing else None,
            "catalog_cache_write": pricing.input_cache_write if pricing else None,
        },
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "cache_read_tokens": cache_read_tokens,
            "reasoning_tokens": reasoning_tokens,
            "cache_creation_input_tokens_provided": simple_writes,
            "cache_creation_breakdown_provided": upstream_breakdown,
        },
        "ttl": cache_metadata.to_dict(),
        "costs": {
            "input": cost_input,
            "output": cost_output,
            "read": cost_read,
            "write": cost_write,
            "total": total_cost,
            "actual": actual_rounded,
            "residual": residual_cost,
            "residual_before_clamp": residual_before_clamp,
            "residual_after_clamp": residual_after_clamp,
        },
        "inference": {
            "needed": inference_needed,
            "source": source,
            "performed": inference_performed,
            "notes": notes,
            "write_rate_used": write_rate_used,
            "writes_raw": writes_raw if math.isfinite(writes_raw) else 0.0,
            "writes_rounded": write_tokens,
        },
        "rounding": {"precision": PRECISION},
    }

    if notes:
        logger.debug(f"Billing notes for model={model}: {', '.join(notes)}")

    return BillingResult(
        usage=usage_result,
        tokens=tokens,
        costs=costs,
        debug=debug,
        estimation={
            "inferred": source == SOURCE_INFERRED and inference_performed,
            "source": source,
            "ttl_mode": ttl_mode,
            "notes": notes,
        },
        pricing={"source": pricing_source, "timestamp": pricing_cache.timestamp},
    )

"""
OpenRouter model pricing cache.

Holds the per-model price table from the OpenRouter catalog. Reads are served
synchronously from memory; a stale or missing table is refreshed with a single
blocking fetch. A refresh swaps the whole table in one assignment, so readers
never see a half-built table.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

import config

logger = logging.getLogger(__name__)

PRICING_SOURCE_CACHE = "cache"
PRICING_SOURCE_NETWORK = "network"
PRICING_SOURCE_MISSING = "missing"


def parse_rate(value: Any) -> Optional[float]:
    """Parse a decimal-string rate. Missing, invalid or non-positive → None (unknown)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate <= 0:
        return None
    return rate


@dataclass(frozen=True)
class ModelPricing:
    """Per-token USD rates for one model."""

    prompt: Optional[float] = None
    completion: Optional[float] = None
    input_cache_read: Optional[float] = None
    input_cache_write: Optional[float] = None

    @classmethod
    def from_catalog(cls, pricing: dict) -> "ModelPricing":
        return cls(
            prompt=parse_rate(pricing.get("prompt")),
            completion=parse_rate(pricing.get("completion")),
            input_cache_read=parse_rate(pricing.get("input_cache_read")),
            input_cache_write=parse_rate(pricing.get("input_cache_write")),
        )


class PricingRateCache:
    """
    Process-wide price table with a fixed expiry window.

    Concurrent refreshes after a miss are allowed to race; the last completed
    fetch wins and every fetch yields a complete table.
    """

    def __init__(
        self,
        url: str = config.PRICING_URL,
        ttl_seconds: float = config.PRICING_CACHE_TTL_S,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.transport = transport
        # (table, timestamp) replaced as one tuple
        self._snapshot: Optional[tuple[dict[str, ModelPricing], float]] = None

    @property
    def timestamp(self) -> Optional[float]:
        snapshot = self._snapshot
        return snapshot[1] if snapshot else None

    @property
    def model_count(self) -> int:
        snapshot = self._snapshot
        return len(snapshot[0]) if snapshot else 0

    @property
    def version(self) -> Optional[str]:
        ts = self.timestamp
        if ts is None:
            return None
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

    def is_fresh(self, now: Optional[float] = None) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        now = time.time() if now is None else now
        return (now - snapshot[1]) < self.ttl_seconds

    def get(self, model_id: str, now: Optional[float] = None) -> Optional[ModelPricing]:
        """Return pricing from a fresh table, or None on miss/expiry."""
        snapshot = self._snapshot
        if snapshot is None or not self.is_fresh(now):
            return None
        return snapshot[0].get(model_id)

    def load(self, table: dict, timestamp: Optional[float] = None) -> None:
        """Replace the table. Values may be ModelPricing or raw catalog pricing dicts."""
        parsed: dict[str, ModelPricing] = {}
        for model_id, pricing in table.items():
            if isinstance(pricing, ModelPricing):
                parsed[model_id] = pricing
            elif isinstance(pricing, dict):
                parsed[model_id] = ModelPricing.from_catalog(pricing)
        self._snapshot = (parsed, time.time() if timestamp is None else timestamp)

    def clear(self) -> None:
        self._snapshot = None

    async def refresh(self, now: Optional[float] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Fetch the catalog and swap in a new table.

        Failures are logged and leave the previous table in place; no retries.
        """
        fetched_at = time.time() if now is None else now
        try:
            if client is None:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as owned_client:
                    response = await owned_client.get(self.url)
            else:
                response = await client.get(self.url, timeout=self.timeout)
            if response.status_code != 200:
                logger.warning(f"Pricing fetch failed with status {response.status_code} | url={self.url}")
                return
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch model pricing: {e}")
            return

        table: dict[str, ModelPricing] = {}
        models = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(models, list):
            for model in models:
                if not isinstance(model, dict):
                    continue
                model_id = model.get("id")
                pricing = model.get("pricing")
                if model_id and isinstance(pricing, dict):
                    table[model_id] = ModelPricing.from_catalog(pricing)

        self._snapshot = (table, fetched_at)
        logger.info(f"Cached pricing for {len(table)} models from {self.url}")

    async def resolve(self, model_id: str, now: Optional[float] = None) -> tuple[Optional[ModelPricing], str]:
        """
        Look up pricing, refreshing first when the table is missing or expired.

        Returns (pricing, source) where source is "cache", "network" or "missing".
        A model absent from a fresh table does not trigger a refetch.
        """
        if self.is_fresh(now):
            pricing = self.get(model_id, now)
            return pricing, PRICING_SOURCE_CACHE if pricing else PRICING_SOURCE_MISSING

        await self.refresh(now)
        pricing = self.get(model_id, now)
        return pricing, PRICING_SOURCE_NETWORK if pricing else PRICING_SOURCE_MISSING


pricing_cache = PricingRateCache()


async def prefetch_model_pricing() -> None:
    """Warm the default cache at startup."""
    await pricing_cache.refresh()

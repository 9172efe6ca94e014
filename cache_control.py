"""
Cache-control classification for inbound Anthropic requests.

Scans the request for `cache_control` markers and works out which prompt-cache
TTL tier the caller asked for. The result feeds cache-write cost inference.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

TTL_MODE_5M = "ephemeral_5m"
TTL_MODE_1H = "ephemeral_1h"
TTL_MODE_MIXED = "mixed"

_ONE_HOUR_ALIASES = frozenset({"1h", "1hr", "3600s", "3600", "60m"})
_FIVE_MINUTE_ALIASES = frozenset({"5m", "5min", "300s", "300"})


@dataclass(frozen=True)
class CacheControlMetadata:
    ttl_mode: str = TTL_MODE_5M
    explicit_ttls: tuple = ()
    saw_ephemeral_without_ttl: bool = False
    saw_cache_control: bool = False
    sources: tuple = ()

    def to_dict(self) -> dict:
        return {
            "mode": self.ttl_mode,
            "explicit": list(self.explicit_ttls),
            "saw_ephemeral_without_ttl": self.saw_ephemeral_without_ttl,
            "saw_cache_control": self.saw_cache_control,
            "sources": list(self.sources),
        }


DEFAULT_CACHE_METADATA = CacheControlMetadata()


def normalize_ttl(ttl: Any) -> Optional[str]:
    """Map a raw `cache_control.ttl` value to "5m", "1h" or None (unrecognised)."""
    if isinstance(ttl, bool):
        return None
    if isinstance(ttl, str):
        normalized = ttl.strip().lower()
        if normalized in _ONE_HOUR_ALIASES:
            return "1h"
        if normalized in _FIVE_MINUTE_ALIASES:
            return "5m"
    elif isinstance(ttl, (int, float)) and math.isfinite(ttl):
        if ttl >= 3600:
            return "1h"
        if ttl > 0:
            return "5m"
    return None


class _MarkerCollector:
    def __init__(self) -> None:
        self.explicit: list[str] = []
        self.sources: list[str] = []
        self.saw_ephemeral_without_ttl = False
        self.saw_cache_control = False

    def record(self, value: Any, origin: str) -> None:
        if not isinstance(value, dict):
            return
        cache_control = value.get("cache_control")
        if not isinstance(cache_control, dict) or cache_control.get("type") != "ephemeral":
            return

        self.saw_cache_control = True
        ttl = normalize_ttl(cache_control.get("ttl"))
        if ttl:
            if ttl not in self.explicit:
                self.explicit.append(ttl)
            self.sources.append(f"{origin}:{ttl}")
        else:
            self.saw_ephemeral_without_ttl = True
            self.sources.append(f"{origin}:default")

    def inspect_content(self, content: Any, origin: str) -> None:
        if isinstance(content, list):
            for idx, part in enumerate(content):
                self.record(part, f"{origin}.content[{idx}]")
        elif isinstance(content, dict):
            self.record(content, f"{origin}.content")


def collect_cache_control_metadata(body: Any) -> CacheControlMetadata:
    """
    Classify the prompt-cache TTL tier requested by an Anthropic request body.

    Both explicit 1h and (explicit 5m or untyped ephemeral) markers → mixed;
    only 1h → ephemeral_1h; everything else, including no markers → ephemeral_5m.
    """
    if not isinstance(body, dict):
        return DEFAULT_CACHE_METADATA

    collector = _MarkerCollector()

    system = body.get("system")
    if isinstance(system, list):
        for idx, item in enumerate(system):
            collector.record(item, f"system[{idx}]")
            if isinstance(item, dict):
                collector.inspect_content(item.get("content"), f"system[{idx}]")
    elif isinstance(system, dict):
        collector.record(system, "system")
        collector.inspect_content(system.get("content"), "system")

    messages = body.get("messages")
    if isinstance(messages, list):
        for msg_idx, message in enumerate(messages):
            collector.record(message, f"messages[{msg_idx}]")
            if isinstance(message, dict):
                collector.inspect_content(message.get("content"), f"messages[{msg_idx}]")

    has_1h = "1h" in collector.explicit
    has_5m = "5m" in collector.explicit
    if has_1h and (has_5m or collector.saw_ephemeral_without_ttl):
        ttl_mode = TTL_MODE_MIXED
    elif has_1h:
        ttl_mode = TTL_MODE_1H
    else:
        ttl_mode = TTL_MODE_5M

    return CacheControlMetadata(
        ttl_mode=ttl_mode,
        explicit_ttls=tuple(collector.explicit),
        saw_ephemeral_without_ttl=collector.saw_ephemeral_without_ttl,
        saw_cache_control=collector.saw_cache_control,
        sources=tuple(collector.sources),
    )

#!/usr/bin/env python3
"""
Tests for prompt-cache TTL classification.
"""

from cache_control import (
    TTL_MODE_1H,
    TTL_MODE_5M,
    TTL_MODE_MIXED,
    collect_cache_control_metadata,
    normalize_ttl,
)


def _marker(ttl=None) -> dict:
    cache_control = {"type": "ephemeral"}
    if ttl is not None:
        cache_control["ttl"] = ttl
    return cache_control


def test_normalize_ttl_aliases():
    for value in ("1h", "1HR", " 3600s ", "3600", "60m", 3600, 7200.0):
        assert normalize_ttl(value) == "1h", value
    for value in ("5m", "5min", "300s", "300", 300, 1, 59.5):
        assert normalize_ttl(value) == "5m", value
    for value in (None, "", "2d", 0, -5, True, float("inf"), {"x": 1}):
        assert normalize_ttl(value) is None, value


def test_no_markers_defaults_to_5m():
    meta = collect_cache_control_metadata({"messages": [{"role": "user", "content": "hi"}]})

    assert meta.ttl_mode == TTL_MODE_5M
    assert meta.saw_cache_control is False
    assert meta.sources == ()


def test_only_1h_markers():
    body = {
        "system": [{"type": "text", "text": "s", "cache_control": _marker("1h")}],
        "messages": [{"role": "user", "content": [{"type": "text", "text": "q", "cache_control": _marker(3600)}]}],
    }

    meta = collect_cache_control_metadata(body)

    assert meta.ttl_mode == TTL_MODE_1H
    assert meta.explicit_ttls == ("1h",)
    assert meta.sources == ("system[0]:1h", "messages[0].content[0]:1h")


def test_1h_plus_untyped_ephemeral_is_mixed():
    body = {
        "system": [{"type": "text", "text": "s", "cache_control": _marker("1h")}],
        "messages": [{"role": "user", "content": [{"type": "text", "text": "q", "cache_control": _marker()}]}],
    }

    meta = collect_cache_control_metadata(body)

    assert meta.ttl_mode == TTL_MODE_MIXED
    assert meta.saw_ephemeral_without_ttl is True
    assert "messages[0].content[0]:default" in meta.sources


def test_1h_plus_explicit_5m_is_mixed():
    body = {
        "messages": [
            {"role": "user", "content": [
                {"type": "text", "text": "a", "cache_control": _marker("5m")},
                {"type": "text", "text": "b", "cache_control": _marker("1h")},
            ]},
        ],
    }

    assert collect_cache_control_metadata(body).ttl_mode == TTL_MODE_MIXED


def test_unrecognised_ttl_counts_as_default():
    body = {"messages": [{"role": "user", "content": [{"type": "text", "text": "a", "cache_control": _marker("forever")}]}]}

    meta = collect_cache_control_metadata(body)

    assert meta.ttl_mode == TTL_MODE_5M
    assert meta.saw_ephemeral_without_ttl is True
    assert meta.saw_cache_control is True


def test_non_ephemeral_markers_are_ignored():
    body = {"messages": [{"role": "user", "content": [{"type": "text", "text": "a", "cache_control": {"type": "persistent", "ttl": "1h"}}]}]}

    meta = collect_cache_control_metadata(body)

    assert meta.saw_cache_control is False
    assert meta.ttl_mode == TTL_MODE_5M


def test_to_dict_shape():
    meta = collect_cache_control_metadata({"system": [{"text": "s", "cache_control": _marker("1h")}]})

    assert meta.to_dict() == {
        "mode": TTL_MODE_1H,
        "explicit": ["1h"],
        "saw_ephemeral_without_ttl": False,
        "saw_cache_control": True,
        "sources": ["system[0]:1h"],
    }


def test_garbage_body():
    assert collect_cache_control_metadata(None).ttl_mode == TTL_MODE_5M
    assert collect_cache_control_metadata({"messages": "nope", "system": 3}).ttl_mode == TTL_MODE_5M

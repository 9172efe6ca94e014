"""
OpenRouter SSE stream → Anthropic SSE stream.

The translation is a small state machine over the kind of content block that
is currently open. Every transition takes the state explicitly and returns the
(event, payload) pairs to emit, so the rules can be exercised without any I/O.

Event order on the wire:
    message_start
    (content_block_start, content_block_delta*, content_block_stop)*
    message_delta
    message_stop
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

import httpx

from cache_control import CacheControlMetadata
from pricing import PricingRateCache
from response_processor import is_redacted_reasoning
from usage_billing import BillingResult, compute_usage_metrics

logger = logging.getLogger(__name__)

Event = tuple[str, dict]


class BlockKind(Enum):
    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


@dataclass
class StreamState:
    kind: BlockKind = BlockKind.NONE
    block_index: int = 0
    current_tool_id: Optional[str] = None
    tool_args: dict[str, str] = field(default_factory=dict)
    annotations_done: bool = False
    usage: Optional[dict] = None


def sse_event(event: str, data: Any) -> bytes:
    """Format a Server-Sent Event frame."""
    if isinstance(data, dict):
        data_str = json.dumps(data, ensure_ascii=False)
    else:
        data_str = str(data)
    return f"event: {event}\ndata: {data_str}\n\n".encode("utf-8")


# ─────────────────────────────────────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────────────────────────────────────

def close_block(state: StreamState) -> list[Event]:
    """Stop the open block (if any) and advance to the next index."""
    if state.kind is BlockKind.NONE:
        return []
    events = [("content_block_stop", {"type": "content_block_stop", "index": state.block_index})]
    state.block_index += 1
    state.kind = BlockKind.NONE
    state.current_tool_id = None
    return events


def open_block(state: StreamState, kind: BlockKind, content_block: dict) -> list[Event]:
    state.kind = kind
    return [("content_block_start", {
        "type": "content_block_start",
        "index": state.block_index,
        "content_block": content_block,
    })]


def _delta(state: StreamState, delta: dict) -> Event:
    return ("content_block_delta", {
        "type": "content_block_delta",
        "index": state.block_index,
        "delta": delta,
    })


def _standalone_block(state: StreamState, content_block: dict) -> list[Event]:
    """A start+stop pair at the current index that never becomes the open block."""
    events = [
        ("content_block_start", {
            "type": "content_block_start",
            "index": state.block_index,
            "content_block": content_block,
        }),
        ("content_block_stop", {"type": "content_block_stop", "index": state.block_index}),
    ]
    state.block_index += 1
    return events


def _ensure_thinking(state: StreamState) -> list[Event]:
    if state.kind is BlockKind.THINKING:
        return []
    events = close_block(state)
    events += open_block(state, BlockKind.THINKING, {"type": "thinking", "thinking": ""})
    return events


def on_reasoning(state: StreamState, delta: dict) -> list[Event]:
    """
    Handle reasoning in a delta.

    `reasoning_details` wins over the flat `reasoning` string when both are
    present. Encrypted entries are emitted as self-contained redacted_thinking
    blocks.
    """
    events: list[Event] = []
    details = delta.get("reasoning_details")

    if isinstance(details, list) and details:
        for detail in details:
            if not isinstance(detail, dict):
                continue
            if is_redacted_reasoning(detail):
                events += close_block(state)
                events += _standalone_block(state, {"type": "redacted_thinking", "data": detail.get("data", "")})
                continue

            text = detail.get("text")
            if text is None:
                text = detail.get("summary")
            signature = detail.get("signature")
            if not text and not signature:
                continue

            events += _ensure_thinking(state)
            if text:
                events.append(_delta(state, {"type": "thinking_delta", "thinking": text}))
            if signature:
                events.append(_delta(state, {"type": "signature_delta", "signature": signature}))
        return events

    reasoning = delta.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        events += _ensure_thinking(state)
        events.append(_delta(state, {"type": "thinking_delta", "thinking": reasoning}))
    return events


def on_content(state: StreamState, text: str) -> list[Event]:
    events: list[Event] = []
    if state.kind is not BlockKind.TEXT:
        events += close_block(state)
        events += open_block(state, BlockKind.TEXT, {"type": "text", "text": ""})
    events.append(_delta(state, {"type": "text_delta", "text": text}))
    return events


def on_tool_calls(state: StreamState, tool_calls: list) -> list[Event]:
    """
    Handle tool-call deltas.

    A new id opens a new tool_use block. Argument fragments are forwarded raw
    and accumulated per id; they are never parsed mid-stream.
    """
    events: list[Event] = []
    if state.kind is BlockKind.THINKING:
        events += close_block(state)

    for tool_call in tool_calls:
        if not isinstance(tool_call, dict):
            continue
        func = tool_call.get("function") or {}
        tool_id = tool_call.get("id")

        if not tool_id and state.kind is not BlockKind.TOOL_USE and func.get("name"):
            tool_id = f"toolu_{uuid.uuid4().hex[:24]}"

        if tool_id and tool_id != state.current_tool_id:
            events += close_block(state)
            events += open_block(state, BlockKind.TOOL_USE, {
                "type": "tool_use",
                "id": tool_id,
                "name": func.get("name", ""),
                "input": {},
            })
            state.current_tool_id = tool_id
            state.tool_args[tool_id] = ""

        arguments = func.get("arguments")
        if arguments and state.kind is BlockKind.TOOL_USE and state.current_tool_id:
            state.tool_args[state.current_tool_id] += arguments
            events.append(_delta(state, {"type": "input_json_delta", "partial_json": arguments}))
        elif arguments:
            logger.debug(f"Dropping tool argument fragment with no open tool call: {arguments[:100]!r}")

    return events


def on_annotations(state: StreamState, annotations: list) -> list[Event]:
    """Emit one web_search_tool_result block per citation, once per stream."""
    if state.annotations_done:
        return []
    state.annotations_done = True

    events = close_block(state)
    for annotation in annotations:
        if not isinstance(annotation, dict):
            continue
        citation = annotation.get("url_citation")
        if not isinstance(citation, dict):
            citation = {}
        events += _standalone_block(state, {
            "type": "web_search_tool_result",
            "tool_use_id": f"srvtoolu_{uuid.uuid4().hex[:24]}",
            "content": [{
                "type": "web_search_result",
                "url": citation.get("url") or annotation.get("url"),
                "title": citation.get("title") or annotation.get("title"),
            }],
        })
    return events


def apply_delta(state: StreamState, delta: dict) -> list[Event]:
    events = on_reasoning(state, delta)
    if delta.get("content"):
        events += on_content(state, delta["content"])
    if delta.get("tool_calls"):
        events += on_tool_calls(state, delta["tool_calls"])
    if delta.get("annotations"):
        events += on_annotations(state, delta["annotations"])
    return events


def finish(state: StreamState, usage: dict) -> list[Event]:
    """Close the open block, then message_delta and message_stop."""
    stop_reason = "tool_use" if state.kind is BlockKind.TOOL_USE else "end_turn"
    events = close_block(state)
    events.append(("message_delta", {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
        "usage": usage,
    }))
    events.append(("message_stop", {"type": "message_stop"}))
    return events


# ─────────────────────────────────────────────────────────────────────────────
# SSE framing
# ─────────────────────────────────────────────────────────────────────────────

def _data_from_line(raw_line: bytes) -> Optional[str]:
    line = raw_line.rstrip(b"\r")
    if not line or line.startswith(b":"):
        return None
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning(f"Skipping undecodable SSE line: {e}")
        return None
    if text.startswith("data: "):
        return text[6:]
    if text.startswith("data:"):
        return text[5:]
    return None


async def iter_sse_data_lines(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[str]:
    """
    Yield the payload of each complete `data:` line, in arrival order.

    Bytes are buffered until a newline arrives, so frames (and multi-byte
    characters) split across chunks are reassembled before decoding. Comments
    and blank lines are skipped. A trailing line without a newline is flushed
    at EOF.
    """
    buffer = b""

    async for chunk in chunks:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        buffer += chunk

        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            data = _data_from_line(line)
            if data is not None:
                yield data

    if buffer:
        data = _data_from_line(buffer)
        if data is not None:
            yield data


# ─────────────────────────────────────────────────────────────────────────────
# Translator
# ─────────────────────────────────────────────────────────────────────────────

class StreamTranslator:
    """
    Translate one upstream stream. Single use.

    After the stream completes, `billing` holds the reconciled usage that was
    sent in message_delta (None if the stream ended with an error frame).
    """

    def __init__(
        self,
        model: str,
        cache_metadata: Optional[CacheControlMetadata] = None,
        pricing_cache: Optional[PricingRateCache] = None,
    ):
        self.model = model
        self.cache_metadata = cache_metadata
        self.pricing_cache = pricing_cache
        self.state = StreamState()
        self.message_id = f"msg_{uuid.uuid4().hex}"
        self.billing: Optional[BillingResult] = None
        self.upstream_error: Optional[dict] = None

    def message_start(self) -> Event:
        return ("message_start", {
            "type": "message_start",
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": self.model,
                "stop_reason": None,
                "stop_sequence": None,
            },
        })

    def _apply_chunk(self, chunk: dict) -> list[Event]:
        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self.state.usage = usage

        choices = chunk.get("choices")
        if not choices or not isinstance(choices[0], dict):
            return []
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return []
        return apply_delta(self.state, delta)

    async def translate(self, upstream_chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[bytes]:
        event, payload = self.message_start()
        yield sse_event(event, payload)

        lines = iter_sse_data_lines(upstream_chunks)
        try:
            async for data_line in lines:
                if data_line.strip() == "[DONE]":
                    break

                try:
                    chunk = json.loads(data_line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Failed to parse SSE data: {data_line[:100]}... Error: {e}")
                    continue
                if not isinstance(chunk, dict):
                    continue

                if chunk.get("error"):
                    error = chunk["error"]
                    message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                    self.upstream_error = {"type": "api_error", "message": message}
                    logger.warning(f"Upstream stream error: {message} | model={self.model}")
                    yield sse_event("error", {"type": "error", "error": self.upstream_error})
                    return

                for event, payload in self._apply_chunk(chunk):
                    yield sse_event(event, payload)
        except (httpx.TransportError, httpx.StreamError) as e:
            logger.warning(f"Upstream stream interrupted, finalizing with usage seen so far: {e}")
        finally:
            await lines.aclose()
            aclose = getattr(upstream_chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        self.billing = await compute_usage_metrics(
            self.state.usage, self.model, self.cache_metadata, self.pricing_cache
        )
        for event, payload in finish(self.state, self.billing.usage):
            yield sse_event(event, payload)


def stream_openai_to_anthropic(
    upstream_chunks: AsyncIterable[Union[bytes, str]],
    model: str,
    cache_metadata: Optional[CacheControlMetadata] = None,
    pricing_cache: Optional[PricingRateCache] = None,
) -> AsyncIterator[bytes]:
    """Translate an upstream OpenRouter byte stream into Anthropic SSE frames."""
    return StreamTranslator(model, cache_metadata, pricing_cache).translate(upstream_chunks)

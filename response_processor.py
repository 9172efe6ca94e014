"""
OpenRouter chat completion → Anthropic message (non-streaming).
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from cache_control import CacheControlMetadata
from pricing import PricingRateCache
from usage_billing import BillingResult, compute_usage_metrics

logger = logging.getLogger(__name__)


@dataclass
class TranslatedResponse:
    message: dict
    billing: BillingResult


def finish_reason_to_anthropic_stop_reason(finish_reason: Optional[str]) -> str:
    """Only `tool_calls` maps to `tool_use`; every other finish reason ends the turn."""
    return "tool_use" if finish_reason == "tool_calls" else "end_turn"


def generate_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def annotation_to_search_result(annotation: Any) -> dict:
    """Flatten an OpenRouter `url_citation` annotation into a web_search_result entry."""
    if not isinstance(annotation, dict):
        annotation = {}
    citation = annotation.get("url_citation")
    if not isinstance(citation, dict):
        citation = {}
    return {
        "type": "web_search_result",
        "url": citation.get("url") or annotation.get("url"),
        "title": citation.get("title") or annotation.get("title"),
    }


def is_redacted_reasoning(detail: dict) -> bool:
    """Encrypted entries, or opaque `data` with no readable text."""
    return detail.get("type") == "reasoning.encrypted" or bool(detail.get("data") and not detail.get("text"))


def reasoning_detail_to_block(detail: Any) -> Optional[dict]:
    """
    Map one OpenRouter reasoning_details entry to an Anthropic thinking block.

    Encrypted entries → redacted_thinking; text/summary entries → thinking.
    """
    if not isinstance(detail, dict):
        return None

    if is_redacted_reasoning(detail):
        return {"type": "redacted_thinking", "data": detail.get("data", "")}

    text = detail.get("text")
    if text is None:
        text = detail.get("summary", "")
    block: dict[str, Any] = {"type": "thinking", "thinking": text or ""}
    if detail.get("signature"):
        block["signature"] = detail["signature"]
    return block


def _build_content(message: dict) -> list:
    content = []

    annotations = message.get("annotations")
    if isinstance(annotations, list) and annotations:
        search_id = f"srvtoolu_{uuid.uuid4().hex[:24]}"
        content.append({
            "type": "server_tool_use",
            "id": search_id,
            "name": "web_search",
            "input": {"query": ""},
        })
        content.append({
            "type": "web_search_tool_result",
            "tool_use_id": search_id,
            "content": [annotation_to_search_result(a) for a in annotations],
        })

    reasoning_details = message.get("reasoning_details")
    if isinstance(reasoning_details, list) and reasoning_details:
        for detail in reasoning_details:
            block = reasoning_detail_to_block(detail)
            if block:
                content.append(block)
    elif isinstance(message.get("reasoning"), str) and message["reasoning"]:
        content.append({"type": "thinking", "thinking": message["reasoning"]})

    if message.get("content"):
        content.append({"type": "text", "text": message["content"]})

    tool_calls = message.get("tool_calls")
    for tc in tool_calls if isinstance(tool_calls, list) else []:
        if not isinstance(tc, dict):
            continue
        func = tc.get("function") if isinstance(tc.get("function"), dict) else {}
        raw_args = func.get("arguments")
        try:
            args = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool call arguments: {raw_args!r}")
            args = {}
        if not isinstance(args, dict):
            args = {}

        content.append({
            "type": "tool_use",
            "id": tc.get("id") or generate_tool_use_id(),
            "name": func.get("name", ""),
            "input": args,
        })

    return content


async def openai_response_to_anthropic_message(
    response: dict,
    model: str,
    cache_metadata: Optional[CacheControlMetadata] = None,
    pricing_cache: Optional[PricingRateCache] = None,
) -> TranslatedResponse:
    """
    Convert an OpenRouter chat completion into an Anthropic message.

    The message `usage` is the reconciled billing usage; the full billing
    result is returned alongside for response headers.
    """
    if not isinstance(response, dict):
        logger.warning(f"Upstream completion is not a JSON object: {type(response).__name__}")
        response = {}

    choices = response.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    message = choice.get("message")
    if not isinstance(message, dict):
        message = {}

    billing = await compute_usage_metrics(response.get("usage"), model, cache_metadata, pricing_cache)

    usage = billing.usage
    if usage["cache_read_input_tokens"] or usage["cache_creation_input_tokens"]:
        logger.info(
            f"Cache usage: read={usage['cache_read_input_tokens']} "
            f"write={usage['cache_creation_input_tokens']} ({billing.estimation['source']}) | "
            f"Model: {model} | Request ID: {response.get('id', 'N/A')}"
        )

    anthropic_message = {
        "id": f"msg_{uuid.uuid4().hex}",
        "type": "message",
        "role": "assistant",
        "content": _build_content(message),
        "model": model,
        "stop_reason": finish_reason_to_anthropic_stop_reason(choice.get("finish_reason")),
        "stop_sequence": None,
        "usage": usage,
    }
    return TranslatedResponse(message=anthropic_message, billing=billing)

"""
Anthropic Messages request → OpenRouter chat-completions request.

All message transformations happen here: role flattening, image mapping,
tool schema conversion, reasoning mapping, tool-call pairing validation and
prompt-cache breakpoint placement.
"""

import copy
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import config
from cache_control import CacheControlMetadata, collect_cache_control_metadata

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

DEFAULT_REASONING_BUDGET = 256
REASONING_ANSWER_MARGIN = 512


class BadRequestError(Exception):
    """The request body is malformed or unsupported (HTTP 400). Never forwarded upstream."""

    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}


@dataclass(frozen=True)
class TranslatedRequest:
    body: dict
    cache_metadata: CacheControlMetadata


def _cache_control_obj() -> dict:
    return {"type": "ephemeral"}


def strip_claude_code_suffixes(model: str) -> str:
    """Strip Claude Code-specific suffixes like `[1m]` from the model string."""
    if not isinstance(model, str):
        return model
    if "[" in model and model.endswith("]"):
        return model[: model.rfind("[")].rstrip()
    return model


def pick_target_model(anthropic_model: str) -> str:
    """Map an incoming Anthropic model name to an OpenRouter model slug.

    Slugs that already contain "/" pass through; opus/sonnet/haiku keywords map
    to the configured TARGET_MODEL_* ids; anything else passes through unchanged.
    """
    model = strip_claude_code_suffixes(anthropic_model or "")
    if "/" in model:
        return model

    model_lower = model.lower()
    if "haiku" in model_lower:
        return config.TARGET_MODEL_SMALL
    if "sonnet" in model_lower:
        return config.TARGET_MODEL_BIG
    if "opus" in model_lower:
        return config.TARGET_MODEL_OPUS
    return model


def supports_cache_breakpoints(target_model: str) -> bool:
    return "claude" in (target_model or "").lower()


def anthropic_image_to_openai_image_url(block: dict) -> dict:
    """
    Convert an Anthropic image block to an OpenAI `image_url` part.

    Raises BadRequestError for anything that cannot be forwarded: there is no
    silent drop.
    """
    source = block.get("source")
    if not isinstance(source, dict) or not source.get("type"):
        raise BadRequestError("Image block is missing source.type")

    source_type = source.get("type")

    if source_type == "url":
        url = source.get("url")
        if not isinstance(url, str) or not url:
            raise BadRequestError("Image source.type=url requires a valid url")
        return {"type": "image_url", "image_url": {"url": url}}

    if source_type == "base64":
        media_type = source.get("media_type")
        if not isinstance(media_type, str) or media_type not in ALLOWED_IMAGE_MEDIA_TYPES:
            raise BadRequestError(
                f"Unsupported image media_type: {media_type}. "
                f"Supported types: {', '.join(ALLOWED_IMAGE_MEDIA_TYPES)}."
            )
        data = source.get("data")
        if not isinstance(data, str) or not data:
            raise BadRequestError("Image source.type=base64 requires a base64 data string")
        return {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{data}"}}

    if source_type == "file":
        raise BadRequestError(
            "Image source.type=file is not supported via OpenRouter /chat/completions. "
            'Please use a publicly accessible URL (source.type="url") or provide base64 data (source.type="base64").'
        )

    raise BadRequestError(f'Unsupported image source type: {source_type}. Use "url" or "base64".')


def _text_part(block: dict) -> dict:
    text = block.get("text", "")
    if not isinstance(text, str):
        text = json.dumps(text, ensure_ascii=False)
    return {"type": "text", "text": text}


def _collapse_parts(parts: list) -> Any:
    """A single text part collapses to a plain string; anything richer stays an array."""
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    if parts:
        return parts
    return None


def _stringify_tool_result(content: Any) -> str:
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


def _convert_assistant_message(content: list) -> Optional[dict]:
    parts = []
    tool_calls = []
    reasoning_details = []

    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append(_text_part(block))
        elif block_type == "image":
            parts.append(anthropic_image_to_openai_image_url(block))
        elif block_type == "tool_use":
            tool_calls.append({
                "id": block.get("id", ""),
                "type": "function",
                "function": {
                    "name": block.get("name", ""),
                    "arguments": json.dumps(block.get("input", {}), ensure_ascii=False),
                },
            })
        elif block_type == "thinking":
            detail = {
                "type": "reasoning.text",
                "text": block.get("thinking", block.get("text", "")),
            }
            if block.get("signature"):
                detail["signature"] = block["signature"]
            reasoning_details.append(detail)
        elif block_type == "redacted_thinking":
            detail = {"type": "reasoning.encrypted"}
            if block.get("data"):
                detail["data"] = block["data"]
            reasoning_details.append(detail)

    message: dict[str, Any] = {"role": "assistant", "content": _collapse_parts(parts)}
    if tool_calls:
        message["tool_calls"] = tool_calls
    if reasoning_details:
        message["reasoning_details"] = reasoning_details

    if message["content"] or tool_calls or reasoning_details:
        return message
    return None


def _convert_user_message(content: list) -> list:
    parts = []
    tool_messages = []

    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append(_text_part(block))
        elif block_type == "image":
            parts.append(anthropic_image_to_openai_image_url(block))
        elif block_type == "tool_result":
            tool_messages.append({
                "role": "tool",
                "tool_call_id": block.get("tool_use_id", ""),
                "content": _stringify_tool_result(block.get("content")),
            })

    result = []
    if parts:
        result.append({"role": "user", "content": _collapse_parts(parts)})
    result.extend(tool_messages)
    return result


def anthropic_messages_to_openai_messages(messages: Any) -> list:
    """
    Flatten Anthropic messages into OpenAI chat messages.

    tool_result blocks become `tool` messages emitted right after the user
    message that carried them.
    """
    if not isinstance(messages, list):
        return []

    openai_messages = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        content = msg.get("content")

        if not isinstance(content, list):
            if isinstance(content, str):
                openai_messages.append({"role": role, "content": content})
            continue

        if role == "assistant":
            assistant_msg = _convert_assistant_message(content)
            if assistant_msg:
                openai_messages.append(assistant_msg)
        elif role == "user":
            openai_messages.extend(_convert_user_message(content))

    return openai_messages


def validate_tool_call_pairing(messages: list) -> list:
    """
    Drop dangling tool references.

    An assistant tool call survives only if a `tool` message with its id follows
    in the run of `tool` messages right after it. A `tool` message survives only
    if the nearest preceding non-tool message is an assistant message calling its id.
    """
    validated = []

    for i, original in enumerate(messages):
        message = dict(original)
        role = message.get("role")

        if role == "assistant" and message.get("tool_calls"):
            following_ids = set()
            j = i + 1
            while j < len(messages) and messages[j].get("role") == "tool":
                following_ids.add(messages[j].get("tool_call_id"))
                j += 1

            kept = [tc for tc in message["tool_calls"] if tc.get("id") in following_ids]
            if len(kept) != len(message["tool_calls"]):
                dropped = [tc.get("id") for tc in message["tool_calls"] if tc.get("id") not in following_ids]
                logger.debug(f"Dropping unmatched tool calls: {dropped}")

            if kept:
                message["tool_calls"] = kept
            else:
                message.pop("tool_calls", None)

            if message.get("content") or message.get("tool_calls"):
                validated.append(message)

        elif role == "tool":
            matched = False
            k = i - 1
            while k >= 0 and messages[k].get("role") == "tool":
                k -= 1
            if k >= 0 and messages[k].get("role") == "assistant":
                matched = any(
                    tc.get("id") == message.get("tool_call_id")
                    for tc in messages[k].get("tool_calls") or []
                )
            if matched:
                validated.append(message)
            else:
                logger.debug(f"Dropping orphan tool message: tool_call_id={message.get('tool_call_id')}")

        else:
            validated.append(message)

    return validated


def build_system_messages(system: Any, target_model: str) -> list:
    """One system message per system item; the last one gets cache breakpoint 1."""
    if isinstance(system, str):
        items = [system] if system else []
    elif isinstance(system, list):
        items = system
    elif isinstance(system, dict):
        items = [system]
    else:
        items = []

    texts = []
    for item in items:
        if isinstance(item, str):
            texts.append(item)
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            texts.append(item["text"])

    add_breakpoint = supports_cache_breakpoints(target_model)
    system_messages = []
    for idx, text in enumerate(texts):
        part: dict[str, Any] = {"type": "text", "text": text}
        if add_breakpoint and idx == len(texts) - 1:
            part["cache_control"] = _cache_control_obj()
        system_messages.append({"role": "system", "content": [part]})
    return system_messages


def inject_conversation_breakpoint(messages: list, target_model: str) -> list:
    """
    Place cache breakpoint 2 on the last text block of the last message.

    Skipped when the last message is a system message (breakpoint 1 covers it)
    or when its last block is not text.
    """
    if not messages or not supports_cache_breakpoints(target_model):
        return messages

    last = messages[-1]
    if last.get("role") == "system":
        return messages

    content = last.get("content")
    if isinstance(content, str) and content:
        last["content"] = [{"type": "text", "text": content, "cache_control": _cache_control_obj()}]
    elif isinstance(content, list) and content:
        last_block = content[-1]
        if isinstance(last_block, dict) and last_block.get("type") == "text":
            last_block["cache_control"] = _cache_control_obj()
    return messages


def tools_anthropic_to_openai(tools: Optional[list]) -> Optional[list]:
    """
    Convert Anthropic tools format to OpenAI tools format.

    Anthropic: {"name": "...", "description": "...", "input_schema": {...}}
    OpenAI: {"type": "function", "function": {"name": "...", "description": "...", "parameters": {...}}}
    """
    if not tools or not isinstance(tools, list):
        return None

    openai_tools = []
    for tool in tools:
        if not isinstance(tool, dict):
            logger.warning(f"Skipping malformed tool definition: {tool!r}")
            continue
        openai_tools.append({
            "type": "function",
            "function": {
                "name": tool.get("name", ""),
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {}),
            },
        })
    return openai_tools or None


def tool_choice_anthropic_to_openai(tool_choice: Optional[Any]) -> Optional[Any]:
    """
    Convert Anthropic tool_choice to OpenAI tool_choice.

    Anthropic: {"type": "auto"}, {"type": "any"}, {"type": "tool", "name": "..."}, {"type": "none"}
    OpenAI: "auto", {"type": "function", "function": {"name": "..."}}, "none"
    """
    if tool_choice is None:
        return None

    if isinstance(tool_choice, dict):
        choice_type = tool_choice.get("type")
        if choice_type == "auto":
            return "auto"
        elif choice_type == "any":
            # Anthropic "any" means tools are available; do not force a tool call.
            return "auto"
        elif choice_type == "tool":
            return {"type": "function", "function": {"name": tool_choice.get("name", "")}}
        elif choice_type == "none":
            return "none"

    return tool_choice


def finite_number(value: Any) -> Optional[float]:
    """Numeric JSON value, or None for booleans, non-numbers, NaN and infinities."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def apply_reasoning(openrouter_request: dict, thinking: Any, requested_max_tokens: Any) -> None:
    """
    Map Anthropic `thinking` onto OpenRouter unified reasoning.

    max_tokens is forced above the reasoning budget so the model keeps room to
    answer after it finishes thinking.
    """
    if not isinstance(thinking, dict) or thinking.get("type") != "enabled":
        return

    budget = finite_number(thinking.get("budget_tokens"))
    if budget is None or budget <= 0:
        budget = DEFAULT_REASONING_BUDGET
    budget = int(budget)

    openrouter_request["reasoning"] = {"max_tokens": budget}
    min_needed = budget + REASONING_ANSWER_MARGIN
    requested = finite_number(requested_max_tokens)
    if requested is not None:
        openrouter_request["max_tokens"] = max(int(requested), min_needed)
    else:
        openrouter_request["max_tokens"] = min_needed


def anthropic_request_to_openrouter(body: Any) -> TranslatedRequest:
    """
    Translate an Anthropic Messages request body into an OpenRouter request.

    Returns the outbound body together with the cache-control metadata the
    response side needs for billing. Raises BadRequestError for unusable images.
    """
    if not isinstance(body, dict):
        body = {}

    cache_metadata = collect_cache_control_metadata(body)
    anthropic_model = body.get("model") or ""
    target_model = pick_target_model(anthropic_model)

    openai_messages = anthropic_messages_to_openai_messages(body.get("messages"))
    messages = build_system_messages(body.get("system"), target_model)
    messages.extend(validate_tool_call_pairing(openai_messages))
    messages = inject_conversation_breakpoint(copy.deepcopy(messages), target_model)

    stream = bool(body.get("stream", False))
    openrouter_request: dict[str, Any] = {
        "model": target_model,
        "messages": messages,
        "stream": stream,
        "usage": {"include": True},
    }

    temperature = finite_number(body.get("temperature"))
    if temperature is not None:
        openrouter_request["temperature"] = temperature
    top_p = finite_number(body.get("top_p"))
    if top_p is not None:
        openrouter_request["top_p"] = top_p
    if body.get("stop_sequences"):
        openrouter_request["stop"] = body["stop_sequences"]

    max_tokens = finite_number(body.get("max_tokens"))
    if max_tokens is not None:
        openrouter_request["max_tokens"] = int(max_tokens)
    apply_reasoning(openrouter_request, body.get("thinking"), max_tokens)

    openai_tools = tools_anthropic_to_openai(body.get("tools"))
    if openai_tools:
        openrouter_request["tools"] = openai_tools
    openai_tool_choice = tool_choice_anthropic_to_openai(body.get("tool_choice"))
    if openai_tool_choice is not None:
        openrouter_request["tool_choice"] = openai_tool_choice

    if stream:
        openrouter_request["stream_options"] = {"include_usage": True}

    return TranslatedRequest(body=openrouter_request, cache_metadata=cache_metadata)

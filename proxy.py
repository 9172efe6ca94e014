#!/usr/bin/env python3
"""
Anthropic Messages API → OpenRouter gateway with real SSE streaming.

Translates Anthropic Messages requests into OpenRouter chat completions,
translates responses (or the live event stream) back, and reconciles the
upstream cost into Anthropic-style usage, including cache writes OpenRouter
does not report.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import tiktoken
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import StreamingResponse, JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

import config
from message_processor import (
    BadRequestError,
    anthropic_request_to_openrouter,
    strip_claude_code_suffixes,
)
from pricing import pricing_cache, prefetch_model_pricing
from response_processor import openai_response_to_anthropic_message
from stream_processor import StreamTranslator, sse_event
from usage_billing import BillingResult

# Logging setup
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Track proxy startup time for uptime calculation
PROXY_START_TIME = time.time()
PROXY_VERSION = "1.0.0"

MESSAGES_ENDPOINT = "/v1/messages"

# ─────────────────────────────────────────────────────────────────────────────
# Prometheus metrics
# ─────────────────────────────────────────────────────────────────────────────

# Request counter by endpoint and status
request_counter = Counter(
    'proxy_requests_total',
    'Total number of requests',
    ['endpoint', 'status']
)

# Request latency histogram by endpoint
request_latency = Histogram(
    'proxy_request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Error counter by endpoint
error_counter = Counter(
    'proxy_errors_total',
    'Total number of errors',
    ['endpoint', 'error_type']
)

# Cache-write determination path per completed response
billing_inference_counter = Counter(
    'proxy_billing_inference_total',
    'Cache-write determinations by source',
    ['source']
)


def record_request(endpoint: str, status: int, start_time: float) -> None:
    request_counter.labels(endpoint=endpoint, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint).observe(time.time() - start_time)


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.PRICING_PREFETCH:
        await prefetch_model_pricing()
    yield


app = FastAPI(title="Anthropic to OpenRouter Gateway", version=PROXY_VERSION, lifespan=lifespan)


def get_or_generate_request_id(request: Request) -> str:
    """Get X-Request-Id from request headers or generate a new one."""
    request_id = request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return request_id


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Global HTTPException handler that ensures X-Request-Id header is always included.
    """
    request_id = getattr(request.state, "request_id", None) or get_or_generate_request_id(request)
    error_type = {
        401: "authentication_error",
        502: "api_error",
        504: "timeout_error",
    }.get(exc.status_code, "api_error")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "type": "error",
            "error": {
                "type": error_type,
                "message": exc.detail
            }
        },
        headers={"X-Request-Id": request_id}
    )


@app.exception_handler(BadRequestError)
async def bad_request_handler(request: Request, exc: BadRequestError):
    request_id = getattr(request.state, "request_id", None) or get_or_generate_request_id(request)
    error_counter.labels(endpoint=request.url.path, error_type='bad_request').inc()
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Upstream helpers
# ─────────────────────────────────────────────────────────────────────────────

def create_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.TIMEOUT_S)


def resolve_upstream_api_key(request: Request) -> str:
    """Caller's x-api-key or Bearer token, else the configured OpenRouter key."""
    api_key = request.headers.get("x-api-key", "").strip()
    if api_key:
        return api_key
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return config.OPENROUTER_API_KEY


def build_upstream_headers(request: Request, api_key: str) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    referer = request.headers.get("http-referer") or config.OPENROUTER_APP_URL
    title = request.headers.get("x-title") or config.OPENROUTER_APP_TITLE
    if referer:
        headers["HTTP-Referer"] = referer
    if title:
        headers["X-Title"] = title
    return headers


def passthrough_upstream_error(status_code: int, body: bytes, content_type: Optional[str], request_id: str) -> Response:
    """Return an upstream error response unmodified (status and body)."""
    return Response(
        content=body,
        status_code=status_code,
        media_type=content_type or "application/json",
        headers={"X-Request-Id": request_id},
    )


def format_cost(value: float) -> str:
    return f"{value:.6f}"


def billing_headers(billing: BillingResult) -> dict[str, str]:
    tokens = billing.tokens
    costs = billing.costs
    return {
        "X-CCRouter-Tokens-Input": str(tokens.input),
        "X-CCRouter-Tokens-Output": str(tokens.output),
        "X-CCRouter-Tokens-CacheRead": str(tokens.cache_read),
        "X-CCRouter-Tokens-CacheCreation": str(tokens.cache_creation),
        "X-CCRouter-Cost-Input": format_cost(costs.input),
        "X-CCRouter-Cost-Output": format_cost(costs.output),
        "X-CCRouter-Cost-Read": format_cost(costs.read),
        "X-CCRouter-Cost-Write": format_cost(costs.write),
        "X-CCRouter-Cost-Total": format_cost(costs.total),
        "X-CCRouter-Billing-Debug": json.dumps(billing.debug, separators=(",", ":"), default=str),
    }


def log_billing(billing: BillingResult, request_id: str) -> None:
    billing_inference_counter.labels(source=billing.estimation["source"]).inc()
    notes = billing.estimation["notes"]
    logger.info(
        f"Billing: model={billing.debug['model']} source={billing.estimation['source']} "
        f"in={billing.tokens.input} out={billing.tokens.output} "
        f"read={billing.tokens.cache_read} write={billing.tokens.cache_creation} "
        f"total=${format_cost(billing.costs.total)}"
        + (f" notes={','.join(notes)}" if notes else "")
        + f" | request_id={request_id}"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Token counting (approximation for Claude Code gating)
# ─────────────────────────────────────────────────────────────────────────────

def _tiktoken_for_model(model: str) -> tiktoken.Encoding:
    """Best-effort tokenizer selection.

    We may receive OpenRouter slugs like `openai/gpt-4o`, optionally with `:online`
    or Claude Code suffixes like `[1m]`.
    """
    model = strip_claude_code_suffixes(model)
    if isinstance(model, str):
        model = model.split(":", 1)[0]
        if "/" in model:
            model = model.split("/", 1)[1]

    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        try:
            return tiktoken.get_encoding("o200k_base")
        except ValueError:
            return tiktoken.get_encoding("cl100k_base")


def count_anthropic_request_tokens(body: dict) -> int:
    """Count tokens over the translated request: role, content and tool calls per message, plus tools."""
    translated = anthropic_request_to_openrouter(body).body
    enc = _tiktoken_for_model(translated["model"])

    total = 0
    for m in translated["messages"]:
        total += len(enc.encode(str(m.get("role", ""))))
        content = m.get("content") or ""
        if isinstance(content, list):
            total += len(enc.encode(json.dumps(content, ensure_ascii=False)))
        else:
            total += len(enc.encode(str(content)))
        if "tool_calls" in m:
            total += len(enc.encode(json.dumps(m["tool_calls"], ensure_ascii=False)))

    if translated.get("tools"):
        total += len(enc.encode(json.dumps(translated["tools"], ensure_ascii=False)))
    return total


async def read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadRequestError(f"Invalid JSON: {str(e)}")
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────

@app.post("/v1/messages")
async def v1_messages(request: Request):
    """
    Anthropic Messages API endpoint.

    Accepts Anthropic-format requests and proxies them to OpenRouter,
    converting the response (or stream) back to Anthropic format.
    """
    request_id = get_or_generate_request_id(request)
    request.state.request_id = request_id
    start_time = time.time()

    try:
        body = await read_json_body(request)
        translated = anthropic_request_to_openrouter(body)
    except BadRequestError:
        record_request(MESSAGES_ENDPOINT, 400, start_time)
        raise

    openrouter_request = translated.body
    target_model = openrouter_request["model"]
    anthropic_mode = request.query_params.get("mode") == "anthropic"

    api_key = resolve_upstream_api_key(request)
    if not api_key:
        error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='missing_api_key').inc()
        record_request(MESSAGES_ENDPOINT, 401, start_time)
        raise HTTPException(
            status_code=401,
            detail="No API key: send x-api-key or set OPENROUTER_API_KEY",
        )
    headers = build_upstream_headers(request, api_key)
    url = f"{config.OPENROUTER_BASE_URL}/chat/completions"

    logger.info(
        f"Forwarding model={body.get('model')} → {target_model} stream={openrouter_request['stream']} "
        f"ttl_mode={translated.cache_metadata.ttl_mode} | request_id={request_id}"
    )

    client = create_upstream_client()
    try:
        if openrouter_request["stream"]:
            upstream_request = client.build_request("POST", url, headers=headers, json=openrouter_request)
            response = await client.send(upstream_request, stream=True)
        else:
            response = await client.post(url, headers=headers, json=openrouter_request)
    except httpx.TimeoutException:
        await client.aclose()
        logger.warning(f"Upstream timed out | model={target_model} request_id={request_id}")
        error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='timeout').inc()
        record_request(MESSAGES_ENDPOINT, 504, start_time)
        raise HTTPException(status_code=504, detail=f"Request timed out after {config.TIMEOUT_S} seconds")
    except httpx.RequestError as e:
        await client.aclose()
        logger.warning(f"Upstream request failed: {str(e)} | model={target_model} request_id={request_id}")
        error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='upstream_unreachable').inc()
        record_request(MESSAGES_ENDPOINT, 502, start_time)
        raise HTTPException(status_code=502, detail=f"Failed to connect to OpenRouter: {str(e)}")

    if response.status_code != 200:
        error_body = await response.aread()
        await response.aclose()
        await client.aclose()
        logger.warning(
            f"OpenRouter returned {response.status_code} | model={target_model} request_id={request_id}"
        )
        error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='upstream_error').inc()
        record_request(MESSAGES_ENDPOINT, response.status_code, start_time)
        return passthrough_upstream_error(
            response.status_code, error_body, response.headers.get("content-type"), request_id
        )

    if openrouter_request["stream"]:
        translator = StreamTranslator(target_model, translated.cache_metadata, pricing_cache)

        async def stream_generator():
            try:
                async for frame in translator.translate(response.aiter_bytes()):
                    yield frame
                if translator.billing is not None:
                    log_billing(translator.billing, request_id)
                record_request(MESSAGES_ENDPOINT, 200, start_time)
            except Exception as e:
                error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='streaming_error').inc()
                record_request(MESSAGES_ENDPOINT, 500, start_time)
                logger.exception(f"Streaming error in v1_messages: request_id={request_id}")
                # Headers are already sent; report the failure in-band
                yield sse_event("error", {
                    "type": "error",
                    "error": {
                        "type": "api_error",
                        "message": f"Streaming error: {str(e)}",
                        "request_id": request_id
                    }
                })
            finally:
                await response.aclose()
                await client.aclose()

        return StreamingResponse(
            stream_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Request-Id": request_id,
            },
        )

    # NON-STREAMING MODE
    try:
        try:
            openai_response = response.json()
        except ValueError as e:
            error_counter.labels(endpoint=MESSAGES_ENDPOINT, error_type='invalid_upstream_json').inc()
            record_request(MESSAGES_ENDPOINT, 502, start_time)
            raise HTTPException(status_code=502, detail=f"Invalid JSON from OpenRouter: {str(e)}")

        translated_response = await openai_response_to_anthropic_message(
            openai_response, target_model, translated.cache_metadata, pricing_cache
        )
    finally:
        await client.aclose()

    billing = translated_response.billing
    log_billing(billing, request_id)

    response_headers = {"X-Request-Id": request_id}
    if not anthropic_mode:
        response_headers.update(billing_headers(billing))

    record_request(MESSAGES_ENDPOINT, 200, start_time)
    return JSONResponse(content=translated_response.message, headers=response_headers)


@app.post("/v1/messages/count_tokens")
async def v1_messages_count_tokens(request: Request):
    """Anthropic Messages API token counting (Claude Code LLM gateway compatibility)."""
    request_id = get_or_generate_request_id(request)
    request.state.request_id = request_id
    start_time = time.time()

    body = await read_json_body(request)
    input_tokens = count_anthropic_request_tokens(body)

    record_request("/v1/messages/count_tokens", 200, start_time)
    return JSONResponse(
        content={"input_tokens": input_tokens},
        headers={"X-Request-Id": request_id}
    )


@app.get("/health")
async def health(request: Request):
    """
    Health check.

    Returns uptime, version, the configured model map and pricing cache state
    (no secrets).
    """
    request_id = get_or_generate_request_id(request)
    return JSONResponse(
        content={
            "status": "ok",
            "uptime_seconds": int(time.time() - PROXY_START_TIME),
            "version": PROXY_VERSION,
            "config_summary": {
                "base_url": config.OPENROUTER_BASE_URL,
                "api_key_configured": bool(config.OPENROUTER_API_KEY),
                "models": {
                    "haiku": config.TARGET_MODEL_SMALL,
                    "sonnet": config.TARGET_MODEL_BIG,
                    "opus": config.TARGET_MODEL_OPUS,
                },
            },
            "pricing": {
                "models": pricing_cache.model_count,
                "version": pricing_cache.version,
                "fresh": pricing_cache.is_fresh(),
            },
        },
        headers={"X-Request-Id": request_id},
    )


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint."""
    request_id = get_or_generate_request_id(request)
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
        headers={"X-Request-Id": request_id},
    )


@app.get("/")
async def root(request: Request):
    """Root endpoint with API info."""
    request_id = get_or_generate_request_id(request)

    return JSONResponse(
        content={
            "name": "Anthropic to OpenRouter Gateway",
            "version": PROXY_VERSION,
            "endpoints": {
                "/v1/messages": "Anthropic Messages API (POST, ?mode=anthropic hides billing headers)",
                "/v1/messages/count_tokens": "Token count (POST)",
                "/health": "Health check (GET)",
                "/metrics": "Prometheus metrics (GET)"
            }
        },
        headers={"X-Request-Id": request_id}
    )


# ─────────────────────────────────────────────────────────────────────────────
# Main entry point
# ─────────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)

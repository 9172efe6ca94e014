"""
Gateway configuration, read once from environment variables at import time.
"""

import os
import logging

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"{name}: invalid value '{raw}', using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} is below minimum ({minimum}), clamping to {minimum}")
        return minimum
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Upstream (OpenRouter)
# ─────────────────────────────────────────────────────────────────────────────

# Used only when the caller does not send its own credential.
OPENROUTER_API_KEY = os.environ.get("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")

# Optional OpenRouter attribution headers
OPENROUTER_APP_URL = os.environ.get("OPENROUTER_APP_URL", "")
OPENROUTER_APP_TITLE = os.environ.get("OPENROUTER_APP_TITLE", "")

# Timeout in seconds
TIMEOUT_S = _env_int("TIMEOUT_S", 300)

# ─────────────────────────────────────────────────────────────────────────────
# Model mapping (keyword → OpenRouter slug). Upstream names move; keep these current.
# ─────────────────────────────────────────────────────────────────────────────

TARGET_MODEL_SMALL = os.environ.get("TARGET_MODEL_SMALL", "anthropic/claude-haiku-4.5")
TARGET_MODEL_BIG = os.environ.get("TARGET_MODEL_BIG", "anthropic/claude-sonnet-4.5")
TARGET_MODEL_OPUS = os.environ.get("TARGET_MODEL_OPUS", "anthropic/claude-opus-4.1")

# ─────────────────────────────────────────────────────────────────────────────
# Pricing catalog
# ─────────────────────────────────────────────────────────────────────────────

PRICING_URL = os.environ.get("PRICING_URL", f"{OPENROUTER_BASE_URL}/models")
PRICING_CACHE_TTL_S = _env_int("PRICING_CACHE_TTL_S", 3600, minimum=60)
PRICING_PREFETCH = _env_bool("PRICING_PREFETCH", "true")

# ─────────────────────────────────────────────────────────────────────────────
# Server
# ─────────────────────────────────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8000)

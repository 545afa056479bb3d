"""
Centralized configuration for custom variant provisioning and cleanup.
"""
from __future__ import annotations

import os
from decimal import Decimal
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


NODE_ENV: str = os.getenv("NODE_ENV", "development")
IS_PRODUCTION: bool = NODE_ENV == "production"

# Shopify Admin REST API
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")
CATALOG_API_TIMEOUT_SECONDS: float = _env_float("CATALOG_API_TIMEOUT_SECONDS", 10.0)

# Price bounds (store currency)
MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("999999.99")
PRICE_EPSILON = Decimal("0.01")

# Grams per cm² by material; unknown materials fall back to "default".
# The Turkish names are what the storefront option values send.
WEIGHT_PER_AREA: Dict[str, float] = {
    "cotton": 0.15,
    "pamuk": 0.15,
    "polyester": 0.12,
    "linen": 0.18,
    "keten": 0.18,
    "silk": 0.08,
    "ipek": 0.08,
    "default": 0.15,
}
MIN_WEIGHT_GRAMS = 50
MAX_WEIGHT_GRAMS = 50000

# Price settlement polling after variant creation
PRICE_POLL_MAX_ATTEMPTS: int = _env_int("PRICE_POLL_MAX_ATTEMPTS", 8)
PRICE_POLL_BASE_DELAY_SECONDS: float = _env_float("PRICE_POLL_BASE_DELAY_SECONDS", 0.6)
PRICE_UPDATE_SETTLE_SECONDS = 0.3
PRICE_FALLBACK_SETTLE_SECONDS = 0.5

# In-flight request guard
DEDUP_WINDOW_SECONDS: float = _env_float("DEDUP_WINDOW_SECONDS", 3.0)
REQUEST_CACHE_TTL_SECONDS: float = _env_float("REQUEST_CACHE_TTL_SECONDS", 5.0)
REQUEST_CACHE_MAX_SIZE: int = _env_int("REQUEST_CACHE_MAX_SIZE", 1000)
REQUEST_CACHE_EVICT_FRACTION = 0.2

# Temporary variant lifecycle
TEMPORARY_VARIANT_TTL_HOURS: float = _env_float("TEMPORARY_VARIANT_TTL_HOURS", 2.0)
CLEANUP_INTERVAL_MINUTES: float = _env_float("CLEANUP_INTERVAL_MINUTES", 120.0)
DAILY_CLEANUP_HOUR: int = _env_int("DAILY_CLEANUP_HOUR", 3)
DAILY_CLEANUP_MINUTE: int = _env_int("DAILY_CLEANUP_MINUTE", 0)
DAILY_SCAN_MAX_AGE_HOURS: float = _env_float("DAILY_SCAN_MAX_AGE_HOURS", 24.0)
# 0 keeps retrying forever; a positive value dead-letters the record after that many failures.
CLEANUP_MAX_ATTEMPTS: int = _env_int("CLEANUP_MAX_ATTEMPTS", 0)
CLEANUP_ON_STARTUP: bool = _env_bool("CLEANUP_ON_STARTUP", True)
CLEANUP_SCHEDULER_ENABLED: bool = _env_bool("CLEANUP_SCHEDULER_ENABLED", True)

# Error clustering alarm
ERROR_WINDOW_SECONDS: float = _env_float("ERROR_WINDOW_SECONDS", 300.0)
ERROR_THRESHOLD: int = _env_int("ERROR_THRESHOLD", 3)

STATS_WINDOW_HOURS = 24
STATS_RECENT_ERROR_LIMIT = 10


def sanitize_shop_domain(value: Optional[Any]) -> Optional[str]:
    """Normalize raw shop domains (strip scheme, slashes, whitespace; lower-case)."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    for prefix in ("https://", "http://"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    text = text.rstrip("/")
    return text or None

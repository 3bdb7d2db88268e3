"""Core application configuration & tunable rules.

Every knob that governs how hard we lean on the Ortto API (request pacing,
429 handling, background refill batching and cooldowns) and how long cached
report data is trusted lives here so it can be adjusted without touching
service logic. Values are module constants read from the environment at
import time; rule groups are plain dicts so tests can monkeypatch entries.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	return float(raw) if raw and raw.strip() else default


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	return int(raw) if raw and raw.strip() else default


# ------------------------------- Application ------------------------------ #
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./dashboard.db")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: str | None = os.getenv("LOG_FILE", "logs/app.log") or None
CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

# ---------------------------------- Ortto --------------------------------- #
ORTTO_SETTINGS: dict[str, str | float | None] = {
	"base_url": os.getenv("ORTTO_BASE_URL", "https://api.ap3api.com"),
	"api_key": os.getenv("ORTTO_API_KEY") or None,
	"timeout_seconds": _env_float("ORTTO_TIMEOUT_SECONDS", 30.0),
}

# ------------------------- Upstream request pacing ------------------------ #
UPSTREAM_RATE_LIMIT: dict[str, float | int] = {
	"min_interval_seconds": _env_float("ORTTO_MIN_INTERVAL_SECONDS", 1.0),
	"max_requests_per_window": _env_int("ORTTO_MAX_REQUESTS_PER_MINUTE", 20),
	"window_seconds": 60,
	# Used when a 429 arrives without a usable Retry-After header.
	"retry_after_fallback_seconds": 60,
	# A request throttled more often than this is rejected to its caller.
	"max_requeues": 3,
	"response_cache_ttl_seconds": 10 * 60,
}

# ------------------------------ Report cache ------------------------------ #
REPORT_CACHE_SETTINGS: dict[str, str | int] = {
	"expiry_hours": _env_int("REPORT_CACHE_EXPIRY_HOURS", 24),
	"default_timeframe": "all-time",
}

# ---------------------------- Rate-limit ledger --------------------------- #
RATE_LIMIT_LEDGER: dict[str, int] = {
	"window_seconds": 5 * 60,
}

# ---------------------------- Background refill --------------------------- #
BACKGROUND_REFILL: dict[str, float | int] = {
	"batch_size": 40,
	"base_delay_seconds": 2.0,
	"max_delay_seconds": 15.0,
	"factor": 2,
	# Consecutive 429s before the worker takes a long cooldown.
	"consecutive_limit_threshold": 5,
	"long_cooldown_seconds": 60.0,
	# Pause after any batch that contained rate-limited items.
	"batch_cooldown_seconds": 30.0,
}

# ------------------------------ Force refresh ----------------------------- #
FORCE_REFRESH: dict[str, int] = {
	"batch_size": 10,
}

# ----------------------------- Campaign reports --------------------------- #
CAMPAIGN_REPORTS: dict[str, float | int] = {
	"batch_size": 20,
	"batch_pause_seconds": 1.0,
}

# ------------------------------ Authentication ---------------------------- #
# With AUTH_ENABLED false every request runs as DEFAULT_USER_ID.
AUTH_SETTINGS: dict[str, object] = {
	"enabled": _env_bool("AUTH_ENABLED", True),
	"default_user_id": os.getenv("DEFAULT_USER_ID", "default-user"),
	"test_user_id": "test-user",
	"test_tokens": [t.strip() for t in os.getenv("AUTH_TEST_TOKENS", "test-token,dummy-test-token").split(",") if t.strip()],
}

# -------------------------------- Scheduler ------------------------------- #
SCHEDULER_SETTINGS: dict[str, object] = {
	"enabled": _env_bool("SCHEDULER_ENABLED", True),
	"prefetch_on_startup": _env_bool("CATALOG_PREFETCH_ON_STARTUP", True),
	"asset_refresh_cron": {"minute": 0},
	"catalog_prefetch_cron": {"hour": "*/6", "minute": 0},
	"misfire_grace_seconds": 600,
}

__all__ = [
	"DATABASE_URL",
	"LOG_LEVEL",
	"LOG_FILE",
	"CORS_ORIGINS",
	"ORTTO_SETTINGS",
	"UPSTREAM_RATE_LIMIT",
	"REPORT_CACHE_SETTINGS",
	"RATE_LIMIT_LEDGER",
	"BACKGROUND_REFILL",
	"FORCE_REFRESH",
	"CAMPAIGN_REPORTS",
	"AUTH_SETTINGS",
	"SCHEDULER_SETTINGS",
]

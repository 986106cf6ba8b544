"""
Tool Hire Advisor — Configuration
===================================
Shared settings for the server, the completion gateway and the client.
Values come from the environment (and the repo-root .env file); the
defaults below are what a local development run uses.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).parent.parent  # toolhire/config.py → toolhire → repo root
load_dotenv(PROJECT_ROOT / ".env")

CATALOG_DIR = Path(os.getenv("CATALOG_DIR", str(PROJECT_ROOT / "catalog")))
PROMPTS_DIR = Path(os.getenv("PROMPTS_DIR", str(PROJECT_ROOT / "prompts")))

TOOL_INFORMATION_FILE = "tool_information.txt"
PRODUCT_URLS_FILE = "product_urls.txt"


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Model provider
# ---------------------------------------------------------------------------
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ADVISOR_MODEL = os.getenv("ADVISOR_MODEL", "claude-sonnet-4-5-20250929")
FALLBACK_MODEL = os.getenv("FALLBACK_MODEL", "claude-sonnet-4-20250514")

# Unset sampling values are not sent to the provider
TEMPERATURE = _env_float("ADVISOR_TEMPERATURE", 0.7)
TOP_P = _env_float("ADVISOR_TOP_P", None)
TOP_K = _env_int("ADVISOR_TOP_K", None)

GATHERING_MAX_TOKENS = _env_int("GATHERING_MAX_TOKENS", 4000)
RECOMMENDATION_MAX_TOKENS = _env_int("RECOMMENDATION_MAX_TOKENS", 8000)

# ---------------------------------------------------------------------------
# Dialogue
# ---------------------------------------------------------------------------
COMPLETION_SENTINEL = "## FINAL SUMMARY ##"
TRANSITION_DELAY_SECONDS = _env_float("TRANSITION_DELAY_SECONDS", 1.0)

# ---------------------------------------------------------------------------
# Streaming continuation
# ---------------------------------------------------------------------------
# Client stall threshold, kept below the hosting platform's 10s response limit
WATCHDOG_THRESHOLD_SECONDS = _env_float("WATCHDOG_THRESHOLD_SECONDS", 8.0)
# Server-side wall-clock budget per streamed response (0 disables)
STREAM_BUDGET_SECONDS = _env_float("STREAM_BUDGET_SECONDS", 0.0)
MAX_CONTINUATIONS = _env_int("MAX_CONTINUATIONS", 5)

STITCH_TRIM_OVERLAP = _env_bool("STITCH_TRIM_OVERLAP", False)
STITCH_MIN_OVERLAP = _env_int("STITCH_MIN_OVERLAP", 24)

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
ADVISOR_URL = os.getenv("ADVISOR_URL", "http://localhost:8000")
ADVISOR_ENDPOINT = "/api/tool-recommendation"

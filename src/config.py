"""Centralized configuration for the Shop Assistant chat service.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/shop-assistant/<VARIABLE_NAME>``.

Unlike a hard dependency, the language-model key is *optional*: when it is
missing the service answers every turn through the rule-based fallback.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/shop-assistant/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when it is not set."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str | None = _optional_secret("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-haiku-4-5")
MODEL_TEMPERATURE: float = _env_float("MODEL_TEMPERATURE", 0.6)
MODEL_MAX_TOKENS: int = _env_int("MODEL_MAX_TOKENS", 1024)
MODEL_TIMEOUT_SECONDS: float = _env_float("MODEL_TIMEOUT_SECONDS", 20.0)
MODEL_MAX_RETRIES: int = _env_int("MODEL_MAX_RETRIES", 2)

# ── Orchestration bounds ────────────────────────────────────────────
MAX_TOOL_ROUNDS: int = _env_int("MAX_TOOL_ROUNDS", 2)
HISTORY_LIMIT: int = _env_int("HISTORY_LIMIT", 18)
PERSIST_MESSAGE_LIMIT: int = _env_int("PERSIST_MESSAGE_LIMIT", 20)

# ── Rate limiting ───────────────────────────────────────────────────
RATE_LIMIT_MAX_REQUESTS: int = _env_int("RATE_LIMIT_MAX_REQUESTS", 12)
RATE_LIMIT_WINDOW_SECONDS: float = _env_float("RATE_LIMIT_WINDOW_SECONDS", 60.0)
REDIS_URL: str | None = _optional_secret("REDIS_URL")

# ── Commerce backend (Supabase PostgREST + GoTrue) ──────────────────
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY: str | None = _optional_secret("SUPABASE_ANON_KEY")
SUPABASE_SERVICE_ROLE_KEY: str | None = _optional_secret("SUPABASE_SERVICE_ROLE_KEY")

# ── Conversation persistence ────────────────────────────────────────
PERSIST_QUEUE_SIZE: int = _env_int("PERSIST_QUEUE_SIZE", 256)

# ── Store ───────────────────────────────────────────────────────────
STORE_NAME: str = os.getenv("STORE_NAME", "Sarah Lawson Imports")
SUPPORT_PHONE: str = os.getenv("SUPPORT_PHONE", "0546014734")
SUPPORT_EMAIL: str = os.getenv("SUPPORT_EMAIL", "info@sarahlawsonimports.com")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

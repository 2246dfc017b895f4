"""Centralized configuration for the Odonto protocol service.

Values are read once at import time.  Secrets (the Anthropic key and the
database URL, which may embed credentials) are resolved per variable:

  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString ``/odonto/<NAME>``
     (only when ``AWS_EXECUTION_ENV`` is set)

Everything else is a plain env var with a default.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SSM_PREFIX = "/odonto"

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _read_ssm(name: str) -> str | None:
    """Read ``/odonto/<name>`` from SSM; ``None`` when missing or unreachable."""
    try:
        import boto3  # noqa: PLC0415 (only needed when SSM is configured)

        resp = boto3.client("ssm").get_parameter(Name=f"{SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.warning("SSM parameter %s/%s could not be read", SSM_PREFIX, name)
        return None


def _secret(name: str, default: str | None = None) -> str:
    """Resolve a secret from env or SSM, falling back to ``default``."""
    value = os.getenv(name)
    # .env templates ship placeholders like "your_api_key_here"
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _read_ssm(name)
        if ssm_value:
            return ssm_value

    if default is not None:
        return default
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {SSM_PREFIX}/{name} (AWS)."
    )


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── AI provider ──────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _secret("ANTHROPIC_API_KEY")
RESIN_MODEL_NAME: str = os.getenv("RESIN_MODEL_NAME", "claude-sonnet-4-5-20250929")
CEMENTATION_MODEL_NAME: str = os.getenv("CEMENTATION_MODEL_NAME", "claude-sonnet-4-5-20250929")

# No automatic retries: a retry is always an explicit user action
AI_REQUEST_TIMEOUT_SECONDS: float = _env_float("AI_REQUEST_TIMEOUT_SECONDS", 55.0)
AI_MAX_TOKENS: int = _env_int("AI_MAX_TOKENS", 4096)

# ── Persistence ──────────────────────────────────────────────────────
DATABASE_URL: str = _secret("DATABASE_URL", "sqlite:///./odonto.db")

# ── HTTP server ──────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]

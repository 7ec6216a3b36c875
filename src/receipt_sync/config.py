"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class GoogleOAuthConfig:
    """OAuth client configuration for the Gmail adapter."""

    client_id: str
    client_secret: str
    redirect_uri: str


@dataclass(frozen=True)
class SyncSettings:
    """Tuning knobs for a mailbox sync run."""

    workers: int = 4
    progress_interval: int = 5
    max_results: int = 100
    lookback_days: int = 30


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_app_url() -> str:
    """Return the public base URL of the application, without trailing slash."""
    return os.environ.get("APP_URL", "http://localhost:5000").rstrip("/")


def get_google_oauth_config() -> GoogleOAuthConfig:
    """Build Gmail OAuth configuration from environment variables.

    Required: GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
    Optional: APP_URL (redirect base, default http://localhost:5000)
    """
    client_id = os.environ.get("GOOGLE_CLIENT_ID")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET")

    missing = []
    if not client_id:
        missing.append("GOOGLE_CLIENT_ID")
    if not client_secret:
        missing.append("GOOGLE_CLIENT_SECRET")

    if missing:
        msg = f"Required environment variables not set: {', '.join(missing)}"
        raise ValueError(msg)

    return GoogleOAuthConfig(
        client_id=client_id,  # type: ignore[arg-type]
        client_secret=client_secret,  # type: ignore[arg-type]
        redirect_uri=f"{get_app_url()}/api/email/callback/gmail",
    )


def get_oauth_state_secret() -> str:
    """Return the key used to sign OAuth state blobs."""
    secret = os.environ.get("OAUTH_STATE_SECRET")
    if not secret:
        msg = "OAUTH_STATE_SECRET environment variable is required"
        raise ValueError(msg)
    return secret


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_sync_settings() -> SyncSettings:
    """Build sync tuning from environment variables.

    Optional: SYNC_WORKERS (4), SYNC_PROGRESS_INTERVAL (5),
    SYNC_MAX_RESULTS (100), SYNC_LOOKBACK_DAYS (30)
    """
    return SyncSettings(
        workers=_positive_int("SYNC_WORKERS", 4),
        progress_interval=_positive_int("SYNC_PROGRESS_INTERVAL", 5),
        max_results=_positive_int("SYNC_MAX_RESULTS", 100),
        lookback_days=_positive_int("SYNC_LOOKBACK_DAYS", 30),
    )


def _positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if value < 1:
        msg = f"{name} must be at least 1, got {value}"
        raise ValueError(msg)
    return value

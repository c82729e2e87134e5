"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
process-wide :class:`Settings` instance (retrieved via :func:`get_settings`).
Values come from the environment after the project ``.env`` file has been
loaded with *python-dotenv*.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the directory that contains the ``chatgate``
# package (``chatgate/config/__init__.py`` -> parents[2]).
_REPO_ROOT = Path(__file__).resolve().parents[2]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str
    allowed_cors_origins: str

    # Database ---------------------------------------------------------
    database_url: str

    # Cryptography -----------------------------------------------------
    fernet_secret: Any

    # Slack app / OAuth -------------------------------------------------
    slack_api_base_url: str
    slack_authorize_url: str
    slack_redirect_uri: str
    slack_scopes: str  # comma-separated, Slack's own format
    oauth_state_marker: str
    app_public_url: str | None

    # Remote calls ------------------------------------------------------
    http_timeout_seconds: float
    rate_limit_max_retries: int

    # Connection health -------------------------------------------------
    health_check_interval_seconds: int

    # Discovery scans ---------------------------------------------------
    scan_enabled: bool
    scan_interval_minutes: int
    scan_min_interval_minutes: int
    scan_startup_delay_seconds: float
    scan_lookback_hours: int

    # Analysis jobs -----------------------------------------------------
    job_payload_ttl_seconds: float
    openai_api_key: Any
    analysis_model: str

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader – re-reads the environment on every call so tests can monkeypatch it
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit environment wins over the file so tests can pin values.
        load_dotenv(env_path, override=False)

    testing = _truthy(os.getenv("TESTING"))

    return Settings(
        testing=testing,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        allowed_cors_origins=os.getenv("ALLOWED_CORS_ORIGINS", ""),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./chatgate.db"),
        fernet_secret=os.getenv("FERNET_SECRET"),
        slack_api_base_url=os.getenv("SLACK_API_BASE_URL", "https://slack.com/api"),
        slack_authorize_url=os.getenv("SLACK_AUTHORIZE_URL", "https://slack.com/oauth/v2/authorize"),
        slack_redirect_uri=os.getenv("SLACK_REDIRECT_URI", "http://localhost:8000/api/slack/oauth/callback"),
        slack_scopes=os.getenv(
            "SLACK_SCOPES",
            "channels:history,channels:read,channels:join,groups:history,groups:read,im:history,im:read,"
            "mpim:history,mpim:read,team:read,users:read",
        ),
        oauth_state_marker=os.getenv("OAUTH_STATE_MARKER", "chatgate-slack-oauth"),
        app_public_url=os.getenv("APP_PUBLIC_URL"),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
        rate_limit_max_retries=int(os.getenv("RATE_LIMIT_MAX_RETRIES", "3")),
        health_check_interval_seconds=int(os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", "600")),
        scan_enabled=_truthy(os.getenv("SCAN_ENABLED")),
        scan_interval_minutes=int(os.getenv("SCAN_INTERVAL_MINUTES", "60")),
        scan_min_interval_minutes=int(os.getenv("SCAN_MIN_INTERVAL_MINUTES", "5")),
        scan_startup_delay_seconds=float(os.getenv("SCAN_STARTUP_DELAY_SECONDS", "30")),
        scan_lookback_hours=int(os.getenv("SCAN_LOOKBACK_HOURS", "24")),
        job_payload_ttl_seconds=float(os.getenv("JOB_PAYLOAD_TTL_SECONDS", "3600")),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        analysis_model=os.getenv("ANALYSIS_MODEL", "gpt-4o-mini"),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast when *required* secrets are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when mandatory configuration is missing.

    The vault cannot encrypt anything without ``FERNET_SECRET`` so we refuse
    to start instead of failing on the first credential write.
    """

    missing_vars = []

    if not settings.fernet_secret:
        missing_vars.append("FERNET_SECRET")

    if not settings.database_url:
        missing_vars.append("DATABASE_URL")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]

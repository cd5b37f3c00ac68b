"""
Runtime configuration for the Intercom mirror.

All knobs come from environment variables (optionally loaded from a .env file).
Numeric values are clamped so a typo in the environment cannot exhaust
resources or hammer the Intercom API.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


DEFAULT_API_BASE = "https://api.intercom.io"
DEFAULT_API_VERSION = "2.13"


def clean_token(raw: Optional[str]) -> Optional[str]:
    """Strip surrounding quotes that often sneak into .env values."""
    if raw is None:
        return None
    token = raw.strip().strip('"').strip("'")
    return token or None


def _env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


def _env_float(name: str, default: float, low: float, high: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


class MirrorConfig(BaseModel):
    """Settings shared by the client, the refresh engine and the thread builder."""

    access_token: Optional[str] = None
    api_base: str = DEFAULT_API_BASE
    api_version: str = DEFAULT_API_VERSION
    cache_dir: Path = Field(default_factory=lambda: Path("cache"))

    # Refresh policy
    full_refresh_max_age_hours: float = Field(default=24.0, gt=0)
    stale_after_minutes: float = Field(default=60.0, gt=0)
    incremental_per_page: int = Field(default=50, ge=1, le=150)  # Intercom max is 150
    incremental_max_pages: int = Field(default=1, ge=1)
    refresh_timeout_seconds: Optional[float] = Field(default=600.0, gt=0)

    # Thread materialization
    thread_batch_size: int = Field(default=10, ge=1, le=100)
    thread_batch_delay_seconds: float = Field(default=1.0, ge=0)

    # 0 = no client-side rate limit
    max_rps: float = Field(default=0.0, ge=0)

    # Designated reviewers whose notes get flagged on every thread
    reviewer_a_admin_id: Optional[str] = None
    reviewer_b_email: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "MirrorConfig":
        """Build config from the process environment (and .env, if present)."""
        load_dotenv(env_file)

        timeout = _env_float("INTERCOM_REFRESH_TIMEOUT", 600.0, 0.0, 86400.0)

        return cls(
            access_token=clean_token(os.getenv("INTERCOM_ACCESS_TOKEN")),
            api_base=os.getenv("INTERCOM_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            api_version=os.getenv("INTERCOM_API_VERSION", DEFAULT_API_VERSION),
            cache_dir=Path(os.getenv("INTERCOM_CACHE_DIR", "cache")),
            full_refresh_max_age_hours=_env_float("INTERCOM_FULL_REFRESH_HOURS", 24.0, 0.1, 24.0 * 30),
            stale_after_minutes=_env_float("INTERCOM_STALE_MINUTES", 60.0, 1.0, 24.0 * 60),
            incremental_per_page=_env_int("INTERCOM_INCREMENTAL_PER_PAGE", 50, 1, 150),
            incremental_max_pages=_env_int("INTERCOM_INCREMENTAL_MAX_PAGES", 1, 1, 100),
            # 0 disables the timeout
            refresh_timeout_seconds=timeout or None,
            thread_batch_size=_env_int("INTERCOM_THREAD_BATCH_SIZE", 10, 1, 100),
            thread_batch_delay_seconds=_env_float("INTERCOM_THREAD_BATCH_DELAY", 1.0, 0.0, 60.0),
            max_rps=_env_float("INTERCOM_MAX_RPS", 0.0, 0.0, 100.0),
            reviewer_a_admin_id=os.getenv("INTERCOM_REVIEWER_A_ADMIN_ID") or None,
            reviewer_b_email=os.getenv("INTERCOM_REVIEWER_B_EMAIL") or None,
        )

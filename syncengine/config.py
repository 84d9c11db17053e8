"""Process configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

from syncengine.db.session import DEFAULT_DATABASE_URL
from syncengine.errors import ConfigurationError
from syncengine.utils.dates import DEFAULT_TZ

SOURCE_SHOPIFY = "shopify"
SOURCE_GOOGLE_ADS = "google_ads"
SOURCES = (SOURCE_SHOPIFY, SOURCE_GOOGLE_ADS)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    database_url: str
    encryption_key: str
    shopify_api_version: str = "2024-07"
    google_ads_api_version: str = "v21"
    google_developer_token: str | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None
    incremental_lookback_days: int = 3
    max_explicit_range_days: int = 90
    sync_batch_size: int = 5
    page_ceiling: int = 50
    retry_max_retries: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    tenant_deadline_seconds: float = 240.0
    token_refresh_buffer_seconds: int = 300
    stuck_job_timeout_minutes: int = 60
    sync_api_token: str | None = None
    redis_url: str = "redis://redis:6379/0"
    timezone: str = DEFAULT_TZ

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, dotenv: bool = True) -> "EngineConfig":
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ
        key = environ.get("ENCRYPTION_KEY")
        if not key:
            raise ConfigurationError("Missing ENCRYPTION_KEY environment variable.")
        try:
            return cls(
                database_url=environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
                encryption_key=key,
                shopify_api_version=environ.get("SHOPIFY_API_VERSION", "2024-07"),
                google_ads_api_version=environ.get("GOOGLE_ADS_API_VERSION", "v21"),
                google_developer_token=environ.get("GOOGLE_DEVELOPER_TOKEN") or None,
                google_client_id=environ.get("GOOGLE_CLIENT_ID") or None,
                google_client_secret=environ.get("GOOGLE_CLIENT_SECRET") or None,
                incremental_lookback_days=int(environ.get("INCREMENTAL_LOOKBACK_DAYS", "3")),
                max_explicit_range_days=int(environ.get("MAX_EXPLICIT_RANGE_DAYS", "90")),
                sync_batch_size=int(environ.get("SYNC_BATCH_SIZE", "5")),
                page_ceiling=int(environ.get("PAGE_CEILING", "50")),
                retry_max_retries=int(environ.get("RETRY_MAX_RETRIES", "4")),
                retry_base_delay=float(environ.get("RETRY_BASE_DELAY", "1.0")),
                retry_max_delay=float(environ.get("RETRY_MAX_DELAY", "60")),
                tenant_deadline_seconds=float(environ.get("TENANT_DEADLINE_SECONDS", "240")),
                token_refresh_buffer_seconds=int(environ.get("TOKEN_REFRESH_BUFFER_SECONDS", "300")),
                stuck_job_timeout_minutes=int(environ.get("STUCK_JOB_TIMEOUT_MINUTES", "60")),
                sync_api_token=environ.get("SYNC_API_TOKEN") or None,
                redis_url=environ.get("REDIS_URL", "redis://redis:6379/0"),
                timezone=environ.get("TIMEZONE", DEFAULT_TZ),
            )
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric configuration value: {exc}") from exc

    def require_source(self, source: str) -> None:
        if source not in SOURCES:
            raise ConfigurationError(f"Unsupported source {source!r}")
        if source == SOURCE_GOOGLE_ADS:
            missing = [
                name
                for name, value in (
                    ("GOOGLE_DEVELOPER_TOKEN", self.google_developer_token),
                    ("GOOGLE_CLIENT_ID", self.google_client_id),
                    ("GOOGLE_CLIENT_SECRET", self.google_client_secret),
                )
                if not value
            ]
            if missing:
                raise ConfigurationError(f"Missing {', '.join(missing)} environment variable(s).")

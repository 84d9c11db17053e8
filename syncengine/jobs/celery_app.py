"""Celery configuration for scheduled and enqueued syncs."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import timedelta
from typing import Any

from celery import Celery
from celery.schedules import crontab
from dotenv import load_dotenv

from syncengine.config import SOURCE_GOOGLE_ADS, SOURCE_SHOPIFY, EngineConfig
from syncengine.db.session import create_engine_from_env
from syncengine.jobs.joblog import JobLog
from syncengine.utils.dates import timezone_name

logger = logging.getLogger(__name__)

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("syncengine", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "shopify-incremental": {
        "task": "syncengine.jobs.sync.run_source",
        "schedule": crontab(minute=os.environ.get("SHOPIFY_SYNC_MINUTE", "*/15")),
        "args": (SOURCE_SHOPIFY,),
    },
    "google-ads-incremental": {
        "task": "syncengine.jobs.sync.run_source",
        "schedule": crontab(minute=os.environ.get("GOOGLE_ADS_SYNC_MINUTE", "5"), hour="*"),
        "args": (SOURCE_GOOGLE_ADS,),
    },
    "cleanup-stuck-jobs": {
        "task": "syncengine.jobs.joblog.cleanup_stuck_jobs",
        "schedule": crontab(minute="*/30"),
    },
}


@celery_app.task(name="syncengine.jobs.sync.run_source")
def run_source_task(source: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:  # pragma: no cover - executed by worker
    from syncengine.jobs.sync import run_sync

    load_dotenv()
    response = asyncio.run(run_sync(source, payload))
    return response.to_payload()


@celery_app.task(
    name="syncengine.jobs.sync.requested",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=3,
)
def requested_sync_task(source: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Sync enqueued by a settings change; Celery retries it on failure."""
    from syncengine.jobs.sync import run_sync

    load_dotenv()
    logger.info("Running requested %s sync with %s", source, payload)
    response = asyncio.run(run_sync(source, payload))
    return response.to_payload()


@celery_app.task(name="syncengine.jobs.joblog.cleanup_stuck_jobs")
def cleanup_stuck_jobs_task(source: str | None = None) -> int:
    load_dotenv()
    config = EngineConfig.from_env()
    engine = create_engine_from_env(config.database_url)
    return JobLog(engine).sweep_stale(source, older_than=timedelta(minutes=config.stuck_job_timeout_minutes))


def request_sync(source: str, **payload: Any):
    """Enqueue a sync instead of firing it in the background.

    Failures are retried by the task and logged here if the broker refuses
    the message.
    """
    try:
        return requested_sync_task.apply_async(args=(source, payload or None))
    except Exception:
        logger.exception("Could not enqueue %s sync for %s", source, payload.get("tenantId"))
        raise

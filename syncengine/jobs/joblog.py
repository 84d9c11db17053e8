"""Audit trail of sync attempts stored in ``jobs_log``."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

from syncengine.db.repository import json_param
from syncengine.utils.dates import to_utc_iso, utcnow

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

INTERRUPTED_MESSAGE = "Job execution was interrupted or failed unexpectedly"
SUPERSEDED_MESSAGE = "Job was still running when a newer run started; marked failed"
STALE_MESSAGE = "Job exceeded the {minutes}-minute timeout and was marked failed"


class JobLog:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def start(self, tenant_id: str, source: str, *, started_at: datetime | None = None) -> Any:
        """Open a ``running`` entry, first failing orphans left by earlier runs."""
        started = to_utc_iso(started_at or utcnow())
        with self.engine.begin() as conn:
            swept = conn.execute(
                text(
                    """
                    UPDATE jobs_log
                    SET status = :failed, finished_at = :now, error = :error
                    WHERE tenant_id = :tenant_id AND source = :source
                      AND status = :running AND started_at < :started_at
                    """
                ),
                {
                    "failed": FAILED,
                    "running": RUNNING,
                    "now": started,
                    "error": SUPERSEDED_MESSAGE,
                    "tenant_id": tenant_id,
                    "source": source,
                    "started_at": started,
                },
            ).rowcount
            job_id = conn.execute(
                text(
                    """
                    INSERT INTO jobs_log (tenant_id, source, status, started_at)
                    VALUES (:tenant_id, :source, :running, :started_at)
                    RETURNING id
                    """
                ),
                {"tenant_id": tenant_id, "source": source, "running": RUNNING, "started_at": started},
            ).scalar_one()
        if swept:
            logger.warning("Marked %s orphaned %s job(s) failed for tenant %s", swept, source, tenant_id)
        return job_id

    def succeed(self, job_id: Any, details: Mapping[str, Any] | None = None) -> None:
        self._finish(job_id, SUCCEEDED, None, details)

    def fail(self, job_id: Any, error: str, details: Mapping[str, Any] | None = None) -> None:
        self._finish(job_id, FAILED, error[:2000], details)

    def ensure_closed(self, job_id: Any) -> bool:
        """Force a still-running entry to ``failed``. Returns True if it had to."""
        with self.engine.begin() as conn:
            closed = conn.execute(
                text(
                    """
                    UPDATE jobs_log
                    SET status = :failed, finished_at = :now, error = :error
                    WHERE id = :id AND status = :running AND finished_at IS NULL
                    """
                ),
                {
                    "failed": FAILED,
                    "running": RUNNING,
                    "now": to_utc_iso(utcnow()),
                    "error": INTERRUPTED_MESSAGE,
                    "id": job_id,
                },
            ).rowcount
        if closed:
            logger.error("Job %s was left running; marked failed", job_id)
        return bool(closed)

    def sweep_stale(self, source: str | None = None, *, older_than: timedelta = timedelta(minutes=60)) -> int:
        """Fail every ``running`` entry that started longer ago than ``older_than``."""
        now = utcnow()
        params: dict[str, Any] = {
            "failed": FAILED,
            "running": RUNNING,
            "now": to_utc_iso(now),
            "cutoff": to_utc_iso(now - older_than),
            "error": STALE_MESSAGE.format(minutes=int(older_than.total_seconds() // 60)),
        }
        query = """
            UPDATE jobs_log
            SET status = :failed, finished_at = :now, error = :error
            WHERE status = :running AND started_at < :cutoff
        """
        if source:
            query += " AND source = :source"
            params["source"] = source
        with self.engine.begin() as conn:
            count = conn.execute(text(query), params).rowcount
        if count:
            logger.warning("Marked %s stuck job(s) failed (source=%s)", count, source or "*")
        return count

    def _finish(self, job_id: Any, status: str, error: str | None, details: Mapping[str, Any] | None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    UPDATE jobs_log
                    SET status = :status, finished_at = :now, error = :error,
                        details = {json_param(conn, "details")}
                    WHERE id = :id
                    """
                ),
                {
                    "status": status,
                    "now": to_utc_iso(utcnow()),
                    "error": error,
                    "details": json.dumps(dict(details or {}), sort_keys=True, default=str),
                    "id": job_id,
                },
            )

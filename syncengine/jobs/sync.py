"""Sync orchestration: one provider, one or more tenants, strictly sequential."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Engine

from syncengine.config import EngineConfig
from syncengine.db.repository import Repository
from syncengine.db.session import create_engine_from_env
from syncengine.ingest.http import USER_AGENT, ProviderHTTP
from syncengine.ingest.models import STATE_VERSION, Connection
from syncengine.jobs.joblog import JobLog
from syncengine.jobs.strategies import ProviderSyncStrategy, SyncContext, run_blocking, strategy_for
from syncengine.logic.window import MODE_EXPLICIT, resolve_window
from syncengine.utils.dates import to_utc_iso, today_in_tz, utcnow
from syncengine.utils.rate_limit import RateLimiter
from syncengine.utils.retry import Deadline, RetryPolicy, Sleep
from syncengine.utils.vault import CredentialVault, get_vault

logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str | None = Field(default=None, alias="tenantId")
    mode: str | None = None
    date_from: str | None = Field(default=None, alias="dateFrom")
    date_to: str | None = Field(default=None, alias="dateTo")
    order_ids: list[str] | None = Field(default=None, alias="orderIds")


class TenantResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    status: str
    inserted: int | None = None
    error: str | None = None


class SyncResponse(BaseModel):
    source: str
    results: list[TenantResult]

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SyncEngine:
    def __init__(
        self,
        source: str,
        config: EngineConfig,
        *,
        engine: Engine | None = None,
        vault: CredentialVault | None = None,
        strategy: ProviderSyncStrategy | None = None,
        session: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        today: date | None = None,
    ) -> None:
        config.require_source(source)
        self.source = source
        self.config = config
        self.engine = engine or create_engine_from_env(config.database_url)
        self.vault = vault or get_vault(config.encryption_key)
        self.strategy = strategy or strategy_for(source)
        self.repository = Repository(self.engine)
        self.joblog = JobLog(self.engine)
        self.session = session
        self.sleep = sleep
        self.today = today
        self.policy = RetryPolicy(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )
        self.rate_limiter = RateLimiter(rate=4.0, sleep=sleep)

    async def run(self, request: SyncRequest) -> SyncResponse:
        connections, results = await self._select(request)
        owns_session = self.session is None
        session = self.session or httpx.AsyncClient(timeout=60.0, headers={"User-Agent": USER_AGENT})
        try:
            for connection in connections:
                results.append(await self.sync_tenant(connection, request, session))
        finally:
            if owns_session:
                await session.aclose()
        return SyncResponse(source=self.source, results=results)

    async def _select(self, request: SyncRequest) -> tuple[list[Connection], list[TenantResult]]:
        if not request.tenant_id:
            connections = await run_blocking(
                self.repository.list_sync_candidates, self.source, self.config.sync_batch_size
            )
            logger.info("Selected %s %s tenant(s) for sync", len(connections), self.source)
            return connections, []
        connection = await run_blocking(self.repository.load_connection, request.tenant_id, self.source)
        if connection is None:
            return [], [TenantResult(tenant_id=request.tenant_id, status="skipped", error=f"No {self.source} connection")]
        if connection.status != "connected":
            return [], [
                TenantResult(tenant_id=request.tenant_id, status="skipped", error=f"Connection is {connection.status}")
            ]
        return [connection], []

    async def sync_tenant(self, connection: Connection, request: SyncRequest, session: httpx.AsyncClient) -> TenantResult:
        tenant_id = connection.tenant_id
        job_id = None
        try:
            job_id = await run_blocking(self.joblog.start, tenant_id, self.source)
            http = ProviderHTTP(
                session=session,
                policy=self.policy,
                rate_limiter=self.rate_limiter,
                sleep=self.sleep,
                deadline=Deadline(self.config.tenant_deadline_seconds),
            )
            state = self.strategy.parse_state(connection.meta)
            ctx = SyncContext(
                config=self.config,
                engine=self.engine,
                repository=self.repository,
                vault=self.vault,
                http=http,
                connection=connection,
                state=state,
            )
            order_ids = request.order_ids if self.strategy.supports_order_ids else None
            if request.order_ids and not order_ids:
                logger.warning("Ignoring orderIds for %s tenant %s; running a date window instead", self.source, tenant_id)
            window = None
            if not order_ids:
                window = resolve_window(
                    state,
                    today=self.today or today_in_tz(self.strategy.timezone(ctx)),
                    mode=request.mode,
                    date_from=request.date_from,
                    date_to=request.date_to,
                    lookback_days=self.config.incremental_lookback_days,
                    max_range_days=self.config.max_explicit_range_days,
                )
                logger.info("Tenant %s %s window %s..%s (%s)", tenant_id, self.source, window.start, window.end, window.mode)
            await self.strategy.prepare(ctx)
            outcome = await self.strategy.sync(ctx, window, order_ids)
            summary = {
                "inserted": outcome.inserted,
                "skipped": outcome.skipped,
                "pages": outcome.pages,
                "truncated": outcome.truncated,
                "mode": window.mode if window else "order_ids",
                "date_from": window.start.isoformat() if window else None,
                "date_to": window.end.isoformat() if window else None,
                **outcome.details,
            }
            if window is not None and window.mode != MODE_EXPLICIT:
                await run_blocking(self.repository.save_connection_state, connection, self._next_meta(connection, window.next_state, summary))
            await run_blocking(self.joblog.succeed, job_id, summary)
            return TenantResult(tenant_id=tenant_id, status="succeeded", inserted=outcome.inserted)
        except Exception as exc:
            logger.exception("Sync failed for tenant %s (%s)", tenant_id, self.source)
            if job_id is not None:
                await self._record_failure(job_id, exc)
            return TenantResult(tenant_id=tenant_id, status="failed", error=str(exc))
        finally:
            if job_id is not None:
                await self._close(job_id)

    async def _record_failure(self, job_id: Any, exc: Exception) -> None:
        try:
            await run_blocking(self.joblog.fail, job_id, f"{type(exc).__name__}: {exc}")
        except Exception:
            # ensure_closed in the caller gets another chance at this entry.
            logger.exception("Could not record failure for job %s", job_id)

    async def _close(self, job_id: Any) -> None:
        try:
            await run_blocking(self.joblog.ensure_closed, job_id)
        except Exception:
            # The next run's orphan sweep closes the entry instead.
            logger.exception("Could not close job %s", job_id)

    @staticmethod
    def _next_meta(connection: Connection, updates: dict[str, Any], summary: dict[str, Any]) -> dict[str, Any]:
        meta = dict(connection.meta)
        for key, value in updates.items():
            if value is None:
                meta.pop(key, None)
            else:
                meta[key] = value
        meta["version"] = STATE_VERSION
        meta["last_sync_at"] = to_utc_iso(utcnow())
        meta["last_sync_summary"] = summary
        return meta


async def run_sync(source: str, payload: dict[str, Any] | SyncRequest | None = None, **kwargs: Any) -> SyncResponse:
    """Entry point shared by the HTTP trigger and the Celery tasks."""
    request = payload if isinstance(payload, SyncRequest) else SyncRequest.model_validate(payload or {})
    config = kwargs.pop("config", None) or EngineConfig.from_env()
    engine = SyncEngine(source, config, **kwargs)
    return await engine.run(request)

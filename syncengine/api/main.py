"""FastAPI application exposing the sync trigger."""

from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from functools import lru_cache

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from syncengine.config import SOURCES, EngineConfig
from syncengine.db.session import create_engine_from_env
from syncengine.errors import ConfigurationError
from syncengine.jobs.joblog import JobLog
from syncengine.jobs.sync import SyncRequest, run_sync

logger = logging.getLogger(__name__)

app = FastAPI(title="Sync Engine API")


class CleanupResponse(BaseModel):
    failed: int
    timeout_minutes: int


@lru_cache(maxsize=1)
def _cached_config() -> EngineConfig:
    load_dotenv()
    return EngineConfig.from_env()


def get_config() -> EngineConfig:
    try:
        return _cached_config()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


_engines: dict[str, Engine] = {}


def get_engine(config: EngineConfig = Depends(get_config)) -> Engine:
    engine = _engines.get(config.database_url)
    if engine is None:
        engine = _engines[config.database_url] = create_engine_from_env(config.database_url)
    return engine


def require_token(
    authorization: str | None = Header(default=None),
    config: EngineConfig = Depends(get_config),
) -> None:
    if not config.sync_api_token:
        return
    expected = f"Bearer {config.sync_api_token}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.exception_handler(HTTPException)
async def error_shape(_request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.post("/sync/{source}", dependencies=[Depends(require_token)])
async def trigger_sync(
    source: str,
    payload: SyncRequest | None = Body(default=None),
    config: EngineConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    if source not in SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown source {source}")
    try:
        response = await run_sync(source, payload or SyncRequest(), config=config, engine=engine)
    except ConfigurationError as exc:
        logger.error("Sync %s aborted: %s", source, exc)
        return JSONResponse({"error": str(exc)}, status_code=500)
    except Exception as exc:
        logger.exception("Sync %s failed before processing tenants", source)
        return JSONResponse({"error": str(exc)}, status_code=500)
    return JSONResponse(response.to_payload())


@app.post("/jobs/cleanup-stuck", response_model=CleanupResponse, dependencies=[Depends(require_token)])
async def cleanup_stuck_jobs(
    source: str | None = None,
    config: EngineConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
) -> CleanupResponse:
    minutes = config.stuck_job_timeout_minutes
    failed = JobLog(engine).sweep_stale(source, older_than=timedelta(minutes=minutes))
    return CleanupResponse(failed=failed, timeout_minutes=minutes)

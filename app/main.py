from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request
from starlette.middleware.base import RequestResponseEndpoint
from starlette.responses import Response

from app.api.routers import reports
from app.infra.db import check_db_ready, create_tables
from app.infra.job_queue import check_redis_ready
from app.infra.logging_config import configure_logging

configure_logging()
logger = structlog.get_logger()

DB_AUTO_CREATE = os.getenv("DB_AUTO_CREATE", "0").strip().lower() in {"1", "true", "yes"}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    if DB_AUTO_CREATE:
        create_tables()
        logger.info("database_tables_created")
    logger.info("damage_report_api_started")
    yield
    logger.info("damage_report_api_stopped")


app = FastAPI(
    title="damage-report-platform",
    description="Driver damage reports with asynchronous AI classification.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next: RequestResponseEndpoint) -> Response:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)
    response = await call_next(request)
    if request.url.path not in {"/healthz", "/readyz"}:
        logger.info("request_completed", status_code=response.status_code)
    return response


app.include_router(reports.router, prefix="/api", tags=["reports"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

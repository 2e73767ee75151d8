"""
FastAPI application: HTTP surface of the recommendation service.

Features:
- Service container built in the lifespan, background queue started/drained
- CORS restrictions
- Prometheus metrics endpoint
- Structured JSON logging
- Health / readiness / liveness probes
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from bookrec.config import get_settings
from bookrec.container import ServiceContainer
from bookrec.database import create_tables
from bookrec.logging_config import setup_logging
from bookrec.metrics import REQUEST_COUNT, REQUEST_LATENCY
from bookrec.routers import events, recommendations

settings = get_settings()
setup_logging(settings.log_level, settings.log_format)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and graceful shutdown."""
    logger.info("bookrec_starting", environment=settings.environment)
    container = ServiceContainer.from_settings(settings)

    # Create tables on first start (dev convenience)
    if settings.environment == "development":
        await create_tables(container.engine)
        logger.info("database_tables_created")

    await container.start()
    app.state.container = container

    yield

    logger.info("bookrec_shutting_down")
    await container.close()
    app.state.container = None


app = FastAPI(
    title="Book Recommendation Service",
    description="Personalized, explainable book recommendations",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── CORS ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request metrics middleware ──
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    if not settings.enable_metrics:
        return await call_next(request)
    start = time.time()
    response = await call_next(request)
    duration = time.time() - start

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()
    REQUEST_LATENCY.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


# ── Routers ──
app.include_router(recommendations.router)
app.include_router(events.router)


# ── Health / Readiness / Liveness ──
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "healthy", "service": "bookrec"}


@app.get("/ready", tags=["Health"])
async def readiness(request: Request):
    """Readiness probe: checks DB and Redis connectivity."""
    container = getattr(request.app.state, "container", None)
    checks = {"database": "error", "redis": "error"}
    if container is not None:
        try:
            async with container.session_factory() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("readiness_database_error", error=str(exc))

        try:
            await container.redis.ping()
            checks["redis"] = "ok"
        except (redis.RedisError, OSError) as exc:
            logger.warning("readiness_redis_error", error=str(exc))

    all_ok = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ready" if all_ok else "not_ready", "checks": checks},
    )


@app.get("/live", tags=["Health"])
async def liveness():
    return {"status": "alive"}


# ── Prometheus metrics endpoint ──
@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    return Response(content=generate_latest(), media_type="text/plain")

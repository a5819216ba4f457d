"""
Erazor API process.

Serves uploads, task history and realtime streams. Job handling happens in
the Celery workers; their realtime events reach this process through the
Redis relay started in the lifespan.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from erazor.core.config import settings
from erazor.core.database import create_db_and_tables, engine
from erazor.core.logging import setup_logging, get_logger
from erazor.core.exceptions import register_exception_handlers
from erazor.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from erazor.api.v1 import api_v1_router
from erazor.integrations.billing import BillingClient
from erazor.realtime.hub import get_hub
from erazor.realtime.relay import RedisRealtimeRelay

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    started = time.perf_counter()
    logger.info("application_starting", environment=settings.ENVIRONMENT, version=settings.APP_VERSION)

    await create_db_and_tables()

    # Shared by the quota chain, the subscription cache and the relay
    app.state.redis = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    app.state.billing = BillingClient()
    app.state.relay = None
    if settings.REALTIME_RELAY_ENABLED:
        app.state.relay = RedisRealtimeRelay(app.state.redis, get_hub())
        app.state.relay.start()

    set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info(
        "application_ready",
        startup_ms=int((time.perf_counter() - started) * 1000),
        relay_enabled=app.state.relay is not None
    )

    try:
        yield
    finally:
        if app.state.relay is not None:
            await app.state.relay.stop()
        await app.state.billing.aclose()
        await app.state.redis.aclose()
        await engine.dispose()
        logger.info("application_shutdown_complete")


app = FastAPI(
    title=settings.APP_NAME,
    description="Background removal uploads with tiered quotas, async job tracking and realtime updates.",
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Credentials are needed for the anonymous id cookie
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - started

    # Label by route template, not raw path: task ids would explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(duration)
    http_requests_total.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
    response.headers["X-Process-Time"] = f"{duration:.4f}"
    return response


register_exception_handlers(app)
app.include_router(api_v1_router)


@app.get("/", tags=["root"])
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
    }


@app.get("/health", tags=["health"])
async def health():
    """Liveness only; does not touch Redis or the database."""
    return {"status": "healthy", "version": settings.APP_VERSION}


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """503 until both Redis and the database answer."""
    checks = {"redis": False, "database": False}

    try:
        await request.app.state.redis.ping()
        checks["redis"] = True
    except (RedisError, OSError) as e:
        logger.warning("readiness_redis_failed", error=str(e))

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning("readiness_database_failed", error=str(e))

    all_ready = all(checks.values())
    return JSONResponse(status_code=200 if all_ready else 503, content={"ready": all_ready, "checks": checks})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("erazor.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")

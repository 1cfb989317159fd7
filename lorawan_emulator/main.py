"""
LoRaWAN Emulator Sync Service - Main Application
FastAPI application for org sync, TTN provisioning, uplink ingestion and the emulator lock
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any

import redis.asyncio as redis
from fastapi import FastAPI, Request, Body
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from .config import get_settings
from .controller import ControllerRegistry, EmulatorController
from .credential_backfill import CredentialBackfillAgent
from .database import DatabasePool, PostgresSettingsRepository, PostgresWebhookRepository
from .emulator_lock import EmulatorLock
from .envelope import envelope_from_exception, error_envelope
from .exceptions import EmulatorException
from .logging_config import configure_logging, get_logger
from .org_sync import OrgStatePuller
from .platform_client import PlatformClient
from .push_sync import PushSynchronizer
from .session_store import SessionStore
from .settings_resolver import SettingsResolver
from .ttn_provisioning import TTNProvisioner
from .webhook_ingest import WebhookIngestor

# Routers
from .routers import ttn_router, sync_router, emulator_lock_router, metrics_router

settings = get_settings()
configure_logging(settings.log_level, settings.json_logs)
logger = get_logger(__name__)

# ============================================================
# Application Lifecycle Management
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup/shutdown)
    Initializes storage and the service objects the routers use
    """
    logger.info("service_starting", app_name=settings.app_name, version=settings.app_version)

    db_pool = DatabasePool()
    await db_pool.initialize()
    app.state.db_pool = db_pool
    logger.info("database_pool_ready")

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    app.state.redis = redis_client

    resolver = SettingsResolver(PostgresSettingsRepository(db_pool))
    app.state.provisioner = TTNProvisioner(resolver, settings=settings)
    app.state.webhook_ingestor = WebhookIngestor(
        PostgresWebhookRepository(db_pool),
        require_secret=settings.webhook_require_secret,
    )
    app.state.emulator_lock = EmulatorLock(redis_client, timeout_seconds=settings.emulator_lock_timeout_seconds)

    platform_client = PlatformClient(settings=settings)

    def build_controller(session_key: str) -> EmulatorController:
        return EmulatorController(
            puller=OrgStatePuller(platform_client),
            synchronizer=PushSynchronizer(platform_client),
            backfill_agent=CredentialBackfillAgent(platform_client),
            store=SessionStore(
                redis_client,
                session_key=session_key,
                freshness_seconds=settings.session_freshness_seconds,
            ),
        )

    app.state.controllers = ControllerRegistry(build_controller)

    logger.info("service_ready")

    yield

    logger.info("service_stopping")

    if hasattr(app.state, 'controllers'):
        await app.state.controllers.close()

    if hasattr(app.state, 'redis'):
        await app.state.redis.aclose()
        logger.info("redis_closed")

    if hasattr(app.state, 'db_pool'):
        await app.state.db_pool.close()

    logger.info("service_stopped")

# ============================================================
# FastAPI Application
# ============================================================

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Org sync, TTN provisioning and uplink ingestion for the LoRaWAN cold-chain emulator",
    lifespan=lifespan,
)

app.include_router(ttn_router)
app.include_router(sync_router)
app.include_router(emulator_lock_router)
app.include_router(metrics_router)

# ============================================================
# Uplink Webhook
# ============================================================

@app.post("/webhook", tags=["Webhook"])
async def webhook(request: Request, payload: Dict[str, Any] = Body(...)):
    """
    Ingest a TTN uplink (canonical or emulator-direct shape)

    Responds 200 when processed, 202 when the device is unassigned,
    400 when the EUI is missing and 401 on webhook secret failures.
    """
    result = await request.app.state.webhook_ingestor.ingest(payload, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body)

# ============================================================
# Exception Handlers
# ============================================================

@app.exception_handler(EmulatorException)
async def emulator_exception_handler(request: Request, exc: EmulatorException):
    """
    Expected failures travel as HTTP 200 with ok=false; storage outages keep
    their 5xx status
    """
    status_code = exc.status_code if exc.status_code and exc.status_code >= 500 else 200
    logger.warning(
        "request_failed",
        path=request.url.path,
        error_code=exc.error_code,
        error=exc.message,
    )
    return JSONResponse(status_code=status_code, content=envelope_from_exception(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    return JSONResponse(
        status_code=422,
        content=error_envelope(
            "Request validation failed",
            error_code="VALIDATION_ERROR",
            status_code=422,
            details=jsonable_errors(exc),
        )
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_envelope(
            "Internal processing error",
            error_code="INTERNAL_ERROR",
            hint="Check server logs for details",
            status_code=500,
        )
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]

# ============================================================
# Health Checks
# ============================================================

@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """
    Health check endpoint
    Returns service status and storage health
    """
    checks = {}
    stats = {}
    overall_status = "healthy"

    db_pool = getattr(request.app.state, "db_pool", None)
    if db_pool is not None:
        stats["database"] = db_pool.get_stats()
        checks["database"] = "healthy" if db_pool.pool else "not_initialized"
    else:
        checks["database"] = "not_initialized"
        overall_status = "degraded"

    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is not None:
        try:
            await redis_client.ping()
            checks["redis"] = "healthy"
        except (RedisError, OSError) as e:
            checks["redis"] = f"unhealthy: {e}"
            overall_status = "degraded"
    else:
        checks["redis"] = "not_initialized"
        overall_status = "degraded"

    return {
        "status": overall_status,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "stats": stats,
    }

# ============================================================
# Main Entry Point (for debugging)
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "lorawan_emulator.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower()
    )

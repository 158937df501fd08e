"""
loadbench - Main Application Entry Point

FastAPI application for orchestrating distributed load tests, with live
run telemetry over WebSocket.
"""

from contextlib import asynccontextmanager
from typing import Any, cast

import logging
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from loadbench import __version__
from loadbench.config import settings
from loadbench.core.orchestrator import get_orchestrator, has_orchestrator
from loadbench.errors import RunNotFound

# Configure logging
# **IMPORTANT**: Use uvicorn's colored "LEVEL:" format for ALL loggers.
from uvicorn.logging import DefaultFormatter

console_handler = logging.StreamHandler()
console_handler.setFormatter(DefaultFormatter(fmt=f"%(levelprefix)s {settings.LOG_FORMAT}", use_colors=True))

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    handlers=[console_handler],
)

logging.getLogger("botocore").setLevel(logging.WARNING)
logging.getLogger("boto3").setLevel(logging.WARNING)


class EndpointFilter(logging.Filter):
    """Filter out high-frequency endpoints from access logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if "/telemetry" in msg:
            return False
        return True


logging.getLogger("uvicorn.access").addFilter(EndpointFilter())

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown events.
    """
    # Startup
    logger.info("🚀 loadbench starting up...")
    logger.info(f"🔧 Environment: {'Development' if settings.APP_DEBUG else 'Production'}")
    logger.info(f"📦 Storage backend: {settings.STORAGE_BACKEND}")

    orchestrator = get_orchestrator()
    logger.info(
        "✅ Orchestrator ready (max fleet %d, poll every %.1fs)",
        orchestrator.settings.max_fleet_size,
        orchestrator.settings.poll_interval_seconds,
    )

    yield

    # Shutdown
    logger.info("🛑 loadbench shutting down...")
    # Cancel in-flight run loops (important for `--reload`)
    try:
        await orchestrator.shutdown(timeout_seconds=5.0)
    except Exception as e:
        logger.warning("Orchestrator shutdown encountered an error: %s", e)


# Initialize FastAPI application
app = FastAPI(
    title="loadbench",
    description="Distributed load test orchestrator",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# Configure CORS for local development
if settings.APP_DEBUG:
    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info(f"🔓 CORS enabled for origins: {settings.CORS_ORIGINS}")


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        dict: Service health status and version information
    """
    health_status: dict[str, Any] = {
        "status": "healthy",
        "service": "loadbench",
        "version": __version__,
        "environment": "development" if settings.APP_DEBUG else "production",
        "storage_backend": settings.STORAGE_BACKEND,
        "active_runs": 0,
    }
    if has_orchestrator():
        health_status["active_runs"] = get_orchestrator().active_run_count
    else:
        health_status["status"] = "starting"
    return health_status


# Import and include API routers
from loadbench.api.routes import runs  # noqa: E402
from loadbench.api.routes import scenarios  # noqa: E402

app.include_router(runs.router, prefix="/api/runs", tags=["runs"])
app.include_router(scenarios.router, prefix="/api/scenarios", tags=["scenarios"])


# ============================================================================
# WebSocket endpoint - uses websocket package for streaming implementation
# ============================================================================

from loadbench.websocket import stream_run_telemetry  # noqa: E402


@app.websocket("/ws/runs/{test_id}")
async def websocket_run_telemetry(websocket: WebSocket, test_id: str):
    """
    WebSocket endpoint for live run telemetry.

    Streams status changes, orchestrator log lines and worker samples for
    the run until the client disconnects.
    """
    await websocket.accept()
    logger.info(f"📡 WebSocket connected for run: {test_id}")
    orchestrator = get_orchestrator()
    try:
        run = await orchestrator.get_run_status(test_id)
        snapshot = run.model_dump(mode="json")
    except RunNotFound:
        snapshot = None
    try:
        await stream_run_telemetry(
            websocket,
            test_id,
            orchestrator.telemetry,
            ping_interval=float(settings.WS_PING_INTERVAL),
            snapshot=snapshot,
        )
    except WebSocketDisconnect:
        logger.info(f"📡 WebSocket disconnected for run: {test_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


if __name__ == "__main__":
    import uvicorn

    # **IMPORTANT**: log_config=None prevents uvicorn from overriding our logging setup.
    uvicorn.run(
        "loadbench.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )

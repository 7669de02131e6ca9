"""
Unified backend entry point.

Architecture:
- One Python process, one asyncio event loop
- Peer services running concurrently:
  1. FastAPI (HTTP API for creating and querying notifications)
  2. Bus consumer workers (ingestion, delivery, receipts)
  3. APScheduler jobs (scheduler tick, aggregator sweep)

We use FastAPI's lifespan to manage startup/shutdown, but at runtime
all services are equal peers in the event loop. The lifespan pattern
gives us uvicorn's signal handling and --reload for free.

Run with: python main.py [--port PORT] [--dev]
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).parent

# Load .env.local first (if exists), then .env as fallback
# .env.local is gitignored and used for local dev overrides
load_dotenv(project_root / ".env.local")  # Local overrides (gitignored)
load_dotenv()  # Fallback to .env

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.config import (
    check_channel_env_vars,
    get_api_port,
    get_pipeline_settings,
    get_sentry_dsn,
    is_dev_mode,
)
from core.database import close_engine, get_engine, is_configured
from core.notifications.bus import InMemoryMessageBus
from core.notifications.channels import build_adapters
from core.notifications.errors import InfrastructureError, NotFoundError, ValidationError
from core.notifications.models import validation_errors
from core.notifications.orchestrator import NotificationPipeline
from core.notifications.preferences import InMemoryPreferenceSource, SqlPreferenceSource
from core.notifications.store import InMemoryNotificationStore, SqlNotificationStore
from web_api.routes.notifications import router as notifications_router
from web_api.routes.preferences import router as preferences_router

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if is_dev_mode() else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

if get_sentry_dsn():
    sentry_sdk.init(
        dsn=get_sentry_dsn(),
        environment="development" if is_dev_mode() else "production",
        traces_sample_rate=0.0,
    )


def build_pipeline() -> NotificationPipeline:
    """
    Assemble the pipeline from environment configuration.

    Uses PostgreSQL when DATABASE_URL is set, otherwise in-memory storage
    (development only; nothing survives a restart).
    """
    if is_configured():
        engine = get_engine()
        store = SqlNotificationStore(engine)
        preferences = SqlPreferenceSource(engine)
    else:
        print("Warning: DATABASE_URL not set, using in-memory notification store")
        store = InMemoryNotificationStore()
        preferences = InMemoryPreferenceSource()

    return NotificationPipeline(
        store=store,
        preferences=preferences,
        bus=InMemoryMessageBus(),
        adapters=build_adapters(),
        settings=get_pipeline_settings(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager.

    Starts the pipeline's consumers and periodic jobs alongside FastAPI in
    the same event loop, and flushes them on shutdown.
    """
    for warning in check_channel_env_vars():
        print(warning)

    print("Starting notification pipeline...")
    pipeline = build_pipeline()
    await pipeline.start()
    app.state.pipeline = pipeline

    yield  # FastAPI runs here, pipeline workers run alongside it

    print("Shutting down notification pipeline...")
    await pipeline.shutdown()
    app.state.pipeline = None
    await close_engine()  # Close database connections


# Create FastAPI app with lifespan
app = FastAPI(
    title="Notification Pipeline API",
    lifespan=lifespan,
)

# Include routers
app.include_router(notifications_router)
app.include_router(preferences_router)


# ============================================================================
# Error handling
# ============================================================================


def _validation_response(message: str, errors: list[dict]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"status": "error", "message": message, "errors": errors},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _validation_response(exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return _validation_response("Invalid request", validation_errors(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"status": "error", "message": str(exc)})


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
    logger.error(f"Infrastructure failure on {request.url.path}: {exc}")
    sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Notification service unavailable"},
    )


@app.get("/health")
async def health():
    """Health check endpoint with detailed status."""
    pipeline = getattr(app.state, "pipeline", None)
    return {
        "status": "healthy",
        "pipeline_running": pipeline is not None,
        "database_configured": is_configured(),
    }


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Notification Pipeline Server")
    parser.add_argument(
        "--port",
        type=int,
        default=get_api_port(),
        help="Port to run the server on (default: API_PORT or 8000)",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    # Set env var so it persists across uvicorn reloads
    if args.dev:
        os.environ["DEV_MODE"] = "true"

    # Pass app object directly (not string) to avoid module reimport issues
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=args.port,
    )

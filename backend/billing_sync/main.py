"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_sync import __version__
from billing_sync.api import monitoring, subscriptions
from billing_sync.core.config import settings
from billing_sync.core.logging import setup_logging
from billing_sync.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy, shutdown_otel
from billing_sync.db.redis import get_redis_client
from billing_sync.db.session import engine, init_db
from billing_sync.models import Base  # noqa: F401  registers all models with Base.metadata
from billing_sync.services.subscription_service import shutdown_subscription_service
from billing_sync.tasks.reconciliation import ledger_purge_task, parked_retry_task

setup_logging()
logger = logging.getLogger(__name__)


def _start_background_tasks() -> List[asyncio.Task]:
    return [
        asyncio.create_task(parked_retry_task(), name="parked-retry"),
        asyncio.create_task(ledger_purge_task(), name="ledger-purge"),
    ]


async def _stop_background_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: tracing, schema, cache check, background jobs. Shutdown in reverse."""
    if initialize_otel():
        logger.info(f"Tracing exported to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    try:
        get_redis_client().ping()
    except Exception as e:
        # Only cache invalidation and sessions need Redis; webhooks still apply
        logger.warning(f"Redis unreachable at startup: {e}")

    instrument_sqlalchemy(engine)

    tasks = _start_background_tasks()
    logger.info(f"Billing sync {__version__} started ({len(tasks)} background tasks)")

    yield

    logger.info("Shutting down background tasks...")
    await _stop_background_tasks(tasks)
    shutdown_subscription_service()
    shutdown_otel()


app = FastAPI(
    title="Billing Sync",
    description="Billing-state reconciliation for Stripe subscriptions",
    version=__version__,
    lifespan=lifespan
)

instrument_fastapi(app)

# The webhook is server-to-server; only the account routes are called from the browser
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.append("http://127.0.0.1:3000")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router)
app.include_router(monitoring.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from beltbilling.api import webhooks
from beltbilling.core import otel
from beltbilling.core.config import settings
from beltbilling.core.logging import setup_logging
from beltbilling.db.redis import get_redis_client
from beltbilling.db.session import engine, init_db
from beltbilling.services.gateways import close_adapters
from beltbilling.tasks.scheduler import start_background_tasks, stop_background_tasks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if otel.initialize_otel():
        logger.info(f"OpenTelemetry tracing enabled, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        otel.instrument_app(app, engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    logger.info("Starting background sweeps...")
    tasks = start_background_tasks()
    logger.info(f"Background sweeps started: {', '.join(tasks)}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_background_tasks(tasks)
    close_adapters()


# Create FastAPI app
app = FastAPI(
    title="Beltbilling",
    description="Payment gateway synchronization for academy subscriptions",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(webhooks.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}

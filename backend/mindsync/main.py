"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mindsync.core.config import settings
from mindsync.core.errors import AppError, app_error_handler
from mindsync.core.logging import setup_logging
from mindsync.core.middleware import access_log_middleware, setup_cors_middleware
from mindsync.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from mindsync.db.session import get_engine, init_db
import mindsync.models  # noqa: F401  registers all tables with Base.metadata

# Import routers
from mindsync.api import admin, stripe, subscription, user, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    instrument_sqlalchemy(get_engine())

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="MindSync Backend",
    description="Subscription and billing backend for focus music",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)

# Include routers
app.include_router(webhooks.router)
app.include_router(stripe.router)
app.include_router(subscription.router)
app.include_router(user.router)
app.include_router(admin.router)

app.add_exception_handler(AppError, app_error_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query strings are client errors like any other 400"""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": f"{location}: {first.get('msg', 'invalid value')}"}
    )


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

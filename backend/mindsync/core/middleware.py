"""Middleware configuration for FastAPI application"""
import logging

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from mindsync.core.config import settings
from mindsync.core.security import log_api_access

logger = logging.getLogger(__name__)


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://127.0.0.1:3000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def access_log_middleware(request: Request, call_next):
    """Log every request with its final status code.

    Webhook bodies are read raw by their routes, so nothing here touches the body.
    """
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        logger.error(f"Request failed before a response was produced: {error}", exc_info=True)
        raise
    finally:
        if request.url.path not in ("/health", "/metrics"):
            log_api_access(request, status_code, error)

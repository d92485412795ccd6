"""Application errors and their JSON rendering"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        flags: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code:
            self.status_code = status_code
        self.flags = flags or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        body.update(self.flags)
        return body


class BadRequestError(AppError, ValueError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError, LookupError):
    status_code = 404


class ConfigurationError(AppError):
    """A required secret or key is not configured on the server."""
    status_code = 500


class WebhookVerificationError(BadRequestError):
    """Webhook headers or signature could not be verified."""


class MissingFieldError(BadRequestError):
    """A provider payload lacks a field the event cannot be processed without."""


class InvalidPriceIdError(BadRequestError):
    """The caller passed something other than a Stripe price id."""


class PriceNotFoundError(BadRequestError):
    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message, details=details, flags={"priceNotFound": True})


class AccountSuspendedError(AppError):
    """The merchant account itself cannot take payments."""
    status_code = 503

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message, details=details, flags={"accountSuspended": True})


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

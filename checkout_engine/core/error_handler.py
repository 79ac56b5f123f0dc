"""
Error handling and sanitization

- Checkout validation errors → structured {error, code, details}, safe to expose
- Infrastructure errors → generic message, full details logged only
- Unhandled exceptions → caught by middleware, never leak internals
"""
import logging
import traceback
from typing import Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from checkout_engine.core.config import get_settings
from checkout_engine.core.exceptions import CheckoutEngineError, CheckoutValidationError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "stripe",
    "traceback",
    "file \"",
    "line ",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if get_settings().DEBUG:
        return message

    if is_sensitive_error(message):
        return GENERIC_ERROR_MESSAGE

    # Truncate very long messages
    if len(message) > 200:
        return message[:200] + "..."

    return message


def checkout_error_response(error: CheckoutEngineError) -> JSONResponse:
    """
    Map a checkout error to its JSON response.

    Validation errors keep their details so the client can show every
    problem at once. Infrastructure errors only expose the code.
    """
    if isinstance(error, CheckoutValidationError):
        return JSONResponse(
            status_code=error.status_code,
            content={"error": error.message, "code": error.code, "details": error.details},
        )

    return JSONResponse(
        status_code=error.status_code,
        content={
            "error": sanitize_error_message(error.message) if error.status_code == 502 else GENERIC_ERROR_MESSAGE,
            "code": error.code,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            # Let FastAPI handle HTTPExceptions normally
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "error": "internal_error",
                "message": GENERIC_ERROR_MESSAGE,
                "error_id": error_id,
            }
            if get_settings().DEBUG:
                content["message"] = str(e)
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)

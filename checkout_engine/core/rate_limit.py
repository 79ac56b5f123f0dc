"""
Rate limiting for checkout creation

SlowAPI with in-memory storage, keyed on the client IP. The checkout limit
is read from settings when a request is checked, so tests and deployments
can change RATE_LIMIT_CHECKOUT without re-importing the routes.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from checkout_engine.core.config import get_settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP, taking the first X-Forwarded-For hop behind a proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)


def checkout_limit() -> str:
    return get_settings().RATE_LIMIT_CHECKOUT


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with the window length as Retry-After."""
    retry_after = exc.limit.limit.get_expiry()
    logger.warning(f"Checkout rate limit hit: {get_client_ip(request)} ({exc.detail}) on {request.url.path}")

    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many checkout attempts. Please wait before trying again.",
            "code": "RATE_LIMITED",
            "details": {"limit": exc.detail, "retry_after_seconds": retry_after},
        },
        headers={"Retry-After": str(retry_after)},
    )

"""
Checkout Engine
FastAPI application entry point

- Stock cleanup scheduler with heartbeat metrics (housekeeping only)
- Rate limiting with SlowAPI
- Error sanitization middleware
- Health endpoint with DB ping
- HTTP client lifecycle management
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from checkout_engine.api.deps import Services, build_services
from checkout_engine.api.routes import checkout
from checkout_engine.core.config import Settings, get_settings
from checkout_engine.core.error_handler import ErrorSanitizationMiddleware
from checkout_engine.core.rate_limit import limiter, rate_limit_exceeded_handler
from checkout_engine.services.stock_cleanup import release_expired_reservations

logger = logging.getLogger(__name__)


def new_heartbeat() -> dict:
    return {
        "last_run": None,
        "last_success": None,
        "records_processed": 0,
        "errors": 0,
    }


async def run_stock_cleanup(app: FastAPI) -> None:
    """Run one cleanup pass and update the heartbeat for /health."""
    heartbeat = app.state.cleanup_heartbeat
    settings: Settings = app.state.settings
    heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()

    stats = await release_expired_reservations(
        app.state.services.session_factory,
        grace_minutes=settings.STOCK_CLEANUP_GRACE_MINUTES,
    )
    if stats.get("errors"):
        heartbeat["errors"] += stats["errors"]
        return

    heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
    heartbeat["records_processed"] += stats.get("reservations_expired", 0) + stats.get("reservations_deleted", 0)


async def stock_cleanup_scheduler(app: FastAPI) -> None:
    """
    Background loop that runs stock cleanup at configured intervals.
    Runs until cancelled during shutdown.
    """
    interval_minutes = app.state.settings.STOCK_CLEANUP_INTERVAL_MINUTES
    logger.info(f"Stock cleanup scheduler started (interval: {interval_minutes} minutes)")

    while True:
        try:
            await run_stock_cleanup(app)
        except Exception as e:
            app.state.cleanup_heartbeat["errors"] += 1
            logger.error(f"Stock cleanup scheduler error: {e}")

        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire services and start background tasks on startup.
    Services handed to create_app() are used as-is and not closed here.
    """
    settings: Settings = app.state.settings
    owns_services = app.state.services is None
    if owns_services:
        app.state.services = build_services(settings)

    cleanup_task: Optional[asyncio.Task] = None
    if settings.STOCK_CLEANUP_ENABLED:
        cleanup_task = asyncio.create_task(stock_cleanup_scheduler(app))
        logger.info("Stock cleanup scheduler ENABLED")
    else:
        logger.info("Stock cleanup scheduler DISABLED via config")

    yield

    if cleanup_task and not cleanup_task.done():
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            logger.info("Stock cleanup scheduler cancelled")

    if owns_services:
        await app.state.services.close()
        logger.info("HTTP clients and database engine closed")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Stock reservation, pricing and Stripe Checkout session creation.",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.services = services
    app.state.cleanup_heartbeat = new_heartbeat()

    limiter.enabled = settings.RATE_LIMIT_ENABLED
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(ErrorSanitizationMiddleware)

    app.include_router(checkout.router, prefix="/api/checkout", tags=["Checkout"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """
        Health check with actual DB ping and cleanup heartbeat.
        Returns 503 if database is unreachable.
        """
        health_status = {
            "status": "healthy",
            "database": "unknown",
            "stock_cleanup": app.state.cleanup_heartbeat,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            async with app.state.services.session_factory() as db:
                await db.execute(text("SELECT 1"))
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {type(e).__name__}"
            health_status["status"] = "unhealthy"
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()

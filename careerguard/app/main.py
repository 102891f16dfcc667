"""FastAPI application factory for the throttling layer.

``create_app()`` is the composition root: it builds the counter store,
limiters, monitor and deduplication coordinator and hangs them off
``app.state``. Tests and embedding applications call it directly.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from careerguard.app.api.admin.router import router as admin_router
from careerguard.app.api.metrics import MetricsMiddleware, router as metrics_router
from careerguard.app.core.config import Settings, settings as default_settings
from careerguard.app.core.logging import get_logger, setup_logging
from careerguard.app.exceptions import RateLimitExceededError, ThrottleException
from careerguard.app.middleware.dedup import DeduplicationMiddleware
from careerguard.app.middleware.rate_limit import (
    CounterStore,
    LoadSampler,
    ProcessLoadSampler,
    RateLimitMiddleware,
    RateLimitService,
    build_counter_store,
)
from careerguard.app.middleware.request_id import RequestIdMiddleware
from careerguard.app.middleware.throttle import rate_limit_exceeded_handler
from careerguard.app.services.dedup import DeduplicationCoordinator
from careerguard.app.services.maintenance import MaintenanceScheduler
from careerguard.app.services.performance import PerformanceMonitor


def create_app(
    config: Optional[Settings] = None,
    store: Optional[CounterStore] = None,
    load_sampler: Optional[LoadSampler] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    All throttling state hangs off ``app.state``: ``settings``,
    ``rate_limiter``, ``monitor``, ``deduplicator`` and ``maintenance``.

    Args:
        config: Settings to use instead of the environment-loaded defaults
        store: Counter store to use instead of the one settings select
        load_sampler: Load sampler for adaptive limits
        clock: Time source for limiters and metrics

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings
    setup_logging(config)
    logger = get_logger(__name__)

    store = store or build_counter_store(config, clock)
    monitor = PerformanceMonitor.from_settings(config, clock=clock)
    rate_limiter = RateLimitService.from_settings(
        config,
        store,
        load_sampler=load_sampler or ProcessLoadSampler.from_settings(config),
        monitor=monitor,
        clock=clock,
    )
    deduplicator = DeduplicationCoordinator(config.dedup_execution_timeout_seconds)
    maintenance = MaintenanceScheduler(rate_limiter, monitor, interval=config.maintenance_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Starts periodic maintenance on startup; on shutdown stops it,
        cancels in-flight deduplicated executions and closes the store.
        """
        if not await store.ping():
            # Limiters fail open until the store comes back
            logger.warning("Counter store unreachable at startup; rate limits will fail open")
        await maintenance.start()
        logger.info(
            "Application startup complete",
            extra={"store": type(store).__name__, "debug_mode": config.debug},
        )

        yield

        await maintenance.stop()
        await deduplicator.shutdown()
        await rate_limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CareerGuard",
        description="Request throttling and coalescing layer",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.rate_limiter = rate_limiter
    app.state.monitor = monitor
    app.state.deduplicator = deduplicator
    app.state.maintenance = maintenance

    # Add middleware (order matters: last added = first executed)
    # Deduplication (innermost - duplicates are still counted by the limiters)
    if config.dedup_enabled:
        app.add_middleware(DeduplicationMiddleware, coordinator=deduplicator)

    # App-wide rate limit
    if config.global_rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            service=rate_limiter,
            exempt_paths=config.rate_limit_exempt_paths,
        )

    app.add_middleware(RequestIdMiddleware)

    # Metrics middleware (outermost - times the whole stack)
    app.add_middleware(MetricsMiddleware, monitor=monitor)

    app.include_router(metrics_router)
    app.include_router(admin_router)

    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_handler)

    @app.exception_handler(ThrottleException)
    async def throttle_exception_handler(request: Request, exc: ThrottleException) -> JSONResponse:
        """Map throttling errors that reach a route to their status code."""
        logger.warning(f"{type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        content = {
            "error": "internal_error",
            "message": "An internal error occurred. Please try again later.",
            "request_id": request_id,
        }
        if config.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# ASGI entry point for `uvicorn careerguard.app.main:app`; nothing else imports it
app = create_app()

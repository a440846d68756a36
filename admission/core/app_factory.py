"""Application factory for the FastAPI app.

Centralizes app construction (logging, admission middleware, handlers,
routers) so tests can build apps with their own settings, store and clock.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI

from admission.adapters.counter_store.base import AbstractCounterStore
from admission.api.routes import health_router, policies_router
from admission.core.config import Settings, settings as default_settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware
from admission.core.rate_limit import AdmissionMiddleware


def create_app(
    cfg: Settings | None = None,
    *,
    store: AbstractCounterStore | None = None,
    clock: Callable[[], float] = time.time,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        cfg: Settings to build from; defaults to the global settings.
        store: Counter store override (tests, embedding).
        clock: Time source for the limiter engine.
        configure_logs: Whether to (re)configure the root logger.

    Returns:
        Configured FastAPI app.

    Raises:
        ConfigurationAppError: If the admission configuration is invalid.
    """
    cfg = cfg or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    admission = AdmissionMiddleware.from_settings(cfg, store=store, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await admission.store.close()

    app = FastAPI(
        title="Admission Control API",
        description=(
            "Rate-limiting admission layer for the video platform API: rule-based "
            "policy resolution, per-IP or per-user fixed-window counters in Redis, "
            "standard X-RateLimit-* headers and fail-open behavior."
        ),
        version=cfg.app.version,
        debug=cfg.app.debug,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.admission = admission

    # The last registered middleware runs first: request ids wrap admission.
    app.middleware("http")(admission)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(policies_router)

    return app

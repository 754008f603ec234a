import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from planpilot.api import entitlements, generate, health, payments, plans
from planpilot.core.config import Settings, cors_origins, settings, validate_config
from planpilot.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from planpilot.core.logging import configure_logging
from planpilot.core.middleware.request_id import RequestIdMiddleware
from planpilot.core.ratelimit import (
    RateLimitSweeper,
    RequestLogStore,
    SlidingWindowRateLimiter,
    build_rate_limit_policies,
    build_request_log_store,
    now_ms,
)
from planpilot.features.billing.paypal import PayPalClient
from planpilot.features.generation.service import GenerationService
from planpilot.features.plans.catalog import PlanCatalog, build_catalog
from planpilot.features.subscriptions.service import SubscriptionStore


logger = logging.getLogger("planpilot")


def create_app(
    settings_obj: Optional[Settings] = None,
    *,
    store: Optional[RequestLogStore] = None,
    time_fn: Callable[[], int] = now_ms,
    catalog: Optional[PlanCatalog] = None,
    subscriptions: Optional[SubscriptionStore] = None,
    payment_client: Optional[PayPalClient] = None,
    generation_service: Optional[GenerationService] = None,
) -> FastAPI:
    """Build the application. Collaborators not supplied are built from settings."""
    cfg = settings_obj or settings
    policies = build_rate_limit_policies(cfg)
    plan_catalog = catalog or build_catalog(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting PlanPilot backend...")
        app.state.startup_time = time.time()
        log_store = store if store is not None else build_request_log_store(cfg)
        app.state.rate_limiter = SlidingWindowRateLimiter(log_store, time_fn=time_fn)
        app.state.rate_limit_sweeper = RateLimitSweeper(
            log_store,
            interval_ms=cfg.RATE_LIMIT_SWEEP_INTERVAL_MS,
            grace_ms=cfg.RATE_LIMIT_SWEEP_GRACE_MS,
            time_fn=time_fn,
        )
        app.state.rate_limit_sweeper.start()
        app.state.payments = payment_client or PayPalClient.from_settings(cfg)
        app.state.generation = generation_service or GenerationService.from_settings(cfg)
        try:
            yield
        finally:
            await app.state.rate_limit_sweeper.stop()
            if payment_client is None:
                await app.state.payments.aclose()
            if store is None:
                log_store.close()
            logger.info("Stopping PlanPilot backend...")

    app = FastAPI(title="PlanPilot AI - Backend", lifespan=lifespan)
    app.state.settings = cfg
    app.state.catalog = plan_catalog
    app.state.rate_limit_policies = policies
    app.state.subscriptions = subscriptions or SubscriptionStore(plan_catalog)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(cfg),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(health.root_router)
    app.include_router(plans.router)
    app.include_router(entitlements.router)
    app.include_router(payments.router)
    app.include_router(generate.router)
    return app


def build_default_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)
    return create_app(settings)


app = build_default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("planpilot.main:app", host="0.0.0.0", port=8000, reload=settings.ENV != "production")

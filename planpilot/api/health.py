"""
Health endpoints.

Lightweight liveness plus a status summary that never exposes secrets.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request


router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("")
def health(request: Request):
    state = request.app.state
    started = getattr(state, "startup_time", None)
    sweeper = getattr(state, "rate_limit_sweeper", None)
    return {
        "ok": True,
        "env": state.settings.ENV,
        "rate_limit_backend": type(state.rate_limiter.store).__name__,
        "sweeper_running": bool(sweeper and sweeper.running),
        "payments_mock": state.payments.mock_mode,
        "generation_configured": state.generation.configured,
        "uptime_s": round(time.time() - started, 3) if started else None,
        "computed_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }

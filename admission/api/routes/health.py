from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/api/health")
async def health_check(request: Request) -> dict:
    """Liveness check with counter store reachability.

    Excluded from admission control. The service reports ``degraded`` (not
    an error status) when the counter store is down, because requests are
    still served while admission control fails open.

    Returns:
        dict: ``status`` ("ok" or "degraded") and the counter store state.
    """

    store = request.app.state.admission.store
    reachable = await store.ping()
    return {
        "status": "ok" if reachable else "degraded",
        "counter_store": {"backend": store.backend, "reachable": reachable},
    }


@router.get("/api/status")
def service_status(request: Request) -> dict:
    """Static service metadata for dashboards and deploy checks."""

    cfg = request.app.state.settings
    return {
        "service": "admission",
        "version": cfg.app.version,
        "environment": cfg.app_env,
        "rate_limiting_enabled": cfg.rate_limit.enabled,
        "algorithm": cfg.rate_limit.algorithm,
        "penalties_enabled": cfg.rate_limit.penalty_enabled,
    }

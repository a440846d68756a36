from __future__ import annotations

from fastapi import APIRouter, Request

from admission.schemas.policy import PolicyOut

router = APIRouter(prefix="/api/rate-limit", tags=["Rate Limiting"])


@router.get("/policies", response_model=list[PolicyOut])
def list_policies(request: Request) -> list[PolicyOut]:
    """List the registered limiting policies.

    The registry is loaded at startup and read-only, so this reflects exactly
    what the admission middleware enforces. This route is itself limited by
    the default policy.
    """

    registry = request.app.state.admission.resolver.config.policies
    return [PolicyOut.model_validate(policy.model_dump()) for policy in registry.values()]

"""Rate limit headers and 429 payload rendering.

Security headers are attached to every response that went through limit
evaluation, allowed or rejected.
"""

from __future__ import annotations

import json
import math

from fastapi import status
from fastapi.responses import JSONResponse

from admission.schemas.policy import LimitDecision, LimiterPolicy

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

RATE_LIMIT_HEADERS = (
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
)

ERROR_HEADER = "X-RateLimit-Error"
ERROR_HEADER_VALUE = "Rate limiting temporarily unavailable"
INFO_HEADER = "X-RateLimit-Info"


def reset_epoch_seconds(decision: LimitDecision) -> int:
    return math.ceil(decision.reset_at_ms / 1000)


def build_headers(decision: LimitDecision) -> dict[str, str]:
    """Render rate limit and security headers for a decision."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(reset_epoch_seconds(decision)),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    headers.update(SECURITY_HEADERS)
    return headers


def build_info_header(decision: LimitDecision, policy: LimiterPolicy) -> str:
    """Compact JSON summary handed to downstream handlers on allowed requests."""
    return json.dumps(
        {
            "limiter": policy.name,
            "remaining": decision.remaining,
            "resetTime": reset_epoch_seconds(decision),
        },
        separators=(",", ":"),
    )


def build_rejection(decision: LimitDecision, policy: LimiterPolicy) -> JSONResponse:
    """Build the 429 response for a rejected request."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Rate limit exceeded",
            "message": policy.message,
            "retryAfter": decision.retry_after_seconds,
            "limit": decision.limit,
            "remaining": decision.remaining,
            "resetTime": reset_epoch_seconds(decision),
            "type": "RATE_LIMIT_ERROR",
        },
        headers=build_headers(decision),
    )

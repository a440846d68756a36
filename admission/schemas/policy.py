"""Policy and routing schemas for admission control.

LimiterPolicy and RouteRule are validated with Pydantic when the process
starts, so malformed configuration is caught before the first request.
Both are frozen: once loaded they are shared read-only across requests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

IdentityStrategy = Literal["ip", "user"]

# Marker used by a route rule to request an inline (ad-hoc) policy
CUSTOM_POLICY = "custom"

INLINE_POLICY_DEFAULTS: dict[str, Any] = {
    "window_ms": 15 * 60 * 1000,
    "max_requests": 100,
    "message": "Too many requests from this IP, please try again later.",
    "identity": "ip",
}

_CAMEL_FIELDS = {"windowMs": "window_ms", "maxRequests": "max_requests"}


def normalize_policy_fields(config: dict[str, Any]) -> dict[str, Any]:
    """Accept camelCase policy keys (windowMs, maxRequests) alongside snake_case."""
    return {_CAMEL_FIELDS.get(key, key): value for key, value in config.items()}


class LimiterPolicy(BaseModel):
    """Named limiting policy: window size, request budget and message."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    window_ms: int = Field(
        ...,
        gt=0,
        validation_alias=AliasChoices("window_ms", "windowMs"),
        description="Fixed window length in milliseconds",
    )
    max_requests: int = Field(
        ...,
        gt=0,
        validation_alias=AliasChoices("max_requests", "maxRequests"),
        description="Requests allowed per window",
    )
    message: str = Field(
        "Too many requests, please try again later.",
        description="Human message returned in the 429 body",
    )
    identity: IdentityStrategy = Field(
        "ip",
        description="Identity strategy callers are counted under",
    )

    @classmethod
    def from_inline(cls, name: str, config: dict[str, Any]) -> "LimiterPolicy":
        """Build an ad-hoc policy from per-route overrides.

        Args:
            name: Name the counters of this policy are keyed under.
            config: Partial policy fields; missing fields use inline defaults.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid.
        """
        overrides = normalize_policy_fields(config)
        return cls.model_validate({**INLINE_POLICY_DEFAULTS, **overrides, "name": name})


class RouteRule(BaseModel):
    """Maps a path prefix to a registry policy or an inline policy."""

    model_config = ConfigDict(frozen=True)

    path_prefix: str = Field(..., min_length=1)
    policy: str = Field(..., min_length=1)
    inline_config: dict[str, Any] | None = None


class PolicyOut(BaseModel):
    """Public view of a registered policy."""

    name: str
    window_ms: int
    max_requests: int
    identity: IdentityStrategy
    message: str


@dataclass(frozen=True)
class LimitDecision:
    """Outcome of counting one request against one policy.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Policy max_requests.
        remaining: Requests left in the current window (never negative).
        reset_at_ms: Epoch milliseconds at which the current window ends.
        total_hits: Hits recorded for the caller in this window, this one included.
        retry_after_seconds: Seconds to wait before retrying (0 when allowed).
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    total_hits: int
    retry_after_seconds: int

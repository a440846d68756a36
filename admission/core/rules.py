"""Built-in policy registry, route table and path lists.

These tables are turned into an immutable AdmissionConfig once, at startup.
Nothing mutates them afterwards; overrides come from settings only.

Route table contract: rules are evaluated in the order listed and the first
prefix match wins, even when a later rule has a longer prefix. Put more
specific prefixes first when that is what you want.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import ValidationError

from admission.core.config import RateLimitSettings
from admission.core.errors import ConfigurationAppError
from admission.schemas.policy import CUSTOM_POLICY, LimiterPolicy, RouteRule, normalize_policy_fields

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

DEFAULT_POLICY = "api"
STRICT_POLICY = "strict"
USER_POLICY = "user_based"

BUILTIN_POLICIES: tuple[LimiterPolicy, ...] = (
    LimiterPolicy(
        name="api",
        window_ms=15 * MINUTE_MS,
        max_requests=100,
        message="Too many API requests, please try again later.",
    ),
    LimiterPolicy(
        name="auth",
        window_ms=15 * MINUTE_MS,
        max_requests=20,
        message="Too many authentication attempts, please try again later.",
    ),
    LimiterPolicy(
        name="upload",
        window_ms=HOUR_MS,
        max_requests=50,
        message="Upload limit exceeded, please try again later.",
        identity="user",
    ),
    LimiterPolicy(
        name="stream",
        window_ms=MINUTE_MS,
        max_requests=100,
        message="Streaming rate limit exceeded, please try again later.",
    ),
    LimiterPolicy(
        name="live_stream",
        window_ms=HOUR_MS,
        max_requests=10,
        message="Live streaming limit exceeded, please try again later.",
        identity="user",
    ),
    LimiterPolicy(
        name="analytics",
        window_ms=MINUTE_MS,
        max_requests=60,
        message="Analytics rate limit exceeded, please try again later.",
        identity="user",
    ),
    LimiterPolicy(
        name="drm",
        window_ms=MINUTE_MS,
        max_requests=30,
        message="DRM rate limit exceeded, please try again later.",
    ),
    LimiterPolicy(
        name="webhook",
        window_ms=MINUTE_MS,
        max_requests=200,
        message="Webhook rate limit exceeded, please try again later.",
    ),
    LimiterPolicy(
        name=STRICT_POLICY,
        window_ms=15 * MINUTE_MS,
        max_requests=20,
        message="Strict rate limit exceeded for sensitive endpoints",
    ),
    LimiterPolicy(
        name=USER_POLICY,
        window_ms=15 * MINUTE_MS,
        max_requests=2000,
        message="User rate limit exceeded",
        identity="user",
    ),
)

DEFAULT_RULES: tuple[RouteRule, ...] = (
    RouteRule(path_prefix="/api/auth/signin", policy="auth"),
    RouteRule(path_prefix="/api/auth/signup", policy="auth"),
    RouteRule(path_prefix="/api/auth/reset-password", policy="auth"),
    RouteRule(path_prefix="/api/auth/verify", policy="auth"),
    RouteRule(path_prefix="/api/videos/upload", policy="upload"),
    RouteRule(path_prefix="/api/videos/stream", policy="stream"),
    RouteRule(path_prefix="/api/videos", policy="api"),
    # First match wins, so /api/live-streams/stats resolves to live_stream.
    RouteRule(path_prefix="/api/live-streams", policy="live_stream"),
    RouteRule(path_prefix="/api/live-streams/stats", policy="analytics"),
    RouteRule(path_prefix="/api/analytics", policy="analytics"),
    RouteRule(path_prefix="/api/drm/generate-token", policy="drm"),
    RouteRule(path_prefix="/api/drm/verify-token", policy="drm"),
    RouteRule(path_prefix="/api/webhooks/bunny", policy="webhook"),
    RouteRule(path_prefix="/api/webhooks/stripe", policy="webhook"),
    RouteRule(
        path_prefix="/api/public",
        policy=CUSTOM_POLICY,
        inline_config={
            "window_ms": MINUTE_MS,
            "max_requests": 30,
            "message": "Public API rate limit exceeded",
        },
    ),
)

DEFAULT_EXCLUDED_PATHS = (
    "/api/health",
    "/api/status",
    "/_next",
    "/static",
    "/favicon.ico",
    "/robots.txt",
    "/sitemap.xml",
)

DEFAULT_STRICT_PATHS = ("/api/auth", "/api/admin")

DEFAULT_USER_LIMIT_EXCLUDED_PATHS = ("/api/webhooks/",)


@dataclass(frozen=True)
class AdmissionConfig:
    """Read-only admission tables shared by every request."""

    policies: Mapping[str, LimiterPolicy]
    rules: tuple[RouteRule, ...]
    excluded_paths: tuple[str, ...]
    strict_paths: tuple[str, ...]
    user_limit_excluded_paths: tuple[str, ...]
    whitelisted_ips: frozenset[str]
    limited_prefix: str = "/api/"


def _build_registry(overrides: Mapping[str, Mapping[str, Any]]) -> dict[str, LimiterPolicy]:
    registry = {policy.name: policy for policy in BUILTIN_POLICIES}
    for name, fields in overrides.items():
        base = registry[name].model_dump() if name in registry else {}
        try:
            registry[name] = LimiterPolicy.model_validate(
                {**base, **normalize_policy_fields(dict(fields)), "name": name}
            )
        except ValidationError as exc:
            raise ConfigurationAppError(
                code="invalid_policy",
                message=f"Policy '{name}' is invalid: {exc.error_count()} validation error(s)",
                details={"policy": name},
            ) from exc
    return registry


def _build_rules(raw_rules: list[dict[str, Any]] | None) -> tuple[RouteRule, ...]:
    if raw_rules is None:
        return DEFAULT_RULES
    try:
        return tuple(RouteRule.model_validate(rule) for rule in raw_rules)
    except ValidationError as exc:
        raise ConfigurationAppError(
            code="invalid_route_rules",
            message=f"Route rule table is invalid: {exc.error_count()} validation error(s)",
        ) from exc


def build_admission_config(cfg: RateLimitSettings) -> AdmissionConfig:
    """Validate settings and freeze them into an AdmissionConfig.

    Args:
        cfg: Rate limiting settings.

    Returns:
        AdmissionConfig ready to be shared across requests.

    Raises:
        ConfigurationAppError: If a policy or rule is invalid or a rule names an
            unknown policy.
    """
    registry = _build_registry(cfg.policies)
    rules = _build_rules(cfg.rules)

    for rule in rules:
        if rule.policy != CUSTOM_POLICY and rule.policy not in registry:
            raise ConfigurationAppError(
                code="unknown_policy",
                message=f"Route rule '{rule.path_prefix}' refers to unknown policy '{rule.policy}'",
                details={"policy": rule.policy},
            )

    def _paths(value: list[str] | None, default: tuple[str, ...]) -> tuple[str, ...]:
        return default if value is None else tuple(value)

    return AdmissionConfig(
        policies=MappingProxyType(registry),
        rules=rules,
        excluded_paths=_paths(cfg.excluded_paths, DEFAULT_EXCLUDED_PATHS),
        strict_paths=_paths(cfg.strict_paths, DEFAULT_STRICT_PATHS),
        user_limit_excluded_paths=_paths(
            cfg.user_limit_excluded_paths, DEFAULT_USER_LIMIT_EXCLUDED_PATHS
        ),
        whitelisted_ips=frozenset(cfg.whitelisted_ips),
        limited_prefix=cfg.limited_prefix,
    )

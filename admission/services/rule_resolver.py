"""Route-to-policy resolution.

Precedence, applied to every limited path in this order:

1. Route table: the first rule whose prefix matches wins (table order, not
   prefix length). A ``custom`` rule uses its inline policy.
2. Strict paths: override step 1 with the strict policy.
3. Bearer token present and the path is not excluded from per-user limiting:
   override with the user policy, counted per user.
4. Nothing matched in step 1: the default ``api`` policy.

Excluded paths never reach resolution; see ``RuleResolver.is_excluded``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import ValidationError

from admission.core.rules import DEFAULT_POLICY, STRICT_POLICY, USER_POLICY, AdmissionConfig
from admission.schemas.policy import CUSTOM_POLICY, IdentityStrategy, LimiterPolicy, RouteRule

logger = logging.getLogger(__name__)

ResolutionSource = Literal["rule", "custom", "invalid_custom", "strict", "user", "default"]


@dataclass(frozen=True)
class Resolution:
    """Policy selected for a path, and which precedence step selected it."""

    policy: LimiterPolicy
    identity_strategy: IdentityStrategy
    source: ResolutionSource


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


class RuleResolver:
    """Resolve request paths to limiting policies using an AdmissionConfig."""

    def __init__(self, config: AdmissionConfig) -> None:
        self._config = config
        self._default = config.policies[DEFAULT_POLICY]
        self._strict = config.policies[STRICT_POLICY]
        self._user = config.policies[USER_POLICY]
        # Inline policies are built once; None marks a rule whose config is invalid.
        self._inline: dict[int, LimiterPolicy | None] = {
            index: self._build_inline(rule)
            for index, rule in enumerate(config.rules)
            if rule.policy == CUSTOM_POLICY
        }

    @property
    def config(self) -> AdmissionConfig:
        return self._config

    @staticmethod
    def _build_inline(rule: RouteRule) -> LimiterPolicy | None:
        if not rule.inline_config:
            logger.warning(
                "rate_limit.invalid_inline_config",
                extra={"path_prefix": rule.path_prefix, "reason": "missing", "fallback": DEFAULT_POLICY},
            )
            return None
        try:
            return LimiterPolicy.from_inline(f"custom:{rule.path_prefix}", rule.inline_config)
        except ValidationError as exc:
            logger.warning(
                "rate_limit.invalid_inline_config",
                extra={
                    "path_prefix": rule.path_prefix,
                    "reason": "validation_failed",
                    "error_count": exc.error_count(),
                    "fallback": DEFAULT_POLICY,
                },
            )
            return None

    def is_excluded(self, path: str) -> bool:
        """Return True when ``path`` bypasses admission control entirely."""
        if _matches(path, self._config.excluded_paths):
            return True
        return not path.startswith(self._config.limited_prefix)

    def _match_rule(self, path: str) -> Resolution | None:
        for index, rule in enumerate(self._config.rules):
            if not path.startswith(rule.path_prefix):
                continue
            if rule.policy != CUSTOM_POLICY:
                policy = self._config.policies[rule.policy]
                return Resolution(policy, policy.identity, "rule")
            inline = self._inline[index]
            if inline is None:
                return Resolution(self._default, self._default.identity, "invalid_custom")
            return Resolution(inline, inline.identity, "custom")
        return None

    def resolve(self, path: str, *, has_bearer_token: bool) -> Resolution:
        """Resolve the policy governing ``path``.

        Args:
            path: Request path.
            has_bearer_token: Whether a well-formed ``Authorization: Bearer``
                header is present. The token itself is not validated.

        Returns:
            Resolution naming the policy, identity strategy and deciding step.
        """
        resolution = self._match_rule(path)

        if _matches(path, self._config.strict_paths):
            resolution = Resolution(self._strict, self._strict.identity, "strict")

        if has_bearer_token and not _matches(path, self._config.user_limit_excluded_paths):
            resolution = Resolution(self._user, "user", "user")

        if resolution is None:
            resolution = Resolution(self._default, self._default.identity, "default")

        return resolution

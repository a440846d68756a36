"""Admission control middleware.

This module wires rule resolution, identity extraction, the limiter engine and
response rendering into the HTTP layer. Per request it ends in exactly one of:

- Excluded: path (or client IP) bypasses limiting; the request continues untouched.
- Allowed: the request continues; rate limit and security headers are attached.
  With penalties enabled, the budget is first reduced for repeat offenders.
- Rejected: a 429 JSON response is returned with the same headers plus Retry-After.
- FailOpen: anything inside the admission pipeline failed; the request
  continues without rate limit headers and with X-RateLimit-Error set.

Availability wins over enforcement: the admission layer never turns its own
failure into a 5xx. Errors raised by downstream handlers are not caught here.

Usage:
    admission = AdmissionMiddleware.from_settings(settings)
    app.middleware("http")(admission)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Request, Response

from admission.adapters.counter_store.base import AbstractCounterStore
from admission.adapters.counter_store.factory import create_counter_store
from admission.core.config import Settings
from admission.core.errors import StoreUnavailableError
from admission.core.rules import build_admission_config
from admission.schemas.policy import LimitDecision, LimiterPolicy
from admission.services.identity import IdentifierExtractor, IdentityResolution, extract_bearer_token
from admission.services.limiter_engine import LimiterEngine, create_limiter_engine
from admission.services.penalty import PenaltyTracker
from admission.services.response_builder import (
    ERROR_HEADER,
    ERROR_HEADER_VALUE,
    INFO_HEADER,
    build_headers,
    build_info_header,
    build_rejection,
    reset_epoch_seconds,
)
from admission.services.rule_resolver import Resolution, RuleResolver

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


@dataclass(frozen=True)
class AdmissionOutcome:
    """Everything the pipeline decided for one limited request."""

    resolution: Resolution
    identity: IdentityResolution
    decision: LimitDecision
    client_ip: str
    policy: LimiterPolicy
    violations: int = 0


class AdmissionMiddleware:
    """HTTP middleware enforcing rate limits in front of every API route."""

    def __init__(
        self,
        resolver: RuleResolver,
        extractor: IdentifierExtractor,
        engine: LimiterEngine,
        *,
        penalties: PenaltyTracker | None = None,
        enabled: bool = True,
    ) -> None:
        self._resolver = resolver
        self._extractor = extractor
        self._engine = engine
        self._penalties = penalties
        self._enabled = enabled

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        *,
        store: AbstractCounterStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "AdmissionMiddleware":
        """Build the middleware and its collaborators from settings.

        Args:
            cfg: Application settings.
            store: Counter store to use; created from settings when omitted.
            clock: Time source for the limiter engine.

        Raises:
            ConfigurationAppError: If the rule/policy configuration is invalid.
        """
        rl = cfg.rate_limit
        store = store or create_counter_store(cfg)
        engine = create_limiter_engine(
            store,
            algorithm=rl.algorithm,
            timeout_ms=rl.store_timeout_ms,
            clock=clock,
        )
        penalties = None
        if rl.penalty_enabled:
            penalties = PenaltyTracker(
                store,
                ttl_ms=rl.penalty_ttl_ms,
                max_multiplier=rl.penalty_max_multiplier,
                timeout_ms=rl.store_timeout_ms,
            )
        return cls(
            RuleResolver(build_admission_config(rl)),
            IdentifierExtractor(trusted_proxy_count=rl.trusted_proxy_count),
            engine,
            penalties=penalties,
            enabled=rl.enabled,
        )

    @property
    def resolver(self) -> RuleResolver:
        return self._resolver

    @property
    def store(self) -> AbstractCounterStore:
        return self._engine.store

    async def evaluate(self, request: Request) -> AdmissionOutcome | None:
        """Run the admission pipeline; None means the request is not limited.

        Raises:
            StoreUnavailableError: If the counter store fails or times out.
        """
        path = request.url.path
        if self._resolver.is_excluded(path):
            return None

        headers = request.headers
        client_ip = self._extractor.client_ip(headers)
        if client_ip in self._resolver.config.whitelisted_ips:
            logger.debug("rate_limit.whitelisted", extra={"client_ip": client_ip, "path": path})
            return None

        has_bearer = extract_bearer_token(headers) is not None
        resolution = self._resolver.resolve(path, has_bearer_token=has_bearer)
        identity = self._extractor.resolve(resolution.identity_strategy, headers)
        policy = resolution.policy
        violations = 0
        if self._penalties is not None:
            violations = await self._penalties.violations(client_ip)
            policy = self._penalties.penalize(policy, violations)

        decision = await self._engine.check(policy, identity.identity)

        if self._penalties is not None and self._penalties.is_first_rejection(decision):
            violations = await self._record_violation(client_ip, path, policy, violations)

        return AdmissionOutcome(
            resolution=resolution,
            identity=identity,
            decision=decision,
            client_ip=client_ip,
            policy=policy,
            violations=violations,
        )

    async def _record_violation(
        self, client_ip: str, path: str, policy: LimiterPolicy, violations: int
    ) -> int:
        # The rejection stands even when the violation cannot be stored
        try:
            recorded = await self._penalties.record_violation(client_ip)
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.penalty_not_recorded",
                extra={"reason": exc.code, "client_ip": client_ip, "path": path},
            )
            return violations

        logger.warning(
            "rate_limit.penalty_violation",
            extra={
                "client_ip": client_ip,
                "violations": recorded,
                "policy": policy.name,
                "adjusted_limit": policy.max_requests,
                "path": path,
            },
        )
        return recorded

    def _log_violation(self, request: Request, outcome: AdmissionOutcome) -> None:
        decision = outcome.decision
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "identifier": outcome.identity.identity.value,
                "identity_kind": outcome.identity.identity.kind,
                "path": request.url.path,
                "policy": outcome.policy.name,
                "violations": outcome.violations,
                "total_hits": decision.total_hits,
                "limit": decision.limit,
                "reset_time": reset_epoch_seconds(decision),
                "retry_after_s": decision.retry_after_seconds,
                "user_agent": request.headers.get("user-agent"),
                "client_ip": outcome.client_ip,
            },
        )

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if not self._enabled:
            return await call_next(request)

        try:
            outcome = await self.evaluate(request)
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.fail_open",
                extra={"reason": exc.code, "path": request.url.path},
            )
            return await self._fail_open(request, call_next)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "rate_limit.fail_open",
                extra={
                    "reason": "unexpected_error",
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "path": request.url.path,
                },
            )
            return await self._fail_open(request, call_next)

        if outcome is None:
            return await call_next(request)

        if not outcome.decision.allowed:
            self._log_violation(request, outcome)
            return build_rejection(outcome.decision, outcome.policy)

        if outcome.identity.fell_back:
            logger.debug(
                "rate_limit.identity_fallback",
                extra={"policy": outcome.policy.name, "path": request.url.path},
            )

        response = await call_next(request)
        response.headers.update(build_headers(outcome.decision))
        response.headers[INFO_HEADER] = build_info_header(
            outcome.decision, outcome.policy
        )
        return response

    @staticmethod
    async def _fail_open(request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)
        response.headers[ERROR_HEADER] = ERROR_HEADER_VALUE
        return response

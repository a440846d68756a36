"""Application-level exception types.

This module defines errors used across adapters, services and the admission
middleware, enabling consistent error handling, logging, and API responses.

Expected fallbacks (missing bearer token, malformed inline rule config) are
not errors: they are returned as explicit values by the identity extractor
and rule resolver.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    http_status: int
    backend: str
    operation: str
    timeout_ms: int
    policy: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationAppError(AppError):
    """Raised when startup configuration (rules, policies, backends) is invalid."""


class StoreUnavailableError(AppError):
    """Raised when the counter store cannot complete an operation.

    Covers network failures, backend errors and round trips exceeding the
    configured timeout. Never raised for an over-limit caller.
    """

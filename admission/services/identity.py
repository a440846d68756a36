"""Caller identity extraction.

Two strategies derive the key a caller is counted under:

- IP: X-Forwarded-For (first hop, or the hop left by the outermost trusted
  proxy), then X-Real-IP, then CF-Connecting-IP, else ``"unknown"``.
- User: SHA-256 digest of the bearer token. The raw token never reaches
  counter keys or logs.

A user lookup without a usable bearer token is an expected case, not an
error: the result says it fell back to the IP strategy.

Limitation: without a trusted proxy count, X-Forwarded-For is taken at face
value and can be spoofed by the client.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Mapping, Union

from admission.schemas.policy import IdentityStrategy

UNKNOWN_IP = "unknown"
BEARER_PREFIX = "Bearer "

# Consulted in order after X-Forwarded-For
_SINGLE_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")


@dataclass(frozen=True)
class IPIdentity:
    address: str
    kind: str = "ip"

    @property
    def value(self) -> str:
        return self.address


@dataclass(frozen=True)
class UserIdentity:
    token_digest: str
    kind: str = "user"

    @property
    def value(self) -> str:
        return self.token_digest


Identity = Union[IPIdentity, UserIdentity]


@dataclass(frozen=True)
class IdentityResolution:
    """Identity chosen for a request.

    Attributes:
        identity: The identity requests are counted under.
        fell_back: True when the user strategy was requested but no usable
            bearer token was present, so the IP strategy was used instead.
    """

    identity: Identity
    fell_back: bool = False


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    """Return the bearer token from the Authorization header, if well-formed."""
    auth_header = headers.get("authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        return None
    token = auth_header[len(BEARER_PREFIX):].strip()
    return token or None


def digest_token(token: str) -> str:
    """Stable, non-reversible identifier for a bearer token."""
    return hashlib.sha256(token.encode()).hexdigest()


class IdentifierExtractor:
    """Derive caller identities from request headers.

    ``headers`` is expected to be case-insensitive (Starlette ``Headers``).
    """

    def __init__(self, *, trusted_proxy_count: int = 0) -> None:
        if trusted_proxy_count < 0:
            raise ValueError("trusted_proxy_count must be >= 0")
        self._trusted_proxy_count = trusted_proxy_count

    def client_ip(self, headers: Mapping[str, str]) -> str:
        """Resolve the client IP address from proxy headers."""
        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
            if hops:
                if self._trusted_proxy_count == 0:
                    return hops[0]
                # Each trusted proxy appends the address it received from;
                # anything left of that entry is client supplied.
                index = max(0, len(hops) - self._trusted_proxy_count)
                return hops[index]

        for header in _SINGLE_IP_HEADERS:
            value = headers.get(header)
            if value and value.strip():
                return value.strip()

        return UNKNOWN_IP

    def ip_identity(self, headers: Mapping[str, str]) -> IPIdentity:
        return IPIdentity(self.client_ip(headers))

    def user_identity(self, headers: Mapping[str, str]) -> UserIdentity | None:
        """Return the user identity, or None when no usable bearer token exists."""
        token = extract_bearer_token(headers)
        if token is None:
            return None
        return UserIdentity(digest_token(token))

    def resolve(self, strategy: IdentityStrategy, headers: Mapping[str, str]) -> IdentityResolution:
        """Apply ``strategy``, falling back from user to IP when needed."""
        if strategy == "user":
            user = self.user_identity(headers)
            if user is not None:
                return IdentityResolution(user)
            return IdentityResolution(self.ip_identity(headers), fell_back=True)
        return IdentityResolution(self.ip_identity(headers))

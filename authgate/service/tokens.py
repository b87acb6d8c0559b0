"""Opaque token generation and scope policy.

Tokens are 26 characters drawn from the RFC 4648 base32 alphabet (130 bits
of entropy). The plaintext is the storage lookup key; the SHA-256 digest is
computed alongside for hash-indexed storage but is not read anywhere yet.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, List

# No 0/1/8/9: avoids O/0 and I/1 confusion when tokens are typed by hand
TOKEN_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
TOKEN_LENGTH = 26


class TokenScope(IntEnum):
    ACTIVATION = 0
    AUTHENTICATION = 1
    REFRESH = 2


_SCOPE_NAMES = {
    TokenScope.ACTIVATION: "activation",
    TokenScope.AUTHENTICATION: "authentication",
    TokenScope.REFRESH: "refresh",
}

DEFAULT_TOKEN_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class TokenPolicy:
    """Lifetime per scope; shared by the issuer and the session store."""

    activation: timedelta = timedelta(hours=24)
    authentication: timedelta = timedelta(minutes=10)
    refresh: timedelta = timedelta(days=4)

    @classmethod
    def from_minutes(
        cls, *, activation: int, authentication: int, refresh: int
    ) -> "TokenPolicy":
        return cls(
            activation=timedelta(minutes=activation),
            authentication=timedelta(minutes=authentication),
            refresh=timedelta(minutes=refresh),
        )

    def ttl(self, scope: "TokenScope") -> timedelta:
        name = scope_name(scope)
        return getattr(self, name, DEFAULT_TOKEN_TTL)


DEFAULT_POLICY = TokenPolicy()


def scope_name(scope: Any) -> str:
    """Return the storage name for a scope.

    Raises:
        ValueError: for anything that is not a known scope value
    """
    if isinstance(scope, bool) or not isinstance(scope, int):
        raise ValueError(f"incorrect token scope: {scope!r}")
    try:
        return _SCOPE_NAMES[TokenScope(scope)]
    except ValueError:
        raise ValueError(f"incorrect token scope: {scope!r}") from None


def ttl_for_scope(scope: TokenScope, policy: TokenPolicy | None = None) -> timedelta:
    return (policy or DEFAULT_POLICY).ttl(scope)


def hash_token(plaintext: str) -> bytes:
    return hashlib.sha256(plaintext.encode("utf-8")).digest()


def _random_plaintext() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


@dataclass(frozen=True)
class Token:
    plaintext: str
    user_id: int
    scope: TokenScope
    expiry: datetime
    hash: bytes = field(repr=False, default=b"")


def generate_token(
    user_id: int, scope: TokenScope, ttl: timedelta = DEFAULT_TOKEN_TTL
) -> Token:
    scope_name(scope)
    if ttl <= timedelta(0):
        raise ValueError("token ttl must be positive")
    plaintext = _random_plaintext()
    return Token(
        plaintext=plaintext,
        user_id=user_id,
        scope=TokenScope(scope),
        expiry=datetime.now(timezone.utc) + ttl,
        hash=hash_token(plaintext),
    )


def generate_activation_token(user_id: int, policy: TokenPolicy | None = None) -> Token:
    return generate_token(
        user_id, TokenScope.ACTIVATION, ttl_for_scope(TokenScope.ACTIVATION, policy)
    )


def generate_access_token(user_id: int, policy: TokenPolicy | None = None) -> Token:
    return generate_token(
        user_id, TokenScope.AUTHENTICATION, ttl_for_scope(TokenScope.AUTHENTICATION, policy)
    )


def generate_refresh_token(user_id: int, policy: TokenPolicy | None = None) -> Token:
    return generate_token(
        user_id, TokenScope.REFRESH, ttl_for_scope(TokenScope.REFRESH, policy)
    )


def validate_token_plaintext(plaintext: str | None) -> List[str]:
    """Return shape problems with a presented token; empty list means well-formed."""
    problems: List[str] = []
    if not plaintext:
        problems.append("token must be provided")
        return problems
    if len(plaintext) != TOKEN_LENGTH:
        problems.append(f"token must be {TOKEN_LENGTH} characters long")
    return problems


__all__ = [
    "DEFAULT_POLICY",
    "DEFAULT_TOKEN_TTL",
    "TokenPolicy",
    "TOKEN_ALPHABET",
    "TOKEN_LENGTH",
    "Token",
    "TokenScope",
    "generate_access_token",
    "generate_activation_token",
    "generate_refresh_token",
    "generate_token",
    "hash_token",
    "scope_name",
    "ttl_for_scope",
    "validate_token_plaintext",
]

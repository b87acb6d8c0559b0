from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Iterable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    name: str = ""
    activated: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Session:
    """Authorization payload resolved from a valid token."""

    user_id: int
    email: str
    permissions: FrozenSet[str] = frozenset()
    activated: bool = False
    anonymous: bool = False

    def __post_init__(self) -> None:
        # Normalise lists/sets coming from JSON or the permission lookup
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        if self.anonymous:
            if self.user_id != 0 or self.permissions:
                raise ValueError("anonymous session cannot carry an identity")
        elif self.user_id <= 0:
            raise ValueError("authenticated session requires user_id > 0")

    @classmethod
    def for_user(cls, user: User, permissions: Iterable[str] = ()) -> "Session":
        return cls(
            user_id=user.id,
            email=user.email,
            permissions=frozenset(permissions),
            activated=user.activated,
        )

    @property
    def is_anonymous(self) -> bool:
        return self.anonymous

    def has_permission(self, code: str) -> bool:
        return code in self.permissions

    def copy(self) -> "Session":
        """Fresh value with the same fields; the anonymous singleton is returned as-is."""
        if self.anonymous:
            return self
        return Session(
            user_id=self.user_id,
            email=self.email,
            permissions=self.permissions,
            activated=self.activated,
        )


# The one shared "no credential presented" session
ANONYMOUS_SESSION = Session(user_id=0, email="", anonymous=True)

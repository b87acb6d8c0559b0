from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from authgate.logging import get_logger
from authgate.service.tokens import TokenPolicy, TokenScope
from authgate.storage.common import decode_session, encode_session, session_key, user_index_key
from authgate.storage.errors import ConstraintViolation, SessionNotFound, SessionStoreError
from authgate.storage.models import Session, User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemorySessionStore:
    """In-process stand-in for the Redis session backend.

    Mirrors RedisSessionStore key layout and semantics: primary records
    expire, index sets do not.
    """

    def __init__(
        self,
        *,
        policy: Optional[TokenPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.policy = policy or TokenPolicy()
        self._clock = clock
        self._records: Dict[str, Tuple[str, datetime]] = {}
        self._indexes: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._lock:
            self._records.clear()
            self._indexes.clear()

    def _get_raw(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._records.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at <= self._clock():
                self._records.pop(key, None)
                return None
            return raw

    def store_session(self, token: str, scope: TokenScope, session: Session) -> None:
        try:
            key = session_key(token, scope)
            index_key = user_index_key(session.user_id, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        expires_at = self._clock() + self.policy.ttl(scope)
        with self._lock:
            self._records[key] = (encode_session(session, expires_at), expires_at)
        with self._lock:
            self._indexes.setdefault(index_key, set()).add(token)

    def get_session(self, token: str, scope: TokenScope) -> Session:
        try:
            key = session_key(token, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        raw = self._get_raw(key)
        if raw is None:
            raise SessionNotFound()
        return decode_session(raw)

    def delete_session(self, token: str) -> None:
        scope = TokenScope.AUTHENTICATION
        session = self.get_session(token, scope)
        with self._lock:
            self._records.pop(session_key(token, scope), None)
            members = self._indexes.get(user_index_key(session.user_id, scope))
            if members is not None:
                members.discard(token)

    def delete_all_sessions_for_user(self, user_id: int, scope: TokenScope) -> None:
        try:
            index_key = user_index_key(user_id, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        with self._lock:
            tokens = self._indexes.pop(index_key, set())
            for token in tokens:
                self._records.pop(session_key(token, scope), None)

    def index_members(self, user_id: int, scope: TokenScope) -> Set[str]:
        """Snapshot of the index set (may reference expired records)."""
        with self._lock:
            return set(self._indexes.get(user_index_key(user_id, scope), set()))


class MemoryStore:
    """In-memory users, password hashes and permission grants."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, Tuple[str, str]] = {}
        self.permissions: Dict[int, Set[str]] = {}
        self._next_id = 1
        self._data_lock = threading.RLock()

    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        activated: bool = False,
        permissions: Iterable[str] = (),
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation(
                    "user already exists", {"field": "email"}
                )
            user = User(id=self._next_id, email=normalized, name=name, activated=activated)
            self._next_id += 1
            self.users[user.id] = user
            self.permissions[user.id] = set(permissions)
        self.logger.debug("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_activated(self, user_id: int, activated: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.activated = activated
            return user

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.permissions.pop(user_id, None)
        return removed is not None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def get_permissions(self, user_id: int) -> FrozenSet[str]:
        with self._data_lock:
            return frozenset(self.permissions.get(user_id, set()))

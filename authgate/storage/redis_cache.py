from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from authgate.logging import get_logger
from authgate.service.tokens import TokenPolicy, TokenScope
from authgate.storage.common import (
    decode_expiry,
    decode_session,
    encode_session,
    session_key,
    user_index_key,
)
from authgate.storage.errors import SessionNotFound, SessionStoreError
from authgate.storage.models import Session

logger = get_logger(__name__)


class RedisSessionStore:
    """Session records and per-user index sets in Redis/Valkey.

    Primary record and index are written with separate commands; a failure
    between them leaves the index stale, which read paths tolerate because
    only the primary record decides validity.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        policy: Optional[TokenPolicy] = None,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.policy = policy or TokenPolicy()
        # Timeouts double as the per-request deadline for every round trip
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def store_session(self, token: str, scope: TokenScope, session: Session) -> None:
        try:
            key = session_key(token, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        ttl = self.policy.ttl(scope)
        expires_at = datetime.now(timezone.utc) + ttl
        payload = encode_session(session, expires_at)
        try:
            self.client.set(key, payload, ex=int(ttl.total_seconds()))
            # Index entries carry no TTL; reaped only by bulk delete
            self.client.sadd(user_index_key(session.user_id, scope), token)
        except RedisError as exc:
            raise SessionStoreError("session store write failed", cause=exc) from exc

    def get_session(self, token: str, scope: TokenScope) -> Session:
        try:
            key = session_key(token, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        try:
            raw = self.client.get(key)
        except RedisError as exc:
            raise SessionStoreError("session store read failed", cause=exc) from exc
        if raw is None:
            raise SessionNotFound()
        expires_at = decode_expiry(raw)
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise SessionNotFound()
        return decode_session(raw)

    def delete_session(self, token: str) -> None:
        # Only the authentication scope is tried; other scopes are bulk-deleted
        scope = TokenScope.AUTHENTICATION
        session = self.get_session(token, scope)
        try:
            self.client.delete(session_key(token, scope))
        except RedisError as exc:
            raise SessionStoreError("session delete failed", cause=exc) from exc
        try:
            self.client.srem(user_index_key(session.user_id, scope), token)
        except RedisError as exc:
            logger.warning(
                "session_index_cleanup_failed",
                user_id=session.user_id,
                scope=scope.name.lower(),
                error=str(exc),
            )

    def delete_all_sessions_for_user(self, user_id: int, scope: TokenScope) -> None:
        try:
            index_key = user_index_key(user_id, scope)
        except ValueError as exc:
            raise SessionStoreError("invalid token scope", cause=exc) from exc
        try:
            tokens = self.client.smembers(index_key)
        except RedisError as exc:
            raise SessionStoreError("session index read failed", cause=exc) from exc
        if not tokens:
            return

        failed = 0
        for token in tokens:
            try:
                self.client.delete(session_key(token, scope))
            except RedisError as exc:
                # Primary records self-expire; partial cleanup is acceptable
                failed += 1
                logger.warning(
                    "session_delete_failed",
                    user_id=user_id,
                    scope=scope.name.lower(),
                    error=str(exc),
                )
        try:
            self.client.delete(index_key)
        except RedisError as exc:
            raise SessionStoreError("session index delete failed", cause=exc) from exc
        logger.debug(
            "user_sessions_deleted",
            user_id=user_id,
            scope=scope.name.lower(),
            count=len(tokens) - failed,
            failed=failed,
        )

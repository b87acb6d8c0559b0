from __future__ import annotations

import threading
from typing import Optional, Union

from redis.exceptions import RedisError

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger, mask_url_password
from authgate.service.auth import AuthService
from authgate.service.rate_limit import IPRateLimiter
from authgate.service.tokens import TokenPolicy
from authgate.storage.memory import MemorySessionStore, MemoryStore
from authgate.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)

SessionBackend = Union[RedisSessionStore, MemorySessionStore]


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.policy = TokenPolicy.from_minutes(
            activation=self.settings.activation_token_ttl_minutes,
            authentication=self.settings.access_token_ttl_minutes,
            refresh=self.settings.refresh_token_ttl_minutes,
        )
        # User records are not persisted beyond the process
        self.store = MemoryStore()
        self.sessions: SessionBackend = self._init_sessions()

        self.auth = AuthService(
            self.store, self.sessions, self.settings, policy=self.policy
        )
        self.rate_limiter: Optional[IPRateLimiter] = None
        if self.settings.rate_limit_enabled:
            self.rate_limiter = IPRateLimiter(
                self.settings.rate_limit_rps,
                self.settings.rate_limit_burst,
                idle_seconds=self.settings.rate_limit_idle_seconds,
            )

        logger.info(
            "runtime_initialized",
            session_backend=type(self.sessions).__name__,
            rate_limit_enabled=self.rate_limiter is not None,
        )

    def _init_sessions(self) -> SessionBackend:
        if self.settings.use_memory_store:
            return MemorySessionStore(policy=self.policy)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                sessions = RedisSessionStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                    policy=self.policy,
                )
                sessions.verify_connection()
                return sessions
            except RedisError as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session storage; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; sessions are in-memory only.",
            mode=fallback_mode,
        )
        return MemorySessionStore(policy=self.policy)

    def close(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.stop()
        self.sessions.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except RedisError as exc:
                logger.debug("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime

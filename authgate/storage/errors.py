from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SessionNotFound(LookupError):
    """No live session record exists for the token/scope pair.

    Covers both "never stored" and "expired"; callers cannot tell them apart.
    """

    def __init__(self, message: str = "session not found"):
        super().__init__(message)
        self.message = message


class SessionStoreError(Exception):
    """Backend failure other than a missing record (connectivity, decoding)."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


__all__ = ["ConstraintViolation", "SessionNotFound", "SessionStoreError"]

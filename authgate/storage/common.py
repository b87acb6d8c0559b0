from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Protocol

from authgate.service.tokens import TokenScope, scope_name
from authgate.storage.errors import SessionStoreError
from authgate.storage.models import Session


class SessionStore(Protocol):
    """Key-value persistence of sessions keyed by token plaintext."""

    def store_session(self, token: str, scope: TokenScope, session: Session) -> None: ...

    def get_session(self, token: str, scope: TokenScope) -> Session: ...

    def delete_session(self, token: str) -> None: ...

    def delete_all_sessions_for_user(self, user_id: int, scope: TokenScope) -> None: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def session_key(token: str, scope: TokenScope) -> str:
    """Primary record key; raises ValueError on an unknown scope."""
    return f"{scope_name(scope)}:token:{token}"


def user_index_key(user_id: int, scope: TokenScope) -> str:
    return f"user:{user_id}:{scope_name(scope)}:sessions"


def encode_session(session: Session, expires_at: datetime) -> str:
    return json.dumps(
        {
            "user_id": session.user_id,
            "email": session.email,
            "permissions": sorted(session.permissions),
            "activated": session.activated,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
        }
    )


def decode_session(raw: str) -> Session:
    try:
        data = json.loads(raw)
        return Session(
            user_id=int(data["user_id"]),
            email=str(data.get("email") or ""),
            permissions=frozenset(data.get("permissions") or ()),
            activated=bool(data.get("activated", False)),
        )
    except (ValueError, TypeError, KeyError) as exc:
        raise SessionStoreError("corrupt session record", cause=exc) from exc


def decode_expiry(raw: str) -> Optional[datetime]:
    """Expiry embedded in a stored record, or None when absent/unparseable."""
    try:
        value = json.loads(raw).get("expires_at")
        return datetime.fromisoformat(value) if value else None
    except (ValueError, TypeError, AttributeError):
        return None

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Iterable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    AuthenticationRequiredError,
    ConflictError,
    InactiveAccountError,
    InvalidAuthTokenError,
    InvalidCredentialsError,
    NotFoundError,
    NotPermittedError,
    ServerError,
    ValidationError,
)
from authgate.service.tokens import (
    Token,
    TokenPolicy,
    TokenScope,
    generate_access_token,
    generate_activation_token,
    generate_refresh_token,
    validate_token_plaintext,
)
from authgate.storage.common import SessionStore
from authgate.storage.errors import ConstraintViolation, SessionNotFound, SessionStoreError
from authgate.storage.models import ANONYMOUS_SESSION, Session, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        activated: bool = False,
        permissions: Iterable[str] = (),
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_activated(self, user_id: int, activated: bool) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def get_permissions(self, user_id: int) -> FrozenSet[str]: ...


@dataclass(frozen=True)
class LoginResult:
    user: User
    access: Token
    refresh: Token


@dataclass(frozen=True)
class AuthStatus:
    authenticated: bool
    expiry: Optional[datetime] = None
    user_email: Optional[str] = None


def parse_bearer(authorization: str) -> Optional[str]:
    """Token from an exact ``Bearer <token>`` header, else None."""
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return None
    return parts[1]


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class ActivationNotifier:
    """Hands activation tokens to the user.

    Delivery is not wired to a mail transport; the notice is logged so
    operators can complete activation by hand in development.
    """

    def __init__(self, activation_url: str = "") -> None:
        self.activation_url = activation_url

    def send_activation(self, email: str, token: Token) -> None:
        logger.info(
            "activation_notice_issued",
            recipient=_redact_email(email),
            user_id=token.user_id,
            activation_url=self.activation_url or None,
            expires_at=token.expiry.isoformat(),
        )


class AuthService:
    """Token-scoped sessions: request gate, guards and credential flows."""

    def __init__(
        self,
        store: UserStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        notifier: Optional[ActivationNotifier] = None,
        policy: Optional[TokenPolicy] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.policy = policy or TokenPolicy.from_minutes(
            activation=settings.activation_token_ttl_minutes,
            authentication=settings.access_token_ttl_minutes,
            refresh=settings.refresh_token_ttl_minutes,
        )
        self.notifier = notifier or ActivationNotifier(settings.activation_url)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _internal(self, event: str, exc: Exception, **fields) -> ServerError:
        # Full detail stays in the log; callers only see the generic message
        self.logger.error(
            event, error_type=type(exc).__name__, error=str(exc), **fields
        )
        return ServerError()

    # -- gate -------------------------------------------------------------

    def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Session:
        """Resolve the caller's session from a bearer header or the auth cookie.

        A present but malformed header is rejected without consulting the
        cookie. No credential at all yields ``ANONYMOUS_SESSION``.

        Raises:
            InvalidAuthTokenError: malformed, unknown or expired token
            ServerError: session backend failure
        """
        if authorization:
            token = parse_bearer(authorization)
            if token is None:
                raise InvalidAuthTokenError()
        elif cookie_token:
            token = cookie_token
        else:
            return ANONYMOUS_SESSION

        if validate_token_plaintext(token):
            raise InvalidAuthTokenError()
        try:
            session = self.sessions.get_session(token, TokenScope.AUTHENTICATION)
        except SessionNotFound:
            raise InvalidAuthTokenError() from None
        except SessionStoreError as exc:
            raise self._internal("session_lookup_failed", exc) from exc
        return session.copy()

    def ensure_authenticated(self, session: Session) -> Session:
        if session.is_anonymous:
            raise AuthenticationRequiredError()
        return session

    def ensure_activated(self, session: Session) -> Session:
        self.ensure_authenticated(session)
        if not session.activated:
            raise InactiveAccountError()
        return session

    def ensure_permission(self, session: Session, code: str) -> Session:
        self.ensure_activated(session)
        if not session.has_permission(code):
            self.logger.info(
                "permission_denied", user_id=session.user_id, permission=code
            )
            raise NotPermittedError()
        return session

    # -- passwords ----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: int, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    # -- registration -------------------------------------------------------

    def register(self, email: str, name: str, password: str) -> User:
        try:
            user = self.store.create_user(email, name, activated=False)
        except ConstraintViolation as exc:
            raise ConflictError(
                "a user with this email address already exists",
                detail={"field": "email"},
            ) from exc
        self.save_password(user.id, password)

        token = generate_activation_token(user.id, self.policy)
        session = Session(user_id=user.id, email=user.email, activated=False)
        try:
            self.sessions.store_session(token.plaintext, TokenScope.ACTIVATION, session)
        except SessionStoreError as exc:
            self.store.delete_user(user.id)
            raise self._internal("activation_session_store_failed", exc, user_id=user.id) from exc

        self.notifier.send_activation(user.email, token)
        self.logger.info("user_registered", user_id=user.id)
        return user

    def activate(self, token_plaintext: str) -> User:
        problems = validate_token_plaintext(token_plaintext)
        if problems:
            raise ValidationError("invalid activation token", detail={"token": problems})
        try:
            session = self.sessions.get_session(token_plaintext, TokenScope.ACTIVATION)
        except SessionNotFound:
            raise InvalidAuthTokenError() from None
        except SessionStoreError as exc:
            raise self._internal("session_lookup_failed", exc, scope="activation") from exc

        user = self.store.get_user_by_email(session.email)
        if user is None:
            raise NotFoundError("user not found")
        user = self.store.set_activated(user.id, True) or user
        try:
            self.sessions.delete_all_sessions_for_user(user.id, TokenScope.ACTIVATION)
        except SessionStoreError as exc:
            raise self._internal("session_cleanup_failed", exc, user_id=user.id) from exc
        self.logger.info("user_activated", user_id=user.id)
        return user

    # -- login / refresh / logout --------------------------------------------

    def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if user is None or not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()

        access = generate_access_token(user.id, self.policy)
        refresh = generate_refresh_token(user.id, self.policy)
        session = Session.for_user(user, self.store.get_permissions(user.id))

        # Old pairs go before new ones are written so at most one pair is live
        try:
            self.sessions.delete_all_sessions_for_user(user.id, TokenScope.AUTHENTICATION)
            self.sessions.delete_all_sessions_for_user(user.id, TokenScope.REFRESH)
            self.sessions.store_session(access.plaintext, TokenScope.AUTHENTICATION, session)
            self.sessions.store_session(refresh.plaintext, TokenScope.REFRESH, session)
        except SessionStoreError as exc:
            raise self._internal("login_session_store_failed", exc, user_id=user.id) from exc

        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, access=access, refresh=refresh)

    def refresh(self, refresh_token: Optional[str]) -> Token:
        """Mint a new access token from a refresh token.

        The refresh token itself keeps its validity.
        """
        if not refresh_token:
            raise InvalidAuthTokenError()
        try:
            session = self.sessions.get_session(refresh_token, TokenScope.REFRESH)
        except SessionNotFound:
            raise InvalidAuthTokenError() from None
        except SessionStoreError as exc:
            raise self._internal("session_lookup_failed", exc, scope="refresh") from exc

        access = generate_access_token(session.user_id, self.policy)
        try:
            self.sessions.delete_all_sessions_for_user(
                session.user_id, TokenScope.AUTHENTICATION
            )
            self.sessions.store_session(access.plaintext, TokenScope.AUTHENTICATION, session)
        except SessionStoreError as exc:
            raise self._internal(
                "refresh_session_store_failed", exc, user_id=session.user_id
            ) from exc
        self.logger.info("access_token_refreshed", user_id=session.user_id)
        return access

    def logout(self, refresh_token: Optional[str]) -> None:
        """Drop every access and refresh session of the cookie's owner.

        Unknown or missing tokens are not an error.
        """
        if not refresh_token:
            return
        try:
            session = self.sessions.get_session(refresh_token, TokenScope.REFRESH)
        except SessionNotFound:
            return
        except SessionStoreError as exc:
            raise self._internal("session_lookup_failed", exc, scope="refresh") from exc
        self.revoke_user_sessions(session.user_id, (TokenScope.AUTHENTICATION, TokenScope.REFRESH))
        self.logger.info("logout_succeeded", user_id=session.user_id)

    def revoke_user_sessions(self, user_id: int, scopes: Iterable[TokenScope]) -> None:
        try:
            for scope in scopes:
                self.sessions.delete_all_sessions_for_user(user_id, scope)
        except SessionStoreError as exc:
            raise self._internal("session_revoke_failed", exc, user_id=user_id) from exc

    def status(
        self, authorization: Optional[str], refresh_token: Optional[str]
    ) -> AuthStatus:
        """Report whether the caller holds a live access or refresh session.

        Never raises for bad credentials; they read as unauthenticated.
        """
        token = parse_bearer(authorization) if authorization else None
        scope = TokenScope.AUTHENTICATION
        if not token:
            if not refresh_token:
                return AuthStatus(authenticated=False)
            token, scope = refresh_token, TokenScope.REFRESH
        try:
            session = self.sessions.get_session(token, scope)
        except SessionNotFound:
            return AuthStatus(authenticated=False)
        except SessionStoreError as exc:
            self.logger.warning(
                "auth_status_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthStatus(authenticated=False)
        return AuthStatus(
            authenticated=True,
            expiry=self._now() + self.policy.ttl(scope),
            user_email=session.email,
        )

    # -- account ------------------------------------------------------------

    def get_user(self, session: Session) -> User:
        user = self.store.get_user(session.user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def deactivate(self, session: Session) -> User:
        user = self.store.set_activated(session.user_id, False)
        if user is None:
            raise NotFoundError("user not found")
        # Live sessions still carry activated=True; drop them
        self.revoke_user_sessions(user.id, (TokenScope.AUTHENTICATION, TokenScope.REFRESH))
        self.logger.info("user_deactivated", user_id=user.id)
        return user

    def delete_account(self, session: Session) -> None:
        if not self.store.delete_user(session.user_id):
            raise NotFoundError("user not found")
        self.revoke_user_sessions(session.user_id, tuple(TokenScope))
        self.logger.info("user_deleted", user_id=session.user_id)

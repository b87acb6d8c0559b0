from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from authgate.api.schemas import (
    ActivationRequest,
    AuthStatusResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    RefreshResponse,
    RegisterRequest,
    UserResponse,
)
from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.runtime import get_runtime
from authgate.service.tokens import Token
from authgate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_COOKIE_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# -- gate and guards ----------------------------------------------------------


def authenticate_request(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Session:
    """Run the authentication gate and stash the session on the request."""
    response.headers.append("Vary", "Authorization")
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.auth_cookie_name)
    session = runtime.auth.authenticate(authorization, cookie_token)
    request.state.auth_session = session
    return session


def current_session(request: Request) -> Session:
    session = getattr(request.state, "auth_session", None)
    if session is None:
        raise RuntimeError("authentication gate has not run for this request")
    return session


def require_authenticated(
    request: Request, _gate: Session = Depends(authenticate_request)
) -> Session:
    return get_runtime().auth.ensure_authenticated(current_session(request))


def require_activated(
    request: Request, _authenticated: Session = Depends(require_authenticated)
) -> Session:
    return get_runtime().auth.ensure_activated(current_session(request))


def require_permission(code: str) -> Callable[..., Session]:
    """Dependency factory: activated session holding ``code``."""

    def _require_permission(
        request: Request, _activated: Session = Depends(require_activated)
    ) -> Session:
        return get_runtime().auth.ensure_permission(current_session(request), code)

    return _require_permission


# -- cookies ------------------------------------------------------------------


def _set_refresh_cookie(response: Response, settings: Settings, token: Token) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        token.plaintext,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=token.expiry,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        "",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=_COOKIE_EPOCH,
        path="/",
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        activated=user.activated,
        created_at=user.created_at,
    )


# -- users --------------------------------------------------------------------


@router.post("/users", response_model=Envelope, status_code=202, tags=["users"])
def register_user(body: RegisterRequest):
    runtime = get_runtime()
    user = runtime.auth.register(body.email, body.name, body.password)
    return Envelope(status="ok", data={"user_id": user.id, "activated": user.activated})


@router.patch("/users/activate", response_model=Envelope, tags=["users"])
def activate_user(body: ActivationRequest):
    runtime = get_runtime()
    user = runtime.auth.activate(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/users/me", response_model=Envelope, tags=["users"])
def get_me(session: Session = Depends(require_authenticated)):
    runtime = get_runtime()
    user = runtime.auth.get_user(session)
    return Envelope(
        status="ok",
        data={
            **_user_response(user).model_dump(mode="json"),
            "permissions": sorted(session.permissions),
        },
    )


@router.patch("/users/deactivate", response_model=Envelope, tags=["users"])
def deactivate_user(session: Session = Depends(require_authenticated)):
    runtime = get_runtime()
    user = runtime.auth.deactivate(session)
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/users", response_model=Envelope, tags=["users"])
def delete_user(response: Response, session: Session = Depends(require_authenticated)):
    runtime = get_runtime()
    runtime.auth.delete_account(session)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"deleted": True})


# -- auth ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, status_code=201, tags=["auth"])
def login(body: LoginRequest, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Any access and refresh sessions the user already held are revoked first.
    """
    runtime = get_runtime()
    result = runtime.auth.login(body.email, body.password)
    _set_refresh_cookie(response, runtime.settings, result.refresh)
    return Envelope(
        status="ok",
        data=LoginResponse(
            success=True,
            access_token=result.access.plaintext,
            expiry=result.access.expiry,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(request: Request):
    runtime = get_runtime()
    access = runtime.auth.refresh(request.cookies.get(runtime.settings.refresh_cookie_name))
    return Envelope(
        status="ok",
        data=RefreshResponse(access_token=access.plaintext, expiry=access.expiry),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.auth.logout(request.cookies.get(runtime.settings.refresh_cookie_name))
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"success": True})


@router.get("/auth/status", response_model=Envelope, tags=["auth"])
def auth_status(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    status = runtime.auth.status(
        authorization, request.cookies.get(runtime.settings.refresh_cookie_name)
    )
    return Envelope(
        status="ok",
        data=AuthStatusResponse(
            authenticated=status.authenticated,
            expiry=status.expiry,
            user_email=status.user_email,
        ),
    )

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from authgate.api.error_handling import error_response, register_exception_handlers
from authgate.api.routes import router
from authgate.api.schemas import Envelope, HealthResponse
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.errors import RateLimitedError
from authgate.service.rate_limit import resolve_client_ip
from authgate.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the limiter sweeper on startup; stop it and close stores on shutdown."""
    runtime = get_runtime()
    if runtime.rate_limiter is not None:
        runtime.rate_limiter.start()

    yield

    runtime = get_runtime()
    try:
        runtime.close()
    except RedisError as exc:
        logger.error("shutdown_failed", error=str(exc))
    else:
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="authgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    """Per-client-IP token bucket, consulted before routing."""
    limiter = get_runtime().rate_limiter
    if limiter is None:
        return await call_next(request)
    client_ip = resolve_client_ip(
        request.headers, request.client.host if request.client else None
    )
    if not limiter.allow(client_ip):
        # Normal operating condition; not logged as a fault
        logger.info("rate_limit_exceeded", client_ip=client_ip, path=request.url.path)
        return error_response(
            RateLimitedError.status_code,
            RateLimitedError.default_message,
            code=RateLimitedError.error_code,
            headers={"Retry-After": "1"},
        )
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope, tags=["health"])
def healthz():
    runtime = get_runtime()
    backend = type(runtime.sessions).__name__
    try:
        runtime.sessions.verify_connection()
    except RedisError as exc:
        logger.warning("healthcheck_session_store_unreachable", error=str(exc))
        return error_response(
            503, "session store unreachable", {"session_store": backend}, code="server_error"
        )
    return Envelope(status="ok", data=HealthResponse(status="healthy", session_store=backend))

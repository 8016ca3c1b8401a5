"""
api/main.py -- FastAPI application factory for keyward.

Exposes the auth core over HTTP: password and OAuth login, sessions or JWTs
(per SESSION_STRATEGY), refresh rotation, CSRF tokens and the public JWKS.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. bind_rate_limits      -- exposes this app's RateLimits to the limit providers

create_app() is the composition root. It takes a Settings object (default:
get_settings()) and, optionally, a prebuilt AuthRuntime. The lifespan builds
the runtime when none is given, starts the cleanup task, and on shutdown
cancels the task and closes whatever it built. A runtime passed in by the
caller is left open for the caller to close.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import RateLimits, bind_limits, limiter, unbind_limits
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.jwks import router as jwks_router
from auth.dependencies import get_current_user
from auth.errors import AuthError
from auth.models import User
from auth.runtime import AuthRuntime
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyward.api")

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(runtime: AuthRuntime, interval_seconds: int) -> None:
    """Delete expired sessions and refresh records every interval_seconds.

    Reads already treat expired rows as absent, so this only bounds table
    growth. Storage errors are logged and the loop carries on to the next
    interval. CancelledError from task.cancel() during shutdown propagates
    out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(runtime.cleanup)
        except AuthError as exc:
            logger.error("Cleanup pass failed: %s", exc.kind.value)
            continue
        logger.info("Cleanup pass removed %s", removed)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, *, runtime: AuthRuntime | None = None) -> FastAPI:
    """Build the FastAPI app for one Settings object."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup order: runtime (store + keystore) first, cleanup task last."""
        logger.info("keyward API starting up")
        owned = runtime is None
        app.state.auth = runtime if runtime is not None else AuthRuntime.from_settings(settings)
        logger.info(
            "Auth initialized (strategy=%s, providers=%s)",
            app.state.auth.strategy.name,
            ",".join(app.state.auth.oauth.providers) or "none",
        )
        app.state.cleanup_task = asyncio.create_task(
            _cleanup_loop(app.state.auth, settings.cleanup_interval_seconds)
        )

        yield

        app.state.cleanup_task.cancel()
        if owned:
            app.state.auth.close()
        logger.info("keyward API shutdown complete")

    app = FastAPI(
        title="keyward API",
        description="Sessions, JWTs with rotating refresh tokens, OAuth login and CSRF protection.",
        version=API_VERSION,
        lifespan=lifespan,
        # Built-in /docs and /redoc are replaced by auth-protected routes below.
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings

    # -----------------------------------------------------------------------
    # Middleware stack
    #
    # Register in the order you want the request to encounter them:
    # TrustedHost -> CORS -> SlowAPI.
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
        max_age=3600,
    )
    app.add_middleware(SlowAPIMiddleware)

    # SlowAPI looks for app.state.limiter by convention. The limit table is per app.
    app.state.limiter = limiter
    app.state.rate_limits = RateLimits.from_settings(settings)

    @app.middleware("http")
    async def bind_rate_limits(request: Request, call_next):
        token = bind_limits(app.state.rate_limits)
        try:
            return await call_next(request)
        finally:
            unbind_limits(token)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(jwks_router, tags=["Keys"])

    # -----------------------------------------------------------------------
    # Auth-protected API documentation
    # -----------------------------------------------------------------------

    @app.get("/docs", include_in_schema=False)
    async def docs(user: User = Depends(get_current_user)):
        """Swagger UI -- requires authentication."""
        return get_swagger_ui_html(openapi_url="/openapi.json", title="keyward API")

    @app.get("/redoc", include_in_schema=False)
    async def redoc(user: User = Depends(get_current_user)):
        """ReDoc UI -- requires authentication."""
        return get_redoc_html(openapi_url="/openapi.json", title="keyward API")

    _register_exception_handlers(app)

    # -----------------------------------------------------------------------
    # Health endpoint
    #
    # Defined here (not in a router) so it is always reachable. No rate limit:
    # load balancer health checks must not be throttled.
    # -----------------------------------------------------------------------

    @app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return API liveness plus database and keystore status."""
        runtime: AuthRuntime = request.app.state.auth
        components = {"app": "ok"}
        try:
            components["database"] = "ok" if runtime.store.ping() else "error"
        except AuthError:
            components["database"] = "error"
        try:
            runtime.keystore.get_active_key()
            components["keystore"] = "ok"
        except AuthError:
            components["keystore"] = "error"
        status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
        return HealthResponse(status=status, version=API_VERSION, components=components)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """Map the core's error taxonomy to HTTP.

        Only exc.to_payload() reaches the client; the internal message is logged.
        """
        log = logger.warning if exc.status_code >= 500 else logger.info
        log("%s %s -> %s (%s)", request.method, request.url.path, exc.kind.value, exc)
        headers = {"Cache-Control": "no-store"}
        if exc.status_code == 401:
            headers["WWW-Authenticate"] = "Bearer"
        payload = exc.to_payload()
        return _error_response(exc.status_code, payload["code"], payload["message"], headers=headers)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """429 with Retry-After; login and refresh floods end up here."""
        client = request.client.host if request.client else "unknown"
        logger.warning("Rate limit hit on %s from %s", request.url.path, client)
        retry_after = int(getattr(exc, "retry_after", 60))
        return _error_response(
            429, "rate_limited", "Too many requests.", str(exc), headers={"Retry-After": str(retry_after)}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # str(errors) can echo a submitted password back; list only where each error occurred.
        locations = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
        return _error_response(422, "validation_error", "Request validation failed.", locations or None)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Structured error for HTTPException raised by routes (404, 403, 422 ...).

        Routes pass detail as a {"code", "message"} dict; anything else is
        wrapped under an http_<status> code.
        """
        if isinstance(exc.detail, dict):
            return _error_response(exc.status_code, exc.detail["code"], exc.detail["message"])
        return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort. The traceback goes to the log, never to the client."""
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _error_response(500, "internal_error", "An unexpected error occurred.")

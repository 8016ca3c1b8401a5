"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The decorators bind to this one Limiter at import time, but the limit table
belongs to the app: create_app() stores a RateLimits on app.state and binds it
for each request with bind_limits(). Two apps in one process therefore keep
their own limits, their own on/off switch and their own counters.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

if TYPE_CHECKING:
    from core.config import Settings


@dataclass(frozen=True)
class RateLimits:
    """Per-app limit strings, parsed by slowapi on each request."""

    login: str = "10/minute"
    register: str = "5/minute"
    refresh: str = "30/minute"
    enabled: bool = True
    namespace: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimits":
        return cls(
            login=settings.login_rate_limit,
            register=settings.register_rate_limit,
            refresh=settings.refresh_rate_limit,
            enabled=settings.rate_limit_enabled,
        )


_DEFAULT_LIMITS = RateLimits()

# Limit table of the app serving the current request.
_active_limits: ContextVar[RateLimits] = ContextVar("keyward_rate_limits", default=_DEFAULT_LIMITS)


def _limits_for(request: Request) -> RateLimits:
    return getattr(request.app.state, "rate_limits", _DEFAULT_LIMITS)


def client_key(request: Request) -> str:
    """Counter key: the app's namespace plus the client address."""
    return f"{_limits_for(request).namespace}:{get_remote_address(request)}"


limiter = Limiter(key_func=client_key, storage_uri="memory://")


def bind_limits(limits: RateLimits) -> Token:
    return _active_limits.set(limits)


def unbind_limits(token: Token) -> None:
    _active_limits.reset(token)


def limits_disabled(request: Request) -> bool:
    """exempt_when hook: True when the serving app has RATE_LIMIT_ENABLED off."""
    return not _limits_for(request).enabled


def login_limit() -> str:
    return _active_limits.get().login


def register_limit() -> str:
    return _active_limits.get().register


def refresh_limit() -> str:
    return _active_limits.get().refresh

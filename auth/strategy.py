"""
auth/strategy.py -- One interface over the two ways of holding authenticated state.

  database -- an opaque session id backed by the sessions table.
  jwt      -- a short-lived access token plus a rotating refresh token.

Login, registration and OAuth completion call strategy.issue(); request
authentication calls strategy.verify(); logout calls strategy.revoke(). The
concrete strategy is chosen once by build_strategy() at startup, so no call
site branches on the configured mode.

Layer rule: no imports from api/. Settings from core/ are read only in
build_strategy().
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from auth.models import AuthContext, IssuedCredentials, RefreshMeta, RotationResult, User
from auth.refresh import RefreshTokenRotator
from auth.sessions import SessionManager
from auth.tokens import JwtTokenService

if TYPE_CHECKING:
    from auth.store import StorageAdapter
    from core.config import Settings

logger = logging.getLogger("keyward.auth.strategy")


@runtime_checkable
class SessionStrategy(Protocol):
    name: str

    def issue(self, user: User, *, ip: str | None = None, user_agent: str | None = None) -> IssuedCredentials: ...

    def verify(self, credential: str) -> AuthContext: ...

    def revoke(self, credential: str) -> None: ...

    def revoke_user(self, user_id: str) -> int: ...


class DatabaseStrategy:
    """Credential = session id."""

    name = "database"

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def issue(self, user: User, *, ip: str | None = None, user_agent: str | None = None) -> IssuedCredentials:
        session = self.sessions.create(user.id)
        return IssuedCredentials(strategy=self.name, user_id=user.id, session=session)

    def verify(self, credential: str) -> AuthContext:
        """Raises SessionNotFoundError for absent or expired sessions."""
        session = self.sessions.require(credential)
        return AuthContext(
            user_id=session.user_id,
            strategy=self.name,
            session_id=session.id,
            expires_at=session.expires_at,
        )

    def revoke(self, credential: str) -> None:
        self.sessions.destroy(credential)

    def revoke_user(self, user_id: str) -> int:
        return self.sessions.destroy_all(user_id)


class JwtStrategy:
    """Credential for verify() = access token; for revoke() = refresh token."""

    name = "jwt"

    def __init__(self, tokens: JwtTokenService, rotator: RefreshTokenRotator) -> None:
        self.tokens = tokens
        self.rotator = rotator

    def issue(self, user: User, *, ip: str | None = None, user_agent: str | None = None) -> IssuedCredentials:
        pair = self.tokens.issue_token_pair(user.id, role=user.role, meta=RefreshMeta(ip=ip, user_agent=user_agent))
        return IssuedCredentials(strategy=self.name, user_id=user.id, tokens=pair)

    def verify(self, credential: str) -> AuthContext:
        """Raises TokenInvalidError, TokenExpiredError, KeyNotFoundError, or an issuer/audience mismatch."""
        claims = self.tokens.verify_access_token(credential)
        return AuthContext(
            user_id=claims.sub,
            strategy=self.name,
            session_id=claims.sid,
            expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
            claims=claims,
        )

    def revoke(self, credential: str) -> None:
        """Revoke the refresh family. Outstanding access tokens lapse at their exp."""
        self.rotator.revoke_token(credential)

    def revoke_user(self, user_id: str) -> int:
        return self.rotator.revoke_user(user_id)

    def refresh(self, refresh_token: str, *, ip: str | None = None, user_agent: str | None = None) -> RotationResult:
        return self.rotator.rotate(refresh_token, ip=ip, user_agent=user_agent)


def build_strategy(
    settings: Settings,
    *,
    store: StorageAdapter,
    sessions: SessionManager,
    tokens: JwtTokenService,
    rotator: RefreshTokenRotator,
) -> SessionStrategy:
    """Pick the configured strategy. Called once per process."""
    if settings.session_strategy == "database":
        strategy: SessionStrategy = DatabaseStrategy(sessions)
    elif settings.session_strategy == "jwt":
        if not store.supports_conditional_update:
            raise ValueError("The jwt session strategy requires a store with conditional updates")
        strategy = JwtStrategy(tokens, rotator)
    else:
        raise ValueError(f"Unknown session strategy: {settings.session_strategy!r}")
    logger.info("Session strategy: %s", strategy.name)
    return strategy

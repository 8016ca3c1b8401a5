"""
auth/sessions.py -- Opaque server-side session lifecycle (database strategy).

States: active -> (time passes) -> treated as expired at read time -> deleted.
The only backwards-looking change is the rolling extension, which moves
expires_at forward in place and never mints a new session id.

Rolling rule: when more than half of the session's window has elapsed
(expires_at - now < ttl / 2), get() pushes expires_at to now + ttl. Writing
only past the half-way mark keeps the per-request write rate low.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import timedelta

from auth.clock import Clock, utcnow
from auth.errors import SessionNotFoundError
from auth.models import Session
from auth.store import SessionStore

logger = logging.getLogger("keyward.auth.sessions")


class SessionManager:
    """Create, read, extend and destroy sessions through a SessionStore.

    Usage:
        manager = SessionManager(store, ttl_minutes=60, rolling=True)
        session = manager.create(user.id)
        manager.get(session.id)      # None once expired
        manager.destroy(session.id)  # idempotent
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_minutes: int = 60,
        rolling: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        if ttl_minutes <= 0:
            raise ValueError("ttl_minutes must be positive")
        self._store = store
        self.ttl_minutes = ttl_minutes
        self.rolling = rolling
        self._clock = clock

    def create(self, user_id: str, ttl_minutes: int | None = None, rolling: bool | None = None) -> Session:
        """Insert a new session expiring ttl_minutes from now."""
        minutes = ttl_minutes if ttl_minutes is not None else self.ttl_minutes
        if minutes <= 0:
            raise ValueError("ttl_minutes must be positive")
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=now + timedelta(minutes=minutes),
            created_at=now,
            updated_at=now,
            ttl_seconds=minutes * 60,
            rolling=self.rolling if rolling is None else rolling,
        )
        self._store.create_session(session)
        logger.debug("Session %s**** created for user %s", session.id[:6], user_id)
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the session if present and unexpired, extending rolling sessions."""
        if not session_id:
            return None
        session = self._store.get_session(session_id)
        if session is None:
            return None
        now = self._clock()
        if now >= session.expires_at:
            return None
        if session.rolling:
            window = timedelta(seconds=session.ttl_seconds or self.ttl_minutes * 60)
            if session.expires_at - now < window / 2:
                new_expiry = now + window
                if self._store.touch_session(session.id, new_expiry):
                    session = replace(session, expires_at=new_expiry, updated_at=now)
        return session

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError("Session is absent or expired")
        return session

    def destroy(self, session_id: str) -> None:
        """Delete the session. An absent id is not an error."""
        if session_id and self._store.delete_session(session_id):
            logger.debug("Session %s**** destroyed", session_id[:6])

    def destroy_all(self, user_id: str) -> int:
        return self._store.delete_user_sessions(user_id)

    def sweep_expired(self) -> int:
        """Delete sessions that are already past expiry. Reads treat them as absent regardless."""
        removed = self._store.delete_expired_sessions(self._clock())
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed

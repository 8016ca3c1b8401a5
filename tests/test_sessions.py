"""Unit tests for auth/sessions.py -- database-backed sessions.

Covers:
- create() writes a session with expires_at = now + ttl
- get() returns None once expired, before any sweep has run
- rolling sessions extend in place (same id) once half the window is used
- non-rolling sessions never extend
- destroy() is idempotent; destroy_all() removes every session of a user
- sweep_expired() deletes only expired rows
- require() raises SessionNotFoundError
"""

from datetime import timedelta

import pytest

from auth.errors import SessionNotFoundError
from auth.models import User
from auth.sessions import SessionManager


class TestCreateAndGet:
    def test_create(self, sessions, user, clock):
        session = sessions.create(user.id)
        assert session.user_id == user.id
        assert session.expires_at == clock() + timedelta(minutes=60)
        assert len(session.id) >= 43
        assert sessions.get(session.id) == session

    def test_custom_ttl(self, sessions, user, clock):
        session = sessions.create(user.id, ttl_minutes=5)
        assert session.expires_at == clock() + timedelta(minutes=5)

    def test_invalid_ttl(self, sessions, user):
        with pytest.raises(ValueError):
            sessions.create(user.id, ttl_minutes=0)

    def test_expired_is_absent_without_sweep(self, sessions, store, user, clock):
        session = sessions.create(user.id)
        clock.advance(minutes=60)
        assert sessions.get(session.id) is None
        # Row still exists; only reads treat it as gone.
        assert store.get_session(session.id) is not None

    @pytest.mark.parametrize("session_id", ["", "no-such-session"])
    def test_unknown(self, sessions, session_id):
        assert sessions.get(session_id) is None

    def test_require(self, sessions, user):
        with pytest.raises(SessionNotFoundError):
            sessions.require("missing")
        session = sessions.create(user.id)
        assert sessions.require(session.id).id == session.id


class TestRolling:
    def test_extends_after_half_window(self, store, user, clock):
        manager = SessionManager(store, ttl_minutes=60, rolling=True, clock=clock)
        session = manager.create(user.id)

        clock.advance(minutes=20)
        assert manager.get(session.id).expires_at == session.expires_at

        clock.advance(minutes=15)
        extended = manager.get(session.id)
        assert extended.id == session.id
        assert extended.expires_at == clock() + timedelta(minutes=60)
        assert store.get_session(session.id).expires_at == extended.expires_at

    def test_rolling_session_outlives_original_expiry(self, store, user, clock):
        manager = SessionManager(store, ttl_minutes=60, rolling=True, clock=clock)
        session = manager.create(user.id)
        for _ in range(4):
            clock.advance(minutes=40)
            assert manager.get(session.id) is not None

    def test_non_rolling_never_extends(self, sessions, user, clock):
        session = sessions.create(user.id)
        clock.advance(minutes=50)
        assert sessions.get(session.id).expires_at == session.expires_at

    def test_per_session_override(self, sessions, user, clock):
        session = sessions.create(user.id, rolling=True)
        clock.advance(minutes=45)
        assert sessions.get(session.id).expires_at == clock() + timedelta(minutes=60)


class TestDestroy:
    def test_destroy_idempotent(self, sessions, user):
        session = sessions.create(user.id)
        sessions.destroy(session.id)
        sessions.destroy(session.id)
        assert sessions.get(session.id) is None

    def test_destroy_all(self, sessions, user, store):
        other = store.create_user(User(email="bob@example.com"))
        mine = [sessions.create(user.id) for _ in range(3)]
        theirs = sessions.create(other.id)

        assert sessions.destroy_all(user.id) == 3
        assert all(sessions.get(s.id) is None for s in mine)
        assert sessions.get(theirs.id) is not None

    def test_sweep_expired(self, sessions, user, clock):
        short = sessions.create(user.id, ttl_minutes=5)
        long = sessions.create(user.id, ttl_minutes=120)
        clock.advance(minutes=10)
        assert sessions.sweep_expired() == 1
        assert sessions.get(short.id) is None
        assert sessions.get(long.id) is not None

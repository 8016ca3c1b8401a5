"""
auth/store.py -- Storage Adapter contract and its SQLAlchemy Core implementation.

Two halves:
  1. Protocols (SessionStore, RefreshTokenStore, UserStore, AccountStore,
     VerificationTokenStore, and StorageAdapter combining them). The core
     depends only on these.
  2. SqlAuthStore, the SQL implementation. Pattern: Repository + Data Mapper.
     SqlAuthStore is the repository; the _row_to_x functions are the mappers.
     Service code never touches SQL directly.

Error mapping:
  Every public method runs inside _translate_errors(). IntegrityError becomes
  StorageUniqueViolationError and OperationalError becomes
  StorageConnectionError, so the core only ever sees the auth taxonomy.

Refresh rotation [R1]:
  create_child() marks the parent rotated with a conditional UPDATE
  (WHERE jti = :parent AND rotated_at IS NULL AND revoked_at IS NULL AND
  expires_at > :now) and inserts the child in the same transaction. If the
  UPDATE matches no row, nothing is written and False is returned. This is
  the only synchronization primitive rotation relies on; there are no
  in-process locks, so any number of service instances may share the database.

Timestamps are stored as fixed-width ISO-8601 UTC strings (microsecond
precision, +00:00 offset) so that string comparison in SQL equals time
comparison.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.clock import Clock, utcnow
from auth.errors import StorageConnectionError, StorageUniqueViolationError
from auth.models import Account, RefreshTokenRecord, Session, User, VerificationToken

logger = logging.getLogger("keyward.auth.store")

# ---------------------------------------------------------------------------
# Storage contract
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Session | None: ...

    def touch_session(self, session_id: str, expires_at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, before: datetime) -> int: ...


@runtime_checkable
class RefreshTokenStore(Protocol):
    def save(self, record: RefreshTokenRecord) -> None: ...

    def find_by_hash(self, token_hash: str) -> RefreshTokenRecord | None: ...

    def find_by_jti(self, jti: str) -> RefreshTokenRecord | None: ...

    def mark_rotated(self, jti: str, rotated_at: datetime) -> bool: ...

    def create_child(self, parent_jti: str, child: RefreshTokenRecord, rotated_at: datetime) -> bool: ...

    def revoke_family(self, family_id: str, revoked_at: datetime) -> int: ...

    def revoke_user_families(self, user_id: str, revoked_at: datetime) -> int: ...

    def is_family_revoked(self, family_id: str) -> bool: ...

    def get_family(self, family_id: str) -> list[RefreshTokenRecord]: ...

    def cleanup_expired(self, before: datetime) -> int: ...


@runtime_checkable
class UserStore(Protocol):
    def get_user(self, user_id: str) -> User | None: ...

    def get_user_by_email(self, email: str) -> User | None: ...

    def create_user(self, user: User) -> User: ...

    def update_user(self, user_id: str, **fields) -> bool: ...


@runtime_checkable
class AccountStore(Protocol):
    def link_account(self, account: Account) -> Account: ...

    def get_account_by_provider(self, provider: str, provider_account_id: str) -> Account | None: ...


@runtime_checkable
class VerificationTokenStore(Protocol):
    def create_verification_token(self, token: VerificationToken) -> VerificationToken: ...

    def consume_verification_token(self, identifier: str, token_hash: str, now: datetime) -> bool: ...


@runtime_checkable
class StorageAdapter(
    SessionStore,
    RefreshTokenStore,
    UserStore,
    AccountStore,
    VerificationTokenStore,
    Protocol,
):
    """Everything the core needs from persistence.

    supports_conditional_update must be True for an adapter used with the
    jwt strategy: create_child() has to be an atomic compare-and-set.
    """

    supports_conditional_update: bool

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("email_verified_at", String(32)),
    Column("name", Text),
    Column("image", Text),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("token_type", String(30)),
    Column("expires_at", String(32)),
    Column("scope", Text),
    Column("id_token", Text),
    UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("ttl_seconds", Integer),
    Column("rolling", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("family_id", String(64), nullable=False, index=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("session_id", String(64)),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("parent_jti", String(64)),
    Column("expires_at", String(32), nullable=False),
    Column("rotated_at", String(32)),
    Column("revoked_at", String(32)),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_expires_at", "expires_at"),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identifier", String(320), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map SQLAlchemy failures onto the auth error taxonomy."""
    try:
        yield
    except IntegrityError as exc:
        raise StorageUniqueViolationError(str(exc.orig)) from exc
    except OperationalError as exc:
        logger.error("Storage operation failed: %s", exc.orig)
        raise StorageConnectionError(str(exc.orig)) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlAuthStore:
    """SQLAlchemy Core implementation of StorageAdapter.

    Usage:
        store = SqlAuthStore("sqlite:///keyward.db")
        user = store.create_user(User(email="alice@example.com"))
        store.close()
    """

    supports_conditional_update = True

    # Columns update_user() accepts. Anything else is rejected before SQL.
    _USER_FIELDS: frozenset = frozenset(
        {"email", "name", "image", "password_hash", "role", "is_active", "email_verified_at"}
    )

    def __init__(self, db_url: str, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises StorageUniqueViolationError if the email is already registered.
        """
        now = self._clock()
        created = replace(
            user,
            id=user.id or _new_id(),
            email=user.email.strip().lower(),
            created_at=user.created_at or now,
            updated_at=now,
        )
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=created.id,
                    email=created.email,
                    email_verified_at=_iso(created.email_verified_at),
                    name=created.name,
                    image=created.image,
                    password_hash=created.password_hash,
                    role=created.role,
                    is_active=1 if created.is_active else 0,
                    created_at=_iso(created.created_at),
                    updated_at=_iso(created.updated_at),
                )
            )
            conn.commit()
        return created

    def get_user(self, user_id: str) -> User | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup; emails are stored lowercased."""
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Returns True if a row was updated, False if user_id was not found.
        Unknown field names raise ValueError.
        """
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = dict(fields)
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0
        if "email_verified_at" in values:
            values["email_verified_at"] = _iso(values["email_verified_at"])
        if "email" in values:
            values["email"] = values["email"].strip().lower()
        values["updated_at"] = _iso(self._clock())
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def link_account(self, account: Account) -> Account:
        """Insert a provider account link.

        Raises StorageUniqueViolationError if (provider, provider_account_id)
        is already linked.
        """
        linked = replace(account, id=account.id or _new_id())
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(
                _accounts.insert().values(
                    id=linked.id,
                    user_id=linked.user_id,
                    provider=linked.provider,
                    provider_account_id=linked.provider_account_id,
                    access_token=linked.access_token,
                    refresh_token=linked.refresh_token,
                    token_type=linked.token_type,
                    expires_at=_iso(linked.expires_at),
                    scope=linked.scope,
                    id_token=linked.id_token,
                )
            )
            conn.commit()
        return linked

    def get_account_by_provider(self, provider: str, provider_account_id: str) -> Account | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, user_id: str) -> list[Account]:
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.user_id == user_id).order_by(_accounts.c.provider)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    expires_at=_iso(session.expires_at),
                    created_at=_iso(session.created_at),
                    updated_at=_iso(session.updated_at or session.created_at),
                    ttl_seconds=session.ttl_seconds,
                    rolling=1 if session.rolling else 0,
                )
            )
            conn.commit()
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Return the stored row. Expiry is the Session Manager's decision."""
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, expires_at: datetime) -> bool:
        """Move expires_at forward in place. Never moves it backwards."""
        new_expiry = _iso(expires_at)
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.expires_at < new_expiry))
                .values(expires_at=new_expiry, updated_at=_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def delete_expired_sessions(self, before: datetime) -> int:
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _iso(before)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def save(self, record: RefreshTokenRecord) -> None:
        """Insert a refresh token record (a family root, or a child during import)."""
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**self._record_values(record)))
            conn.commit()

    def find_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        """O(1) via the UNIQUE index on token_hash."""
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def find_by_jti(self, jti: str) -> RefreshTokenRecord | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def mark_rotated(self, jti: str, rotated_at: datetime) -> bool:
        """Set rotated_at if it is still unset. Returns False if another writer got there first."""
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.jti == jti) & _refresh_tokens.c.rotated_at.is_(None))
                .values(rotated_at=_iso(rotated_at))
            )
            conn.commit()
        return result.rowcount > 0

    def create_child(self, parent_jti: str, child: RefreshTokenRecord, rotated_at: datetime) -> bool:
        """Atomically rotate parent_jti and insert child [R1].

        Returns True if both writes committed, False if the parent was no
        longer current (already rotated, revoked, expired or deleted). On
        False nothing has been written.
        """
        stamp = _iso(rotated_at)
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.jti == parent_jti)
                    & _refresh_tokens.c.rotated_at.is_(None)
                    & _refresh_tokens.c.revoked_at.is_(None)
                    & (_refresh_tokens.c.expires_at > stamp)
                )
                .values(rotated_at=stamp)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.insert().values(**self._record_values(child)))
        return True

    def revoke_family(self, family_id: str, revoked_at: datetime) -> int:
        """Set revoked_at on every unrevoked member. Idempotent; returns rows changed."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.family_id == family_id) & _refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=_iso(revoked_at))
            )
        return result.rowcount

    def revoke_user_families(self, user_id: str, revoked_at: datetime) -> int:
        """Revoke every family belonging to user_id (password reset, account disable)."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & _refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=_iso(revoked_at))
            )
        return result.rowcount

    def is_family_revoked(self, family_id: str) -> bool:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select()
                .with_only_columns(_refresh_tokens.c.jti)
                .where((_refresh_tokens.c.family_id == family_id) & _refresh_tokens.c.revoked_at.is_not(None))
                .limit(1)
            ).fetchone()
        return row is not None

    def get_family(self, family_id: str) -> list[RefreshTokenRecord]:
        """Return every record in the family, root first, following the parent chain."""
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.family_id == family_id)
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return _chain_order([_row_to_refresh(r) for r in rows])

    def cleanup_expired(self, before: datetime) -> int:
        """Delete records whose expires_at is earlier than before.

        A record that create_child() is rotating is unexpired by construction
        (its conditional UPDATE requires expires_at > now), so the sweep and a
        rotation never act on the same row.
        """
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _iso(before)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        created = replace(token, id=token.id or _new_id(), created_at=token.created_at or self._clock())
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.insert().values(
                    id=created.id,
                    identifier=created.identifier,
                    token_hash=created.token_hash,
                    expires_at=_iso(created.expires_at),
                    created_at=_iso(created.created_at),
                    consumed_at=None,
                )
            )
            conn.commit()
        return created

    def consume_verification_token(self, identifier: str, token_hash: str, now: datetime) -> bool:
        """Mark a matching, unexpired, unconsumed token consumed. Single-use via conditional UPDATE."""
        stamp = _iso(now)
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where(
                    (_verification_tokens.c.identifier == identifier)
                    & (_verification_tokens.c.token_hash == token_hash)
                    & _verification_tokens.c.consumed_at.is_(None)
                    & (_verification_tokens.c.expires_at > stamp)
                )
                .values(consumed_at=stamp)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record_values(self, record: RefreshTokenRecord) -> dict:
        return {
            "jti": record.jti,
            "family_id": record.family_id,
            "user_id": record.user_id,
            "session_id": record.session_id,
            "token_hash": record.token_hash,
            "parent_jti": record.parent_jti,
            "expires_at": _iso(record.expires_at),
            "rotated_at": _iso(record.rotated_at),
            "revoked_at": _iso(record.revoked_at),
            "ip": record.ip,
            "user_agent": record.user_agent,
            "created_at": _iso(record.created_at or self._clock()),
        }


def _chain_order(records: list[RefreshTokenRecord]) -> list[RefreshTokenRecord]:
    """Order family members root first along parent_jti links.

    Records whose parent has been swept are appended in created_at order.
    """
    children = {r.parent_jti: r for r in records if r.parent_jti is not None}
    jtis = {r.jti for r in records}
    ordered: list[RefreshTokenRecord] = []
    for root in (r for r in records if r.parent_jti is None or r.parent_jti not in jtis):
        node: RefreshTokenRecord | None = root
        while node is not None and node not in ordered:
            ordered.append(node)
            node = children.get(node.jti)
    ordered.extend(r for r in records if r not in ordered)
    return ordered


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        email_verified_at=_dt(row.email_verified_at),
        name=row.name,
        image=row.image,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_type=row.token_type,
        expires_at=_dt(row.expires_at),
        scope=row.scope,
        id_token=row.id_token,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        expires_at=_dt(row.expires_at),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        ttl_seconds=row.ttl_seconds,
        rolling=bool(row.rolling),
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        family_id=row.family_id,
        jti=row.jti,
        user_id=row.user_id,
        session_id=row.session_id,
        token_hash=row.token_hash,
        parent_jti=row.parent_jti,
        expires_at=_dt(row.expires_at),
        rotated_at=_dt(row.rotated_at),
        revoked_at=_dt(row.revoked_at),
        ip=row.ip,
        user_agent=row.user_agent,
        created_at=_dt(row.created_at),
    )

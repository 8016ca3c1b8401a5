"""
auth/refresh.py -- Refresh token rotation with family-based reuse detection.

Every refresh token is single-use. Redeeming one marks it rotated and issues
a child in the same family; the child becomes the only current token.

Per-record states:
  current  (rotated_at NULL, revoked_at NULL)
    -> rotated  (rotated_at set by a successful rotation)
    -> revoked  (revoked_at set; terminal for the entire family)

rotate() decision order:
  1. unknown hash                       -> TokenInvalidError
  2. expired                            -> TokenExpiredError
  3. any family member revoked          -> TokenRevokedError
  4. record already rotated             -> revoke family, TokenReuseDetectedError
  5. store.create_child() conditional   -> child committed with parent rotation
  6. new access token for the carried-forward user_id / session_id

Races [R1]:
  Two requests can present the same current token at once (a retried client
  call, or an attacker racing the real user). Both pass steps 1-4; only one
  conditional UPDATE in create_child() matches a row. The loser re-reads the
  record, sees it rotated, and is handled exactly like step 4: the family is
  revoked.

No retries happen here. A failed rotation is final; storage errors propagate
to the caller unchanged. There are no in-process locks: the storage
conditional update is the only synchronization.

Logging: family_id and jti are truncated; the opaque token and its hash are
never logged.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.clock import Clock, utcnow
from auth.errors import TokenExpiredError, TokenInvalidError, TokenReuseDetectedError, TokenRevokedError
from auth.models import ClaimsInput, RefreshMeta, RefreshTokenRecord, RotationResult
from auth.store import RefreshTokenStore
from auth.tokens import JwtTokenService

logger = logging.getLogger("keyward.auth.refresh")


class RefreshTokenRotator:
    """Rotation-on-use state machine over a RefreshTokenStore.

    Usage:
        rotator = RefreshTokenRotator(store, token_service)
        result = rotator.rotate(presented_refresh_token, ip=client_ip)
        # result.refresh_token replaces the presented one
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        tokens: JwtTokenService,
        *,
        role_lookup: Callable[[str], str | None] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._tokens = tokens
        # Resolves the current role claim for a user when the caller does not pass one.
        self._role_lookup = role_lookup
        self._clock = clock

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        presented: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
        org: str | None = None,
        role: str | None = None,
    ) -> RotationResult:
        """Redeem a refresh token for a new access token and a new refresh token."""
        if not presented:
            raise TokenInvalidError("No refresh token presented")
        record = self._store.find_by_hash(self._tokens.hash_token(presented))
        if record is None:
            raise TokenInvalidError("Unknown refresh token")

        now = self._clock()
        if record.expires_at <= now:
            raise TokenExpiredError("Refresh token has expired")
        if self._store.is_family_revoked(record.family_id):
            raise TokenRevokedError("Refresh token family is revoked")
        if record.rotated_at is not None:
            self._reuse_detected(record, now)

        meta = RefreshMeta(session_id=record.session_id, ip=ip, user_agent=user_agent)
        child_token, child = self._tokens.mint_refresh_record(
            record.user_id,
            record.family_id,
            parent_jti=record.jti,
            meta=meta,
        )
        if not self._store.create_child(record.jti, child, now):
            self._classify_lost_rotation(record, now)

        if role is None and self._role_lookup is not None:
            role = self._role_lookup(record.user_id)
        access_token, _claims = self._tokens.issue_access_token(
            ClaimsInput(sub=record.user_id, sid=record.session_id, org=org, role=role)
        )
        logger.debug(
            "Rotated refresh token family=%s**** %s**** -> %s****",
            record.family_id[:8],
            record.jti[:8],
            child.jti[:8],
        )
        return RotationResult(
            access_token=access_token,
            refresh_token=child_token,
            user_id=record.user_id,
            family_id=record.family_id,
            jti=child.jti,
            parent_jti=record.jti,
            session_id=record.session_id,
            access_expires_in=self._tokens.access_ttl_seconds,
            refresh_expires_in=self._tokens.refresh_ttl_seconds,
        )

    def _reuse_detected(self, record: RefreshTokenRecord, now: datetime) -> None:
        revoked = self._store.revoke_family(record.family_id, now)
        logger.warning(
            "Refresh token reuse detected: family=%s**** jti=%s**** user=%s; revoked %d records",
            record.family_id[:8],
            record.jti[:8],
            record.user_id,
            revoked,
        )
        raise TokenReuseDetectedError(record.family_id, "Rotated refresh token presented again")

    def _classify_lost_rotation(self, record: RefreshTokenRecord, now: datetime) -> None:
        """The conditional update matched nothing. Work out why and raise accordingly."""
        current = self._store.find_by_jti(record.jti)
        if current is None:
            raise TokenInvalidError("Refresh token disappeared during rotation")
        if self._store.is_family_revoked(current.family_id):
            raise TokenRevokedError("Refresh token family was revoked during rotation")
        if current.rotated_at is not None:
            self._reuse_detected(current, now)
        if current.expires_at <= now:
            raise TokenExpiredError("Refresh token has expired")
        raise TokenInvalidError("Refresh token could not be rotated")

    # ------------------------------------------------------------------
    # Revocation / audit / maintenance
    # ------------------------------------------------------------------

    def revoke_family(self, family_id: str) -> int:
        """Revoke every unrevoked member of a family. Idempotent; returns rows changed."""
        revoked = self._store.revoke_family(family_id, self._clock())
        if revoked:
            logger.info("Revoked refresh family %s**** (%d records)", family_id[:8], revoked)
        return revoked

    def revoke_token(self, presented: str) -> bool:
        """Revoke the family a presented token belongs to. Unknown tokens are ignored."""
        if not presented:
            return False
        record = self._store.find_by_hash(self._tokens.hash_token(presented))
        if record is None:
            return False
        self.revoke_family(record.family_id)
        return True

    def revoke_user(self, user_id: str) -> int:
        """Revoke every family belonging to a user (password reset, account disable)."""
        return self._store.revoke_user_families(user_id, self._clock())

    def is_family_revoked(self, family_id: str) -> bool:
        return self._store.is_family_revoked(family_id)

    def get_family(self, family_id: str) -> list[RefreshTokenRecord]:
        return self._store.get_family(family_id)

    def cleanup_expired(self, before: datetime | None = None) -> int:
        """Delete records that expired before `before` (default: now). Returns count removed."""
        removed = self._store.cleanup_expired(before or self._clock())
        if removed:
            logger.info("Removed %d expired refresh token records", removed)
        return removed

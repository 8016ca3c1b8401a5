"""
auth/keystore.py -- Signing key lifecycle for access tokens.

One active key signs every new access token. When a new key is generated the
active key is demoted to the "previous" list, where it stays usable for
verification until its overlap window closes or it falls past the retention
count. Tokens signed moments before a rotation therefore keep verifying.

Key material:
  ES256 (P-256) by default, RS256 (RSA-2048) as the alternative. Keys are
  generated with `cryptography` and kept as PEM strings, which is the form
  python-jose accepts for both signing and verification.

Persistence:
  With a path configured, the keystore is a JSON document written atomically
  (temp file + os.replace) with 0600 permissions because it holds the private
  key. Without a path it lives in memory and keys regenerate on restart.

  {"active": {kid, alg, private_key, public_key, created_at},
   "previous": [{kid, alg, public_key, retired_at, expires_at}, ...]}

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from datetime import datetime, timedelta
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from jose import jwk

from auth.clock import Clock, utcnow
from auth.errors import KeyNotConfiguredError, KeyNotFoundError
from auth.models import RetiredKey, SigningKey, VerificationKey

logger = logging.getLogger("keyward.auth.keystore")

SUPPORTED_ALGORITHMS = ("ES256", "RS256")


# ---------------------------------------------------------------------------
# Key generation
# ---------------------------------------------------------------------------


def _generate_pem_pair(alg: str) -> tuple[str, str]:
    if alg == "ES256":
        private = ec.generate_private_key(ec.SECP256R1())
    elif alg == "RS256":
        private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        raise ValueError(f"Unsupported signing algorithm: {alg!r}")
    private_pem = private.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()).decode("ascii")
    public_pem = private.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo).decode("ascii")
    return private_pem, public_pem


def _new_kid(now: datetime) -> str:
    return f"{now:%Y%m%d}-{secrets.token_hex(4)}"


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, sort_keys=True)
    os.replace(tmp, path)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class KeystoreManager:
    """Owns the active signing key and the previous (verification-only) keys.

    Usage:
        keystore = KeystoreManager("ES256", path="keys.json")
        keystore.initialize()
        key = keystore.get_active_key()
    """

    def __init__(
        self,
        alg: str = "ES256",
        *,
        path: str | Path | None = None,
        retention: int = 3,
        rotation_days: int = 90,
        overlap_days: int = 7,
        clock: Clock = utcnow,
    ) -> None:
        if alg not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm: {alg!r}")
        self.alg = alg
        self.path = Path(path) if path else None
        self.retention = retention
        self.rotation_days = rotation_days
        self.overlap_days = overlap_days
        self._clock = clock
        self._active: SigningKey | None = None
        self._previous: list[RetiredKey] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> SigningKey:
        """Load the keystore file if there is one, otherwise create a key.

        Rotates straight away when the loaded active key is past its rotation
        age. A keystore file that exists but cannot be parsed raises
        KeyNotConfiguredError: replacing it silently would invalidate every
        outstanding token.
        """
        if self.path is not None and self.path.exists():
            self._load()
            logger.info("Keystore loaded from %s (active kid=%s)", self.path, self._active.kid)
        if self._active is None:
            return self.generate_key()
        if self.needs_rotation():
            logger.info("Active key %s is older than %d days; rotating", self._active.kid, self.rotation_days)
            return self.generate_key()
        return self._active

    def generate_key(self, alg: str | None = None) -> SigningKey:
        """Create a key pair, demote the active key, prune, and persist.

        The demoted key is verification-only until now + overlap_days, and at
        most `retention` previous keys are kept (newest first).
        """
        alg = alg or self.alg
        now = self._clock()
        private_pem, public_pem = _generate_pem_pair(alg)
        new_key = SigningKey(
            kid=_new_kid(now),
            alg=alg,
            private_key=private_pem,
            public_key=public_pem,
            created_at=now,
        )
        if self._active is not None:
            retired = RetiredKey(
                kid=self._active.kid,
                alg=self._active.alg,
                public_key=self._active.public_key,
                retired_at=now,
                expires_at=now + timedelta(days=self.overlap_days),
            )
            self._previous.insert(0, retired)
        self._previous = [k for k in self._previous if k.expires_at > now][: self.retention]
        self._active = new_key
        self.alg = alg
        self._save()
        logger.info("Generated %s signing key %s (%d previous kept)", alg, new_key.kid, len(self._previous))
        return new_key

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_key(self) -> SigningKey:
        if self._active is None:
            raise KeyNotConfiguredError("Keystore has no active key; call initialize() first")
        return self._active

    def get_verification_keys(self) -> list[VerificationKey]:
        """Active key first, then previous keys still inside their overlap window."""
        active = self.get_active_key()
        now = self._clock()
        keys = [VerificationKey(kid=active.kid, alg=active.alg, public_key=active.public_key)]
        keys.extend(
            VerificationKey(kid=k.kid, alg=k.alg, public_key=k.public_key) for k in self._previous if k.expires_at > now
        )
        return keys

    def find_verification_key(self, kid: str) -> VerificationKey:
        for key in self.get_verification_keys():
            if key.kid == kid:
                return key
        raise KeyNotFoundError(f"No verification key with kid={kid!r}")

    def export_public_jwks(self) -> dict:
        """Serialize verification keys as a JWK set. Private members are never included."""
        keys = []
        for key in self.get_verification_keys():
            entry = jwk.construct(key.public_key, key.alg).to_dict()
            entry.pop("d", None)
            entry.update({"kid": key.kid, "alg": key.alg, "use": "sig"})
            keys.append(entry)
        return {"keys": keys}

    def needs_rotation(self) -> bool:
        if self._active is None:
            return True
        return self._clock() - self._active.created_at >= timedelta(days=self.rotation_days)

    def stats(self) -> dict:
        active = self.get_active_key()
        age = self._clock() - active.created_at
        return {
            "active_kid": active.kid,
            "alg": active.alg,
            "active_key_age_days": age.days,
            "previous_keys": len(self._previous),
            "needs_rotation": self.needs_rotation(),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self.path is None or self._active is None:
            return
        _atomic_write(
            self.path,
            {
                "active": {
                    "kid": self._active.kid,
                    "alg": self._active.alg,
                    "private_key": self._active.private_key,
                    "public_key": self._active.public_key,
                    "created_at": self._active.created_at.isoformat(),
                },
                "previous": [
                    {
                        "kid": k.kid,
                        "alg": k.alg,
                        "public_key": k.public_key,
                        "retired_at": k.retired_at.isoformat(),
                        "expires_at": k.expires_at.isoformat(),
                    }
                    for k in self._previous
                ],
            },
        )

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            active = data["active"]
            self._active = SigningKey(
                kid=active["kid"],
                alg=active["alg"],
                private_key=active["private_key"],
                public_key=active["public_key"],
                created_at=datetime.fromisoformat(active["created_at"]),
            )
            self._previous = [
                RetiredKey(
                    kid=k["kid"],
                    alg=k["alg"],
                    public_key=k["public_key"],
                    retired_at=datetime.fromisoformat(k["retired_at"]),
                    expires_at=datetime.fromisoformat(k["expires_at"]),
                )
                for k in data.get("previous", [])
            ]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise KeyNotConfiguredError(f"Keystore file {self.path} is unreadable: {exc}") from exc
        self.alg = self._active.alg

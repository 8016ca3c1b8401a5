"""
auth/hasher.py -- Password hashing behind a tagged-digest contract.

Every stored digest is prefixed with the id of the algorithm that produced it:

    bcrypt:$2b$12$....
    argon2id:$argon2id$v=19$m=65536,t=3,p=4$....

TaggedHasher hashes with its primary algorithm and verifies by dispatching on
the tag, so bcrypt and argon2id digests can coexist while users migrate.
needs_rehash() tells the login flow when to re-hash with the primary.

Implementations:
  BcryptHasher  -- bcrypt directly (no passlib wrapper; passlib's wrap-bug
                   self-test trips bcrypt 4.x's 72-byte check).
  Argon2Hasher  -- argon2-cffi PasswordHasher (argon2id).

Timing [C1]: DUMMY_SECRET is verified against a real digest when a login
names an unknown user, so response time does not reveal which emails exist.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

_SEPARATOR = ":"
_BCRYPT_MAX_BYTES = 72


@runtime_checkable
class CredentialHasher(Protocol):
    """Contract: hash(secret) -> tagged digest; verify(digest, secret) -> bool."""

    id: str

    def hash(self, secret: str) -> str: ...

    def verify(self, digest: str, secret: str) -> bool: ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class BcryptHasher:
    """bcrypt with a configurable cost factor.

    bcrypt only reads the first 72 bytes of a secret, and bcrypt 5 raises on
    anything longer, so the secret is cut to 72 bytes before hashing and
    verifying. The API layer caps password length at 128 characters.
    """

    id = "bcrypt"

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, secret: str) -> str:
        native = bcrypt.hashpw(_bcrypt_input(secret), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        return f"{self.id}{_SEPARATOR}{native}"

    def verify(self, digest: str, secret: str) -> bool:
        native = _strip_tag(digest, self.id)
        if native is None:
            return False
        try:
            return bcrypt.checkpw(_bcrypt_input(secret), native.encode("utf-8"))
        except ValueError:
            return False


def _bcrypt_input(secret: str) -> bytes:
    return secret.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class Argon2Hasher:
    """argon2id via argon2-cffi with its default (RFC 9106 low-memory) parameters."""

    id = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher()

    def hash(self, secret: str) -> str:
        return f"{self.id}{_SEPARATOR}{self._hasher.hash(secret)}"

    def verify(self, digest: str, secret: str) -> bool:
        native = _strip_tag(digest, self.id)
        if native is None:
            return False
        try:
            return self._hasher.verify(native, secret)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def check_needs_rehash(self, digest: str) -> bool:
        native = _strip_tag(digest, self.id)
        return native is None or self._hasher.check_needs_rehash(native)


def _strip_tag(digest: str, expected: str) -> str | None:
    tag, sep, native = digest.partition(_SEPARATOR)
    if not sep or tag != expected or not native:
        return None
    return native


def digest_tag(digest: str) -> str | None:
    """Return the algorithm id a digest is tagged with, or None if untagged."""
    tag, sep, native = digest.partition(_SEPARATOR)
    if not sep or not tag or not native:
        return None
    return tag


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TaggedHasher:
    """Hash with one algorithm, verify with whichever one tagged the digest.

    Usage:
        hasher = TaggedHasher(Argon2Hasher(), BcryptHasher())
        digest = hasher.hash("s3cret")          # argon2id:...
        hasher.verify(old_bcrypt_digest, "pw")  # dispatched to BcryptHasher
    """

    DUMMY_SECRET = "keyward_timing_dummy"

    def __init__(self, primary: CredentialHasher, *others: CredentialHasher) -> None:
        self.primary = primary
        self._by_id: dict[str, CredentialHasher] = {h.id: h for h in (primary, *others)}
        # Computed once so the first unknown-user login is not slower than later ones [C1].
        self._dummy_digest = primary.hash(self.DUMMY_SECRET)

    @property
    def id(self) -> str:
        return self.primary.id

    def hash(self, secret: str) -> str:
        return self.primary.hash(secret)

    def verify(self, digest: str, secret: str) -> bool:
        """Dispatch on the digest's tag. Unknown tags and malformed digests fail closed."""
        tag = digest_tag(digest)
        hasher = self._by_id.get(tag) if tag else None
        if hasher is None:
            return False
        return hasher.verify(digest, secret)

    def verify_dummy(self, secret: str) -> None:
        """Burn the same work as a real verification [C1]."""
        self.primary.verify(self._dummy_digest, secret)

    def needs_rehash(self, digest: str) -> bool:
        if digest_tag(digest) != self.primary.id:
            return True
        check = getattr(self.primary, "check_needs_rehash", None)
        return bool(check(digest)) if check is not None else False


def build_hasher(algorithm: str, *, bcrypt_rounds: int = 12) -> TaggedHasher:
    """Return a TaggedHasher whose primary is `algorithm` and which still verifies the other."""
    bcrypt_hasher = BcryptHasher(rounds=bcrypt_rounds)
    argon2_hasher = Argon2Hasher()
    if algorithm == "argon2id":
        return TaggedHasher(argon2_hasher, bcrypt_hasher)
    if algorithm == "bcrypt":
        return TaggedHasher(bcrypt_hasher, argon2_hasher)
    raise ValueError(f"Unknown password hasher: {algorithm!r}")

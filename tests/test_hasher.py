"""Unit tests for auth/hasher.py -- tagged password digests.

Covers:
- bcrypt and argon2id digests carry their algorithm tag
- TaggedHasher dispatches verification on the tag
- malformed, untagged and unknown-tag digests fail closed
- needs_rehash() when the digest was made by a non-primary algorithm
- bcrypt secrets longer than 72 bytes hash and verify
- verify_dummy() runs without raising
"""

import pytest

from auth.hasher import (
    Argon2Hasher,
    BcryptHasher,
    CredentialHasher,
    TaggedHasher,
    build_hasher,
    digest_tag,
)


@pytest.fixture
def bcrypt_hasher():
    return BcryptHasher(rounds=4)


@pytest.fixture
def argon2_hasher():
    return Argon2Hasher()


class TestImplementations:
    def test_bcrypt_digest_is_tagged(self, bcrypt_hasher):
        digest = bcrypt_hasher.hash("correct horse")
        assert digest.startswith("bcrypt:$2")
        assert bcrypt_hasher.verify(digest, "correct horse") is True
        assert bcrypt_hasher.verify(digest, "battery staple") is False

    def test_argon2_digest_is_tagged(self, argon2_hasher):
        digest = argon2_hasher.hash("correct horse")
        assert digest.startswith("argon2id:$argon2id$")
        assert argon2_hasher.verify(digest, "correct horse") is True
        assert argon2_hasher.verify(digest, "battery staple") is False

    def test_implementations_satisfy_protocol(self, bcrypt_hasher, argon2_hasher):
        assert isinstance(bcrypt_hasher, CredentialHasher)
        assert isinstance(argon2_hasher, CredentialHasher)

    def test_bcrypt_long_secret(self, bcrypt_hasher):
        secret = "x" * 100
        digest = bcrypt_hasher.hash(secret)
        assert bcrypt_hasher.verify(digest, secret) is True

    def test_wrong_tag_rejected_by_implementation(self, bcrypt_hasher, argon2_hasher):
        digest = argon2_hasher.hash("pw")
        assert bcrypt_hasher.verify(digest, "pw") is False


class TestDigestTag:
    @pytest.mark.parametrize(
        "digest, expected",
        [
            ("bcrypt:$2b$04$abc", "bcrypt"),
            ("argon2id:$argon2id$v=19$...", "argon2id"),
            ("$2b$12$untagged", None),
            ("bcrypt:", None),
            ("", None),
        ],
    )
    def test_digest_tag(self, digest, expected):
        assert digest_tag(digest) == expected


class TestTaggedHasher:
    def test_dispatches_to_secondary(self, bcrypt_hasher, argon2_hasher):
        legacy = bcrypt_hasher.hash("pw")
        hasher = TaggedHasher(argon2_hasher, bcrypt_hasher)
        assert hasher.verify(legacy, "pw") is True
        assert hasher.hash("pw").startswith("argon2id:")

    @pytest.mark.parametrize("digest", ["", "garbage", "md5:5f4dcc3b5aa765d61d8327deb882cf99", "bcrypt:not-a-hash"])
    def test_fails_closed(self, bcrypt_hasher, digest):
        hasher = TaggedHasher(bcrypt_hasher)
        assert hasher.verify(digest, "password") is False

    def test_needs_rehash_for_secondary_algorithm(self, bcrypt_hasher, argon2_hasher):
        hasher = TaggedHasher(argon2_hasher, bcrypt_hasher)
        assert hasher.needs_rehash(bcrypt_hasher.hash("pw")) is True
        assert hasher.needs_rehash(hasher.hash("pw")) is False

    def test_bcrypt_primary_never_rehashes_own_digest(self, bcrypt_hasher):
        hasher = TaggedHasher(bcrypt_hasher)
        assert hasher.needs_rehash(hasher.hash("pw")) is False

    def test_verify_dummy(self, bcrypt_hasher):
        TaggedHasher(bcrypt_hasher).verify_dummy("anything")


class TestBuildHasher:
    def test_argon2_primary(self):
        hasher = build_hasher("argon2id", bcrypt_rounds=4)
        assert hasher.id == "argon2id"
        assert hasher.verify(BcryptHasher(rounds=4).hash("pw"), "pw") is True

    def test_bcrypt_primary(self):
        hasher = build_hasher("bcrypt", bcrypt_rounds=4)
        assert hasher.id == "bcrypt"
        assert hasher.primary.rounds == 4

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            build_hasher("md5")

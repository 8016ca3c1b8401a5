"""Unit tests for core/config.py -- Settings validation and duration parsing.

Covers:
- parse_duration() accepts s/m/h/d/w suffixes and bare seconds
- parse_duration() rejects malformed and non-positive values
- SECRET_KEY: generated in debug mode, required in production, minimum length
- COOKIE_SAMESITE=none forces secure cookies
- derived access/refresh TTLs
"""

import pytest
from pydantic import ValidationError

from core.config import Settings, parse_duration

SECRET = "s" * 40


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("10m", 600),
            ("1h", 3600),
            ("30d", 30 * 86400),
            ("2w", 14 * 86400),
            ("45s", 45),
            (" 15M ", 900),
            ("120", 120),
            (300, 300),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "ten minutes", "10x", "-5m", "0", 0, "1.5h"])
    def test_invalid_durations_raise(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSecretKey:
    def test_debug_mode_generates_key(self):
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self):
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(debug=True, secret_key="too-short")


class TestDerivedValues:
    def test_ttl_properties(self):
        settings = Settings(secret_key=SECRET, jwt_access_ttl="5m", jwt_refresh_ttl="7d")
        assert settings.access_ttl_seconds == 300
        assert settings.refresh_ttl_seconds == 7 * 86400

    def test_malformed_ttl_fails_at_startup(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET, jwt_access_ttl="soon")

    def test_samesite_none_forces_secure(self):
        settings = Settings(secret_key=SECRET, cookie_samesite="none", secure_cookies=False)
        assert settings.secure_cookies is True

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET, session_strategy="memcached")

    def test_magic_link_defaults(self):
        settings = Settings(secret_key=SECRET)
        assert settings.magic_link_enabled is True
        assert settings.magic_link_ttl_minutes == 15
        assert settings.magic_link_verify_path == "/api/v1/auth/magic-link/verify"

    def test_magic_link_ttl_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET, magic_link_ttl_minutes=0)

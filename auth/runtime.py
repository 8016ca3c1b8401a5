"""
auth/runtime.py -- Explicitly constructed auth service graph and its account flows.

AuthRuntime is built once by a composition root (api/main.py lifespan, the
CLI in main.py, or a test fixture) and holds every component:

    store -> hasher, sessions, keystore -> tokens -> rotator -> strategy
          -> csrf guard, OAuth orchestrator

There are no module-level singletons. Two runtimes built from different
Settings objects in the same process are fully independent.

Account flows implemented here:
  register()                 create a password user, issue credentials, and
                             optionally mint an email verification token
  login()                    password check with timing equalization [C1]
                             and transparent re-hashing to the primary hasher
  logout()                   revoke the presented credential (idempotent)
  authenticate() / current_user()
  refresh()                  jwt strategy only
  request_password_reset() / reset_password()
  request_email_verification() / verify_email()
  request_magic_link() / verify_magic_link()
                             passwordless sign-in by emailed single-use link
  cleanup()                  delete expired sessions and refresh records

Verification tokens are 32 random bytes; only their HMAC-SHA256 is stored.
Delivery (email) is left to an optional notifier callable. Without one the
token is only returned to the caller.

Layer rule: no imports from api/. Settings from core/ are read only in
AuthRuntime.from_settings().
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from authlib.common.urls import add_params_to_uri

from auth.clock import Clock, utcnow
from auth.cookies import CookiePolicy
from auth.csrf import CsrfGuard
from auth.errors import (
    CredentialInvalidError,
    StorageUniqueViolationError,
    TokenInvalidError,
    UserNotFoundError,
)
from auth.hasher import TaggedHasher, build_hasher
from auth.keystore import KeystoreManager
from auth.models import AuthContext, IssuedCredentials, RotationResult, User, VerificationToken
from auth.oauth import OAuthOrchestrator, safe_redirect_target
from auth.providers import OAuthProvider, ProviderClient, providers_from_settings
from auth.refresh import RefreshTokenRotator
from auth.sessions import SessionManager
from auth.store import SqlAuthStore, StorageAdapter
from auth.strategy import JwtStrategy, SessionStrategy, build_strategy
from auth.tokens import JwtTokenService

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("keyward.auth.runtime")

# Called as notifier(purpose, email, secret); purpose is "verify", "reset" or
# "magic". For "magic" the secret is the full sign-in URL, otherwise the raw token.
TokenNotifier = Callable[[str, str, str], None]

_VERIFY_PREFIX = "verify"
_RESET_PREFIX = "reset"
_MAGIC_PREFIX = "magic"


@dataclass(frozen=True)
class AuthResult:
    user: User
    credentials: IssuedCredentials
    # Raw email verification token, present only when register() minted one.
    verification_token: str | None = None
    # True when verify_magic_link() created the user on first use.
    created: bool = False


class AuthRuntime:
    """Holds the auth components and runs the account flows over them.

    Usage:
        runtime = AuthRuntime.from_settings(get_settings())
        result = runtime.login("alice@example.com", "s3cret-pass", ip=client_ip)
        context = runtime.authenticate(result.credentials.session.id)
        runtime.close()
    """

    def __init__(
        self,
        *,
        store: StorageAdapter,
        hasher: TaggedHasher,
        keystore: KeystoreManager,
        sessions: SessionManager,
        tokens: JwtTokenService,
        rotator: RefreshTokenRotator,
        strategy: SessionStrategy,
        csrf: CsrfGuard,
        oauth: OAuthOrchestrator,
        cookie_policy: CookiePolicy,
        provider_client: ProviderClient | None = None,
        password_min_length: int = 8,
        verification_ttl_minutes: int = 60,
        reset_ttl_minutes: int = 30,
        self_registration_enabled: bool = True,
        magic_link_enabled: bool = True,
        magic_link_ttl_minutes: int = 15,
        magic_link_auto_create_user: bool = True,
        magic_link_verify_url: str = "http://localhost:8000/api/v1/auth/magic-link/verify",
        notifier: TokenNotifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.keystore = keystore
        self.sessions = sessions
        self.tokens = tokens
        self.rotator = rotator
        self.strategy = strategy
        self.csrf = csrf
        self.oauth = oauth
        self.cookie_policy = cookie_policy
        self._provider_client = provider_client
        self.password_min_length = password_min_length
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.self_registration_enabled = self_registration_enabled
        self.magic_link_enabled = magic_link_enabled
        self.magic_link_ttl_minutes = magic_link_ttl_minutes
        self.magic_link_auto_create_user = magic_link_auto_create_user
        self.magic_link_verify_url = magic_link_verify_url
        self._notifier = notifier
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: StorageAdapter | None = None,
        provider_client: ProviderClient | None = None,
        providers: dict[str, OAuthProvider] | None = None,
        notifier: TokenNotifier | None = None,
        clock: Clock = utcnow,
    ) -> "AuthRuntime":
        """Construct the whole graph from one Settings object.

        The keystore is initialized here (loaded, generated, or rotated), so
        a corrupt keystore file stops startup with KeyNotConfiguredError.
        """
        store = store or SqlAuthStore(settings.database_url, clock=clock)
        keystore = KeystoreManager(
            settings.jwt_algorithm,
            path=settings.keystore_path or None,
            retention=settings.key_retention,
            rotation_days=settings.key_rotation_days,
            overlap_days=settings.key_overlap_days,
            clock=clock,
        )
        keystore.initialize()
        cookie_policy = CookiePolicy.from_settings(settings)
        sessions = SessionManager(
            store,
            ttl_minutes=settings.session_ttl_minutes,
            rolling=settings.session_rolling,
            clock=clock,
        )
        tokens = JwtTokenService.from_settings(keystore, store, settings, clock=clock)

        def _role_of(user_id: str) -> str | None:
            user = store.get_user(user_id)
            return user.role if user is not None else None

        rotator = RefreshTokenRotator(store, tokens, role_lookup=_role_of, clock=clock)
        strategy = build_strategy(settings, store=store, sessions=sessions, tokens=tokens, rotator=rotator)
        client = provider_client or ProviderClient(timeout=settings.oauth_timeout_seconds)
        oauth = OAuthOrchestrator.from_settings(
            settings,
            providers if providers is not None else providers_from_settings(settings),
            store,
            strategy,
            client=client,
            clock=clock,
        )
        return cls(
            store=store,
            hasher=build_hasher(settings.password_hasher, bcrypt_rounds=settings.bcrypt_rounds),
            keystore=keystore,
            sessions=sessions,
            tokens=tokens,
            rotator=rotator,
            strategy=strategy,
            csrf=CsrfGuard(cookie_policy),
            oauth=oauth,
            cookie_policy=cookie_policy,
            provider_client=client,
            password_min_length=settings.password_min_length,
            verification_ttl_minutes=settings.verification_token_ttl_minutes,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            self_registration_enabled=settings.self_registration_enabled,
            magic_link_enabled=settings.magic_link_enabled,
            magic_link_ttl_minutes=settings.magic_link_ttl_minutes,
            magic_link_auto_create_user=settings.magic_link_auto_create_user,
            magic_link_verify_url=settings.base_url.rstrip("/") + settings.magic_link_verify_path,
            notifier=notifier,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def close(self) -> None:
        if self._provider_client is not None:
            self._provider_client.close()
        self.store.close()

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        *,
        name: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        send_verification: bool = True,
    ) -> AuthResult:
        """Create a password user and sign them in.

        Raises StorageUniqueViolationError when the email is already taken and
        ValueError when the password is shorter than password_min_length.
        """
        if len(password) < self.password_min_length:
            raise ValueError(f"Password must be at least {self.password_min_length} characters")
        email = email.strip().lower()
        if self.store.get_user_by_email(email) is not None:
            raise StorageUniqueViolationError("Email is already registered")
        user = self.store.create_user(User(email=email, name=name, password_hash=self.hasher.hash(password)))
        logger.info("Registered user %s", user.id)
        credentials = self.strategy.issue(user, ip=ip, user_agent=user_agent)
        token = self.request_email_verification(email) if send_verification else None
        return AuthResult(user=user, credentials=credentials, verification_token=token)

    def login(
        self,
        email: str,
        password: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Check a password and issue credentials. Raises CredentialInvalidError.

        Unknown emails, OAuth-only users, deactivated users and wrong passwords
        all take the same path and raise the same error [C1].
        """
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None or not user.password_hash:
            self.hasher.verify_dummy(password)
            logger.info("Failed login for unknown email from %s", ip or "unknown")
            raise CredentialInvalidError("Unknown email or no password set")
        if not self.hasher.verify(user.password_hash, password):
            logger.info("Failed login for user %s from %s", user.id, ip or "unknown")
            raise CredentialInvalidError("Wrong password")
        if not user.is_active:
            raise CredentialInvalidError("User is deactivated")

        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hasher.hash(password))
            logger.info("Re-hashed password for user %s with %s", user.id, self.hasher.id)

        credentials = self.strategy.issue(user, ip=ip, user_agent=user_agent)
        logger.info("User %s logged in (%s)", user.id, self.strategy.name)
        return AuthResult(user=user, credentials=credentials)

    def logout(self, credential: str | None) -> None:
        """Revoke a session id (database) or refresh token (jwt). Absent credentials are ignored."""
        if credential:
            self.strategy.revoke(credential)

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def authenticate(self, credential: str) -> AuthContext:
        return self.strategy.verify(credential)

    def current_user(self, credential: str) -> tuple[User, AuthContext]:
        """Verify the credential and load its user. Deleted or deactivated users fail as invalid."""
        context = self.strategy.verify(credential)
        user = self.store.get_user(context.user_id)
        if user is None or not user.is_active:
            raise CredentialInvalidError("Credential belongs to an unavailable user")
        return user, context

    def refresh(self, refresh_token: str, *, ip: str | None = None, user_agent: str | None = None) -> RotationResult:
        if not isinstance(self.strategy, JwtStrategy):
            raise TokenInvalidError("Refresh tokens are not issued by the database strategy")
        return self.strategy.refresh(refresh_token, ip=ip, user_agent=user_agent)

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def issue_verification_token(self, identifier: str, ttl_minutes: int) -> str:
        """Store the hash of a new single-use token for `identifier`; return the raw token."""
        raw = secrets.token_urlsafe(32)
        self.store.create_verification_token(
            VerificationToken(
                identifier=identifier,
                token_hash=self.tokens.hash_token(raw),
                expires_at=self._clock() + timedelta(minutes=ttl_minutes),
            )
        )
        return raw

    def consume_verification_token(self, identifier: str, token: str) -> bool:
        """True exactly once for a matching, unexpired token."""
        if not token:
            return False
        return self.store.consume_verification_token(identifier, self.tokens.hash_token(token), self._clock())

    def request_email_verification(self, email: str) -> str | None:
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if user is None or user.email_verified_at is not None:
            return None
        token = self.issue_verification_token(f"{_VERIFY_PREFIX}:{email}", self.verification_ttl_minutes)
        self._notify(_VERIFY_PREFIX, email, token)
        return token

    def verify_email(self, email: str, token: str) -> User:
        email = email.strip().lower()
        if not self.consume_verification_token(f"{_VERIFY_PREFIX}:{email}", token):
            raise TokenInvalidError("Email verification token is invalid or expired")
        user = self.store.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError("No user with that email")
        if user.email_verified_at is None:
            self.store.update_user(user.id, email_verified_at=self._clock())
        logger.info("Email verified for user %s", user.id)
        return self.store.get_user(user.id)

    def request_password_reset(self, email: str) -> str | None:
        """Mint a reset token for an active user. Returns None (silently) for anyone else."""
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive email")
            return None
        token = self.issue_verification_token(f"{_RESET_PREFIX}:{email}", self.reset_ttl_minutes)
        self._notify(_RESET_PREFIX, email, token)
        logger.info("Password reset token issued for user %s", user.id)
        return token

    def reset_password(self, email: str, token: str, new_password: str) -> User:
        """Consume a reset token, set the new password and revoke every outstanding credential."""
        if len(new_password) < self.password_min_length:
            raise ValueError(f"Password must be at least {self.password_min_length} characters")
        email = email.strip().lower()
        if not self.consume_verification_token(f"{_RESET_PREFIX}:{email}", token):
            raise TokenInvalidError("Password reset token is invalid or expired")
        user = self.store.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError("No user with that email")
        self.store.update_user(user.id, password_hash=self.hasher.hash(new_password))
        sessions = self.sessions.destroy_all(user.id)
        families = self.rotator.revoke_user(user.id)
        logger.info(
            "Password reset for user %s; revoked %d sessions and %d refresh records",
            user.id,
            sessions,
            families,
        )
        return self.store.get_user(user.id)

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    @property
    def magic_link_may_create_user(self) -> bool:
        return self.magic_link_auto_create_user and self.self_registration_enabled

    def magic_link_url(self, email: str, token: str, redirect_to: str | None = None) -> str:
        """The link a user clicks: verify URL with email, token and an optional same-site redirect."""
        params = [("email", email), ("token", token)]
        target = safe_redirect_target(redirect_to, default="")
        if target:
            params.append(("redirect_to", target))
        return add_params_to_uri(self.magic_link_verify_url, params)

    def request_magic_link(self, email: str, redirect_to: str | None = None) -> str | None:
        """Mint a single-use sign-in link and hand its URL to the notifier.

        Returns the raw token, or None (silently) when no link is sent: magic
        links are off, the user is deactivated, or the address is unknown and
        users may not be created on first use.
        """
        email = email.strip().lower()
        if not self.magic_link_enabled:
            return None
        user = self.store.get_user_by_email(email)
        if user is None and not self.magic_link_may_create_user:
            logger.info("Magic link requested for unknown email")
            return None
        if user is not None and not user.is_active:
            logger.info("Magic link requested for deactivated user %s", user.id)
            return None
        token = self.issue_verification_token(f"{_MAGIC_PREFIX}:{email}", self.magic_link_ttl_minutes)
        self._notify(_MAGIC_PREFIX, email, self.magic_link_url(email, token, redirect_to))
        logger.info("Magic link issued for %s", user.id if user is not None else "a new address")
        return token

    def verify_magic_link(
        self,
        email: str,
        token: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Consume a magic link token and sign the user in, creating them if allowed.

        The click proves the address, so email_verified_at is set. Raises
        TokenInvalidError for a used, expired or foreign token.
        """
        email = email.strip().lower()
        if not self.magic_link_enabled or not self.consume_verification_token(f"{_MAGIC_PREFIX}:{email}", token):
            raise TokenInvalidError("Magic link is invalid or expired")

        created = False
        user = self.store.get_user_by_email(email)
        if user is None:
            if not self.magic_link_may_create_user:
                raise UserNotFoundError("No user with that email")
            user = self.store.create_user(User(email=email, email_verified_at=self._clock()))
            created = True
            logger.info("Registered user %s via magic link", user.id)
        elif not user.is_active:
            raise CredentialInvalidError("User is deactivated")
        elif user.email_verified_at is None:
            self.store.update_user(user.id, email_verified_at=self._clock())
            user = self.store.get_user(user.id)

        credentials = self.strategy.issue(user, ip=ip, user_agent=user_agent)
        logger.info("User %s signed in with a magic link (%s)", user.id, self.strategy.name)
        return AuthResult(user=user, credentials=credentials, created=created)

    def _notify(self, purpose: str, email: str, token: str) -> None:
        if self._notifier is None:
            logger.debug("No notifier configured; %s token not delivered", purpose)
            return
        self._notifier(purpose, email, token)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> dict[str, int]:
        """Delete expired sessions and refresh records. Safe to run on any schedule."""
        return {
            "sessions": self.sessions.sweep_expired(),
            "refresh_tokens": self.rotator.cleanup_expired(),
        }

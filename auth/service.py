"""
auth/service.py -- Registration, login, token issuance, validation and rotation.

AuthService owns no storage. It orchestrates UserStore and TokenStore, both
handed in by the caller, and carries only immutable configuration: the signing
secret, the two token lifetimes, the issuer and a clock. One instance serves
every request concurrently; there is no per-call state and no locking. The
"one valid row per refresh-token hash" rule lives in the database's UNIQUE
constraint.

Security design decisions:
  [A1] Login never reveals whether an email is registered. Unknown email and
       wrong password raise the same InvalidCredentials, and bcrypt runs in
       both cases (against DUMMY_HASH for unknown emails) so response time
       does not leak it either.

  [A2] Refresh rotation is strictly single-use. The presented token's row is
       deleted BEFORE new credentials are minted. If that delete fails the
       flow continues with a warning (the token was already validated and a
       storage hiccup should not lock the user out); if persisting the NEW
       token fails, the whole call fails with StorageFailure so the client
       never holds an access token with no durable refresh token behind it.

  [A3] Any refresh-token lookup failure collapses to TokenInvalid. The client
       learns nothing about whether the token never existed, expired, or was
       already used.

  [A4] Raw refresh tokens are returned exactly once and only ever logged as a
       short prefix.

Timeouts:
  Every operation takes an optional ``timeout`` in seconds. It becomes one
  absolute deadline for the whole operation and is passed to each store call,
  so a multi-step flow (rotation) shares a single budget. A timeout between
  the delete and the save of a rotation leaves the old token gone without a
  replacement -- an accepted risk; the flow is not wrapped in a transaction.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import (
    AuthError,
    DuplicateUser,
    InvalidCredentials,
    InvalidInput,
    StorageFailure,
    TokenInvalid,
    UserAlreadyExists,
    UserNotFound,
)
from auth.models import AccessClaims, LoginResult, TokenPair, User, UserInfo
from auth.passwords import DUMMY_HASH, MAX_PASSWORD_BYTES, hash_password, verify_password
from auth.store import TokenStore, UserStore
from auth.tokens import (
    create_access_token,
    generate_refresh_token,
    hash_refresh_token,
    redact,
    verify_token,
)
from core.config import Settings, check_signing_secret

logger = logging.getLogger("papertrade.auth")

MIN_PASSWORD_LENGTH = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _deadline(timeout: float | None) -> float | None:
    if timeout is None or timeout <= 0:
        return None
    return time.monotonic() + timeout


class AuthService:
    """Authentication protocol core.

    Usage:
        engine = open_engine(settings.database_url)
        service = AuthService.from_settings(settings, UserStore(engine), TokenStore(engine))
        service.register("alice@example.com", "password123")
        result = service.login("alice@example.com", "password123")
        claims = service.validate_access_token(result.access_token)
        pair = service.process_refresh_token(result.refresh_token)
    """

    def __init__(
        self,
        user_store: UserStore,
        token_store: TokenStore,
        *,
        secret_key: str,
        access_token_lifetime: timedelta,
        refresh_token_lifetime: timedelta,
        issuer: str = "PaperTradingApp",
        default_timeout: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if user_store is None or token_store is None:
            raise ValueError("AuthService requires a UserStore and a TokenStore")
        check_signing_secret(secret_key)
        if access_token_lifetime <= timedelta(0) or refresh_token_lifetime <= timedelta(0):
            raise ValueError("Token lifetimes must be positive")
        self._users = user_store
        self._tokens = token_store
        self._secret = secret_key
        self._access_lifetime = access_token_lifetime
        self._refresh_lifetime = refresh_token_lifetime
        self._issuer = issuer
        self._default_timeout = default_timeout
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, user_store: UserStore, token_store: TokenStore) -> AuthService:
        return cls(
            user_store,
            token_store,
            secret_key=settings.secret_key,
            access_token_lifetime=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_token_lifetime=timedelta(seconds=settings.refresh_token_expire_seconds),
            issuer=settings.token_issuer,
            default_timeout=settings.db_timeout_seconds,
        )

    @property
    def access_token_lifetime(self) -> timedelta:
        return self._access_lifetime

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return self._refresh_lifetime

    def _budget(self, timeout: float | None) -> float | None:
        return _deadline(self._default_timeout if timeout is None else timeout)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, *, timeout: float | None = None) -> User:
        """Create a new identity. No tokens are issued -- login is a separate step.

        Raises InvalidInput, UserAlreadyExists, StorageFailure, HashingFailure.
        """
        if not email or not password:
            raise InvalidInput("Email and password are required.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")

        deadline = self._budget(timeout)
        try:
            self._users.find_by_email(email, deadline=deadline)
        except UserNotFound:
            pass
        else:
            raise UserAlreadyExists()

        password_hash = hash_password(password)
        try:
            user = self._users.create(email, password_hash, deadline=deadline)
        except DuplicateUser as exc:
            # Lost a race with a concurrent registration for the same email.
            raise UserAlreadyExists() from exc

        logger.info("User registered: %s (ID: %s)", user.email, user.id)
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, *, timeout: float | None = None) -> LoginResult:
        """Authenticate with email and password; issue access + refresh tokens [A1].

        Raises InvalidInput, InvalidCredentials, StorageFailure.
        """
        if not email or not password:
            raise InvalidInput("Email and password are required.")

        deadline = self._budget(timeout)
        try:
            user = self._users.find_by_email(email, deadline=deadline)
        except UserNotFound:
            # Equalize timing -- do NOT return before running bcrypt [A1]
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials() from None
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()

        now = self._clock()
        access_token = self._mint_access_token(user, now)
        refresh_token = self._issue_refresh_token(user, now, deadline)

        logger.info("User logged in: %s (ID: %s)", user.email, user.id)
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user.to_info(),
            access_expires_in=int(self._access_lifetime.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def _mint_access_token(self, user: User, now: datetime) -> str:
        return create_access_token(
            user.id,
            user.email,
            secret=self._secret,
            issuer=self._issuer,
            lifetime=self._access_lifetime,
            now=now,
        )

    def validate_access_token(self, token: str) -> AccessClaims:
        """Verify an access token (optionally "Bearer "-prefixed).

        Raises TokenExpired, TokenNotYetValid or TokenInvalid. Purely
        computational -- no store access.
        """
        try:
            return verify_token(token or "", secret=self._secret, issuer=self._issuer, now=self._clock())
        except TokenInvalid as exc:
            logger.debug("Access token rejected: %s", exc)
            raise

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def _issue_refresh_token(self, user: User, now: datetime, deadline: float | None) -> str:
        """Mint an opaque refresh token and persist its hash.

        Any store failure -- including the astronomically unlikely hash
        collision (TokenConflict) -- surfaces as StorageFailure: a session
        without a durable refresh token must not be handed out.
        """
        refresh_token = generate_refresh_token()
        try:
            self._tokens.save(
                user.id,
                hash_refresh_token(refresh_token),
                now + self._refresh_lifetime,
                deadline=deadline,
            )
        except AuthError as exc:
            logger.critical("Failed to save refresh token for user %s: %s", user.id, exc)
            raise StorageFailure(f"could not save refresh token: {exc}") from exc
        return refresh_token

    def process_refresh_token(self, refresh_token: str, *, timeout: float | None = None) -> TokenPair:
        """Exchange a refresh token for a new access token and a new refresh token.

        Strict single-use rotation [A2]. Raises TokenInvalid for any unusable
        token [A3], StorageFailure if the new token cannot be persisted.
        """
        if not refresh_token:
            raise TokenInvalid("refresh token missing")

        deadline = self._budget(timeout)
        old_hash = hash_refresh_token(refresh_token)
        try:
            user = self._tokens.validate_and_fetch_user(old_hash, deadline=deadline)
        except AuthError as exc:
            logger.info("Refresh token validation failed: %s (token was %s)", exc, redact(refresh_token))
            raise TokenInvalid("refresh token rejected") from exc

        try:
            self._tokens.delete_by_hash(old_hash, deadline=deadline)
        except StorageFailure as exc:
            logger.warning(
                "WARNING: Failed to delete old refresh token %s after validation for user %s: %s",
                redact(old_hash),
                user.id,
                exc,
            )

        now = self._clock()
        access_token = self._mint_access_token(user, now)
        new_refresh_token = self._issue_refresh_token(user, now, deadline)

        logger.info("Tokens refreshed for user %s (ID: %s)", user.email, user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh_token,
            access_expires_in=int(self._access_lifetime.total_seconds()),
        )

    def logout(self, refresh_token: str, *, timeout: float | None = None) -> None:
        """Revoke one refresh token. Idempotent; an empty token is a no-op."""
        if not refresh_token:
            return
        self._tokens.delete_by_hash(hash_refresh_token(refresh_token), deadline=self._budget(timeout))

    def revoke_all_sessions(self, user_id: uuid.UUID, *, timeout: float | None = None) -> int:
        """Revoke every refresh token of user_id (account-wide logout / lockout)."""
        return self._tokens.delete_all_for_user(user_id, deadline=self._budget(timeout))

    def purge_expired_tokens(self, *, timeout: float | None = None) -> int:
        return self._tokens.purge_expired(deadline=self._budget(timeout))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_user_info(self, user_id: uuid.UUID, *, timeout: float | None = None) -> UserInfo:
        """Sanitized projection of a user, for handlers that hold verified claims.

        A token whose user has since been deleted is reported as TokenInvalid,
        never as "user not found".
        """
        try:
            return self._users.find_by_id(user_id, deadline=self._budget(timeout)).to_info()
        except UserNotFound as exc:
            raise TokenInvalid("token subject no longer exists") from exc


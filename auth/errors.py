"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the stores or the service can report is a subclass of AuthError.
Each class carries a machine-readable ``code`` and the HTTP ``status_code`` it
maps to, so the HTTP layer picks a response by exception type and never by
matching message text.

Propagation policy:
  Stores raise precise kinds (UserNotFound, TokenNotFound, DuplicateUser, ...).
  AuthService remaps anything that would reveal whether an account or token
  exists into the generic 401 kinds before it leaves the service. NotFound
  subclasses are internal signals only and must never reach a caller.

  StorageFailure and HashingFailure carry full context in their message for
  the logs; ``public_message`` is what a client is allowed to see.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every auth-core failure."""

    code: str = "auth_error"
    status_code: int = 500
    public_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def safe_message(self) -> str:
        """Message that may be shown to the caller."""
        return self.public_message


# ---------------------------------------------------------------------------
# 400 -- caller-correctable
# ---------------------------------------------------------------------------


class InvalidInput(AuthError):
    code = "invalid_input"
    status_code = 400
    public_message = "Invalid input."

    @property
    def safe_message(self) -> str:
        # Validation messages are written for the caller.
        return str(self)


# ---------------------------------------------------------------------------
# 401 -- deliberately information-minimal
# ---------------------------------------------------------------------------


class Unauthorized(AuthError):
    status_code = 401


class InvalidCredentials(Unauthorized):
    code = "bad_credentials"
    public_message = "Invalid email or password."


class TokenInvalid(Unauthorized):
    code = "invalid_token"
    public_message = "Invalid or malformed token."


class TokenExpired(Unauthorized):
    code = "token_expired"
    public_message = "Token has expired."


class TokenNotYetValid(Unauthorized):
    code = "token_not_yet_valid"
    public_message = "Token is not valid yet."


# ---------------------------------------------------------------------------
# 409 -- conflicts
# ---------------------------------------------------------------------------


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    public_message = "Conflict."


class UserAlreadyExists(Conflict):
    code = "user_exists"
    public_message = "User with this email already exists."


class DuplicateUser(Conflict):
    """Unique-constraint violation on users.email, raised by the store."""

    code = "user_exists"
    public_message = "User with this email already exists."


class TokenConflict(Conflict):
    """Unique-constraint violation on refresh_tokens.token_hash."""

    code = "token_conflict"
    public_message = "Could not issue a session token."


# ---------------------------------------------------------------------------
# Internal signals -- remapped at the service boundary
# ---------------------------------------------------------------------------


class NotFound(AuthError):
    status_code = 404


class UserNotFound(NotFound):
    code = "user_not_found"
    public_message = "User not found."


class TokenNotFound(NotFound):
    """No unexpired refresh token matches the hash.

    Covers never-issued, expired, and already-rotated tokens alike.
    """

    code = "token_not_found"
    public_message = "Refresh token not found."


# ---------------------------------------------------------------------------
# 5xx -- infrastructure
# ---------------------------------------------------------------------------


class StorageFailure(AuthError):
    code = "internal_error"
    status_code = 500
    public_message = "An unexpected error occurred."


class HashingFailure(AuthError):
    code = "internal_error"
    status_code = 500
    public_message = "An unexpected error occurred."

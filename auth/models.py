"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and the service do the work.

Secrets never leak through repr(): password_hash and raw refresh tokens are
declared with repr=False so an accidental log line or traceback cannot print
them.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An identity record as stored in the users table.

    email is unique and case-sensitive as stored. password_hash is a bcrypt
    digest and must never appear in an outward-facing structure -- use
    to_info() to build the sanitized projection.
    """

    id: uuid.UUID
    email: str
    password_hash: str = field(repr=False)
    created_at: datetime
    updated_at: datetime

    def to_info(self) -> UserInfo:
        return UserInfo(id=self.id, email=self.email)


@dataclass(frozen=True)
class UserInfo:
    """Sanitized user projection: identity and email only."""

    id: uuid.UUID
    email: str

    def to_dict(self) -> dict:
        return {"id": str(self.id), "email": self.email}


@dataclass
class RefreshTokenRecord:
    """A persisted refresh credential.

    Only the SHA-256 hash of the opaque token is stored. The raw value is
    returned to the client once, at issue time, and is unrecoverable after.
    """

    user_id: uuid.UUID
    token_hash: str
    expires_at: datetime
    id: uuid.UUID | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Claims recovered from a verified access token. Never persisted."""

    user_id: uuid.UUID
    email: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    issuer: str
    subject: str


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str = field(repr=False)
    user: UserInfo
    access_expires_in: int = 0


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str = field(repr=False)
    access_expires_in: int = 0

"""
auth/tokens.py -- Access-token signing/verification and opaque refresh tokens.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens carry uid and email plus the
       registered claims iat, nbf, exp, iss and sub (= uid). Only HS256 is in
       the accepted algorithm list, so a token whose header names any other
       algorithm ("none", RS256 with the secret passed off as a public key,
       ...) fails signature verification. This defeats algorithm-confusion
       forgery.

       Temporal claims are checked here, against the caller's clock, rather
       than inside jose. That gives three distinct outcomes (expired / not
       yet valid / invalid) without inspecting exception text, and makes the
       expiry boundary testable. A token is expired AT its exp instant.

  Refresh tokens: opaque. secrets.token_bytes(32) gives 256 bits of entropy,
       base64url-encoded for the cookie. Only SHA-256 of the token string is
       stored, so a database leak does not hand out live sessions. bcrypt's
       slowness is unnecessary here -- brute-forcing 256 random bits is
       infeasible regardless of hash speed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid, TokenNotYetValid
from auth.models import AccessClaims

ALGORITHM = "HS256"
BEARER_PREFIX = "Bearer "
REFRESH_TOKEN_BYTES = 32

# jose would otherwise raise on exp/nbf itself and collapse both into
# JWTError subclasses; verify_token() does those checks explicitly.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": True,
    "verify_iss": True,
    "verify_aud": False,
    "require_iat": True,
    "require_iss": True,
    "require_sub": True,
}


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: uuid.UUID,
    email: str,
    *,
    secret: str,
    issuer: str,
    lifetime: timedelta,
    now: datetime,
) -> str:
    """Encode a signed access token for user_id.

    iat and nbf are both ``now``; exp is ``now + lifetime``. NumericDate
    claims are whole seconds, as RFC 7519 recommends. jti is random, so two
    tokens minted for the same user in the same second still differ.
    """
    issued = int(now.timestamp())
    payload = {
        "uid": str(user_id),
        "email": email,
        "iat": issued,
        "nbf": issued,
        "exp": issued + int(lifetime.total_seconds()),
        "iss": issuer,
        "sub": str(user_id),
        "jti": secrets.token_urlsafe(12),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def strip_bearer(token: str) -> str:
    """Remove a leading "Bearer " if present."""
    if token.startswith(BEARER_PREFIX):
        return token[len(BEARER_PREFIX) :]
    return token


def verify_token(token: str, *, secret: str, issuer: str, now: datetime) -> AccessClaims:
    """Verify token and return its claims.

    Raises:
        TokenExpired:     now is at or past exp.
        TokenNotYetValid: now is before nbf.
        TokenInvalid:     bad signature, unexpected algorithm, wrong issuer,
                          missing/ill-typed claims, or any other parse error.
    """
    token = strip_bearer(token.strip())
    if not token:
        raise TokenInvalid("empty token")
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM], issuer=issuer, options=_DECODE_OPTIONS)
    except JWTError as exc:
        raise TokenInvalid(f"token rejected: {exc}") from exc

    try:
        issued_at = int(payload["iat"])
        not_before = int(payload["nbf"])
        expires_at = int(payload["exp"])
        user_id = uuid.UUID(payload["uid"])
        email = payload["email"]
        subject = payload["sub"]
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalid(f"malformed claims: {exc}") from exc
    if not isinstance(email, str) or subject != str(user_id):
        raise TokenInvalid("claims do not describe a single user")

    current = now.timestamp()
    if current >= expires_at:
        raise TokenExpired()
    if current < not_before:
        raise TokenNotYetValid()

    return AccessClaims(
        user_id=user_id,
        email=email,
        issued_at=_from_timestamp(issued_at),
        not_before=_from_timestamp(not_before),
        expires_at=_from_timestamp(expires_at),
        issuer=payload["iss"],
        subject=subject,
    )


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Opaque refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token (32 random bytes, base64url)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


def hash_refresh_token(token: str) -> str:
    """Return base64url(SHA-256(token)) -- the only form that is persisted."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def redact(value: str, keep: int = 10) -> str:
    """Short prefix of a token or hash, safe for log lines."""
    return f"{value[:keep]}..."

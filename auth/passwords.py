"""
auth/passwords.py -- Credential hasher (bcrypt).

Using bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug
detection hashes a password longer than 72 bytes, which bcrypt 4.x+ rejects
with an explicit error. Direct bcrypt usage has no compatibility shim.

The cost factor is fixed at 12 (~250ms on current hardware). Changing it only
affects newly hashed passwords; bcrypt digests embed their own cost, so old
digests keep verifying.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import HashingFailure

logger = logging.getLogger("papertrade.auth")

BCRYPT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a salted bcrypt digest of plain.

    Raises HashingFailure if bcrypt refuses the input or fails internally.
    Callers validate length before hashing, so reaching the failure branch
    means something unexpected happened.
    """
    try:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")
    except (ValueError, TypeError) as exc:
        logger.error("Password hashing failed: %s", exc)
        raise HashingFailure(f"could not hash password: {exc}") from exc


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if plain matches the bcrypt digest.

    bcrypt.checkpw compares in constant time. A malformed or empty digest, or
    a password bcrypt would refuse, is a mismatch -- never an exception.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login always runs bcrypt, even when the email
# does not exist, so response time does not reveal which emails are registered.
DUMMY_HASH: str = hash_password("papertrade_timing_dummy")

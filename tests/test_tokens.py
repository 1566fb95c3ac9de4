"""Unit tests for auth/tokens.py -- access-token signing and refresh-token primitives.

Covers:
- expiry boundary: valid at exp-1s, expired at exp and exp+1s
- not-before: a token presented before its nbf is not valid yet
- algorithm confusion: "none", HS512 and a wrong secret are all TokenInvalid
- wrong issuer and missing claims are TokenInvalid
- "Bearer " prefix is accepted
- opaque refresh tokens: length, uniqueness, and hash shape
"""

import base64
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import TokenExpired, TokenInvalid, TokenNotYetValid
from auth.tokens import (
    create_access_token,
    generate_refresh_token,
    hash_refresh_token,
    redact,
    strip_bearer,
    verify_token,
)

TEST_SECRET = "test-signing-key-0123456789abcdef0123456789abcdef"
T0 = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
ISSUER = "PaperTradingApp"
LIFETIME = timedelta(minutes=15)
USER_ID = uuid.UUID("5b0c4f0e-8f0e-4a8e-9c55-8a3b5d1b2f7e")


def _token(**overrides) -> str:
    kwargs = dict(secret=TEST_SECRET, issuer=ISSUER, lifetime=LIFETIME, now=T0)
    kwargs.update(overrides)
    return create_access_token(USER_ID, "alice@example.com", **kwargs)


def _verify(token: str, now=T0, secret=TEST_SECRET, issuer=ISSUER):
    return verify_token(token, secret=secret, issuer=issuer, now=now)


# ---------------------------------------------------------------------------
# Round trip and claims
# ---------------------------------------------------------------------------


def test_verify_returns_claims():
    claims = _verify(_token())
    assert claims.user_id == USER_ID
    assert claims.email == "alice@example.com"
    assert claims.issuer == ISSUER
    assert claims.subject == str(USER_ID)
    assert claims.issued_at == T0
    assert claims.not_before == T0
    assert claims.expires_at == T0 + LIFETIME


def test_tokens_minted_in_same_second_differ():
    assert _token() != _token()


def test_bearer_prefix_is_accepted():
    claims = _verify("Bearer " + _token())
    assert claims.user_id == USER_ID


def test_strip_bearer_leaves_bare_token_alone():
    assert strip_bearer("abc.def.ghi") == "abc.def.ghi"
    assert strip_bearer("Bearer abc.def.ghi") == "abc.def.ghi"


# ---------------------------------------------------------------------------
# Temporal boundaries
# ---------------------------------------------------------------------------


def test_valid_one_second_before_expiry():
    _verify(_token(), now=T0 + LIFETIME - timedelta(seconds=1))


def test_expired_exactly_at_expiry():
    with pytest.raises(TokenExpired):
        _verify(_token(), now=T0 + LIFETIME)


def test_expired_after_expiry():
    with pytest.raises(TokenExpired):
        _verify(_token(), now=T0 + LIFETIME + timedelta(seconds=1))


def test_not_yet_valid_before_nbf():
    with pytest.raises(TokenNotYetValid):
        _verify(_token(), now=T0 - timedelta(seconds=1))


def test_temporal_errors_are_distinct_from_invalid():
    """Both temporal kinds are 401s, distinct from a generic invalid token."""
    assert not issubclass(TokenExpired, TokenInvalid)
    assert not issubclass(TokenNotYetValid, TokenInvalid)


# ---------------------------------------------------------------------------
# Forgery and malformed input
# ---------------------------------------------------------------------------


def test_wrong_secret_is_invalid():
    with pytest.raises(TokenInvalid):
        _verify(_token(), secret="another-signing-key-0123456789abcdef0123")


def test_wrong_issuer_is_invalid():
    with pytest.raises(TokenInvalid):
        _verify(_token(issuer="SomeoneElse"))


def test_alg_none_is_invalid():
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').rstrip(b"=").decode()
    body = _token().split(".")[1]
    with pytest.raises(TokenInvalid):
        _verify(f"{header}.{body}.")


def test_other_hmac_algorithm_is_invalid():
    payload = jwt.get_unverified_claims(_token())
    forged = jwt.encode(payload, TEST_SECRET, algorithm="HS512")
    with pytest.raises(TokenInvalid):
        _verify(forged)


def test_missing_uid_claim_is_invalid():
    payload = jwt.get_unverified_claims(_token())
    del payload["uid"]
    with pytest.raises(TokenInvalid):
        _verify(jwt.encode(payload, TEST_SECRET, algorithm="HS256"))


def test_subject_mismatch_is_invalid():
    payload = jwt.get_unverified_claims(_token())
    payload["sub"] = str(uuid.uuid4())
    with pytest.raises(TokenInvalid):
        _verify(jwt.encode(payload, TEST_SECRET, algorithm="HS256"))


@pytest.mark.parametrize("garbage", ["", "Bearer ", "not-a-jwt", "a.b.c"])
def test_garbage_is_invalid(garbage):
    with pytest.raises(TokenInvalid):
        _verify(garbage)


# ---------------------------------------------------------------------------
# Opaque refresh tokens
# ---------------------------------------------------------------------------


def test_refresh_token_carries_32_random_bytes():
    token = generate_refresh_token()
    assert len(base64.urlsafe_b64decode(token)) == 32


def test_refresh_tokens_are_unique():
    assert len({generate_refresh_token() for _ in range(100)}) == 100


def test_refresh_hash_is_deterministic_and_not_the_token():
    token = generate_refresh_token()
    assert hash_refresh_token(token) == hash_refresh_token(token)
    assert hash_refresh_token(token) != token
    assert len(base64.urlsafe_b64decode(hash_refresh_token(token))) == 32


def test_redact_keeps_short_prefix():
    assert redact("abcdefghijklmnop") == "abcdefghij..."

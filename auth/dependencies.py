"""
auth/dependencies.py -- Request authenticator as a FastAPI Depends() helper.

require_claims() is the gate for protected routes:
  1. Reads "Authorization: Bearer <token>".
  2. Delegates verification to the AuthService on app.state.
  3. On success, attaches the verified AccessClaims to request.state and
     returns them; on failure, raises HTTP 401 before the route body runs.

Every failure is 401 with WWW-Authenticate: Bearer. Only the error code and
message differ between "missing", "malformed", "expired", "not yet valid"
and "invalid".

Claims live on request.state under a private attribute name. Handlers read
them back through get_claims(), never by touching the attribute directly.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenExpired, TokenInvalid, TokenNotYetValid
from auth.models import AccessClaims
from auth.service import AuthService

_CLAIMS_ATTR = "_papertrade_access_claims"


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_claims(request: Request) -> tuple[AccessClaims | None, bool]:
    """Return (claims, True) if require_claims() ran for this request, else (None, False)."""
    claims = getattr(request.state, _CLAIMS_ATTR, None)
    if isinstance(claims, AccessClaims):
        return claims, True
    return None, False


def require_claims(request: Request) -> AccessClaims:
    """Require a valid Bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(require_claims)): ...
    """
    header = request.headers.get("Authorization")
    if not header:
        raise _unauthorized("missing_token", "Authorization header required.")

    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise _unauthorized("malformed_token", "Authorization header format must be Bearer {token}.")

    try:
        claims = get_auth_service(request).validate_access_token(parts[1])
    except TokenExpired:
        raise _unauthorized(TokenExpired.code, TokenExpired.public_message) from None
    except TokenNotYetValid:
        raise _unauthorized(TokenNotYetValid.code, TokenNotYetValid.public_message) from None
    except TokenInvalid:
        raise _unauthorized(TokenInvalid.code, TokenInvalid.public_message) from None

    setattr(request.state, _CLAIMS_ATTR, claims)
    return claims

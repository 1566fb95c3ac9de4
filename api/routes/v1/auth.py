"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register       -- create account; 201 {id, email}, no tokens
  POST /api/v1/auth/login          -- password login; access token in body,
                                      refresh token in httpOnly cookie
  POST /api/v1/auth/refresh-token  -- rotate the refresh cookie; new access token
  POST /api/v1/auth/logout         -- revoke the refresh cookie's token and clear it
  GET  /api/v1/me                  -- current identity from the verified claims

Handlers are plain ``def`` functions: FastAPI runs them in its threadpool, so
bcrypt work and blocking store I/O stay off the event loop.

AuthError subclasses raised by the service are not caught here; the
exception handler in api/main.py turns them into the ErrorResponse envelope
by class (status_code/code), never by message text.

Security:
  [C1] Refresh cookie: httpOnly (no page-script access), SameSite=strict,
       path-scoped to /api/v1/auth so it is only sent to these endpoints,
       Secure in production. max_age matches the refresh-token lifetime.
  [C2] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    CredentialsRequest,
    ErrorDetail,
    ErrorResponse,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshResponse,
    UserInfoResponse,
)
from auth.dependencies import get_auth_service, get_claims, require_claims
from auth.errors import AuthError, TokenInvalid
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("papertrade.api")

REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /api/v1/auth/register:       public
# - POST /api/v1/auth/login:          public
# - POST /api/v1/auth/refresh-token:  public -- the refresh cookie is the credential
# - POST /api/v1/auth/logout:         public -- revoking a presented cookie needs no access token
# - GET  /api/v1/me:                  requires auth (require_claims)
router = APIRouter()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_refresh_cookie(response: JSONResponse, token: str, service: AuthService) -> None:
    """Write the refresh token as an httpOnly cookie [C1]."""
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        max_age=int(service.refresh_token_lifetime.total_seconds()),
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=get_settings().cookies_secure,
    )


def _clear_refresh_cookie(response: JSONResponse) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=get_settings().cookies_secure,
    )


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [C2]
    return response


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserInfoResponse, status_code=201)
def register(body: CredentialsRequest, service: AuthService = Depends(get_auth_service)) -> UserInfoResponse:
    """Create an account. The user must log in separately to get tokens."""
    user = service.register(body.email, body.password)
    return UserInfoResponse(**user.to_info().to_dict())


@router.post("/auth/login", response_model=LoginResponse)
def login(body: CredentialsRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with email and password.

    Wrong password and unknown email both produce the same 401
    ("bad_credentials") so email existence cannot be probed.
    """
    result = service.login(body.email, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.access_expires_in,
            user=UserInfoResponse(**result.user.to_dict()),
        ).model_dump(),
    )
    _set_refresh_cookie(resp, result.refresh_token, service)
    return _no_store(resp)


@router.post("/auth/refresh-token", response_model=RefreshResponse)
def refresh_token(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a new refresh cookie.

    The presented refresh token is single-use: after this call it is dead
    whether or not the client stores the replacement.
    """
    presented = request.cookies.get(REFRESH_COOKIE)
    if presented is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "missing_refresh_token", "message": "Refresh token cookie not found."},
        )
    if not presented:
        raise HTTPException(
            status_code=401,
            detail={"code": "missing_refresh_token", "message": "Refresh token is empty."},
        )

    try:
        pair = service.process_refresh_token(presented)
    except TokenInvalid:
        # Drop the dead cookie so the browser stops replaying it.
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="invalid_refresh_token", message="Invalid or expired refresh token.")
            ).model_dump(),
        )
        _clear_refresh_cookie(resp)
        return resp

    resp = JSONResponse(
        status_code=200,
        content=RefreshResponse(
            access_token=pair.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=pair.access_expires_in,
        ).model_dump(),
    )
    _set_refresh_cookie(resp, pair.refresh_token, service)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Revoke the presented refresh token (if any) and clear the cookie.

    The cookie is cleared even when revocation fails; the orphaned row still
    expires and is removed by the purge loop.
    """
    presented = request.cookies.get(REFRESH_COOKIE)
    if presented is None:
        return JSONResponse(content={"message": "No active session to logout or already logged out."})

    try:
        service.logout(presented)
    except AuthError as exc:
        logger.warning("Logout could not revoke the refresh token; clearing the cookie anyway: %s", exc)
    resp = JSONResponse(content={"message": "Successfully logged out."})
    _clear_refresh_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse, dependencies=[Depends(require_claims)])
def me(request: Request) -> MeResponse:
    """Return identity information from the verified access-token claims."""
    claims, found = get_claims(request)
    if not found:
        # require_claims ran first; reaching this means the wiring is broken.
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Unable to retrieve user claims."},
        )
    return MeResponse(
        user_id=str(claims.user_id),
        email=claims.email,
        expires_at=claims.expires_at.isoformat(),
    )

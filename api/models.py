"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model has a password or password-hash field. The user shape that
leaves the API is UserInfoResponse (id + email), built from UserInfo.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsRequest(BaseModel):
    """Request body for POST /api/v1/auth/register and /login.

    Length and emptiness rules are enforced by AuthService so both the API and
    any other caller get the same InvalidInput errors. max_length only bounds
    the payload size.
    """

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfoResponse(BaseModel):
    """Sanitized user projection."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login. The refresh token travels in a cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserInfoResponse


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh-token."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/me -- straight from the verified claims."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    expires_at: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}

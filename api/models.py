"""
API request and response models for FlexFlow REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The wire format is camelCase (userId, displayName, ...). Models accept either
camelCase or snake_case on input and FastAPI serializes responses by alias.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_CAMEL_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login.

    two_factor_token is only consulted when the account has two-factor
    authentication enabled. Without it such an account receives 428.
    """

    model_config = _CAMEL

    username: str = Field(max_length=256)
    password: str = Field(max_length=255)
    remember_me: bool = False
    two_factor_token: Optional[str] = Field(default=None, max_length=16)
    two_factor_remember_machine: bool = False


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/auth/changepassword.

    Length and composition rules are applied by the password policy, not
    here, so violations come back as a 400 error list rather than a 422.
    """

    model_config = _CAMEL

    old_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Returned on a successful login."""

    model_config = _CAMEL_FROZEN

    user_id: int
    display_name: str
    token: str
    requires_email_validation: bool


class MeResponse(BaseModel):
    model_config = _CAMEL_FROZEN

    user_id: int
    username: str
    display_name: str
    email: str
    roles: list[str] = Field(default_factory=list)


class PasswordErrorItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    description: str


class PasswordErrorsResponse(BaseModel):
    """400 body for POST /api/auth/changepassword: every reason, not just the first."""

    model_config = ConfigDict(frozen=True)

    errors: list[PasswordErrorItem]


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
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

"""
API request and response models for the onboarding REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field validation here is shape-only (types, lengths, email syntax). Business
rules such as the minimum password length live in auth/registration.py so the
CLI and the Google flow enforce them too.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.errors import ValidationError
from auth.registration import MAX_PASSWORD_BYTES, PASSWORD_TOO_LONG, normalize_email

_MAX_PASSWORD_LENGTH = MAX_PASSWORD_BYTES


def _email(value: str) -> str:
    try:
        return normalize_email(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


def _password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(PASSWORD_TOO_LONG)
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The email is not syntax-checked: a malformed address must fail with the
    same generic 401 as an unknown one.
    """

    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD_LENGTH)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=254)
    password: str = Field(max_length=_MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def normalize(cls, value: str) -> str:
        return _email(value)

    @field_validator("password")
    @classmethod
    def fits_bcrypt(cls, value: str) -> str:
        return _password_bytes(value)


class EmailRequest(BaseModel):
    """Request body carrying only an email (approve, deny, forgot password)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=254)

    @field_validator("email")
    @classmethod
    def normalize(cls, value: str) -> str:
        return _email(value)


class PasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    password: str = Field(max_length=_MAX_PASSWORD_LENGTH)

    @field_validator("password")
    @classmethod
    def fits_bcrypt(cls, value: str) -> str:
        return _password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register.

    token is populated only in debug mode with EXPOSE_DEBUG_TOKENS=true, so
    local tooling can confirm a registration without reading email.
    """

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    whitelisted: bool
    token: Optional[str] = None


class RegistrationStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    email: str
    registered: bool


class CsrfResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    csrf: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    email: str
    role: str


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str

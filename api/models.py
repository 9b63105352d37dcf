"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format: JSON keys are camelCase (userId, accessToken, isEmailVerified)
because the browser client was built against that shape. Python attributes
stay snake_case; the alias generator does the mapping in both directions.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import User

# Deliberately loose: deliverability is proven by the OTP, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

# bcrypt refuses secrets longer than 72 bytes, and max_length counts characters.
BCRYPT_MAX_BYTES = 72


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    return value


class _WireModel(BaseModel):
    model_config = _WIRE_CONFIG


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_WireModel):
    """Request body for POST /api/user/register."""

    name: Optional[str] = Field(default=None, max_length=255)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)

    @field_validator("password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class VerifyOtpRequest(_WireModel):
    """Request body for POST /api/user/verify-otp."""

    user_id: int
    email: str = Field(max_length=255)
    otp: str = Field(pattern=r"^\d{6}$")


class ResendOtpRequest(_WireModel):
    """Request body for POST /api/user/resend-otp."""

    user_id: int
    email: str = Field(max_length=255)


class LoginRequest(_WireModel):
    """Request body for POST /api/user/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class GoogleSignInRequest(_WireModel):
    """Identity posted by the OAuth broker after a Google sign-in."""

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    google_id: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = Field(default=None, max_length=2048)


class GithubSignInRequest(_WireModel):
    """Identity posted by the OAuth broker after a GitHub sign-in.

    email may be absent (GitHub users can hide it); access_token then lets
    the server read the verified addresses from the GitHub API.
    """

    github_id: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = Field(default=None, max_length=2048)
    access_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("github_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        """GitHub ids are numeric; accept them either as numbers or strings."""
        return str(value) if isinstance(value, int) else value


class PasswordResetRequest(_WireModel):
    """Request body for POST /api/user/forgot-password."""

    email: str = Field(min_length=1, max_length=255)


class PasswordResetConfirm(_WireModel):
    """Request body for POST /api/user/reset-password/confirm."""

    token: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=72)

    @field_validator("password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_WireModel):
    """Public projection of a user. Never carries the password hash."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    is_email_verified: bool
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            is_email_verified=user.is_email_verified,
            avatar_url=user.avatar_url,
        )


class RegisteredUser(_WireModel):
    id: int
    email: str


class RegisterResponse(_WireModel):
    """Response for POST /api/user/register (201)."""

    message: str
    user_id: int
    user: RegisteredUser


class MessageResponse(_WireModel):
    message: str


class TokenResponse(_WireModel):
    """Returned by login, OAuth sign-in and refresh.

    The long-lived credential travels in a cookie, never in this body.
    """

    message: str = "Login successful"
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut


class SessionResponse(_WireModel):
    user: UserOut


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
    components: dict[str, str]

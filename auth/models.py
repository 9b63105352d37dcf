"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store and the controllers do the work.

Every credential entity stores a hash, never the raw value. The raw refresh
token, reset token or OTP exists only in the response cookie, the email, or
the user's head.

Layer rule: no imports from api/, core/, or client/.
"""

from __future__ import annotations

from dataclasses import dataclass

CREDENTIALS_PROVIDER = "credentials"


@dataclass
class User:
    """An identity record.

    email is stored lower-cased and stripped; it is the unique lookup key.
    hashed_password is None for OAuth-only users (they have no local password).
    is_email_verified starts False for credential sign-ups and True for OAuth
    sign-ups, since the provider vouches for the address.
    """

    email: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    is_email_verified: bool = False
    avatar_url: str | None = None
    role: str = "user"
    created_at: str | None = None


@dataclass
class Account:
    """Link between a User and a credential or OAuth provider.

    At most one Account exists per (user_id, provider). Password accounts use
    provider="credentials" with the email as provider_account_id.
    """

    user_id: int
    provider: str  # "credentials", "google", "github"
    provider_account_id: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class RefreshToken:
    """Long-lived opaque credential, stored as sha256(raw_token)."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    revoked: bool = False
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: str | None = None


@dataclass
class EmailOTP:
    """A 6-digit email verification code, stored as HMAC-SHA256(code)."""

    user_id: int
    email: str
    otp_hash: str
    expires_at: str
    id: int | None = None
    used: bool = False
    revoked: bool = False
    attempts: int = 0
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """Single-use reset credential, stored as sha256(raw_token)."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used: bool = False
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: str | None = None


@dataclass
class ClientMeta:
    """Audit metadata captured from the request that minted a credential."""

    user_agent: str | None = None
    ip_address: str | None = None

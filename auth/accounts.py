"""
auth/accounts.py -- Credential registration, email verification and login.

Per-user state machine:

    Unregistered --register--> PendingVerification --verify_email--> Verified

A PendingVerification user exists in the DB with is_email_verified=False and
cannot log in (403 email_not_verified) until a code is accepted.

Every function raises an AuthError subclass for expected failures; the API
layer renders those. Anything else is a bug or an outage and propagates.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    Conflict,
    Forbidden,
    InternalFailure,
    MailDeliveryError,
    NotFound,
    RateLimited,
    Unauthorized,
    ValidationFailed,
)
from auth.models import ClientMeta, User
from auth.otp import OtpResult, ResendResult, new_otp_record, resend_otp, verify_otp
from auth.session import create_session
from auth.tokens import (
    authenticate_user,
    create_access_token,
    generate_refresh_token,
    hash_password,
    set_refresh_cookie,
)
from core.config import get_settings

if TYPE_CHECKING:
    from auth.mailer import Mailer
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth.accounts")

_settings = get_settings()

# One message for every bad-credentials case so the response never reveals
# whether the email is registered.
INVALID_CREDENTIALS = "Invalid credentials."


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Credential issuance (shared by password login and OAuth sign-in)
# ---------------------------------------------------------------------------


def issue_credentials(store: UserStore, user: User, response, meta: ClientMeta | None = None) -> str:
    """Hand out the configured long-lived credential and return an access token.

    SESSION_SCHEME=refresh_token: rotated opaque token in the refreshToken cookie.
    SESSION_SCHEME=session:       stateless signed auth-session cookie.
    The access token always goes back in the response body.
    """
    if _settings.session_scheme == "session":
        create_session(user, response)
    else:
        raw = generate_refresh_token(store, user, meta)
        set_refresh_cookie(response, raw)
    return create_access_token(user)


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


def register(store: UserStore, mailer: Mailer, name: str | None, email: str, password: str) -> int:
    """Create a pending user with a credentials account and mail its first OTP.

    User, account and OTP are written in one transaction. The email goes out
    after commit; if that fails, the OTP is revoked and InternalFailure
    (email_delivery_failed) is raised -- the account stays pending and a
    resend can recover it.

    Returns the new user id.
    """
    email = normalize_email(email)
    if not email or not password:
        raise ValidationFailed("Email and password required!")

    if store.get_by_email(email) is not None:
        raise Conflict("User already exists", code="user_exists")

    otp, otp_record = new_otp_record(0, email)
    user = User(email=email, name=name, hashed_password=hash_password(password), is_email_verified=False)
    try:
        user_id = store.create_credentials_user(user, otp_record)
    except IntegrityError as exc:
        # A concurrent registration for the same email won the insert.
        raise Conflict("User already exists", code="user_exists") from exc

    logger.info("Registered user_id=%s, sending verification code", user_id)
    try:
        mailer.send_otp_email(email, otp, _settings.otp_expiry_minutes)
    except MailDeliveryError as exc:
        store.revoke_otps(user_id)
        logger.error("Verification email for user_id=%s failed: %s", user_id, exc)
        raise InternalFailure("Failed to send OTP email", code="email_delivery_failed") from exc
    return user_id


def verify_email(store: UserStore, mailer: Mailer, user_id: int, email: str, otp: str) -> None:
    """Accept a verification code, or raise.

    Sends a best-effort confirmation email afterwards; a failure there is
    logged and otherwise ignored.
    """
    email = normalize_email(email)
    result = verify_otp(store, user_id, email, otp.strip())
    if result is OtpResult.NO_ACTIVE_OTP:
        raise ValidationFailed("Invalid or expired OTP!", code="no_active_otp")
    if result is OtpResult.TOO_MANY_ATTEMPTS:
        raise RateLimited("Too many failed attempts. Request a new OTP.", code="too_many_attempts")
    if result is OtpResult.INVALID_OTP:
        raise ValidationFailed("Invalid OTP!", code="invalid_otp")

    try:
        mailer.send_verification_success_email(email)
    except MailDeliveryError as exc:
        logger.warning("Verification success email for user_id=%s failed: %s", user_id, exc)


def resend_verification(store: UserStore, mailer: Mailer, user_id: int, email: str) -> None:
    """Revoke outstanding codes and mail a new one, or raise."""
    email = normalize_email(email)
    try:
        result = resend_otp(store, mailer, user_id, email)
    except MailDeliveryError as exc:
        store.revoke_otps(user_id)
        raise InternalFailure("Failed to send OTP email", code="email_delivery_failed") from exc
    if result is ResendResult.USER_NOT_FOUND:
        raise NotFound("User not found!", code="user_not_found")
    if result is ResendResult.ALREADY_VERIFIED:
        raise ValidationFailed("Email already verified!", code="already_verified")


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def login(store: UserStore, email: str, password: str) -> User:
    """Authenticate an email/password pair and return the verified user.

    Raises Unauthorized for an unknown email, an OAuth-only user, or a wrong
    password (same status and message for all three), and Forbidden when
    the password is right but the email is still unverified.

    Credential issuance is left to the caller (issue_credentials) because it
    writes cookies on the HTTP response.
    """
    email = normalize_email(email)
    if not email or not password:
        raise ValidationFailed("Email and password are required!")
    user = authenticate_user(store, email, password)
    if user is None:
        logger.info("Failed login attempt")
        raise Unauthorized(INVALID_CREDENTIALS, code="invalid_credentials")
    if not user.is_email_verified:
        raise Forbidden("Email not verified. Please verify your email first.", code="email_not_verified")
    logger.info("Login succeeded for user_id=%s", user.id)
    return user

"""
api/routes/user.py -- Credential account endpoints.

Routes:
  POST /api/user/register                 -- create pending user, mail OTP (201)
  POST /api/user/verify-otp               -- consume OTP, mark email verified
  POST /api/user/resend-otp               -- revoke outstanding OTPs, mail a new one
  POST /api/user/login                    -- password login; refresh cookie + access token
  POST /api/user/forgot-password          -- request a reset link (generic answer)
  POST /api/user/reset-password           -- alias of forgot-password
  POST /api/user/reset-password/confirm   -- redeem a reset token

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Login goes through authenticate_user() for timing equalization.
  [M5] Cache-Control: no-store on every response that carries a credential.

All handlers are plain `def`: the store and the SMTP client are blocking, so
FastAPI runs them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Request, Response

from api.limiter import limiter
from api.models import (
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisteredUser,
    RegisterRequest,
    RegisterResponse,
    ResendOtpRequest,
    TokenResponse,
    UserOut,
    VerifyOtpRequest,
)
from auth import accounts, password_reset
from auth.dependencies import client_meta
from auth.mailer import Mailer
from auth.store import UserStore
from core.config import get_settings

_settings = get_settings()

# Auth policy: every route here is public -- these are the routes that
# establish authentication in the first place.
router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _mailer(request: Request) -> Mailer:
    return request.app.state.mailer


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a pending user and mail a verification code.

    409 user_exists if the email is taken. 500 email_delivery_failed if the
    code could not be mailed; the account then exists and /resend-otp can
    recover it.
    """
    user_id = accounts.register(_store(request), _mailer(request), body.name, body.email, body.password)
    return RegisterResponse(
        message="User registered successfully! Please check your email for the OTP.",
        user_id=user_id,
        user=RegisteredUser(id=user_id, email=accounts.normalize_email(body.email)),
    )


@router.post("/verify-otp", response_model=MessageResponse)
def verify_otp(request: Request, body: VerifyOtpRequest) -> MessageResponse:
    """Accept a verification code.

    400 no_active_otp / invalid_otp, 429 too_many_attempts after five misses.
    """
    accounts.verify_email(_store(request), _mailer(request), body.user_id, body.email, body.otp)
    return MessageResponse(message="Email verified successfully!")


@router.post("/resend-otp", response_model=MessageResponse)
def resend_otp(request: Request, body: ResendOtpRequest) -> MessageResponse:
    """Invalidate every outstanding code and mail a fresh one."""
    accounts.resend_verification(_store(request), _mailer(request), body.user_id, body.email)
    return MessageResponse(message="New OTP sent successfully!")


@router.post("/login", response_model=TokenResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Authenticate with email and password.

    Returns the same 401 "Invalid credentials." for an unknown email, an
    OAuth-only account and a wrong password. 403 email_not_verified when the
    password is right but the code was never entered.
    """
    store = _store(request)
    user = accounts.login(store, body.email, body.password)
    access_token = accounts.issue_credentials(store, user, response, client_meta(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        access_token=access_token,
        expires_in=_settings.access_token_expire_seconds,
        user=UserOut.from_user(user),
    )


@router.post("/forgot-password", response_model=MessageResponse)
@router.post("/reset-password", response_model=MessageResponse)
def request_password_reset(
    request: Request, body: PasswordResetRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Mail a reset link. The answer and its timing are identical for unknown emails.

    The lookup and the mail run as a background task after the response.
    """
    message = password_reset.request_reset(
        _store(request), _mailer(request), body.email, client_meta(request), schedule=background_tasks.add_task
    )
    return MessageResponse(message=message)


@router.post("/reset-password/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password with the token from the emailed link."""
    message = password_reset.perform_reset(_store(request), body.token, body.email, body.password)
    return MessageResponse(message=message)

"""
auth/password_reset.py -- Reset-by-email: link issuance and redemption.

request_reset() answers identically whether or not the email is registered,
and mail failures are only logged, so the endpoint cannot be used to
enumerate accounts. The lookup, token write and SMTP hand-off all live in
send_reset_link(), which the route schedules as a background task so the
response time does not depend on whether a link is sent. The raw token
lives only in the emailed link; the DB keeps sha256(token).

A successful reset also revokes every refresh token of the user, so a thief
holding an old session is signed out along with the old password.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any, Callable, Optional
from urllib.parse import urlencode

from auth.accounts import normalize_email
from auth.errors import MailDeliveryError, ValidationFailed
from auth.models import ClientMeta, PasswordResetToken
from auth.store import expires_in
from auth.tokens import hash_password, hash_token
from core.config import get_settings

if TYPE_CHECKING:
    from auth.mailer import Mailer
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth.password_reset")

_settings = get_settings()

RESET_REQUESTED_MESSAGE = "If that email is registered, a reset link has been sent."
RESET_DONE_MESSAGE = "Password has been reset successfully."


def build_reset_url(raw_token: str, email: str) -> str:
    base = _settings.frontend_url.rstrip("/")
    return f"{base}/reset-password?{urlencode({'token': raw_token, 'email': email})}"


def request_reset(
    store: UserStore,
    mailer: Mailer,
    email: str,
    meta: ClientMeta | None = None,
    schedule: Optional[Callable[..., Any]] = None,
) -> str:
    """Arrange for a reset link to be mailed. Always returns the same message.

    schedule(func, *args) defers the work (BackgroundTasks.add_task in the
    route); without it the link is sent before returning.
    """
    email = normalize_email(email)
    if not email:
        raise ValidationFailed("Email is required")
    if schedule is None:
        send_reset_link(store, mailer, email, meta)
    else:
        schedule(send_reset_link, store, mailer, email, meta)
    return RESET_REQUESTED_MESSAGE


def send_reset_link(store: UserStore, mailer: Mailer, email: str, meta: ClientMeta | None = None) -> None:
    """Store a fresh reset token for a registered email and mail its link.

    Unknown emails are a silent no-op. Older unused links of the user stop
    working.
    """
    user = store.get_by_email(email)
    if user is None:
        return

    meta = meta or ClientMeta()
    raw = secrets.token_hex(32)
    ttl_minutes = _settings.reset_token_expire_minutes
    store.replace_reset_token(
        PasswordResetToken(
            user_id=user.id,
            token_hash=hash_token(raw),
            expires_at=expires_in(ttl_minutes * 60),
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
    )
    try:
        mailer.send_password_reset_email(email, build_reset_url(raw, email), ttl_minutes)
    except MailDeliveryError as exc:
        logger.error("Password reset email for user_id=%s failed: %s", user.id, exc)


def perform_reset(store: UserStore, token: str, email: str, new_password: str) -> str:
    """Redeem a reset token: set the new password and burn the token, atomically.

    The token must be live (unused, unexpired) and belong to the user with
    this email; otherwise invalid_or_expired_token.
    """
    email = normalize_email(email)
    if not token or not email or not new_password:
        raise ValidationFailed("Token, email and new password are required")

    record = store.get_active_reset_token(hash_token(token))
    user = store.get_by_email(email)
    if record is None or user is None or record.user_id != user.id:
        raise ValidationFailed("Invalid or expired reset token", code="invalid_or_expired_token")

    if not store.consume_reset_token(record.id, user.id, hash_password(new_password)):
        raise ValidationFailed("Invalid or expired reset token", code="invalid_or_expired_token")

    revoked = store.revoke_user_refresh_tokens(user.id)
    logger.info("Password reset for user_id=%s (%d refresh token(s) revoked)", user.id, revoked)
    return RESET_DONE_MESSAGE

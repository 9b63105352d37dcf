"""
auth/otp.py -- One-time email verification codes.

Codes are 6 decimal digits drawn from 4 random bytes reduced mod 10**6. The
modulo bias (2**32 mod 10**6) is far below anything an attacker limited to
five guesses could exploit.

Storage: HMAC-SHA256(SECRET_KEY, code). A bare sha256 of a 6-digit code
could be reversed with a million-entry table by anyone holding a DB dump;
keying the hash with SECRET_KEY closes that. Comparison is constant-time.

Lifecycle of a code:
  issued -> (any guess: attempts += 1)*   -> used        (verify succeeded)
                                          -> revoked     (resend, mail failure)
                                          -> exhausted   (attempts >= max)
                                          -> expired     (15 minutes)

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

from auth.models import EmailOTP
from auth.store import expires_in
from core.config import get_settings

if TYPE_CHECKING:
    from auth.mailer import Mailer
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth.otp")

_settings = get_settings()


class OtpResult(str, enum.Enum):
    VERIFIED = "verified"
    NO_ACTIVE_OTP = "no_active_otp"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_OTP = "invalid_otp"


class ResendResult(str, enum.Enum):
    SENT = "sent"
    ALREADY_VERIFIED = "already_verified"
    USER_NOT_FOUND = "user_not_found"


def generate_otp() -> str:
    """Return a 6-digit code, zero padded."""
    value = int.from_bytes(secrets.token_bytes(4), "big") % 1_000_000
    return f"{value:06d}"


def hash_otp(otp: str) -> str:
    return hmac.new(_settings.secret_key.encode(), otp.encode(), hashlib.sha256).hexdigest()


def new_otp_record(user_id: int, email: str) -> tuple[str, EmailOTP]:
    """Return (raw_code, unsaved EmailOTP) for user_id/email."""
    otp = generate_otp()
    record = EmailOTP(
        user_id=user_id,
        email=email,
        otp_hash=hash_otp(otp),
        expires_at=expires_in(_settings.otp_expiry_minutes * 60),
    )
    return otp, record


def issue_otp(store: UserStore, mailer: Mailer, user_id: int, email: str) -> None:
    """Create one OTP for (user_id, email) and mail it.

    Raises MailDeliveryError if the mail hand-off fails; the record stays in
    the DB so the caller decides whether to revoke it.
    """
    otp, record = new_otp_record(user_id, email)
    store.create_otp(record)
    mailer.send_otp_email(email, otp, _settings.otp_expiry_minutes)


def verify_otp(store: UserStore, user_id: int, email: str, submitted: str) -> OtpResult:
    """Check a submitted code against the newest active OTP of (user_id, email).

    Every submission first claims one attempt with a conditional UPDATE; only
    a claimed attempt gets its hash compared. A correct code on the sixth try
    is still rejected, however many requests arrive at once. On a match the
    OTP is marked used and the user marked verified in one transaction.
    """
    max_attempts = _settings.otp_max_attempts
    record = store.get_active_otp(user_id, email)
    if record is None:
        return OtpResult.NO_ACTIVE_OTP
    if not store.claim_otp_attempt(record.id, max_attempts):
        logger.warning("OTP attempts exhausted for user_id=%s", user_id)
        return OtpResult.TOO_MANY_ATTEMPTS
    if not hmac.compare_digest(record.otp_hash, hash_otp(submitted)):
        return OtpResult.INVALID_OTP
    if not store.consume_otp(record.id, user_id, max_attempts):
        # Lost a race against another request using the same code.
        return OtpResult.NO_ACTIVE_OTP
    logger.info("Email verified for user_id=%s", user_id)
    return OtpResult.VERIFIED


def resend_otp(store: UserStore, mailer: Mailer, user_id: int, email: str) -> ResendResult:
    """Revoke every outstanding code of the user and mail a fresh one.

    Revoking first means a code from an earlier email stops working the moment
    a new one is requested.
    """
    user = store.get_by_id(user_id)
    # A mismatched email is answered like an unknown user: codes only ever
    # go to the address on record.
    if user is None or user.email != email:
        return ResendResult.USER_NOT_FOUND
    if user.is_email_verified:
        return ResendResult.ALREADY_VERIFIED
    revoked = store.revoke_otps(user_id)
    logger.info("Revoked %d outstanding OTP(s) for user_id=%s", revoked, user_id)
    issue_otp(store, mailer, user_id, email)
    return ResendResult.SENT

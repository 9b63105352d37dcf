"""
tests/test_otp.py -- Unit tests for auth/otp.py and the verification controllers.

Covers:
  - code format and keyed hashing
  - verify: wrong code counts an attempt, right code consumes, replay fails
  - attempt cap: the sixth try is refused even with the right code, and
    concurrent guesses cannot get more than five evaluated (file-backed
    SQLite, since the cap relies on the database write lock)
  - expiry, resend invalidation, resend to a different address
  - mail failure on register revokes the code it could not deliver
"""

from __future__ import annotations

import hashlib
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth import accounts
from auth.errors import Conflict, InternalFailure, NotFound, RateLimited, ValidationFailed
from auth.models import EmailOTP, User
from auth.otp import OtpResult, ResendResult, generate_otp, hash_otp, resend_otp, verify_otp
from auth.store import UserStore, expires_in

PASSWORD = "Sup3rSecret!"


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


@pytest.fixture()
def pending(user_store, mailer, new_email):
    """A freshly registered (unverified) user: (user_id, email, code)."""
    email = new_email("pending")
    user_id = accounts.register(user_store, mailer, "Pending", email, PASSWORD)
    return user_id, email, mailer.otps[email]


class TestCodes:
    def test_format(self) -> None:
        for _ in range(200):
            assert re.fullmatch(r"\d{6}", generate_otp())

    def test_hash_is_keyed(self) -> None:
        assert hash_otp("123456") == hash_otp("123456")
        assert hash_otp("123456") != hashlib.sha256(b"123456").hexdigest()


class TestVerify:
    def test_correct_code_verifies(self, user_store, pending) -> None:
        user_id, email, code = pending
        assert verify_otp(user_store, user_id, email, code) is OtpResult.VERIFIED
        assert user_store.get_by_id(user_id).is_email_verified is True

    def test_code_is_single_use(self, user_store, pending) -> None:
        user_id, email, code = pending
        assert verify_otp(user_store, user_id, email, code) is OtpResult.VERIFIED
        assert verify_otp(user_store, user_id, email, code) is OtpResult.NO_ACTIVE_OTP

    def test_wrong_code_counts_attempt(self, user_store, pending) -> None:
        user_id, email, code = pending
        assert verify_otp(user_store, user_id, email, _wrong(code)) is OtpResult.INVALID_OTP
        assert user_store.get_active_otp(user_id, email).attempts == 1
        assert user_store.get_by_id(user_id).is_email_verified is False

    def test_sixth_attempt_refused_even_if_correct(self, user_store, pending) -> None:
        user_id, email, code = pending
        for _ in range(5):
            assert verify_otp(user_store, user_id, email, _wrong(code)) is OtpResult.INVALID_OTP
        assert verify_otp(user_store, user_id, email, code) is OtpResult.TOO_MANY_ATTEMPTS
        assert user_store.get_by_id(user_id).is_email_verified is False

    def test_code_bound_to_email(self, user_store, pending) -> None:
        user_id, _email, code = pending
        assert verify_otp(user_store, user_id, "someone-else@example.com", code) is OtpResult.NO_ACTIVE_OTP

    def test_expired_code(self, user_store, new_email) -> None:
        email = new_email()
        past = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat(timespec="microseconds")
        user_id = user_store.create_credentials_user(
            User(email=email, hashed_password="x"),
            EmailOTP(user_id=0, email=email, otp_hash=hash_otp("111111"), expires_at=past),
        )
        assert verify_otp(user_store, user_id, email, "111111") is OtpResult.NO_ACTIVE_OTP


class TestResend:
    def test_resend_invalidates_previous_code(self, user_store, mailer, pending) -> None:
        user_id, email, old_code = pending
        assert resend_otp(user_store, mailer, user_id, email) is ResendResult.SENT
        new_code = mailer.otps[email]
        assert user_store.count_active_otps(user_id) == 1
        if new_code != old_code:
            assert verify_otp(user_store, user_id, email, old_code) is OtpResult.INVALID_OTP
        assert verify_otp(user_store, user_id, email, new_code) is OtpResult.VERIFIED

    def test_resend_resets_attempts(self, user_store, mailer, pending) -> None:
        user_id, email, code = pending
        for _ in range(5):
            verify_otp(user_store, user_id, email, _wrong(code))
        resend_otp(user_store, mailer, user_id, email)
        assert verify_otp(user_store, user_id, email, mailer.otps[email]) is OtpResult.VERIFIED

    def test_resend_to_other_address_refused(self, user_store, mailer, pending) -> None:
        user_id, _email, _code = pending
        assert resend_otp(user_store, mailer, user_id, "attacker@example.com") is ResendResult.USER_NOT_FOUND
        assert "attacker@example.com" not in mailer.otps

    def test_resend_unknown_user(self, user_store, mailer) -> None:
        assert resend_otp(user_store, mailer, 9999, "x@example.com") is ResendResult.USER_NOT_FOUND

    def test_resend_after_verification(self, user_store, mailer, pending) -> None:
        user_id, email, code = pending
        verify_otp(user_store, user_id, email, code)
        assert resend_otp(user_store, mailer, user_id, email) is ResendResult.ALREADY_VERIFIED


class TestControllers:
    def test_register_normalizes_email(self, user_store, mailer, new_email) -> None:
        email = new_email()
        user_id = accounts.register(user_store, mailer, None, f"  {email.upper()} ", PASSWORD)
        user = user_store.get_by_id(user_id)
        assert user.email == email
        assert user.is_email_verified is False
        assert [a.provider for a in user_store.list_accounts(user_id)] == ["credentials"]

    def test_register_duplicate(self, user_store, mailer, pending) -> None:
        _user_id, email, _code = pending
        with pytest.raises(Conflict) as excinfo:
            accounts.register(user_store, mailer, None, email, PASSWORD)
        assert excinfo.value.code == "user_exists"

    def test_register_mail_failure_revokes_code(self, user_store, mailer, new_email) -> None:
        mailer.fail = True
        email = new_email()
        with pytest.raises(InternalFailure) as excinfo:
            accounts.register(user_store, mailer, None, email, PASSWORD)
        assert excinfo.value.code == "email_delivery_failed"
        user = user_store.get_by_email(email)
        assert user is not None
        assert user_store.count_active_otps(user.id) == 0

    def test_verify_email_error_codes(self, user_store, mailer, pending) -> None:
        user_id, email, code = pending
        with pytest.raises(ValidationFailed) as excinfo:
            accounts.verify_email(user_store, mailer, user_id, email, _wrong(code))
        assert excinfo.value.code == "invalid_otp"
        for _ in range(4):
            with pytest.raises(ValidationFailed):
                accounts.verify_email(user_store, mailer, user_id, email, _wrong(code))
        with pytest.raises(RateLimited) as excinfo:
            accounts.verify_email(user_store, mailer, user_id, email, code)
        assert excinfo.value.code == "too_many_attempts"

    def test_verify_email_survives_confirmation_mail_failure(self, user_store, mailer, pending) -> None:
        user_id, email, code = pending
        mailer.fail = True
        accounts.verify_email(user_store, mailer, user_id, email, code)
        assert user_store.get_by_id(user_id).is_email_verified is True

    def test_resend_verification_errors(self, user_store, mailer, pending) -> None:
        user_id, email, code = pending
        with pytest.raises(NotFound):
            accounts.resend_verification(user_store, mailer, 9999, email)
        accounts.verify_email(user_store, mailer, user_id, email, code)
        with pytest.raises(ValidationFailed) as excinfo:
            accounts.resend_verification(user_store, mailer, user_id, email)
        assert excinfo.value.code == "already_verified"


class TestConcurrentGuesses:
    def _pending_user(self, store: UserStore, code: str) -> tuple[int, str]:
        email = "guess@example.com"
        user_id = store.create_credentials_user(
            User(email=email, hashed_password="x"),
            EmailOTP(user_id=0, email=email, otp_hash=hash_otp(code), expires_at=expires_in(600)),
        )
        return user_id, email

    def test_cap_holds_under_parallel_guesses(self, tmp_path) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'guess.db'}")
        try:
            user_id, email = self._pending_user(store, "123456")
            with ThreadPoolExecutor(max_workers=16) as pool:
                results = list(pool.map(lambda _: verify_otp(store, user_id, email, "000000"), range(40)))

            assert results.count(OtpResult.INVALID_OTP) == 5
            assert results.count(OtpResult.TOO_MANY_ATTEMPTS) == 35
            assert store.get_active_otp(user_id, email).attempts == 5
            assert verify_otp(store, user_id, email, "123456") is OtpResult.TOO_MANY_ATTEMPTS
            assert store.get_by_id(user_id).is_email_verified is False
        finally:
            store.close()

    def test_consume_refused_past_the_cap(self, tmp_path) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'cap.db'}")
        try:
            user_id, email = self._pending_user(store, "123456")
            otp_id = store.get_active_otp(user_id, email).id
            for _ in range(6):
                store.claim_otp_attempt(otp_id, 6)
            assert store.consume_otp(otp_id, user_id, 5) is False
            assert store.get_by_id(user_id).is_email_verified is False
        finally:
            store.close()

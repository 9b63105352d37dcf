"""
auth/mailer.py -- Transactional email (OTP codes, reset links).

SMTP delivery via smtplib with STARTTLS and a connect timeout. When SMTP_HOST
is not configured the mailer runs in dev mode: messages are written to the
log instead of sent. The secret part of a message (OTP code, reset link) is
only included in that log line when DEBUG is on, so production logs never
carry a usable credential.

Unlike a fire-and-forget notifier, send_email() raises MailDeliveryError on
failure. Registration needs to know the OTP never left the building so it
can revoke it; password reset just logs the error.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from auth.errors import MailDeliveryError
from core.config import Settings, get_settings

logger = logging.getLogger("authgate.mail")


class Mailer:
    """SMTP mail transport with a log-only fallback for local development."""

    def __init__(self, settings: Settings | None = None) -> None:
        cfg = settings or get_settings()
        self.smtp_host = cfg.smtp_host
        self.smtp_port = cfg.smtp_port
        self.smtp_user = cfg.smtp_user
        self.smtp_password = cfg.smtp_password
        self.smtp_timeout = cfg.smtp_timeout
        self.from_email = cfg.from_email
        self.from_name = cfg.from_name
        self.debug = cfg.debug

    @property
    def configured(self) -> bool:
        return bool(self.smtp_host)

    def _create_connection(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout)
        server.starttls()
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def send_email(
        self,
        to_email: str,
        subject: str,
        text_content: str,
        html_content: str | None = None,
        debug_info: str | None = None,
    ) -> None:
        """Send one message. Raises MailDeliveryError if the SMTP hand-off fails.

        debug_info is logged (dev transport, DEBUG only) in place of sending.
        """
        if not self.configured:
            logger.info("SMTP not configured, not sending %r to %s", subject, to_email)
            if self.debug and debug_info:
                logger.info("[DEV] %s", debug_info)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_content, "plain"))
        if html_content:
            msg.attach(MIMEText(html_content, "html"))

        try:
            server = self._create_connection()
            try:
                server.sendmail(self.from_email, [to_email], msg.as_string())
            finally:
                server.quit()
        except socket.timeout as exc:
            logger.error("SMTP connection timed out after %ss", self.smtp_timeout)
            raise MailDeliveryError("SMTP connection timed out") from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery to %s failed: %s", to_email, exc)
            raise MailDeliveryError(str(exc)) from exc
        logger.info("Sent %r to %s", subject, to_email)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def send_otp_email(self, to_email: str, otp: str, ttl_minutes: int) -> None:
        subject = f"Your {self.from_name} verification code"
        text_content = (
            f"Your verification code is {otp}.\n\n"
            f"It expires in {ttl_minutes} minutes. If you did not create an account, ignore this email."
        )
        html_content = (
            f"<p>Your verification code is</p>"
            f"<p style=\"font-size: 24px; letter-spacing: 4px;\"><strong>{escape(otp)}</strong></p>"
            f"<p>It expires in {ttl_minutes} minutes.</p>"
        )
        self.send_email(to_email, subject, text_content, html_content, debug_info=f"OTP for {to_email}: {otp}")

    def send_verification_success_email(self, to_email: str) -> None:
        subject = "Your email address is verified"
        text_content = "Thanks for verifying your email address. You can now sign in."
        self.send_email(to_email, subject, text_content, f"<p>{escape(text_content)}</p>")

    def send_password_reset_email(self, to_email: str, reset_url: str, ttl_minutes: int) -> None:
        subject = f"Reset your {self.from_name} password"
        text_content = (
            "We received a request to reset your password.\n\n"
            f"Open this link to choose a new one:\n{reset_url}\n\n"
            f"The link expires in {ttl_minutes} minutes. If you didn't request this, ignore this email."
        )
        html_content = (
            "<p>We received a request to reset your password.</p>"
            f"<p><a href=\"{escape(reset_url, quote=True)}\">Reset password</a></p>"
            f"<p>The link expires in {ttl_minutes} minutes.</p>"
        )
        self.send_email(
            to_email, subject, text_content, html_content, debug_info=f"Password reset link: {reset_url}"
        )

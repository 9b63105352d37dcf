"""
core/config.py -- AuthGate settings, read from the environment by pydantic-settings.

Every tunable (token lifetimes, OTP policy, SMTP transport, cookie flags,
rate limits) is a field on Settings. Env var names are the upper-cased field
names: ACCESS_TOKEN_EXPIRE_SECONDS, OTP_MAX_ATTEMPTS, SMTP_HOST, ... A .env
file in the working directory is read too. Code elsewhere calls
get_settings(); nothing else touches os.environ.

get_settings() is cached, so Settings is built once per process. Modules
that read it at import time (auth/tokens.py, auth/otp.py, ...) therefore see
whatever the environment held at first import -- the test suite sets its
variables before importing anything from auth/.

Security notes:
  [M6] SECRET_KEY signs access tokens and session cookies and keys the OTP
       HMAC. Anything under 32 characters is refused.

  [M7] Outside DEBUG mode there is no fallback: no SECRET_KEY, no start.
       BCRYPT_ROUNDS below 10 is likewise refused outside DEBUG.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or client/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


class Settings(BaseSettings):
    """Runtime configuration for the API, the auth core and the mailer.

    Every field has a default, so an empty environment plus DEBUG=true is a
    working local setup. check_security_policy() turns unsafe combinations
    into a startup error.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "development"
    # "" means unset; check_security_policy() replaces or rejects it.
    secret_key: str = ""
    # Empty string means "use the SQLite file next to auth/store.py".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    access_token_expire_seconds: int = 3600
    refresh_token_expire_days: int = 30
    session_expire_seconds: int = 60 * 60 * 24 * 7
    # Which long-lived credential login and OAuth sign-in hand out.
    #   refresh_token -- rotated opaque token with a DB record (default)
    #   session       -- stateless signed "auth-session" cookie
    session_scheme: Literal["refresh_token", "session"] = "refresh_token"

    # ------------------------------------------------------------------
    # Passwords, OTP and reset links
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 10
    otp_expiry_minutes: int = 15
    otp_max_attempts: int = 5
    reset_token_expire_minutes: int = 60
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Mail transport (empty SMTP_HOST = log-only dev transport)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_timeout: int = 10
    from_email: str = "no-reply@localhost"
    from_name: str = "AuthGate"

    # ------------------------------------------------------------------
    # OAuth providers
    # ------------------------------------------------------------------

    github_api_url: str = "https://api.github.com/"
    oauth_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP stack
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("prod", "production")

    @property
    def cookie_secure(self) -> bool:
        """Secure flag for every cookie we set: forced on in production."""
        return self.secure_cookies or self.is_production

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_security_policy(self) -> "Settings":
        """Apply the SECRET_KEY and bcrypt cost rules [M6][M7].

        With DEBUG on, a missing key is replaced by a random one (tokens die
        with the process) and cheap bcrypt rounds are allowed for tests.
        With DEBUG off, both are startup errors.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated a throwaway key for this DEBUG run")
            else:
                raise ValueError("SECRET_KEY must be set (or run with DEBUG=true for a throwaway key).")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be 32 characters or longer.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.bcrypt_rounds < 10 and not self.debug:
            raise ValueError("BCRYPT_ROUNDS must be at least 10 outside development mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, building it on first use.

    Tests that need different values call get_settings.cache_clear() after
    changing the environment, or monkeypatch attributes on the instance.
    """
    return Settings()

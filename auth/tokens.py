"""
auth/tokens.py -- Password hashing, access tokens and refresh tokens.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry sub (user id), email, type="access" and expiry (1 hour default).
       They are stateless: no revocation list, which is why their TTL is short.
       Verification returns None on any failure -- route layer turns that
       into a 401.

  Refresh tokens: secrets.token_hex(32) gives 256 bits of entropy. Only
       sha256(raw) is stored. A plain hash (not bcrypt) is enough because the
       input is already high-entropy, and it keeps lookup O(1) by hash.
       Every use rotates the token: the old record is revoked and a new one
       issued in the same transaction. Replaying a rotated token fails.

  Passwords: bcrypt with a configurable cost (BCRYPT_ROUNDS, >= 10 outside
       development). The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an email
       is registered [C1].

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import ClientMeta, RefreshToken, User
from auth.store import expires_in
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt raises ValueError for secrets over 72 bytes. The request models
    check the UTF-8 byte length (api/models.py BCRYPT_MAX_BYTES), so only
    direct callers can reach that error.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization [C1].

    Always runs bcrypt whether or not the user exists:
    - Unknown email or OAuth-only user: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. Email verification is
    NOT checked here; the login controller decides what an unverified user
    gets.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Access tokens (JWT)
# ---------------------------------------------------------------------------


def create_access_token(user: User, expire_seconds: int = 0) -> str:
    """Encode a signed, short-lived JWT carrying the user's id and email.

    Args:
        user:           The authenticated user (must have an id).
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access token. Returns the payload or None.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access" or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh tokens (opaque, hashed, rotated)
# ---------------------------------------------------------------------------


def hash_token(raw: str) -> str:
    """Return sha256(raw) as hex. Used for refresh and password reset tokens."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _refresh_ttl_seconds() -> int:
    return _settings.refresh_token_expire_days * 24 * 60 * 60


def _new_refresh_record(user_id: int, meta: ClientMeta | None) -> tuple[str, RefreshToken]:
    raw = secrets.token_hex(32)
    meta = meta or ClientMeta()
    record = RefreshToken(
        user_id=user_id,
        token_hash=hash_token(raw),
        expires_at=expires_in(_refresh_ttl_seconds()),
        user_agent=meta.user_agent,
        ip_address=meta.ip_address,
    )
    return raw, record


def generate_refresh_token(store: UserStore, user: User, meta: ClientMeta | None = None) -> str:
    """Mint a refresh token for user and persist its hash.

    Returns the raw token for cookie delivery. The raw value is never stored
    and never logged.
    """
    raw, record = _new_refresh_record(user.id, meta)
    store.create_refresh_token(record)
    logger.info("Refresh token issued for user_id=%s", user.id)
    return raw


def verify_refresh_token(store: UserStore, raw: str) -> tuple[User, RefreshToken] | None:
    """Return (owner, record) for a live refresh token, else None."""
    if not raw:
        return None
    record = store.get_active_refresh_token(hash_token(raw))
    if record is None:
        return None
    user = store.get_by_id(record.user_id)
    if user is None:
        return None
    return user, record


def rotate_refresh_token(store: UserStore, old_raw: str, meta: ClientMeta | None = None) -> str | None:
    """Revoke old_raw and issue a replacement for the same user, atomically.

    Returns the new raw token, or None if old_raw was no longer live (already
    rotated, revoked or expired). Of two concurrent rotations of the same
    token exactly one gets a new token.
    """
    raw, record = _new_refresh_record(0, meta)
    if not store.rotate_refresh_token(hash_token(old_raw), record):
        logger.warning("Refresh token rotation rejected (token not live)")
        return None
    return raw


def revoke_refresh_token(store: UserStore, raw: str) -> bool:
    """Revoke a refresh token presented at logout. Unknown tokens are ignored."""
    return store.revoke_refresh_token(hash_token(raw))


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def refresh_token_cookie_options() -> dict:
    """Cookie attributes for the refresh token.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite: from COOKIE_SAMESITE (default "lax").
    secure: always on in production, or when SECURE_COOKIES=true.
    max_age: matches the refresh token TTL so both expire together.
    """
    return {
        "httponly": True,
        "path": "/",
        "samesite": _settings.cookie_samesite,
        "secure": _settings.cookie_secure,
        "max_age": _refresh_ttl_seconds(),
    }


def set_refresh_cookie(response, raw: str) -> None:
    """Write the raw refresh token as an httpOnly cookie on the response."""
    response.set_cookie(REFRESH_COOKIE_NAME, value=raw, **refresh_token_cookie_options())


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite=_settings.cookie_samesite,
        secure=_settings.cookie_secure,
    )

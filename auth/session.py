"""
auth/session.py -- Stateless signed session cookie ("auth-session").

The cookie carries a JWT whose only claim of interest is
{"user": {"id", "email", "name", "role"}}. Validity is purely signature +
expiry (7 days by default); there is no server-side record to revoke, so
logging out only clears the cookie.

Starlette's Response.set_cookie() appends a new Set-Cookie header instead of
replacing existing ones, so a refresh-token cookie queued on the same
response survives create_session() and clear_session().

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import User
from core.config import get_settings

SESSION_COOKIE_NAME = "auth-session"

_settings = get_settings()

_ALGORITHM = "HS256"


def create_session(user: User, response) -> str:
    """Sign a session claim for user and queue it as an httpOnly cookie.

    Returns the signed token (mostly useful to tests).
    """
    max_age = _settings.session_expire_seconds
    payload = {
        "user": {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role or "user",
        },
        "type": "session",
        "exp": datetime.now(timezone.utc) + timedelta(seconds=max_age),
    }
    token = jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        httponly=True,
        path="/",
        samesite=_settings.cookie_samesite,
        secure=_settings.cookie_secure,
    )
    return token


def decode_session_token(token: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "session":
        return None
    claim = payload.get("user")
    if not isinstance(claim, dict) or "id" not in claim:
        return None
    return claim


def verify_session(request) -> dict | None:
    """Return the user claim from the request's session cookie, or None.

    None covers a missing cookie, a bad signature and an expired token.
    Never raises.
    """
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    return decode_session_token(token)


def clear_session(response) -> None:
    """Queue an immediately expiring, empty session cookie."""
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value="",
        max_age=0,
        expires=0,
        httponly=True,
        path="/",
        samesite=_settings.cookie_samesite,
        secure=_settings.cookie_secure,
    )

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credentials are checked in priority order:
  1. "auth-session" cookie -- stateless signed session claim.
  2. Authorization: Bearer <access token> header -- API clients and the
     client SDK, which keeps its access token in memory.

Both converge on a User loaded from the store, so a deleted user stops
authenticating even while their token is still within its TTL.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import ClientMeta, User
from auth.session import verify_session
from auth.tokens import decode_access_token


def client_meta(request: Request) -> ClientMeta:
    """Build ClientMeta (user agent, client IP) from the request.

    The first X-Forwarded-For hop wins when present: the app runs behind a
    reverse proxy in production and request.client would be the proxy.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return ClientMeta(user_agent=request.headers.get("User-Agent"), ip_address=ip or None)


def try_get_current_user(request: Request) -> User | None:
    """Authenticate via session cookie or Bearer token. Never raises."""
    user_store = request.app.state.user_store

    claim = verify_session(request)
    if claim is not None:
        user = user_store.get_by_id(claim["id"])
        if user is not None:
            return user

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(auth_header[7:])
        if payload:
            try:
                user_id = int(payload["sub"])
            except ValueError:
                return None
            return user_store.get_by_id(user_id)

    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user

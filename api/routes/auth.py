"""
api/routes/auth.py -- Federated sign-in and session lifecycle endpoints.

Routes:
  POST /api/auth/google    -- sign in with a Google identity from the OAuth broker
  POST /api/auth/github    -- sign in with a GitHub identity from the OAuth broker
  POST /api/auth/refresh   -- exchange the long-lived credential for an access token
  POST /api/auth/logout    -- revoke the refresh token, clear both cookies
  GET  /api/auth/session   -- current user (session cookie or Bearer token)

Which long-lived credential is in play is decided by SESSION_SCHEME:
  refresh_token -- /refresh rotates the refreshToken cookie on every call;
                   replaying a rotated token gets 401.
  session       -- /refresh only re-reads the signed auth-session cookie.
Logout clears both cookies regardless, so switching schemes never strands
a stale credential in the browser.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool

from api.models import (
    GithubSignInRequest,
    GoogleSignInRequest,
    MessageResponse,
    SessionResponse,
    TokenResponse,
    UserOut,
)
from auth.accounts import issue_credentials
from auth.dependencies import client_meta, get_current_user
from auth.errors import Unauthorized
from auth.models import ClientMeta, User
from auth.oauth import link_or_create, resolve_github_email
from auth.session import clear_session, verify_session
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE_NAME,
    clear_refresh_cookie,
    create_access_token,
    revoke_refresh_token,
    rotate_refresh_token,
    set_refresh_cookie,
    verify_refresh_token,
)
from core.config import get_settings

logger = logging.getLogger("authgate.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /api/auth/google, /github:  public -- they establish authentication
# - POST /api/auth/refresh:          cookie-authenticated (refresh or session cookie)
# - POST /api/auth/logout:           public -- clearing cookies needs no prior auth
# - GET  /api/auth/session:          requires auth (get_current_user)
router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _token_response(user: User, access_token: str, message: str) -> TokenResponse:
    return TokenResponse(
        message=message,
        access_token=access_token,
        expires_in=_settings.access_token_expire_seconds,
        user=UserOut.from_user(user),
    )


def _provider_sign_in(
    store: UserStore,
    response: Response,
    meta: ClientMeta,
    provider: str,
    provider_account_id: str,
    email: str,
    name: str | None,
    image: str | None,
) -> TokenResponse:
    """Link or create the provider identity and issue credentials like /login."""
    user = link_or_create(store, provider, provider_account_id, email, name, image)
    access_token = issue_credentials(store, user, response, meta)
    response.headers["Cache-Control"] = "no-store"
    return _token_response(user, access_token, "Login successful")


# ---------------------------------------------------------------------------
# OAuth sign-in
# ---------------------------------------------------------------------------


@router.post("/google", response_model=TokenResponse)
def google_sign_in(request: Request, response: Response, body: GoogleSignInRequest) -> TokenResponse:
    """Create or link the Google identity, then issue credentials like /login."""
    return _provider_sign_in(
        _store(request), response, client_meta(request), "google", body.google_id, body.email, body.name, body.image
    )


@router.post("/github", response_model=TokenResponse)
async def github_sign_in(request: Request, response: Response, body: GithubSignInRequest) -> TokenResponse:
    """Create or link the GitHub identity, then issue credentials like /login.

    When the broker could not supply an email, the verified address is read
    from the GitHub API with the user's access token [H1]. Only that lookup
    runs on the event loop; the database work goes to the threadpool like
    the plain-def routes.
    """
    email = await resolve_github_email(body.email, body.access_token)
    return await run_in_threadpool(
        _provider_sign_in,
        _store(request),
        response,
        client_meta(request),
        "github",
        body.github_id,
        email,
        body.name,
        body.image,
    )


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response) -> TokenResponse:
    """Issue a fresh access token from the long-lived cookie credential."""
    store = _store(request)
    response.headers["Cache-Control"] = "no-store"

    if _settings.session_scheme == "session":
        claim = verify_session(request)
        user = store.get_by_id(claim["id"]) if claim else None
        if user is None:
            raise Unauthorized("Invalid or expired session", code="invalid_session")
        return _token_response(user, create_access_token(user), "Token refreshed")

    raw = request.cookies.get(REFRESH_COOKIE_NAME)
    if not raw:
        raise Unauthorized("No refresh token", code="no_refresh_token")
    verified = verify_refresh_token(store, raw)
    if verified is None:
        raise Unauthorized("Invalid or expired refresh token", code="invalid_refresh_token")
    user, _record = verified

    # verify above is a read; the rotation is what decides a race between
    # two requests carrying the same cookie.
    new_raw = rotate_refresh_token(store, raw, client_meta(request))
    if new_raw is None:
        raise Unauthorized("Invalid or expired refresh token", code="invalid_refresh_token")
    set_refresh_cookie(response, new_raw)
    return _token_response(user, create_access_token(user), "Token refreshed")


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, response: Response) -> MessageResponse:
    """Revoke the presented refresh token (if any) and clear both cookies."""
    raw = request.cookies.get(REFRESH_COOKIE_NAME)
    if raw:
        revoke_refresh_token(_store(request), raw)
    clear_session(response)
    clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully")


@router.get("/session", response_model=SessionResponse)
def session(current_user: User = Depends(get_current_user)) -> SessionResponse:
    """Return the currently authenticated user."""
    return SessionResponse(user=UserOut.from_user(current_user))

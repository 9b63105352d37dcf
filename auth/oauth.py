"""
auth/oauth.py -- Federated sign-in (Google, GitHub) and account linking.

The OAuth authorization-code handshake happens upstream, in the identity
broker that fronts the web app. What reaches us is the identity it obtained:
provider, provider account id, email, name, avatar -- and for GitHub,
optionally the provider access token so we can look the email up ourselves.

Security notes:
  [H1] GitHub may not include an email in the profile. We then ask the
       GitHub REST API for the account's addresses and accept only a
       verified one (primary preferred). No verified address, or a failing
       API call, ends in 400 email_required. Sign-in never proceeds without
       an email the provider vouches for.

  [H4] Pre-account takeover: somebody may have registered the victim's email
       with a password and never verified it. When the real owner signs in
       through a provider for that email, the pending password and its codes
       are discarded before the account is marked verified, so the squatter's
       password never becomes usable.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import urljoin

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client
from sqlalchemy.exc import IntegrityError

from auth.accounts import normalize_email
from auth.errors import ValidationFailed
from auth.models import Account, User
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth.oauth")

_settings = get_settings()

SUPPORTED_PROVIDERS = ("google", "github")


# ---------------------------------------------------------------------------
# Account linking
# ---------------------------------------------------------------------------


def link_or_create(
    store: UserStore,
    provider: str,
    provider_account_id: str,
    email: str,
    name: str | None = None,
    avatar_url: str | None = None,
) -> User:
    """Return the user for a provider identity, creating or linking as needed.

    - No user with this email: create one (email pre-verified) together with
      its provider account, atomically.
    - User exists: add an account for this provider unless one already
      exists for (user, provider). Calling this twice is a no-op the second
      time.
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")
    email = normalize_email(email)
    if not email or not provider_account_id:
        raise ValidationFailed("Email and provider account id are required", code="validation_error")

    user = store.get_by_email(email)
    if user is None:
        new_user = User(email=email, name=name, avatar_url=avatar_url, is_email_verified=True)
        try:
            user_id = store.create_oauth_user(new_user, provider, provider_account_id)
            logger.info("Created user_id=%s via %s sign-in", user_id, provider)
            return store.get_by_id(user_id)
        except IntegrityError:
            # Concurrent first sign-in created the user; fall through to linking.
            user = store.get_by_email(email)
            if user is None:
                raise

    if store.get_account(user.id, provider) is None:
        try:
            store.create_account(Account(user_id=user.id, provider=provider, provider_account_id=provider_account_id))
            logger.info("Linked %s account to user_id=%s", provider, user.id)
        except IntegrityError:
            logger.info("%s account for user_id=%s linked concurrently", provider, user.id)

    updates: dict = {}
    if not user.is_email_verified:
        # [H4] the provider proves ownership; drop whatever the pending
        # registration set up.
        updates.update(is_email_verified=True, hashed_password=None)
        store.revoke_otps(user.id)
    if not user.name and name:
        updates["name"] = name
    if not user.avatar_url and avatar_url:
        updates["avatar_url"] = avatar_url
    if updates:
        store.update_user(user.id, **updates)
        user = store.get_by_id(user.id)
    return user


# ---------------------------------------------------------------------------
# GitHub email resolution [H1]
# ---------------------------------------------------------------------------


async def fetch_github_emails(access_token: str) -> list[dict]:
    """Return the GitHub account's addresses as /user/emails entries.

    /user/emails needs the user:email scope. A token without it gets 403 or
    404 there, and the public profile (GET /user) is consulted instead; GitHub
    only lets a verified address be made public, so a profile email is
    reported as verified and primary.

    Raises httpx.HTTPError on transport failures and other non-2xx
    responses, ValueError when a body is not the JSON GitHub documents.
    """
    token = {"access_token": access_token, "token_type": "bearer"}
    headers = {"Accept": "application/vnd.github+json"}
    async with AsyncOAuth2Client(token=token, timeout=_settings.oauth_timeout_seconds) as client:
        resp = await client.get(urljoin(_settings.github_api_url, "user/emails"), headers=headers)
        if resp.status_code not in (403, 404):
            resp.raise_for_status()
            entries = resp.json()
            if not isinstance(entries, list):
                raise ValueError("GitHub /user/emails did not return a list")
            return entries

        logger.info("GitHub /user/emails refused (%s); reading the public profile", resp.status_code)
        resp = await client.get(urljoin(_settings.github_api_url, "user"), headers=headers)
        resp.raise_for_status()
        profile = resp.json()
        if not isinstance(profile, dict):
            raise ValueError("GitHub /user did not return an object")
        if not profile.get("email"):
            return []
        return [{"email": profile["email"], "verified": True, "primary": True}]


def select_github_email(entries: list[dict]) -> str | None:
    """Pick the verified primary address, else any verified one, else None."""
    verified = [e for e in entries if isinstance(e, dict) and e.get("verified") and e.get("email")]
    for entry in verified:
        if entry.get("primary"):
            return entry["email"]
    return verified[0]["email"] if verified else None


async def resolve_github_email(email: str | None, access_token: str | None) -> str:
    """Return the email to sign a GitHub user in with, or raise email_required."""
    if email:
        return email
    if not access_token:
        raise ValidationFailed("GitHub account has no email; an access token is required", code="email_required")
    try:
        entries = await fetch_github_emails(access_token)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("GitHub email lookup failed: %s", exc)
        raise ValidationFailed("Could not read the GitHub account's email", code="email_required") from exc
    resolved = select_github_email(entries)
    if not resolved:
        raise ValidationFailed(
            "GitHub account has no verified email. Verify an email on GitHub and try again.",
            code="email_required",
        )
    return resolved

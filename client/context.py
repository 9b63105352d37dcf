"""
client/context.py -- Observable auth state for a client application.

AuthContext owns one AuthApiClient and one AuthState. UI code subscribes a
listener, calls start() once, and from then on drives everything through
the action methods.

Actions never raise. Each returns Ok(...) on success or Err(message, kind)
on failure, where kind is the server's error code ("invalid_credentials",
"email_not_verified", "network_error", ...). A 2xx body the client cannot
read comes back as Err(kind="bad_response"). A form can show the message
inline without a try/except around every call.

State transitions:
  start()   loading=True -> silent refresh -> user set or None, loading=False
  login()   user set on success; error set on failure
  logout()  user cleared and access token dropped, even if the server
            call fails
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Union

from client.api import DEFAULT_BASE_URL, AccessTokenStore, ApiError, AuthApiClient

logger = logging.getLogger("authgate.client.context")


@dataclass(frozen=True)
class AuthUser:
    id: int
    email: str
    name: str | None = None
    is_email_verified: bool = False
    avatar_url: str | None = None

    @classmethod
    def from_wire(cls, data: dict) -> "AuthUser":
        return cls(
            id=int(data["id"]),
            email=data["email"],
            name=data.get("name"),
            is_email_verified=bool(data.get("isEmailVerified", False)),
            avatar_url=data.get("avatarUrl"),
        )


@dataclass(frozen=True)
class AuthState:
    user: AuthUser | None = None
    loading: bool = True
    error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


@dataclass(frozen=True)
class Ok:
    message: str | None = None
    user: AuthUser | None = None
    user_id: int | None = None
    needs_verification: bool = False

    success = True


@dataclass(frozen=True)
class Err:
    message: str
    kind: str = "error"
    status: int = 0

    success = False


Result = Union[Ok, Err]
Listener = Callable[[AuthState], None]

# What a success body missing fields or of the wrong shape raises in on_success.
_MALFORMED = (KeyError, TypeError, ValueError, AttributeError)


class AuthContext:
    """Client-side auth state plus the actions that change it.

    Usage:
        ctx = AuthContext("https://auth.example.com")
        ctx.subscribe(lambda state: render(state))
        await ctx.start()
        result = await ctx.login(email, password)
        if not result.success:
            show_error(result.message)
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL, api: AuthApiClient | None = None) -> None:
        if api is None:
            api = AuthApiClient(base_url, tokens=AccessTokenStore())
        self.api = api
        self.tokens = api.tokens
        self.state = AuthState()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> None:
        self.state = replace(self.state, **changes)
        for listener in list(self._listeners):
            listener(self.state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> AuthState:
        """Restore a previous session from the refresh cookie, silently.

        Failure is the normal "not logged in" outcome and sets no error.
        """
        self._set(loading=True, error=None)
        user = None
        try:
            data = await self.api.refresh_access_token()
            if data.get("user"):
                user = AuthUser.from_wire(data["user"])
        except ApiError as exc:
            logger.debug("No session to restore: %s (%s)", exc.message, exc.code)
        except _MALFORMED as exc:
            logger.warning("Unexpected refresh response body: %r", exc)
        self._set(user=user, loading=False)
        return self.state

    async def aclose(self) -> None:
        await self.api.aclose()

    async def _run(self, call: Callable[[], Awaitable[dict]], on_success: Callable[[dict], Result]) -> Result:
        self._set(loading=True, error=None)
        try:
            data = await call()
        except ApiError as exc:
            self._set(loading=False, error=exc.message)
            return Err(exc.message, exc.code, exc.status)
        try:
            result = on_success(data)
        except _MALFORMED as exc:
            logger.warning("Unexpected response body: %r", exc)
            message = "Unexpected response from the server."
            self._set(loading=False, error=message)
            return Err(message, "bad_response")
        self._set(loading=False)
        return result

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def register(self, name: str | None, email: str, password: str) -> Result:
        def done(data: dict) -> Result:
            return Ok(message=data.get("message"), user_id=data.get("userId"), needs_verification=True)

        return await self._run(lambda: self.api.register(name, email, password), done)

    async def verify_otp(self, user_id: int, email: str, otp: str) -> Result:
        return await self._run(
            lambda: self.api.verify_otp(user_id, email, otp), lambda data: Ok(message=data.get("message"))
        )

    async def resend_otp(self, user_id: int, email: str) -> Result:
        return await self._run(
            lambda: self.api.resend_otp(user_id, email), lambda data: Ok(message=data.get("message"))
        )

    async def login(self, email: str, password: str) -> Result:
        def done(data: dict) -> Result:
            user = AuthUser.from_wire(data["user"])
            self._set(user=user)
            return Ok(message=data.get("message"), user=user)

        return await self._run(lambda: self.api.login(email, password), done)

    async def logout(self) -> Result:
        self._set(loading=True, error=None)
        try:
            data = await self.api.logout()
        except ApiError as exc:
            # The access token is already gone locally; the user is logged
            # out here whether or not the server heard about it.
            self._set(user=None, loading=False, error=exc.message)
            return Err(exc.message, exc.code, exc.status)
        self._set(user=None, loading=False)
        return Ok(message=data.get("message"))

    async def reset_password_request(self, email: str) -> Result:
        return await self._run(
            lambda: self.api.reset_password_request(email), lambda data: Ok(message=data.get("message"))
        )

    async def password_reset(self, token: str, email: str, password: str) -> Result:
        return await self._run(
            lambda: self.api.reset_password(token, email, password), lambda data: Ok(message=data.get("message"))
        )

"""
client/api.py -- Async HTTP client for the AuthGate API.

The client side of the session model:
  - The refresh credential is an httpOnly cookie. It lives in the
    httpx.AsyncClient cookie jar and is never read by this code.
  - The access token lives only in an AccessTokenStore in memory. It is
    gone when the process ends; the next start restores it through
    /api/auth/refresh.

Refresh is single-flight. The first caller starts one refresh task; every
caller that arrives while it runs awaits that same task, so a burst of
parallel 401s costs exactly one /refresh round trip. This matters with
rotating refresh tokens: two refreshes racing with the same cookie would
make the server reject one of them.

Every request carries a timeout (default 10s).

Non-2xx responses raise ApiError carrying the server's error code and
message; transport failures raise ApiError(code="network_error").
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger("authgate.client")

DEFAULT_BASE_URL = "http://localhost:4000"
DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    """A failed API call. status is 0 when the request never got an answer."""

    def __init__(self, message: str, status: int = 0, code: str = "network_error") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class AccessTokenStore:
    """In-memory holder for the current access token.

    Created with the AuthContext at app start, cleared at logout. Never
    written to disk.
    """

    def __init__(self) -> None:
        self._token: str | None = None

    @property
    def token(self) -> str | None:
        return self._token

    def set(self, token: str | None) -> None:
        self._token = token or None

    def clear(self) -> None:
        self._token = None


def _handle_response(resp: httpx.Response) -> dict:
    """Return the JSON body of a 2xx response, or raise ApiError.

    Empty or non-JSON bodies decode to {} so a proxy's HTML error page does
    not turn into a JSON decode crash.
    """
    try:
        data = resp.json() if resp.content else {}
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {"data": data}
    if resp.is_success:
        return data
    error = data.get("error")
    if isinstance(error, dict):
        raise ApiError(error.get("message") or "Request failed", resp.status_code, error.get("code") or "error")
    raise ApiError(error if isinstance(error, str) else "Request failed", resp.status_code, "error")


class AuthApiClient:
    """Thin wrapper over the AuthGate endpoints.

    Usage:
        async with AuthApiClient("https://auth.example.com") as api:
            await api.login("a@x.com", "Passw0rd1")
            me = await api.get_session()
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        tokens: AccessTokenStore | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.tokens = tokens or AccessTokenStore()
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._refresh_task: asyncio.Task | None = None

    async def __aenter__(self) -> "AuthApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ApiError(str(exc) or "Network error") from exc

    async def _post(self, path: str, payload: dict | None = None) -> dict:
        resp = await self._send("POST", path, json=payload)
        return _handle_response(resp)

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    async def register(self, name: str | None, email: str, password: str) -> dict:
        return await self._post("/api/user/register", {"name": name, "email": email, "password": password})

    async def verify_otp(self, user_id: int, email: str, otp: str) -> dict:
        return await self._post("/api/user/verify-otp", {"userId": user_id, "email": email, "otp": otp})

    async def resend_otp(self, user_id: int, email: str) -> dict:
        return await self._post("/api/user/resend-otp", {"userId": user_id, "email": email})

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> dict:
        """Log in; keeps the returned access token in memory."""
        data = await self._post("/api/user/login", {"email": email, "password": password})
        self.tokens.set(data.get("accessToken"))
        return data

    async def refresh_access_token(self) -> dict:
        """Exchange the refresh cookie for a new access token (single-flight)."""
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
        # shield: one impatient caller being cancelled must not cancel the
        # refresh everyone else is waiting on.
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> dict:
        try:
            data = await self._post("/api/auth/refresh")
            self.tokens.set(data.get("accessToken"))
            return data
        except ApiError as exc:
            if exc.status == 401:
                self.tokens.clear()
            raise
        finally:
            self._refresh_task = None

    async def logout(self) -> dict:
        """Revoke the refresh cookie server-side and drop the access token."""
        try:
            return await self._post("/api/auth/logout")
        finally:
            self.tokens.clear()

    async def get_session(self) -> dict:
        return await self.authenticated_request("GET", "/api/auth/session")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def reset_password_request(self, email: str) -> dict:
        return await self._post("/api/user/forgot-password", {"email": email})

    async def reset_password(self, token: str, email: str, password: str) -> dict:
        return await self._post(
            "/api/user/reset-password/confirm", {"token": token, "email": email, "password": password}
        )

    # ------------------------------------------------------------------
    # Protected calls
    # ------------------------------------------------------------------

    async def authenticated_request(self, method: str, url: str, **kwargs: Any) -> dict:
        """Call a protected endpoint with the Bearer token.

        1. No token in memory: try a refresh first (a failure is not fatal
           yet -- the endpoint may answer 401 and we handle it below).
        2. Send with Authorization: Bearer <token> when we have one.
        3. On 401: refresh once and retry once. If the refresh fails, its
           ApiError propagates so the caller can send the user to login.
        """
        headers = dict(kwargs.pop("headers", None) or {})

        if self.tokens.token is None:
            try:
                await self.refresh_access_token()
            except ApiError:
                pass

        if self.tokens.token:
            headers["Authorization"] = f"Bearer {self.tokens.token}"
        resp = await self._send(method, url, headers=headers, **kwargs)

        if resp.status_code == 401:
            await self.refresh_access_token()
            if self.tokens.token:
                headers["Authorization"] = f"Bearer {self.tokens.token}"
            resp = await self._send(method, url, headers=headers, **kwargs)

        return _handle_response(resp)

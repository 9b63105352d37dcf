"""
tests/test_refresh.py -- Refresh rotation and logout, over HTTP and under contention.

Coverage:
  - /refresh issues a new access token and a new cookie; the old one dies
  - missing cookie -> 401 no_refresh_token; unknown cookie -> 401 invalid_refresh_token
  - logout revokes the refresh token and clears both cookies
  - two threads rotating the same token: exactly one wins (file-backed SQLite,
    since rotation atomicity relies on the database write lock)
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from fastapi.testclient import TestClient

from auth.models import User
from auth.session import SESSION_COOKIE_NAME
from auth.store import UserStore
from auth.tokens import REFRESH_COOKIE_NAME, generate_refresh_token, rotate_refresh_token, verify_refresh_token

PASSWORD = "Sup3rSecret!"


def _login(client: TestClient, email: str) -> str:
    """Log in and return the raw refresh token from the response cookie."""
    resp = client.post("/api/user/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.cookies[REFRESH_COOKIE_NAME]


def _present(client: TestClient, raw: str) -> None:
    """Make raw the only cookie the client will send."""
    client.cookies.clear()
    client.cookies.set(REFRESH_COOKIE_NAME, raw)


class TestRefreshRoute:
    def test_refresh_rotates(self, client, api_client, verified_user) -> None:
        _client, store, _mailer = api_client
        user = verified_user(store)
        first = _login(client, user.email)

        _present(client, first)
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Token refreshed"
        assert data["accessToken"]
        assert data["user"]["id"] == user.id
        assert resp.headers["Cache-Control"] == "no-store"

        second = resp.cookies[REFRESH_COOKIE_NAME]
        assert second != first
        assert verify_refresh_token(store, first) is None
        assert verify_refresh_token(store, second)[0].id == user.id

    def test_replayed_token_rejected(self, client, api_client, verified_user) -> None:
        _client, store, _mailer = api_client
        user = verified_user(store)
        first = _login(client, user.email)

        _present(client, first)
        assert client.post("/api/auth/refresh").status_code == 200

        _present(client, first)
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"

    def test_chained_refreshes(self, client, api_client, verified_user) -> None:
        _client, store, _mailer = api_client
        user = verified_user(store)
        _login(client, user.email)
        # The cookie jar follows each rotation on its own.
        for _ in range(3):
            assert client.post("/api/auth/refresh").status_code == 200

    def test_missing_cookie(self, client) -> None:
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "no_refresh_token"

    def test_unknown_cookie(self, client) -> None:
        _present(client, "f" * 64)
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"


class TestLogout:
    def test_logout_revokes_and_clears(self, client, api_client, verified_user) -> None:
        _client, store, _mailer = api_client
        user = verified_user(store)
        raw = _login(client, user.email)

        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out successfully"}
        assert verify_refresh_token(store, raw) is None

        cleared = {v.split("=", 1)[0]: v for v in resp.headers.get_list("set-cookie")}
        assert REFRESH_COOKIE_NAME in cleared
        assert SESSION_COOKIE_NAME in cleared
        assert "Max-Age=0" in cleared[SESSION_COOKIE_NAME]

        _present(client, raw)
        assert client.post("/api/auth/refresh").status_code == 401

    def test_logout_without_cookie(self, client) -> None:
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200


class TestConcurrentRotation:
    def test_exactly_one_rotation_wins(self, tmp_path) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'race.db'}")
        try:
            user_id = store.create_oauth_user(User(email="race@example.com", is_email_verified=True), "google", "g")
            raw = generate_refresh_token(store, store.get_by_id(user_id))

            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(lambda _: rotate_refresh_token(store, raw), range(8)))

            winners = [r for r in results if r is not None]
            assert len(winners) == 1
            assert verify_refresh_token(store, winners[0])[0].id == user_id
            assert verify_refresh_token(store, raw) is None
        finally:
            store.close()

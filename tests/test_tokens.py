"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hashing and authenticate_user() failure modes
  - access token claims, tampering, wrong type and expiry
  - refresh token issue / verify / rotate / revoke against a real store
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.models import ClientMeta, RefreshToken, User
from auth.tokens import (
    authenticate_user,
    create_access_token,
    decode_access_token,
    generate_refresh_token,
    hash_password,
    hash_token,
    revoke_refresh_token,
    rotate_refresh_token,
    verify_password,
    verify_refresh_token,
)
from core.config import get_settings


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_verify_against_garbage_hash_is_false(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_authenticate_user(self, user_store, verified_user) -> None:
        user = verified_user(user_store, password="Passw0rd!")
        assert authenticate_user(user_store, user.email, "Passw0rd!").id == user.id
        assert authenticate_user(user_store, user.email, "nope") is None
        assert authenticate_user(user_store, "ghost@example.com", "Passw0rd!") is None

    def test_authenticate_oauth_only_user_is_none(self, user_store, new_email) -> None:
        email = new_email()
        user_store.create_oauth_user(User(email=email, is_email_verified=True), "google", "g-1")
        assert authenticate_user(user_store, email, "") is None


class TestAccessTokens:
    def test_claims(self) -> None:
        token = create_access_token(User(id=42, email="a@example.com"))
        payload = decode_access_token(token)
        assert payload["sub"] == "42"
        assert payload["email"] == "a@example.com"
        assert payload["type"] == "access"

    def test_tampered_token_rejected(self) -> None:
        header, _payload, signature = create_access_token(User(id=1, email="a@example.com")).split(".")
        other_payload = create_access_token(User(id=2, email="b@example.com")).split(".")[1]
        assert decode_access_token(f"{header}.{other_payload}.{signature}") is None

    def test_wrong_key_rejected(self) -> None:
        forged = jwt.encode({"sub": "1", "type": "access"}, "x" * 40, algorithm="HS256")
        assert decode_access_token(forged) is None

    def test_session_token_is_not_an_access_token(self) -> None:
        token = jwt.encode(
            {"user": {"id": 1}, "type": "session"}, get_settings().secret_key, algorithm="HS256"
        )
        assert decode_access_token(token) is None

    def test_expired_token_rejected(self) -> None:
        expired = jwt.encode(
            {"sub": "1", "type": "access", "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(expired) is None

    def test_custom_lifetime(self) -> None:
        payload = decode_access_token(create_access_token(User(id=1, email="a@example.com"), expire_seconds=60))
        remaining = payload["exp"] - datetime.now(timezone.utc).timestamp()
        assert 0 < remaining <= 60


class TestRefreshTokens:
    def test_only_the_hash_is_stored(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        raw = generate_refresh_token(user_store, user, ClientMeta(user_agent="pytest", ip_address="10.0.0.1"))
        record = user_store.get_active_refresh_token(hash_token(raw))
        assert record is not None
        assert record.token_hash != raw
        assert record.user_agent == "pytest"
        assert record.ip_address == "10.0.0.1"

    def test_verify(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        raw = generate_refresh_token(user_store, user)
        owner, record = verify_refresh_token(user_store, raw)
        assert owner.id == user.id
        assert record.user_id == user.id
        assert verify_refresh_token(user_store, "unknown") is None
        assert verify_refresh_token(user_store, "") is None

    def test_rotation_is_single_use(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        first = generate_refresh_token(user_store, user)

        second = rotate_refresh_token(user_store, first)
        assert second is not None and second != first
        assert verify_refresh_token(user_store, first) is None
        assert verify_refresh_token(user_store, second)[0].id == user.id

        # Replaying the rotated token gets nothing.
        assert rotate_refresh_token(user_store, first) is None

    def test_rotated_token_belongs_to_the_same_user(self, user_store, verified_user) -> None:
        alice = verified_user(user_store)
        bob = verified_user(user_store)
        generate_refresh_token(user_store, bob)
        rotated = rotate_refresh_token(user_store, generate_refresh_token(user_store, alice))
        assert verify_refresh_token(user_store, rotated)[0].id == alice.id

    def test_revoke(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        raw = generate_refresh_token(user_store, user)
        assert revoke_refresh_token(user_store, raw) is True
        assert verify_refresh_token(user_store, raw) is None
        assert revoke_refresh_token(user_store, raw) is False

    def test_expired_token_is_not_live(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat(timespec="microseconds")
        user_store.create_refresh_token(RefreshToken(user_id=user.id, token_hash=hash_token("old"), expires_at=past))
        assert verify_refresh_token(user_store, "old") is None
        assert rotate_refresh_token(user_store, "old") is None

    def test_revoke_all_for_user(self, user_store, verified_user) -> None:
        user = verified_user(user_store)
        tokens = [generate_refresh_token(user_store, user) for _ in range(3)]
        assert user_store.revoke_user_refresh_tokens(user.id) == 3
        assert all(verify_refresh_token(user_store, t) is None for t in tokens)

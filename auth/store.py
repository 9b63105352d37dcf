"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers.
Controller and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Only hashes of credentials are stored: sha256 for refresh and reset
  tokens, HMAC-SHA256 for OTPs. The store never sees a raw value.

Atomicity:
  Multi-row writes (registration, OTP consumption, rotation, password reset)
  run inside engine.begin() so they commit or roll back as a unit.
  Single-use credentials are consumed with a conditional UPDATE
  (... WHERE used = 0 / revoked = 0) and the rowcount decides the winner
  when two requests race on the same credential. The conditional UPDATE is
  always the first statement of its transaction so SQLite takes the write
  lock before reading.

Timestamps are ISO-8601 UTC strings with microsecond precision, so string
comparison in SQL matches chronological order.

DB path: auth/authgate.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import CREDENTIALS_PROVIDER, Account, EmailOTP, PasswordResetToken, RefreshToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("avatar_url", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "provider", name="uq_accounts_user_provider"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # sha256 hex
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("user_agent", Text),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)

_email_otps = Table(
    "email_otps",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("email", String(255), nullable=False),
    Column("otp_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # sha256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("user_agent", Text),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def expires_in(seconds: int) -> str:
    """Return the ISO timestamp `seconds` from now."""
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, provider accounts and hashed credentials.

    Usage:
        store = UserStore()
        user_id = store.create_credentials_user(user, otp)
        user = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # timeout: seconds a writer waits for the SQLite write lock
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_credentials_user(self, user: User, otp: EmailOTP) -> int:
        """Insert a pending user, its "credentials" account and its first OTP.

        All three rows commit together. Raises sqlalchemy.exc.IntegrityError
        if the email already exists; nothing is written in that case.
        The otp.user_id field is ignored and replaced by the new user's ID.
        """
        created_at = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.insert().values(**_user_values(user), created_at=created_at))
            user_id = result.inserted_primary_key[0]
            conn.execute(
                _accounts.insert().values(
                    user_id=user_id,
                    provider=CREDENTIALS_PROVIDER,
                    provider_account_id=user.email,
                    created_at=created_at,
                )
            )
            conn.execute(
                _email_otps.insert().values(
                    user_id=user_id,
                    email=otp.email,
                    otp_hash=otp.otp_hash,
                    expires_at=otp.expires_at,
                    created_at=created_at,
                )
            )
        return user_id

    def create_oauth_user(self, user: User, provider: str, provider_account_id: str) -> int:
        """Insert a user and its provider account in one transaction.

        Raises sqlalchemy.exc.IntegrityError if a concurrent request already
        created a user with the same email.
        """
        created_at = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.insert().values(**_user_values(user), created_at=created_at))
            user_id = result.inserted_primary_key[0]
            conn.execute(
                _accounts.insert().values(
                    user_id=user_id,
                    provider=provider,
                    provider_account_id=provider_account_id,
                    created_at=created_at,
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, avatar_url, role, hashed_password,
        is_email_verified (bool, converted to int for SQLite).

        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_email_verified" in fields:
            fields["is_email_verified"] = 1 if fields["is_email_verified"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Provider accounts
    # ------------------------------------------------------------------

    def get_account(self, user_id: int, provider: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where((_accounts.c.user_id == user_id) & (_accounts.c.provider == provider))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def create_account(self, account: Account) -> int:
        """Insert a provider account.

        Raises sqlalchemy.exc.IntegrityError if (user_id, provider) is
        already linked.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    user_id=account.user_id,
                    provider=account.provider,
                    provider_account_id=account.provider_account_id,
                    created_at=now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_accounts(self, user_id: int) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.user_id == user_id).order_by(_accounts.c.id)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_values(token)))
        return result.inserted_primary_key[0]

    def get_active_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Return the unrevoked, unexpired token record with this hash, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now_iso())
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_hash: str, new_token: RefreshToken) -> bool:
        """Revoke the active token with old_hash and insert new_token atomically.

        Returns False (and writes nothing) if old_hash no longer matches an
        active record, which is what the losing side of a concurrent rotation
        sees. new_token.user_id is ignored: the new token always belongs to
        the owner of the revoked one.
        """
        with self.engine.begin() as conn:
            revoked = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == old_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now_iso())
                )
                .values(revoked=1)
            )
            if revoked.rowcount != 1:
                return False
            owner_id = conn.execute(
                select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.token_hash == old_hash)
            ).scalar_one()
            values = _refresh_values(new_token)
            values["user_id"] = owner_id
            conn.execute(_refresh_tokens.insert().values(**values))
        return True

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Revoke a single token by hash. Returns True if a live record was revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        """Revoke every live refresh token of a user. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Email OTPs
    # ------------------------------------------------------------------

    def create_otp(self, otp: EmailOTP) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _email_otps.insert().values(
                    user_id=otp.user_id,
                    email=otp.email,
                    otp_hash=otp.otp_hash,
                    expires_at=otp.expires_at,
                    attempts=otp.attempts,
                    created_at=now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_active_otp(self, user_id: int, email: str) -> EmailOTP | None:
        """Return the most recently created active OTP for (user, email), or None.

        Active means unused, unrevoked and unexpired. The attempts counter is
        NOT part of the filter -- the caller must see an exhausted record so
        it can answer "too many attempts" instead of "no code".
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _email_otps.select()
                .where(
                    (_email_otps.c.user_id == user_id)
                    & (_email_otps.c.email == email)
                    & (_email_otps.c.used == 0)
                    & (_email_otps.c.revoked == 0)
                    & (_email_otps.c.expires_at > now_iso())
                )
                .order_by(_email_otps.c.created_at.desc(), _email_otps.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def claim_otp_attempt(self, otp_id: int, max_attempts: int) -> bool:
        """Count one verification attempt against the OTP, if any are left.

        The increment and the cap check are one conditional UPDATE, so
        concurrent guesses cannot all slip in under the cap. Returns False
        when the OTP has no attempts left.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _email_otps.update()
                .where((_email_otps.c.id == otp_id) & (_email_otps.c.attempts < max_attempts))
                .values(attempts=_email_otps.c.attempts + 1)
            )
        return result.rowcount == 1

    def consume_otp(self, otp_id: int, user_id: int, max_attempts: int) -> bool:
        """Mark the OTP used (attempts reset) and the user verified, atomically.

        Returns False and writes nothing if the OTP was already used, revoked
        or pushed past max_attempts in the meantime, so a code can be accepted
        at most once and never after the cap.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _email_otps.update()
                .where(
                    (_email_otps.c.id == otp_id)
                    & (_email_otps.c.used == 0)
                    & (_email_otps.c.revoked == 0)
                    & (_email_otps.c.attempts <= max_attempts)
                )
                .values(used=1, attempts=0)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(is_email_verified=1))
        return True

    def revoke_otps(self, user_id: int) -> int:
        """Revoke every unused, unrevoked OTP of a user. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _email_otps.update()
                .where((_email_otps.c.user_id == user_id) & (_email_otps.c.used == 0) & (_email_otps.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    def count_active_otps(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(_email_otps)
                .where(
                    and_(
                        _email_otps.c.user_id == user_id,
                        _email_otps.c.used == 0,
                        _email_otps.c.revoked == 0,
                        _email_otps.c.expires_at > now_iso(),
                    )
                )
            ).scalar_one()

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, token: PasswordResetToken) -> int:
        """Invalidate the user's unused reset tokens and insert a new one."""
        with self.engine.begin() as conn:
            conn.execute(
                _password_resets.update()
                .where((_password_resets.c.user_id == token.user_id) & (_password_resets.c.used == 0))
                .values(used=1)
            )
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    user_agent=token.user_agent,
                    ip_address=token.ip_address,
                    created_at=now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_active_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_resets.select().where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.used == 0)
                    & (_password_resets.c.expires_at > now_iso())
                )
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume_reset_token(self, token_id: int, user_id: int, hashed_password: str) -> bool:
        """Mark the reset token used and store the new password hash, atomically.

        Returns False and writes nothing if the token was consumed first by a
        concurrent request.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where((_password_resets.c.id == token_id) & (_password_resets.c.used == 0))
                .values(used=1)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Value builders and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    return {
        "email": user.email,
        "name": user.name,
        "hashed_password": user.hashed_password,
        "is_email_verified": 1 if user.is_email_verified else 0,
        "avatar_url": user.avatar_url,
        "role": user.role,
    }


def _refresh_values(token: RefreshToken) -> dict:
    return {
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "expires_at": token.expires_at,
        "revoked": 1 if token.revoked else 0,
        "user_agent": token.user_agent,
        "ip_address": token.ip_address,
        "created_at": now_iso(),
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        is_email_verified=bool(row.is_email_verified),
        avatar_url=row.avatar_url,
        role=row.role,
        created_at=row.created_at,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=row.created_at,
    )


def _row_to_otp(row) -> EmailOTP:
    return EmailOTP(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        otp_hash=row.otp_hash,
        expires_at=row.expires_at,
        used=bool(row.used),
        revoked=bool(row.revoked),
        attempts=row.attempts,
        created_at=row.created_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used=bool(row.used),
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=row.created_at,
    )

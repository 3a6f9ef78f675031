"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Authenticator,
AccountManager and the routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  update_user() only accepts column names from _MUTABLE_FIELDS, so callers
  cannot smuggle arbitrary columns through keyword arguments.
  record_failure() increments the lockout counter in SQL, never in Python.

Emails are stored lower-cased (core.validation.normalize_email) and looked up
lower-cased, so the UNIQUE constraint and case-insensitive login agree.

Users are never deleted. Deactivation (is_active = 0) is the only removal path.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import ROLE_ADMIN, User

logger = logging.getLogger("ticketgate.auth.store")

_DEFAULT_DB_URL = "sqlite:///data/ticketgate_users.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(254), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),  # ISO 8601, NULL when not locked
    Column("last_login", String(32)),
    Column("preferences", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "hashed_password",
        "role",
        "is_active",
        "must_change_password",
        "failed_attempts",
        "locked_until",
        "last_login",
        "preferences",
    }
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


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///data/ticketgate_users.db")
        user_id = store.create_user(User(username="admin", email="admin@example.com", ...))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists (first-boot check)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive match (emails are stored lower-cased)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        """Used by AccountManager.set_active() to protect the last admin."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == ROLE_ADMIN) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. AccountManager turns that into a ValidationError.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    must_change_password=1 if user.must_change_password else 0,
                    failed_attempts=user.failed_attempts,
                    locked_until=user.locked_until,
                    last_login=user.last_login,
                    preferences=user.preferences_json(),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Booleans are converted to 0/1 and preferences (a dict) to JSON text.
        Unknown field names raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        for flag in ("is_active", "must_change_password"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "preferences" in fields:
            fields["preferences"] = json.dumps(fields["preferences"] or {}, sort_keys=True)
        if "email" in fields:
            fields["email"] = fields["email"].lower()
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def record_failure(self, user_id: int, threshold: int, lock_until: str) -> tuple[int, str | None]:
        """Count one failed login and lock the account once threshold is reached.

        The increment and the lock are one UPDATE evaluated against the
        stored counter, so concurrent failures can never lose a count.

        Returns (failed_attempts, locked_until) as stored after the update.
        """
        attempts = _users.c.failed_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_attempts=attempts,
                    locked_until=case((attempts >= threshold, lock_until), else_=_users.c.locked_until),
                    updated_at=_now_iso(),
                )
            )
            row = conn.execute(
                select(_users.c.failed_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            return 0, None
        return row.failed_attempts, row.locked_until

    def record_success(self, user_id: int, last_login: str) -> bool:
        """Reset the failure counter and stamp last_login, unless a lock is set.

        Returns False when the account was locked in the meantime.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.locked_until.is_(None))
                .values(failed_attempts=0, last_login=last_login, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    try:
        preferences = json.loads(row.preferences) if row.preferences else {}
    except ValueError:
        logger.warning("Discarding unreadable preferences for user id=%s", row.id)
        preferences = {}
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        must_change_password=bool(row.must_change_password),
        failed_attempts=row.failed_attempts or 0,
        locked_until=row.locked_until,
        last_login=row.last_login,
        preferences=preferences if isinstance(preferences, dict) else {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

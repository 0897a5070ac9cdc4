"""
auth/store.py -- SQLAlchemy Core persistence layer for users and roles.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route, identity and
sign-in code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Schema:
  users       -- one row per account (lockout and two-factor state included)
  roles       -- role names ("Admin", "User")
  user_roles  -- many-to-many association

DB path: flexflow.db beside the package unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(256), nullable=False, unique=True),
    Column("email", String(256), nullable=False),
    Column("display_name", String(256), nullable=False),
    Column("hashed_password", Text),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),  # base32 TOTP secret
    Column("access_failed_count", Integer, nullable=False, server_default="0"),
    Column("lockout_end", String(32)),  # ISO 8601 UTC, NULL = not locked
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(256), nullable=False, unique=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "role_id"),
)

# Fields update_user() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = {
    "email",
    "display_name",
    "hashed_password",
    "email_confirmed",
    "two_factor_enabled",
    "two_factor_secret",
    "access_failed_count",
    "lockout_end",
}
_BOOL_FIELDS = {"email_confirmed", "two_factor_enabled"}


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
    """Repository for User records and their role assignments.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="admin", email="a@b.c", display_name="Administrator",
                                     hashed_password=hash_password("secret")))
        store.add_to_role(uid, "Admin")
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Roles listed on the User are assigned (and created if missing).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    display_name=user.display_name,
                    hashed_password=user.hashed_password,
                    email_confirmed=1 if user.email_confirmed else 0,
                    two_factor_enabled=1 if user.two_factor_enabled else 0,
                    two_factor_secret=user.two_factor_secret,
                    access_failed_count=user.access_failed_count,
                    lockout_end=user.lockout_end,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            user_id = result.inserted_primary_key[0]
        for role in user.roles:
            self.add_to_role(user_id, role)
        return user_id

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        if row is None:
            return None
        return _row_to_user(row, self.get_roles(row.id))

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Boolean fields are converted to 0/1 for SQLite. Unknown field names
        raise ValueError. Returns True if a row was updated.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for name in _BOOL_FIELDS & set(fields):
            fields[name] = 1 if fields[name] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout bookkeeping
    # ------------------------------------------------------------------

    def record_failed_access(self, user_id: int) -> int:
        """Increment the consecutive-failure counter and return the new value."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(access_failed_count=_users.c.access_failed_count + 1)
            )
            count = conn.execute(select(_users.c.access_failed_count).where(_users.c.id == user_id)).scalar()
            conn.commit()
        return count or 0

    def set_lockout(self, user_id: int, lockout_end: str | None) -> None:
        """Lock the account until lockout_end (or unlock with None) and reset the counter."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(lockout_end=lockout_end, access_failed_count=0)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_role(self, name: str) -> int:
        """Return the id of role `name`, creating it if needed."""
        with self.engine.connect() as conn:
            role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
            if role_id is None:
                role_id = conn.execute(_roles.insert().values(name=name)).inserted_primary_key[0]
                conn.commit()
        return role_id

    def add_to_role(self, user_id: int, role: str) -> None:
        """Assign role to user. Assigning an existing role is a no-op."""
        role_id = self.ensure_role(role)
        with self.engine.connect() as conn:
            exists = conn.execute(
                select(_user_roles.c.user_id).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).first()
            if exists is None:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
                conn.commit()

    def get_roles(self, user_id: int) -> list[str]:
        """Return the user's role names in alphabetical order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_roles.c.name)
                .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
                .where(_user_roles.c.user_id == user_id)
                .order_by(_roles.c.name)
            ).fetchall()
        return [r.name for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        email_confirmed=bool(row.email_confirmed),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        access_failed_count=row.access_failed_count,
        lockout_end=row.lockout_end,
        created_at=row.created_at,
        roles=roles,
    )

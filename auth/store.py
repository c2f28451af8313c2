"""
auth/store.py -- SQLAlchemy Core persistence layer for users and linked accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_link are the mappers. The account linker and routes never touch SQL
directly.

Transactions:
  Every method takes an optional `conn`. Without one, the method runs in its
  own short transaction (engine.begin()). With one, it joins the caller's
  transaction -- AccountLinker.resolve() opens UserStore.transaction() and
  passes the connection through so one reconcile is one transaction.

Concurrency:
  UNIQUE(provider, provider_user_id) on oauth_accounts is the correctness
  mechanism for concurrent logins with the same identity. UNIQUE(user_id,
  provider) keeps one account per provider per user, which is what makes
  unlink-by-provider unambiguous. create_link() lets
  sqlalchemy.exc.IntegrityError propagate; the linker reacts to it.

  SQLite only: every transaction is opened with BEGIN IMMEDIATE so write
  transactions queue on the database lock (busy timeout) instead of failing
  with SQLITE_BUSY when a deferred read lock would need upgrading. WAL mode
  keeps readers unblocked. foreign_keys=ON makes ON DELETE CASCADE effective.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
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
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import AccountLink, ExternalIdentity, Provider, User

_DEFAULT_DB_URL = "sqlite:///oauthgate.db"

# Connection execution option: begin with a deferred BEGIN instead of BEGIN IMMEDIATE.
READ_ONLY_OPTION = "oauthgate_read_only"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # stored lowercased
    Column("display_name", Text),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

_oauth_accounts = Table(
    "oauth_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider", String(20), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("email", Text),
    Column("name", Text),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_oauth_accounts_provider_subject"),
    UniqueConstraint("user_id", "provider", name="uq_oauth_accounts_user_provider"),
    CheckConstraint(
        "provider IN ('google', 'github', 'oidc')",
        name="ck_oauth_accounts_provider",
    ),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite_connection(dbapi_conn, connection_record) -> None:
    """Per-connection PRAGMAs, and hand transaction control to SQLAlchemy.

    isolation_level=None stops pysqlite from emitting its own deferred BEGIN;
    _begin_immediate() below emits BEGIN IMMEDIATE instead.
    """
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_immediate(conn) -> None:
    # Read-only connections take a deferred BEGIN and never queue behind a writer.
    if conn.get_execution_options().get(READ_ONLY_OPTION):
        conn.exec_driver_sql("BEGIN")
    else:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and AccountLink entities.

    Usage:
        store = UserStore("sqlite:///oauthgate.db")
        with store.transaction() as conn:
            link = store.find_link(Provider.github, "12345", conn=conn)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 15
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _configure_sqlite_connection)
            event.listen(self.engine, "begin", _begin_immediate)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction. Commits on success, rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connect(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self._connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Case-insensitive lookup (emails are stored lowercased)."""
        with self._connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self._connect(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    display_name=user.display_name,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self._connect(None) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self._connect(None) as c:
            c.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def find_link(self, provider: Provider, provider_user_id: str, conn: Connection | None = None) -> AccountLink | None:
        """Look up the link for an external identity. O(1) via the unique index."""
        with self._connect(conn) as c:
            row = c.execute(
                _oauth_accounts.select().where(
                    (_oauth_accounts.c.provider == Provider(provider).value)
                    & (_oauth_accounts.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def find_user_link(self, user_id: int, provider: Provider, conn: Connection | None = None) -> AccountLink | None:
        with self._connect(conn) as c:
            row = c.execute(
                _oauth_accounts.select().where(
                    (_oauth_accounts.c.user_id == user_id) & (_oauth_accounts.c.provider == Provider(provider).value)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def list_links(self, user_id: int, conn: Connection | None = None) -> list[AccountLink]:
        """Return every link owned by a user, newest first."""
        with self._connect(conn) as c:
            rows = c.execute(
                _oauth_accounts.select()
                .where(_oauth_accounts.c.user_id == user_id)
                .order_by(_oauth_accounts.c.created_at.desc(), _oauth_accounts.c.id.desc())
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def count_links(self, user_id: int, conn: Connection | None = None) -> int:
        with self._connect(conn) as c:
            result = c.execute(
                select(func.count()).select_from(_oauth_accounts).where(_oauth_accounts.c.user_id == user_id)
            ).scalar()
        return result or 0

    def create_link(self, link: AccountLink, conn: Connection | None = None) -> int:
        """Insert a new link and return its ID.

        Raises sqlalchemy.exc.IntegrityError when (provider, provider_user_id)
        is already linked -- including when a concurrent transaction won the
        race after our existence check. Never check-then-insert without
        handling this.
        """
        now = _now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _oauth_accounts.insert().values(
                    user_id=link.user_id,
                    provider=Provider(link.provider).value,
                    provider_user_id=link.provider_user_id,
                    email=link.email,
                    name=link.display_name,
                    avatar_url=link.avatar_url,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def refresh_link(self, link_id: int, identity: ExternalIdentity, conn: Connection | None = None) -> None:
        """Overwrite the provider-owned profile fields on an existing link."""
        with self._connect(conn) as c:
            c.execute(
                _oauth_accounts.update()
                .where(_oauth_accounts.c.id == link_id)
                .values(
                    email=identity.email,
                    name=identity.display_name,
                    avatar_url=identity.avatar_url,
                    updated_at=_now_iso(),
                )
            )

    def delete_link(self, user_id: int, provider: Provider, conn: Connection | None = None) -> bool:
        """Delete the user's link for a provider. Returns True if a row was deleted.

        user_id is part of the WHERE clause so one user can never remove
        another user's link [IDOR guard].
        """
        with self._connect(conn) as c:
            result = c.execute(
                _oauth_accounts.delete().where(
                    (_oauth_accounts.c.user_id == user_id) & (_oauth_accounts.c.provider == Provider(provider).value)
                )
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint. Takes no write lock."""
        with self.engine.connect() as c:
            c.execution_options(**{READ_ONLY_OPTION: True})
            c.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_link(row) -> AccountLink:
    return AccountLink(
        id=row.id,
        user_id=row.user_id,
        provider=Provider(row.provider),
        provider_user_id=row.provider_user_id,
        email=row.email,
        display_name=row.name,
        avatar_url=row.avatar_url,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

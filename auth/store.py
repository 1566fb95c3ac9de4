"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore and TokenStore are the
repositories; _row_to_user is the mapper. The service never touches SQL.

Connection handling:
  open_engine() builds the one Engine (connection pool) for the process.
  Both stores receive it by reference -- neither creates its own, and there
  is no module-level engine. Closing is the owner's job (dispose_engine()).

Security:
  All queries use bound parameters. No f-strings built from caller input.

Deadlines:
  Every public method accepts ``deadline``, an absolute time.monotonic()
  instant. A deadline that has already passed fails fast with StorageFailure.
  Otherwise the remaining budget is pushed down to the connection:
    PostgreSQL -- SET LOCAL statement_timeout for the transaction.
    SQLite     -- a progress handler that interrupts the running statement.
  SQLAlchemy surfaces the interruption as OperationalError, which the stores
  report as StorageFailure like any other backend error.

Error mapping:
  IntegrityError from a UNIQUE constraint -> DuplicateUser / TokenConflict.
  Missing rows -> UserNotFound / TokenNotFound.
  Any other SQLAlchemyError -> StorageFailure (logged with context here).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateUser, StorageFailure, TokenConflict, TokenNotFound, UserNotFound
from auth.models import RefreshTokenRecord, User
from auth.tokens import redact

logger = logging.getLogger("papertrade.store")

Clock = Callable[[], datetime]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", Text, nullable=False, unique=True),  # base64url SHA-256 of the opaque token
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_refresh_tokens_user_id", "user_id"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Per-connection SQLite setup.

    foreign_keys=ON is required for ON DELETE CASCADE -- SQLite ships with
    FK enforcement off. WAL lets readers proceed while a write is in flight.
    PRAGMAs are not inherited by new pool connections, so set them on each.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def open_engine(db_url: str, *, create_schema: bool = True) -> Engine:
    """Create the process-wide Engine and (optionally) the auth schema.

    create_all is idempotent -- tables that already exist are left alone.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)
    if create_schema:
        metadata.create_all(engine)
    return engine


def dispose_engine(engine: Engine) -> None:
    engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite has no timezone type; values come back naive but were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_unique_violation(exc: IntegrityError) -> bool:
    """True if exc came from a UNIQUE/PRIMARY KEY constraint.

    Checked by driver error code, never by message text:
      PostgreSQL: SQLSTATE 23505 (psycopg 3 exposes .sqlstate, psycopg2 .pgcode).
      SQLite:     extended result code name (Python 3.11+).
    """
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == "23505"
    return getattr(orig, "sqlite_errorname", None) in ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY")


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise StorageFailure("deadline exceeded before the query was sent")
    return remaining


def _propagate_deadline(conn: Connection, deadline: float, remaining: float) -> Callable[[], None]:
    """Push the remaining budget to the driver. Returns an undo callable."""
    dialect = conn.dialect.name
    if dialect == "postgresql":
        # SET does not take bind parameters; the value is an int we computed.
        conn.execute(text(f"SET LOCAL statement_timeout = {max(1, int(remaining * 1000))}"))
        return lambda: None
    if dialect == "sqlite":
        raw = conn.connection.driver_connection

        def _interrupt_when_late() -> int:
            return 1 if time.monotonic() >= deadline else 0

        raw.set_progress_handler(_interrupt_when_late, 1000)
        return lambda: raw.set_progress_handler(None, 0)
    return lambda: None


class _Repository:
    """Shared connection plumbing for the two stores."""

    def __init__(self, engine: Engine, clock: Clock = _utcnow) -> None:
        if engine is None:
            raise ValueError(f"{type(self).__name__} requires an Engine")
        self.engine = engine
        self._clock = clock

    @contextmanager
    def _begin(self, deadline: float | None) -> Iterator[Connection]:
        """Yield a connection inside a transaction bounded by deadline.

        Commits on normal exit, rolls back on exception.
        """
        remaining = _remaining(deadline)
        with self.engine.begin() as conn:
            undo = _propagate_deadline(conn, deadline, remaining) if remaining is not None else None
            try:
                yield conn
            finally:
                if undo is not None:
                    undo()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_Repository):
    """Repository for User identities.

    Usage:
        engine = open_engine("sqlite:///auth.db")
        store = UserStore(engine)
        user = store.create("alice@example.com", hash_password("password123"))
        same = store.find_by_email("alice@example.com")
    """

    def create(self, email: str, password_hash: str, *, deadline: float | None = None) -> User:
        """Insert a new user and return the full record.

        Raises DuplicateUser if the email is taken (UNIQUE violation),
        StorageFailure for any other backend error.
        """
        now = self._clock()
        user = User(
            id=uuid.uuid4(),
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._begin(deadline) as conn:
                conn.execute(
                    users.insert().values(
                        id=user.id,
                        email=user.email,
                        password_hash=user.password_hash,
                        created_at=user.created_at,
                        updated_at=user.updated_at,
                    )
                )
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateUser(f"user with email {email!r} already exists") from exc
            logger.error("Error creating user %s: %s", email, exc)
            raise StorageFailure(f"could not create user: {exc}") from exc
        except SQLAlchemyError as exc:
            logger.error("Error creating user %s: %s", email, exc)
            raise StorageFailure(f"could not create user: {exc}") from exc
        return user

    def find_by_email(self, email: str, *, deadline: float | None = None) -> User:
        """Look up a user by exact email (case-sensitive)."""
        return self._find_one(users.c.email == email, f"email {email!r}", deadline)

    def find_by_id(self, user_id: uuid.UUID, *, deadline: float | None = None) -> User:
        """Look up a user by primary key."""
        return self._find_one(users.c.id == user_id, f"id {user_id}", deadline)

    def _find_one(self, condition, described: str, deadline: float | None) -> User:
        try:
            with self._begin(deadline) as conn:
                row = conn.execute(users.select().where(condition)).fetchone()
        except SQLAlchemyError as exc:
            logger.error("Error finding user by %s: %s", described, exc)
            raise StorageFailure(f"could not find user by {described}: {exc}") from exc
        if row is None:
            raise UserNotFound(f"no user with {described}")
        return _row_to_user(row)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TokenStore(_Repository):
    """Repository for hashed refresh tokens.

    Rows are keyed by token_hash (UNIQUE). The raw opaque token never reaches
    this class. Expiry is evaluated against the store's clock, so every
    "is it still valid" decision is made in one place.
    """

    def save(
        self,
        user_id: uuid.UUID,
        token_hash: str,
        expires_at: datetime,
        *,
        deadline: float | None = None,
    ) -> RefreshTokenRecord:
        """Insert a refresh-token row and return it.

        Raises TokenConflict on a token_hash collision, StorageFailure
        otherwise (including an unknown user_id, which violates the FK).
        """
        record = RefreshTokenRecord(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_as_utc(expires_at),
            id=uuid.uuid4(),
            created_at=self._clock(),
        )
        try:
            with self._begin(deadline) as conn:
                conn.execute(
                    refresh_tokens.insert().values(
                        id=record.id,
                        user_id=record.user_id,
                        token_hash=record.token_hash,
                        expires_at=record.expires_at,
                        created_at=record.created_at,
                    )
                )
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                logger.error("Refresh token hash collision for user %s", user_id)
                raise TokenConflict(f"refresh token hash already stored for user {user_id}") from exc
            logger.error("Error saving refresh token for user %s: %s", user_id, exc)
            raise StorageFailure(f"could not save refresh token: {exc}") from exc
        except SQLAlchemyError as exc:
            logger.error("Error saving refresh token for user %s: %s", user_id, exc)
            raise StorageFailure(f"could not save refresh token: {exc}") from exc
        return record

    def validate_and_fetch_user(self, token_hash: str, *, deadline: float | None = None) -> User:
        """Return the owner of an unexpired refresh token.

        Raises TokenNotFound when no row matches OR the row has expired OR it
        was already rotated away -- the three cases are indistinguishable by
        design of the query, and callers must treat them the same.
        """
        query = (
            select(users)
            .select_from(refresh_tokens.join(users, refresh_tokens.c.user_id == users.c.id))
            .where(refresh_tokens.c.token_hash == token_hash)
            .where(refresh_tokens.c.expires_at > self._clock())
        )
        try:
            with self._begin(deadline) as conn:
                row = conn.execute(query).fetchone()
        except SQLAlchemyError as exc:
            logger.error("Error validating refresh token %s: %s", redact(token_hash), exc)
            raise StorageFailure(f"could not validate refresh token: {exc}") from exc
        if row is None:
            raise TokenNotFound()
        return _row_to_user(row)

    def delete_by_hash(self, token_hash: str, *, deadline: float | None = None) -> int:
        """Delete one refresh token. Idempotent.

        Zero rows affected is not an error (the token may have been rotated or
        purged concurrently) but is logged as an anomaly.
        """
        stmt = refresh_tokens.delete().where(refresh_tokens.c.token_hash == token_hash)
        try:
            with self._begin(deadline) as conn:
                removed = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            logger.error("Error deleting refresh token %s: %s", redact(token_hash), exc)
            raise StorageFailure(f"could not delete refresh token: {exc}") from exc
        if removed == 0:
            logger.warning("Attempted to delete refresh token %s, but it was not found", redact(token_hash))
        return removed

    def delete_all_for_user(self, user_id: uuid.UUID, *, deadline: float | None = None) -> int:
        """Revoke every refresh token belonging to user_id. Returns rows removed."""
        stmt = refresh_tokens.delete().where(refresh_tokens.c.user_id == user_id)
        try:
            with self._begin(deadline) as conn:
                removed = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            logger.error("Error deleting refresh tokens for user %s: %s", user_id, exc)
            raise StorageFailure(f"could not delete refresh tokens: {exc}") from exc
        logger.info("Deleted %d refresh token(s) for user %s", removed, user_id)
        return removed

    def purge_expired(self, *, deadline: float | None = None) -> int:
        """Delete every row whose expiry has passed. Returns rows removed.

        A single DELETE ... WHERE expires_at <= now, so concurrent runs are
        safe: each row is removed by exactly one of them.
        """
        stmt = refresh_tokens.delete().where(refresh_tokens.c.expires_at <= self._clock())
        try:
            with self._begin(deadline) as conn:
                removed = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            logger.error("Error purging expired refresh tokens: %s", exc)
            raise StorageFailure(f"could not purge expired refresh tokens: {exc}") from exc
        logger.info("Purged %d expired refresh token(s)", removed)
        return removed

    def count_for_user(self, user_id: uuid.UUID, *, deadline: float | None = None) -> int:
        """Number of stored refresh tokens (expired or not) for user_id."""
        query = select(func.count()).select_from(refresh_tokens).where(refresh_tokens.c.user_id == user_id)
        try:
            with self._begin(deadline) as conn:
                return conn.execute(query).scalar_one()
        except SQLAlchemyError as exc:
            logger.error("Error counting refresh tokens for user %s: %s", user_id, exc)
            raise StorageFailure(f"could not count refresh tokens: {exc}") from exc


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )

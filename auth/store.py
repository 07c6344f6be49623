"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and credentials.

Pattern: Repository + Data Mapper. AccountStore is the repository; the
_row_to_* functions are the mappers. CredentialStore is the Protocol the
authenticator and the directory engine are written against, so a test double
or a different backend can stand in for AccountStore.

Security:
  All queries use bound parameters. Listing filters and sort columns are looked
  up in _LISTING_COLUMNS, never interpolated. Filter text goes through
  contains(autoescape=True), so "%" and "_" in user input match literally.

Uniqueness:
  handle and email are unique case-insensitively, enforced by unique indexes on
  lower(handle) / lower(email). IntegrityError surfaces as AccountConflictError.

Concurrency:
  Login bookkeeping (failed_attempts, account_locked, locked_at, last_login) is
  only ever changed by single UPDATE statements that compute the new value in
  SQL (failed_attempts = failed_attempts + 1), so concurrent attempts cannot
  lose increments. save() never writes those columns on update; it writes the
  profile columns guarded by the version column and raises StaleAccountError
  when another writer got there first.

Errors:
  Any other SQLAlchemyError is logged and re-raised as StorageError. Not-found
  is None / False, never an exception.

Layer rule: no imports from api/ or directory/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    true,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.exceptions import AccountConflictError, StaleAccountError, StorageError
from auth.models import Account, RememberToken, Session

logger = logging.getLogger("adminconsole.auth.store")

# A listing predicate is a sequence of (column, needle) pairs, ANDed together.
# The pseudo-column ANY_COLUMN matches the needle against every SEARCH_COLUMNS
# column, ORed together.
# A sort is a (column, direction) pair with direction "asc" or "desc".
Predicate = Sequence[tuple[str, str]]
Sort = tuple[str, str]

ANY_COLUMN = "*"
SEARCH_COLUMNS: tuple[str, ...] = ("handle", "email", "first_name", "last_name")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("handle", String(50), nullable=False),
    Column("email", String(255), nullable=False),
    Column("password_hash", String(128), nullable=False, server_default=""),
    Column("password_salt", String(64), nullable=False, server_default=""),
    Column("first_name", String(50), nullable=False, server_default=""),
    Column("last_name", String(50), nullable=False, server_default=""),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("account_locked", Integer, nullable=False, server_default="0"),
    Column("locked_at", String(32)),  # NULL = unlocked or administrative lock
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("version", Integer, nullable=False, server_default="1"),
)

Index("ux_accounts_handle_lower", func.lower(_accounts.c.handle), unique=True)
Index("ux_accounts_email_lower", func.lower(_accounts.c.email), unique=True)

_account_roles = Table(
    "account_roles",
    metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("role", String(30), primary_key=True),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("session_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("account_id", Integer, nullable=False, index=True),
    Column("handle", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_remember_tokens = Table(
    "remember_tokens",
    metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("handle", String(50), nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# Columns the directory listing may filter or sort on. Anything else is refused.
_LISTING_COLUMNS: dict[str, Column] = {
    "id": _accounts.c.id,
    "handle": _accounts.c.handle,
    "email": _accounts.c.email,
    "first_name": _accounts.c.first_name,
    "last_name": _accounts.c.last_name,
    "active": _accounts.c.active,
    "created_at": _accounts.c.created_at,
    "last_login": _accounts.c.last_login,
}


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """What the authenticator and the directory engine need from storage."""

    def find_by_handle(self, handle: str) -> Account | None: ...

    def find_by_email(self, email: str) -> Account | None: ...

    def get_by_id(self, account_id: int) -> Account | None: ...

    def save(self, account: Account) -> int: ...

    def delete(self, account_id: int) -> bool: ...

    def query_page(self, predicate: Predicate, sort: Sort | None, offset: int, limit: int) -> list[Account]: ...

    def count_matching(self, predicate: Predicate) -> int: ...

    def record_failed_attempt(self, account_id: int, max_attempts: int, at: datetime) -> Account | None: ...

    def record_successful_login(self, account_id: int, at: datetime) -> bool: ...

    def lock(self, account_id: int) -> bool: ...

    def unlock(self, account_id: int) -> bool: ...

    def create_session(self, session_hash: str, session: Session) -> None: ...

    def get_session(self, session_hash: str) -> Session | None: ...

    def delete_session(self, session_hash: str) -> bool: ...

    def create_remember_token(self, token: RememberToken) -> None: ...

    def get_remember_token(self, token_hash: str) -> RememberToken | None: ...

    def delete_remember_token(self, token_hash: str) -> bool: ...

    def delete_remember_tokens_for(self, handle: str) -> int: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so they are set from the connect event
    rather than once at startup.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into the store's own exception types."""
    try:
        yield
    except IntegrityError as exc:
        raise AccountConflictError(f"{action}: handle or email already in use") from exc
    except SQLAlchemyError as exc:
        logger.error("%s failed: %s", action, exc)
        raise StorageError(f"{action} failed") from exc


def _listing_filter(predicate: Predicate):
    """Build the WHERE clause for a listing predicate.

    query_page() and count_matching() both call this with the same predicate,
    so the page and the total can never disagree about which rows match.
    """
    clauses = []
    for column, needle in predicate:
        if column == ANY_COLUMN:
            needle = needle.lower()
            clauses.append(
                or_(*(func.lower(_LISTING_COLUMNS[c]).contains(needle, autoescape=True) for c in SEARCH_COLUMNS))
            )
            continue
        col = _LISTING_COLUMNS.get(column)
        if col is None:
            raise ValueError(f"Unknown listing column: {column!r}")
        clauses.append(func.lower(col).contains(needle.lower(), autoescape=True))
    return and_(true(), *clauses)


def _listing_order(sort: Sort | None) -> list:
    """ORDER BY clause: the requested column, then id as a stable tiebreaker."""
    if sort is None:
        return [_accounts.c.id.asc()]
    column, direction = sort
    col = _LISTING_COLUMNS.get(column)
    if col is None:
        raise ValueError(f"Unknown listing column: {column!r}")
    primary = col.desc() if direction == "desc" else col.asc()
    return [primary, _accounts.c.id.asc()]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """SQLAlchemy Core implementation of CredentialStore.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.save(Account(handle="alice", email="alice@x.com", ...))
        store.find_by_handle("ALICE")   # case-insensitive
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account lookups
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with _storage_errors("has_accounts"), self.engine.connect() as conn:
            row = conn.execute(select(_accounts.c.id).limit(1)).first()
        return row is not None

    def find_by_handle(self, handle: str) -> Account | None:
        """Look up an account by handle, ignoring case. Returns None if not found."""
        return self._find_one(func.lower(_accounts.c.handle) == handle.lower(), "find_by_handle")

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email, ignoring case. Returns None if not found."""
        return self._find_one(func.lower(_accounts.c.email) == email.lower(), "find_by_email")

    def get_by_id(self, account_id: int) -> Account | None:
        return self._find_one(_accounts.c.id == account_id, "get_by_id")

    def _find_one(self, condition, action: str) -> Account | None:
        with _storage_errors(action), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(condition)).fetchone()
            if row is None:
                return None
            roles = self._load_roles(conn, [row.id])
        return _row_to_account(row, roles.get(row.id, set()))

    @staticmethod
    def _load_roles(conn, account_ids: list[int]) -> dict[int, set[str]]:
        result: dict[int, set[str]] = {}
        if not account_ids:
            return result
        rows = conn.execute(
            select(_account_roles.c.account_id, _account_roles.c.role).where(
                _account_roles.c.account_id.in_(account_ids)
            )
        ).fetchall()
        for account_id, role in rows:
            result.setdefault(account_id, set()).add(role)
        return result

    # ------------------------------------------------------------------
    # Account writes
    # ------------------------------------------------------------------

    def save(self, account: Account) -> int:
        """Insert a new account (id is None) or update an existing one.

        On insert the store stamps created_at and returns the assigned id. On
        update only profile columns, the password and the role set are
        written, and only if account.version still matches the stored row;
        otherwise StaleAccountError. The Account object is updated in place
        (id, created_at, version).

        Raises ValueError for an active account without a password hash and
        AccountConflictError when handle or email is already taken.
        """
        if account.active and not account.password_hash:
            raise ValueError("An active account must have a password hash.")
        if account.id is None:
            return self._insert(account)
        self._update(account)
        return account.id

    def _insert(self, account: Account) -> int:
        created_at = account.created_at or _now()
        with _storage_errors("save"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    handle=account.handle,
                    email=account.email,
                    password_hash=account.password_hash,
                    password_salt=account.password_salt,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    active=1 if account.active else 0,
                    account_locked=1 if account.account_locked else 0,
                    locked_at=_iso(account.locked_at),
                    failed_attempts=account.failed_attempts,
                    created_at=_iso(created_at),
                    last_login=_iso(account.last_login),
                    version=1,
                )
            )
            account_id = result.inserted_primary_key[0]
            self._write_roles(conn, account_id, account.roles)
        account.id = account_id
        account.created_at = created_at
        account.version = 1
        logger.info("Account created: %s (id=%d)", account.handle, account_id)
        return account_id

    def _update(self, account: Account) -> None:
        with _storage_errors("save"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account.id) & (_accounts.c.version == account.version))
                .values(
                    handle=account.handle,
                    email=account.email,
                    password_hash=account.password_hash,
                    password_salt=account.password_salt,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    active=1 if account.active else 0,
                    version=_accounts.c.version + 1,
                )
            )
            if result.rowcount == 0:
                raise StaleAccountError(f"Account {account.id} was changed or removed by another writer.")
            conn.execute(_account_roles.delete().where(_account_roles.c.account_id == account.id))
            self._write_roles(conn, account.id, account.roles)
        account.version += 1

    @staticmethod
    def _write_roles(conn, account_id: int, roles: set[str]) -> None:
        if roles:
            conn.execute(
                _account_roles.insert(),
                [{"account_id": account_id, "role": role} for role in sorted(roles)],
            )

    def delete(self, account_id: int) -> bool:
        """Permanently delete an account with its roles, sessions and remember tokens.

        Returns True if deleted, False if not found. Self-protection is the
        directory engine's job, not the store's.
        """
        with _storage_errors("delete"), self.engine.begin() as conn:
            handle = conn.execute(select(_accounts.c.handle).where(_accounts.c.id == account_id)).scalar()
            if handle is None:
                return False
            conn.execute(_account_roles.delete().where(_account_roles.c.account_id == account_id))
            conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            conn.execute(
                _remember_tokens.delete().where(func.lower(_remember_tokens.c.handle) == handle.lower())
            )
            conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        logger.info("Account deleted: %s (id=%d)", handle, account_id)
        return True

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def query_page(self, predicate: Predicate, sort: Sort | None, offset: int, limit: int) -> list[Account]:
        """Return one page of accounts matching predicate, in sort order."""
        stmt = _accounts.select().where(_listing_filter(predicate)).order_by(*_listing_order(sort))
        stmt = stmt.offset(offset).limit(limit)
        with _storage_errors("query_page"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            roles = self._load_roles(conn, [r.id for r in rows])
        return [_row_to_account(r, roles.get(r.id, set())) for r in rows]

    def count_matching(self, predicate: Predicate) -> int:
        """Return the number of accounts matching predicate, ignoring pagination."""
        stmt = select(func.count()).select_from(_accounts).where(_listing_filter(predicate))
        with _storage_errors("count_matching"), self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    # ------------------------------------------------------------------
    # Login bookkeeping (atomic, SQL-side read-modify-write)
    # ------------------------------------------------------------------

    def record_failed_attempt(self, account_id: int, max_attempts: int, at: datetime) -> Account | None:
        """Increment failed_attempts and lock once it reaches max_attempts.

        The increment and the lock decision are one UPDATE, evaluated against
        the row's current values, inside the same transaction as the re-read.
        Returns the account after the update, or None if it does not exist.
        """
        reached = _accounts.c.failed_attempts + 1 >= max_attempts
        with _storage_errors("record_failed_attempt"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    failed_attempts=_accounts.c.failed_attempts + 1,
                    account_locked=case((reached, 1), else_=_accounts.c.account_locked),
                    locked_at=case(
                        (and_(reached, _accounts.c.account_locked == 0), _iso(at)),
                        else_=_accounts.c.locked_at,
                    ),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            roles = self._load_roles(conn, [account_id])
        return _row_to_account(row, roles.get(account_id, set()))

    def record_successful_login(self, account_id: int, at: datetime) -> bool:
        """Reset failed_attempts to zero and stamp last_login, unless locked.

        The lock check is part of the UPDATE itself, so a lockout committed by
        a concurrent attempt after the caller read the account still wins.
        Returns False when the account is locked or missing.
        """
        with _storage_errors("record_successful_login"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(and_(_accounts.c.id == account_id, _accounts.c.account_locked == 0))
                .values(failed_attempts=0, last_login=_iso(at))
            )
        return result.rowcount > 0

    def lock(self, account_id: int) -> bool:
        """Administrative lock: stays until unlock(), regardless of the lockout window.

        The account's open sessions are deleted in the same transaction.
        """
        with _storage_errors("lock"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(account_locked=1, locked_at=None)
            )
            if result.rowcount == 0:
                return False
            ended = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id)).rowcount
        logger.info("Account id=%d locked (%d session(s) ended)", account_id, ended)
        return True

    def unlock(self, account_id: int) -> bool:
        """Clear the lock and the failed-attempt counter. False if not found."""
        with _storage_errors("unlock"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(account_locked=0, locked_at=None, failed_attempts=0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session_hash: str, session: Session) -> None:
        with _storage_errors("create_session"), self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    session_hash=session_hash,
                    account_id=session.account_id,
                    handle=session.handle,
                    created_at=_iso(session.created_at),
                    expires_at=_iso(session.expires_at),
                )
            )

    def get_session(self, session_hash: str) -> Session | None:
        """Return the stored session, or None.

        The store never sees raw session ids: session_id on the returned
        Session is the stored hash. The authenticator swaps the raw id back in.
        """
        with _storage_errors("get_session"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_hash == session_hash)).fetchone()
        if row is None:
            return None
        return Session(
            session_id=row.session_hash,
            account_id=row.account_id,
            handle=row.handle,
            created_at=_parse(row.created_at),
            expires_at=_parse(row.expires_at),
        )

    def delete_session(self, session_hash: str) -> bool:
        with _storage_errors("delete_session"), self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.session_hash == session_hash))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Remember-me tokens
    # ------------------------------------------------------------------

    def create_remember_token(self, token: RememberToken) -> None:
        """Persist a remember-me token by hash. token.value is never written."""
        with _storage_errors("create_remember_token"), self.engine.begin() as conn:
            conn.execute(
                _remember_tokens.insert().values(
                    token_hash=token.token_hash,
                    handle=token.handle,
                    issued_at=_iso(token.issued_at),
                    expires_at=_iso(token.expires_at),
                )
            )

    def get_remember_token(self, token_hash: str) -> RememberToken | None:
        with _storage_errors("get_remember_token"), self.engine.connect() as conn:
            row = conn.execute(
                _remember_tokens.select().where(_remember_tokens.c.token_hash == token_hash)
            ).fetchone()
        if row is None:
            return None
        return RememberToken(
            handle=row.handle,
            token_hash=row.token_hash,
            issued_at=_parse(row.issued_at),
            expires_at=_parse(row.expires_at),
        )

    def delete_remember_token(self, token_hash: str) -> bool:
        with _storage_errors("delete_remember_token"), self.engine.begin() as conn:
            result = conn.execute(_remember_tokens.delete().where(_remember_tokens.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_remember_tokens_for(self, handle: str) -> int:
        """Remove every remember-me token bound to handle. Returns the count removed."""
        with _storage_errors("delete_remember_tokens_for"), self.engine.begin() as conn:
            result = conn.execute(
                _remember_tokens.delete().where(func.lower(_remember_tokens.c.handle) == handle.lower())
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> int:
        """Delete sessions and remember tokens whose expiry has passed.

        ISO 8601 strings in UTC sort chronologically, so a string comparison
        is enough. Returns the number of rows removed.
        """
        cutoff = _iso(now)
        with _storage_errors("purge_expired"), self.engine.begin() as conn:
            removed = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff)).rowcount
            removed += conn.execute(
                _remember_tokens.delete().where(_remember_tokens.c.expires_at <= cutoff)
            ).rowcount
        return removed

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, roles: set[str]) -> Account:
    return Account(
        id=row.id,
        handle=row.handle,
        email=row.email,
        password_hash=row.password_hash,
        password_salt=row.password_salt,
        first_name=row.first_name,
        last_name=row.last_name,
        active=bool(row.active),
        roles=set(roles),
        account_locked=bool(row.account_locked),
        locked_at=_parse(row.locked_at),
        failed_attempts=row.failed_attempts,
        created_at=_parse(row.created_at),
        last_login=_parse(row.last_login),
        version=row.version,
    )

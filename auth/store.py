"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and OTPs.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account / _row_to_otp are the mappers. The orchestrator never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  update_login_state() is a conditional write on the row version. A False
  return means another request changed the account since it was read; the
  caller re-reads and recomputes. OTP attempt counting is an atomic
  increment and OTP consumption is conditional on consumed_at IS NULL and on
  the code hash that was read, so two verifications of the same record can
  never both succeed and a code replaced by re-issuance can never be
  consumed. consume_otp_and_unlock() writes the OTP row and the account in
  one transaction.

Failure semantics:
  Every SQLAlchemyError is wrapped into TransientStoreError carrying an
  error code and the caller's txn, chained to the driver error. The store
  does not log failures; the orchestrator logs them once at its boundary.

Timestamps are stored as ISO 8601 UTC strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import Account, OtpRecord, OtpUseCase, RoleId
from core.errors import ErrorCode, TransientStoreError

logger = logging.getLogger("ayerhs.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ayerhs_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, unique=True),  # GUID
    Column("name", String(255), nullable=False, server_default=""),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("salt", String(64), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("role_id", Integer, nullable=False, server_default="1"),
    Column("created_on", String(32), nullable=False),
    Column("updated_on", String(32)),
    Column("version", Integer, nullable=False, server_default="0"),
)

_otp_storage = Table(
    "otp_storage",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, server_default="0"),
    Column("email", String(255), nullable=False),
    Column("otp_hash", Text, nullable=False),
    Column("salt", String(64), nullable=False),
    Column("generated_on", String(32), nullable=False),
    Column("valid_until", String(32), nullable=False),
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("use_case", Integer, nullable=False),
    Column("consumed_at", String(32)),
    # One row per (email, use case): re-issuance overwrites it.
    UniqueConstraint("email", "use_case", name="uq_otp_email_use_case"),
)


class LogVerbosity(Enum):
    """How loudly a successful store call is logged."""

    INFO = logging.INFO
    DEBUG = logging.DEBUG
    SILENT = None


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.astimezone(timezone.utc).isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _otp_matches(record_id: int, otp_hash: str):
    """Row filter for one issued code that has not been consumed."""
    return (
        (_otp_storage.c.id == record_id)
        & (_otp_storage.c.otp_hash == otp_hash)
        & (_otp_storage.c.consumed_at.is_(None))
    )


def _consume(conn: Connection, record_id: int, otp_hash: str, consumed_at: datetime) -> bool:
    result = conn.execute(
        _otp_storage.update().where(_otp_matches(record_id, otp_hash)).values(consumed_at=_iso(consumed_at))
    )
    return result.rowcount > 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account and OtpRecord entities.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        uid = store.insert(account, txn=new_txn())
        account = store.find_by_email("a@example.com", txn=txn)
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

    @contextmanager
    def _transaction(self, txn: str, error_message: str, error_code: str = ErrorCode.STORE_UNAVAILABLE) -> Iterator[Connection]:
        """Yield a connection inside BEGIN/COMMIT; wrap driver errors.

        engine.begin() rolls back on any exception raised inside the block.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise TransientStoreError(error_message, ErrorCode.STORE_DUPLICATE, txn) from exc
        except SQLAlchemyError as exc:
            raise TransientStoreError(error_message, error_code, txn) from exc

    @staticmethod
    def _log(verbosity: LogVerbosity, txn: str, message: str, *args) -> None:
        if verbosity.value is not None:
            logger.log(verbosity.value, "[%s] " + message, txn, *args)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_by_email(self, email: str, *, txn: str, verbosity: LogVerbosity = LogVerbosity.DEBUG) -> Account | None:
        """Look up an account by exact email. Returns None if not found.

        Soft-deleted accounts are returned; the caller decides how to treat them.
        """
        with self._transaction(txn, "Error fetching account by email.") as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        self._log(verbosity, txn, "find_by_email hit=%s", row is not None)
        return _row_to_account(row) if row is not None else None

    def find_id_by_username_or_email(
        self, username: str, email: str, *, txn: str, verbosity: LogVerbosity = LogVerbosity.DEBUG
    ) -> int:
        """Return the id of an account matching username OR email, or 0 if none."""
        with self._transaction(txn, "Error checking for an existing account.") as conn:
            found = conn.execute(
                select(_users.c.id).where(or_(_users.c.username == username, _users.c.email == email)).limit(1)
            ).scalar()
        self._log(verbosity, txn, "find_id_by_username_or_email found=%s", bool(found))
        return int(found or 0)

    def insert(self, account: Account, *, txn: str, verbosity: LogVerbosity = LogVerbosity.INFO) -> int:
        """Insert a new account and return its assigned database id.

        Raises TransientStoreError with code STORE_DUPLICATE when the username,
        email or user_id is already taken (UNIQUE constraint).
        """
        with self._transaction(txn, "Error adding a new account.") as conn:
            result = conn.execute(
                _users.insert().values(
                    user_id=account.user_id,
                    name=account.name,
                    username=account.username,
                    email=account.email,
                    password_hash=account.password_hash,
                    salt=account.salt,
                    is_active=1 if account.is_active else 0,
                    is_locked=1 if account.is_locked else 0,
                    is_deleted=1 if account.is_deleted else 0,
                    login_attempts=account.login_attempts,
                    locked_until=_iso(account.locked_until),
                    role_id=int(account.role_id),
                    created_on=_iso(account.created_on) or _now_iso(),
                    version=0,
                )
            )
            new_id = result.inserted_primary_key[0]
        self._log(verbosity, txn, "Account %s added", new_id)
        return new_id

    def update_login_state(self, account: Account, *, txn: str, verbosity: LogVerbosity = LogVerbosity.DEBUG) -> bool:
        """Persist lock/attempt/last-login fields if the row version still matches.

        Returns True and bumps account.version on success. Returns False when
        the row changed since it was read (or no longer exists).
        """
        with self._transaction(txn, "Error updating account login state.") as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == account.id) & (_users.c.version == account.version))
                .values(
                    login_attempts=account.login_attempts,
                    is_locked=1 if account.is_locked else 0,
                    locked_until=_iso(account.locked_until),
                    last_login=_iso(account.last_login),
                    updated_on=_now_iso(),
                    version=_users.c.version + 1,
                )
            )
        updated = result.rowcount > 0
        if updated:
            account.version += 1
        self._log(verbosity, txn, "update_login_state id=%s applied=%s", account.id, updated)
        return updated

    def set_deleted(self, account_id: int, deleted: bool = True, *, txn: str) -> bool:
        """Soft-delete (or restore) an account. Accounts are never physically removed."""
        with self._transaction(txn, "Error updating account deleted flag.") as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(is_deleted=1 if deleted else 0, updated_on=_now_iso(), version=_users.c.version + 1)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTPs
    # ------------------------------------------------------------------

    def get_active_otp(
        self, email: str, use_case: OtpUseCase, *, txn: str, verbosity: LogVerbosity = LogVerbosity.DEBUG
    ) -> OtpRecord | None:
        """Return the unconsumed OTP for (email, use case), expired or not.

        Expiry is not filtered here so the engine can report EXPIRED rather
        than NOT_FOUND for a stale code.
        """
        with self._transaction(txn, "Error fetching OTP details.") as conn:
            row = conn.execute(
                _otp_storage.select().where(
                    (_otp_storage.c.email == email)
                    & (_otp_storage.c.use_case == int(use_case))
                    & (_otp_storage.c.consumed_at.is_(None))
                )
            ).fetchone()
        self._log(verbosity, txn, "get_active_otp hit=%s", row is not None)
        return _row_to_otp(row) if row is not None else None

    def upsert_otp(self, record: OtpRecord, *, txn: str, verbosity: LogVerbosity = LogVerbosity.DEBUG) -> bool:
        """Create or overwrite the OTP row for (record.email, record.use_case).

        Update-then-insert inside one transaction. A concurrent issuance for
        the same pair that wins the insert surfaces as STORE_DUPLICATE, which
        the caller may retry.
        """
        values = {
            "user_id": record.user_id,
            "otp_hash": record.otp_hash,
            "salt": record.salt,
            "generated_on": _iso(record.generated_on),
            "valid_until": _iso(record.valid_until),
            "attempt_count": record.attempt_count,
            "consumed_at": _iso(record.consumed_at),
        }
        with self._transaction(txn, "Error adding OTP details.") as conn:
            result = conn.execute(
                _otp_storage.update()
                .where((_otp_storage.c.email == record.email) & (_otp_storage.c.use_case == int(record.use_case)))
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(
                    _otp_storage.insert().values(email=record.email, use_case=int(record.use_case), **values)
                )
            record.id = conn.execute(
                select(_otp_storage.c.id).where(
                    (_otp_storage.c.email == record.email) & (_otp_storage.c.use_case == int(record.use_case))
                )
            ).scalar()
        self._log(verbosity, txn, "OTP details stored for use case %s", int(record.use_case))
        return True

    def increment_otp_attempts(self, record_id: int, otp_hash: str, *, txn: str) -> int:
        """Atomically add one to attempt_count; return the new value.

        Conditional on the code that was read (otp_hash) still being the
        unconsumed code on the row. Returns 0 when it was consumed or
        re-issued in the meantime.
        """
        with self._transaction(txn, "Error updating OTP attempt count.") as conn:
            result = conn.execute(
                _otp_storage.update()
                .where(_otp_matches(record_id, otp_hash))
                .values(attempt_count=_otp_storage.c.attempt_count + 1)
            )
            if result.rowcount == 0:
                return 0
            count = conn.execute(
                select(_otp_storage.c.attempt_count).where(_otp_storage.c.id == record_id)
            ).scalar()
        return int(count or 0)

    def consume_otp(self, record_id: int, consumed_at: datetime, *, otp_hash: str, txn: str) -> bool:
        """Mark an OTP consumed.

        False if it was already consumed, re-issued with a different code, or
        is gone.
        """
        with self._transaction(txn, "Error consuming OTP.") as conn:
            return _consume(conn, record_id, otp_hash, consumed_at)

    def consume_otp_and_unlock(self, record: OtpRecord, consumed_at: datetime, *, txn: str) -> bool:
        """Consume an OTP and clear the lock on its account in one transaction.

        Either both writes land or neither does, so a failed unlock leaves the
        code usable. The account write is unconditional and bumps the row
        version, which makes in-flight optimistic login writes re-read.
        Returns False, writing nothing, when the code could not be consumed.
        """
        with self._transaction(txn, "Error unlocking account with OTP.") as conn:
            if not _consume(conn, record.id, record.otp_hash, consumed_at):
                return False
            conn.execute(
                _users.update()
                .where((_users.c.email == record.email) & (_users.c.is_deleted == 0))
                .values(
                    is_locked=0,
                    locked_until=None,
                    login_attempts=0,
                    updated_on=_now_iso(),
                    version=_users.c.version + 1,
                )
            )
        self._log(LogVerbosity.DEBUG, txn, "OTP record %s consumed and account unlocked", record.id)
        return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        salt=row.salt,
        is_active=bool(row.is_active),
        is_locked=bool(row.is_locked),
        is_deleted=bool(row.is_deleted),
        login_attempts=row.login_attempts,
        locked_until=_parse(row.locked_until),
        last_login=_parse(row.last_login),
        role_id=RoleId(row.role_id),
        created_on=_parse(row.created_on),
        updated_on=_parse(row.updated_on),
        version=row.version,
    )


def _row_to_otp(row) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        otp_hash=row.otp_hash,
        salt=row.salt,
        generated_on=_parse(row.generated_on),
        valid_until=_parse(row.valid_until),
        attempt_count=row.attempt_count,
        use_case=OtpUseCase(row.use_case),
        consumed_at=_parse(row.consumed_at),
    )

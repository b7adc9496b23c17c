"""
core/database.py -- SQLAlchemy Core engine, schema and transaction scope.

Pattern: one shared Database object owns the engine and the table
definitions. The directory, ledger, collectible registry and SQL session
store all run their queries through it, so a mint (ledger debit + state
change) or a transfer (two ledger legs) can share a single DB transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  token_balance is only ever changed by a single conditional UPDATE
  ("... WHERE token_balance >= :amount"), so the check and the decrement are
  one statement. PostgreSQL serializes concurrent writers on the row lock.
  SQLite has no row locks; every transaction is opened with BEGIN IMMEDIATE
  so writers queue on the database write lock (bounded by the busy timeout)
  instead of failing half-way through on a lock upgrade.

  A CHECK (token_balance >= 0) constraint backs the invariant at the
  storage layer.

Timeouts:
  Every wait on storage is bounded (SQLite busy timeout, pool checkout
  timeout, PostgreSQL statement/lock timeouts). Timeouts and lost
  connections surface as core.errors.Unavailable -- never as a hang.

Layer rule: core/ imports only stdlib + third-party libraries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from core.errors import Unavailable

logger = logging.getLogger("moodledger.db")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False),
    # Normalized form (NFKC + casefold). Uniqueness is enforced here, not on
    # the display form, so "Alice" and "alice" cannot both register.
    Column("username_key", String(64), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL only for system accounts
    Column("email", String(255)),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("is_premium", Boolean, nullable=False, server_default="0"),
    Column("is_system", Boolean, nullable=False, server_default="0"),
    Column("token_balance", BigInteger, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    CheckConstraint("token_balance >= 0", name="ck_accounts_balance_non_negative"),
)

sessions = Table(
    "sessions",
    metadata,
    # HMAC-SHA256 hex of the session id. The raw id is never stored.
    Column("token_hash", String(64), primary_key=True),
    Column("account_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Index("ix_sessions_account_id", "account_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("delta", BigInteger, nullable=False),
    Column("reason", String(40), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    # Shared by both legs of a transfer or a burn-to-pool credit.
    Column("transaction_id", String(32), nullable=False),
    Column("counterparty_id", Integer),
    Column("created_at", String(32), nullable=False),
    CheckConstraint("delta <> 0", name="ck_ledger_entries_delta_non_zero"),
    Index("ix_ledger_entries_account_created", "account_id", "created_at"),
    Index("ix_ledger_entries_transaction_id", "transaction_id"),
)

collectibles = Table(
    "collectibles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("name", String(200), nullable=False),
    Column("attributes", Text, nullable=False, server_default="{}"),  # JSON object
    Column("state", String(16), nullable=False, server_default="unminted"),
    Column("mint_cost", BigInteger, nullable=False),
    Column("burn_value", BigInteger, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("minted_at", String(32)),
    Column("burned_at", String(32)),
    Column("gifted_to_account_id", Integer),
    Column("gifted_at", String(32)),
    CheckConstraint("state IN ('unminted', 'minted', 'burned')", name="ck_collectibles_state"),
    CheckConstraint("mint_cost > 0", name="ck_collectibles_mint_cost_positive"),
    CheckConstraint("burn_value >= 0", name="ck_collectibles_burn_value_non_negative"),
    Index("ix_collectibles_owner_state", "owner_account_id", "state"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _configure_sqlite(engine: Engine) -> None:
    """Install the per-connection SQLite setup.

    pysqlite's own transaction handling issues a deferred BEGIN lazily; it is
    switched off (isolation_level=None) so the "begin" hook below can emit
    BEGIN IMMEDIATE itself. WAL lets readers proceed during writes. PRAGMAs
    are per-connection, so they are set on every new pool connection.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record) -> None:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Owns the engine and hands out transaction-scoped connections.

    Usage:
        db = Database("sqlite:///moodledger.db")
        with db.transaction() as conn:
            conn.execute(accounts.update()...)
        db.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        self.url = db_url
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout_seconds
        else:
            engine_kwargs["pool_timeout"] = timeout_seconds
            engine_kwargs["pool_pre_ping"] = True
        if db_url.startswith("postgresql"):
            ms = int(timeout_seconds * 1000)
            connect_args["options"] = f"-c statement_timeout={ms} -c lock_timeout={ms}"
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            _configure_sqlite(self.engine)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on success.

        Any exception raised inside the block rolls the whole transaction
        back, so a caller that disconnects or fails mid-operation never
        leaves a partial ledger mutation behind.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            logger.error("Storage unavailable (%s)", exc.__class__.__name__)
            raise Unavailable() from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.error("Storage connection lost")
                raise Unavailable() from exc
            raise

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.transaction() as conn:
                conn.exec_driver_sql("SELECT 1")
        except Unavailable:
            return False
        return True

    def close(self) -> None:
        """Dispose of all pooled connections."""
        self.engine.dispose()

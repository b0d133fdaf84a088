"""
Database Connection Layer

Supports SQLite (dev/test) and PostgreSQL (production) with automatic schema creation.

Locking model:
- PostgreSQL: one dedicated connection per unit of work, row locks taken with
  SELECT ... FOR UPDATE (see Database.for_update()).
- SQLite: units of work start with BEGIN IMMEDIATE, which takes the database
  write lock. Writers are serialized for the whole file, so SQLite is only
  supported for single-node deployments and tests.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from core.errors import TransientError

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stations (
    station_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nozzles (
    nozzle_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    pump_id TEXT,
    nozzle_number INTEGER NOT NULL DEFAULT 1,
    fuel_type TEXT NOT NULL,
    initial_reading TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'active',
    last_reading TEXT,
    last_reading_date TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (station_id) REFERENCES stations(station_id)
);

-- Price time series, never updated
CREATE TABLE IF NOT EXISTS fuel_prices (
    price_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    fuel_type TEXT NOT NULL,
    effective_from TEXT NOT NULL,
    price TEXT NOT NULL,
    cost_price TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (station_id) REFERENCES stations(station_id)
);

CREATE TABLE IF NOT EXISTS nozzle_readings (
    reading_id TEXT PRIMARY KEY,
    nozzle_id TEXT NOT NULL,
    station_id TEXT NOT NULL,
    pump_id TEXT,
    fuel_type TEXT NOT NULL,
    reading_date TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    reading_value TEXT NOT NULL,
    previous_reading TEXT NOT NULL,
    litres_sold TEXT NOT NULL,
    price_per_litre TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    cash_amount TEXT NOT NULL DEFAULT '0',
    online_amount TEXT NOT NULL DEFAULT '0',
    is_initial_reading INTEGER NOT NULL DEFAULT 0,
    transaction_id TEXT,
    notes TEXT,
    entered_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (nozzle_id, sequence),
    FOREIGN KEY (nozzle_id) REFERENCES nozzles(nozzle_id)
);

CREATE TABLE IF NOT EXISTS daily_transactions (
    transaction_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    transaction_date TEXT NOT NULL,
    total_liters TEXT NOT NULL,
    total_sale_value TEXT NOT NULL,
    payment_breakdown TEXT NOT NULL,  -- JSON object
    reading_ids TEXT NOT NULL,  -- JSON array
    credit_allocations TEXT NOT NULL,  -- JSON array
    status TEXT NOT NULL DEFAULT 'submitted',
    notes TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (station_id) REFERENCES stations(station_id)
);

-- A reading can be booked into at most one daily transaction
CREATE TABLE IF NOT EXISTS daily_transaction_readings (
    reading_id TEXT PRIMARY KEY,
    transaction_id TEXT NOT NULL,
    FOREIGN KEY (reading_id) REFERENCES nozzle_readings(reading_id),
    FOREIGN KEY (transaction_id) REFERENCES daily_transactions(transaction_id)
);

CREATE TABLE IF NOT EXISTS creditors (
    creditor_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    name TEXT NOT NULL,
    business_name TEXT,
    phone TEXT,
    credit_limit TEXT NOT NULL DEFAULT '0',
    credit_period_days INTEGER NOT NULL DEFAULT 30,
    current_balance TEXT NOT NULL DEFAULT '0',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_flagged INTEGER NOT NULL DEFAULT 0,
    flag_reason TEXT,
    last_transaction_date TEXT,
    last_payment_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (station_id) REFERENCES stations(station_id)
);

-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    credit_transaction_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    creditor_id TEXT NOT NULL,
    transaction_type TEXT NOT NULL,
    amount TEXT NOT NULL,
    transaction_date TEXT NOT NULL,
    nozzle_reading_id TEXT,
    daily_transaction_id TEXT,
    fuel_type TEXT,
    litres TEXT,
    price_per_litre TEXT,
    vehicle_number TEXT,
    reference_number TEXT,
    notes TEXT,
    entered_by TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (creditor_id) REFERENCES creditors(creditor_id)
);

CREATE TABLE IF NOT EXISTS credit_settlement_links (
    link_id TEXT PRIMARY KEY,
    settlement_id TEXT NOT NULL,
    credit_transaction_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (settlement_id) REFERENCES credit_transactions(credit_transaction_id),
    FOREIGN KEY (credit_transaction_id) REFERENCES credit_transactions(credit_transaction_id)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_nozzles_station ON nozzles(station_id);
CREATE INDEX IF NOT EXISTS idx_prices_lookup ON fuel_prices(station_id, fuel_type, effective_from);
CREATE INDEX IF NOT EXISTS idx_readings_chain ON nozzle_readings(nozzle_id, reading_date, sequence);
CREATE INDEX IF NOT EXISTS idx_readings_station_date ON nozzle_readings(station_id, reading_date);
CREATE INDEX IF NOT EXISTS idx_daily_station_date ON daily_transactions(station_id, transaction_date);
CREATE INDEX IF NOT EXISTS idx_creditors_station ON creditors(station_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_creditor ON credit_transactions(creditor_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_type ON credit_transactions(transaction_type);
CREATE INDEX IF NOT EXISTS idx_links_credit ON credit_settlement_links(credit_transaction_id);
CREATE INDEX IF NOT EXISTS idx_links_settlement ON credit_settlement_links(settlement_id);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stations (
    station_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS nozzles (
    nozzle_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL REFERENCES stations(station_id),
    pump_id TEXT,
    nozzle_number INTEGER NOT NULL DEFAULT 1,
    fuel_type TEXT NOT NULL,
    initial_reading NUMERIC(14, 3) NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    last_reading NUMERIC(14, 3),
    last_reading_date DATE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS fuel_prices (
    price_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL REFERENCES stations(station_id),
    fuel_type TEXT NOT NULL,
    effective_from DATE NOT NULL,
    price NUMERIC(10, 2) NOT NULL,
    cost_price NUMERIC(10, 2),
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS nozzle_readings (
    reading_id TEXT PRIMARY KEY,
    nozzle_id TEXT NOT NULL REFERENCES nozzles(nozzle_id),
    station_id TEXT NOT NULL,
    pump_id TEXT,
    fuel_type TEXT NOT NULL,
    reading_date DATE NOT NULL,
    sequence INTEGER NOT NULL,
    reading_value NUMERIC(14, 3) NOT NULL,
    previous_reading NUMERIC(14, 3) NOT NULL,
    litres_sold NUMERIC(12, 3) NOT NULL,
    price_per_litre NUMERIC(10, 2) NOT NULL,
    total_amount NUMERIC(12, 2) NOT NULL,
    cash_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    online_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    is_initial_reading BOOLEAN NOT NULL DEFAULT FALSE,
    transaction_id TEXT,
    notes TEXT,
    entered_by TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (nozzle_id, sequence)
);

CREATE TABLE IF NOT EXISTS daily_transactions (
    transaction_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL REFERENCES stations(station_id),
    transaction_date DATE NOT NULL,
    total_liters NUMERIC(12, 3) NOT NULL,
    total_sale_value NUMERIC(12, 2) NOT NULL,
    payment_breakdown JSONB NOT NULL,
    reading_ids JSONB NOT NULL,
    credit_allocations JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'submitted',
    notes TEXT,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS daily_transaction_readings (
    reading_id TEXT PRIMARY KEY REFERENCES nozzle_readings(reading_id),
    transaction_id TEXT NOT NULL REFERENCES daily_transactions(transaction_id)
);

CREATE TABLE IF NOT EXISTS creditors (
    creditor_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL REFERENCES stations(station_id),
    name TEXT NOT NULL,
    business_name TEXT,
    phone TEXT,
    credit_limit NUMERIC(12, 2) NOT NULL DEFAULT 0,
    credit_period_days INTEGER NOT NULL DEFAULT 30,
    current_balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_flagged BOOLEAN NOT NULL DEFAULT FALSE,
    flag_reason TEXT,
    last_transaction_date DATE,
    last_payment_date DATE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    credit_transaction_id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    creditor_id TEXT NOT NULL REFERENCES creditors(creditor_id),
    transaction_type TEXT NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    transaction_date DATE NOT NULL,
    nozzle_reading_id TEXT,
    daily_transaction_id TEXT,
    fuel_type TEXT,
    litres NUMERIC(12, 3),
    price_per_litre NUMERIC(10, 2),
    vehicle_number TEXT,
    reference_number TEXT,
    notes TEXT,
    entered_by TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_settlement_links (
    link_id TEXT PRIMARY KEY,
    settlement_id TEXT NOT NULL REFERENCES credit_transactions(credit_transaction_id),
    credit_transaction_id TEXT NOT NULL REFERENCES credit_transactions(credit_transaction_id),
    amount NUMERIC(12, 2) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nozzles_station ON nozzles(station_id);
CREATE INDEX IF NOT EXISTS idx_prices_lookup ON fuel_prices(station_id, fuel_type, effective_from);
CREATE INDEX IF NOT EXISTS idx_readings_chain ON nozzle_readings(nozzle_id, reading_date, sequence);
CREATE INDEX IF NOT EXISTS idx_readings_station_date ON nozzle_readings(station_id, reading_date);
CREATE INDEX IF NOT EXISTS idx_daily_station_date ON daily_transactions(station_id, transaction_date);
CREATE INDEX IF NOT EXISTS idx_creditors_station ON creditors(station_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_creditor ON credit_transactions(creditor_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_type ON credit_transactions(transaction_type);
CREATE INDEX IF NOT EXISTS idx_links_credit ON credit_settlement_links(credit_transaction_id);
CREATE INDEX IF NOT EXISTS idx_links_settlement ON credit_settlement_links(settlement_id);
"""


class IntegrityViolation(Exception):
    """A uniqueness or foreign-key constraint rejected a write."""
    pass


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction():
            db.execute("SELECT * FROM creditors WHERE creditor_id = ?" + db.for_update(), (cid,))
            db.execute("UPDATE creditors SET current_balance = ? WHERE creditor_id = ?", (bal, cid))

    Statements issued outside transaction() autocommit individually.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None, lock_timeout_seconds: Optional[float] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///forecourt.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self.lock_timeout_seconds = lock_timeout_seconds or float(
            os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "30")
        )
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "forecourt.db"

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    def _sqlite_conn(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            db_path = self._get_sqlite_path()
            # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=self.lock_timeout_seconds,
                isolation_level=None,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection in autocommit mode."""
        yield self._sqlite_conn()

    def _postgres_connect(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, committed on exit."""
        conn = self._postgres_connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "tx_depth", 0) > 0

    @contextmanager
    def transaction(self) -> Generator["Database", None, None]:
        """
        Run the enclosed statements as one all-or-nothing unit of work.

        Nested calls on the same thread join the outer unit of work, so a
        service can call another service's atomic operation and both commit
        or roll back together.
        """
        if self.in_transaction:
            self._local.tx_depth += 1
            try:
                yield self
            finally:
                self._local.tx_depth -= 1
            return

        conn = self._begin()
        self._local.tx_conn = conn
        self._local.tx_depth = 1
        try:
            yield self
        except BaseException as exc:
            self._rollback(conn)
            logger.info("transaction_rolled_back", reason=type(exc).__name__)
            raise
        else:
            try:
                self._commit(conn)
            except Exception as exc:
                self._rollback(conn)
                translated = self._translate(exc)
                if translated is None:
                    raise
                raise translated from exc
        finally:
            self._local.tx_conn = None
            self._local.tx_depth = 0
            if self.is_postgres:
                conn.close()

    def _begin(self) -> Any:
        try:
            if self.is_postgres:
                conn = self._postgres_connect()
                cursor = conn.cursor()
                cursor.execute(
                    "SET LOCAL lock_timeout = %s",
                    (f"{int(self.lock_timeout_seconds * 1000)}ms",),
                )
                return conn
            conn = self._sqlite_conn()
            conn.execute("BEGIN IMMEDIATE")
            return conn
        except Exception as exc:
            translated = self._translate(exc)
            if translated is None:
                raise
            raise translated from exc

    def _commit(self, conn: Any) -> None:
        if self.is_postgres:
            conn.commit()
        else:
            conn.execute("COMMIT")

    def _rollback(self, conn: Any) -> None:
        try:
            if self.is_postgres:
                conn.rollback()
            else:
                conn.execute("ROLLBACK")
        except Exception as e:
            logger.error("rollback_failed", error=str(e))

    def for_update(self) -> str:
        """Row-lock clause; SQLite already holds the write lock for the whole unit of work."""
        return " FOR UPDATE" if self.is_postgres else ""

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.connection() as conn:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                conn = self._sqlite_conn()
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _prepare(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _run(self, conn: Any, query: str, params: tuple) -> List[Dict[str, Any]]:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(query, params)
        else:
            cursor = conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        query = self._prepare(query)
        try:
            if self.in_transaction:
                return self._run(self._local.tx_conn, query, params)
            with self.connection() as conn:
                return self._run(conn, query, params)
        except Exception as exc:
            translated = self._translate(exc)
            if translated is None:
                raise
            raise translated from exc

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        query = self._prepare(query)
        try:
            if self.in_transaction:
                conn = self._local.tx_conn
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.executemany(query, params_list)
                    return cursor.rowcount
                return conn.executemany(query, params_list).rowcount
            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.executemany(query, params_list)
                    return cursor.rowcount
                return conn.executemany(query, params_list).rowcount
        except Exception as exc:
            translated = self._translate(exc)
            if translated is None:
                raise
            raise translated from exc

    def _translate(self, exc: Exception) -> Optional[Exception]:
        """Map driver exceptions onto ledger-level ones; None means re-raise as is."""
        if isinstance(exc, sqlite3.IntegrityError):
            return IntegrityViolation(str(exc))
        if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower():
            logger.error("database_lock_timeout", error=str(exc))
            return TransientError("Database is busy, operation rolled back", {"reason": str(exc)})

        if self.is_postgres:
            try:
                import psycopg2
            except ImportError:
                return None
            if isinstance(exc, psycopg2.IntegrityError):
                return IntegrityViolation(str(exc))
            if isinstance(exc, psycopg2.OperationalError):
                logger.error("database_transient_failure", error=str(exc))
                return TransientError("Database unavailable, operation rolled back", {"reason": str(exc)})
        return None

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db

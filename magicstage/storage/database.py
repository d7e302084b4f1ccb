"""
Ledger storage using SQLite.

Correctness features:
- Every mutation runs in an explicit unit of work (BEGIN IMMEDIATE ... COMMIT)
- Writers are serialized by the database write lock, so balance updates on
  the same credit account are linearised
- CHECK constraints keep balances non-negative at the storage level
- Ledger entries are append-only (UPDATE/DELETE rejected by triggers)
- Unique indexes act as idempotency keys (payment events, refunds, commits)

Performance features:
- WAL mode so readers never block the writer
- One short-lived connection per unit of work, run in a worker thread
"""

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from magicstage.resilience.circuit_breakers import with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite error messages that indicate contention or a temporarily unreachable file
_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")


class StoreUnavailableError(Exception):
    """Ledger store could not complete a unit of work (retryable by the caller)."""

    pass


class TransientStoreError(Exception):
    """A single attempt hit a transient SQLite error."""

    pass


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def is_transient_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class UnitOfWork(sqlite3.Connection):
    """
    Connection bound to a single transaction.

    Side effects that must only happen once the transaction is durable
    (metrics, notifications) are registered with after_commit and run by
    LedgerDatabase.transaction after COMMIT succeeds.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.post_commit_callbacks: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        self.post_commit_callbacks.append(callback)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS credit_accounts (
        organization_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'held',
        job_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        FOREIGN KEY (organization_id) REFERENCES credit_accounts(organization_id),
        CHECK (amount > 0),
        CHECK (status IN ('held', 'committed', 'refunded'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        amount INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        reservation_id TEXT,
        related_job_id TEXT,
        related_payment_id TEXT,
        created_at TEXT NOT NULL,

        FOREIGN KEY (organization_id) REFERENCES credit_accounts(organization_id),
        FOREIGN KEY (reservation_id) REFERENCES reservations(reservation_id),
        CHECK (kind IN ('reserve', 'commit', 'refund', 'grant')),
        CHECK (balance_after >= 0),
        CHECK (
            (kind = 'reserve' AND amount < 0)
            OR (kind = 'commit' AND amount = 0)
            OR (kind IN ('refund', 'grant') AND amount > 0)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_events (
        external_event_id TEXT PRIMARY KEY,
        organization_id TEXT,
        payment_id TEXT,
        event_type TEXT NOT NULL,
        credits_granted INTEGER NOT NULL DEFAULT 0,
        amount_cents INTEGER NOT NULL DEFAULT 0,
        currency TEXT,
        status TEXT NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL,

        CHECK (status IN ('applied', 'rejected')),
        CHECK (credits_granted >= 0),
        CHECK (amount_cents >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_jobs (
        job_id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        room_image_ref TEXT NOT NULL,
        prompt TEXT NOT NULL DEFAULT '',
        style TEXT NOT NULL,
        preferences TEXT,
        status TEXT NOT NULL,
        reservation_id TEXT UNIQUE,
        staged_image_url TEXT,
        ai_cost_cents INTEGER,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,

        FOREIGN KEY (organization_id) REFERENCES credit_accounts(organization_id),
        FOREIGN KEY (reservation_id) REFERENCES reservations(reservation_id),
        CHECK (status IN ('pending', 'reserved', 'processing', 'completed', 'failed')),
        CHECK (ai_cost_cents IS NULL OR ai_cost_cents >= 0)
    )
    """,
    # Append-only audit trail
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_no_update
    BEFORE UPDATE ON ledger_entries
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
    BEFORE DELETE ON ledger_entries
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are append-only');
    END
    """,
    # One entry of each settling kind per reservation
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_reserve_per_reservation
    ON ledger_entries(reservation_id) WHERE kind = 'reserve'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_commit_per_reservation
    ON ledger_entries(reservation_id) WHERE kind = 'commit'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_refund_per_reservation
    ON ledger_entries(reservation_id) WHERE kind = 'refund'
    """,
    # A payment can only be credited once, whatever event id it arrives under
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_payment_events_applied_payment
    ON payment_events(payment_id) WHERE status = 'applied' AND payment_id IS NOT NULL
    """,
    # Performance indexes
    "CREATE INDEX IF NOT EXISTS idx_ledger_org ON ledger_entries(organization_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_job ON ledger_entries(related_job_id)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_payment_events_org ON payment_events(organization_id)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_org ON staging_jobs(organization_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON staging_jobs(status, updated_at)",
)


class LedgerDatabase:
    """
    Store handle for the credit ledger and staging jobs.

    Opened at process start and closed at shutdown by the FastAPI lifespan;
    passed explicitly to every component that needs it.

    Every unit of work gets its own connection, so concurrent handlers never
    share a cursor. Writes take the database write lock up front
    (BEGIN IMMEDIATE), which makes read-check-write sequences atomic.
    """

    def __init__(
        self,
        db_path: str = "./data/ledger.db",
        busy_timeout_seconds: float = 5.0,
        transient_retry_attempts: int = 3,
    ):
        """
        Initialize ledger database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the write lock
            transient_retry_attempts: Attempts per unit of work on transient errors
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds
        self.transient_retry_attempts = transient_retry_attempts

        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing ledger database at {self.db_path}")

        conn = self._connect()
        try:
            # WAL must be set outside a transaction
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("BEGIN IMMEDIATE")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.execute("COMMIT")

            logger.info("Ledger database initialized successfully")
            self._initialized = True
            self._closed = False

        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _connect(self) -> UnitOfWork:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_seconds,
            isolation_level=None,  # explicit BEGIN/COMMIT only
            check_same_thread=False,
            factory=UnitOfWork,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("Ledger database is closed")
        if not self._initialized:
            raise StoreUnavailableError("Ledger database is not initialized")

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """
        Run a block as one all-or-nothing unit of work.

        Commits when the block exits normally; rolls back on any exception.
        Registered after_commit callbacks run only after a successful commit.
        """
        self._ensure_open()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        for callback in conn.post_commit_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Post-commit callback failed")

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Consistent read-only view (a deferred transaction that is never committed)."""
        self._ensure_open()
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()

    async def run_in_transaction(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run fn(conn, *args, **kwargs) inside a unit of work in a worker thread.

        Raises:
            StoreUnavailableError: Store closed, or transient errors outlasted the retries
        """

        def work() -> T:
            with self.transaction() as conn:
                return fn(conn, *args, **kwargs)

        return await self._run(work)

    async def run_read(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run fn(conn, *args, **kwargs) against a read snapshot in a worker thread."""

        def work() -> T:
            with self.snapshot() as conn:
                return fn(conn, *args, **kwargs)

        return await self._run(work)

    async def _run(self, work: Callable[[], T]) -> T:
        attempt = with_retry(
            max_attempts=self.transient_retry_attempts,
            exceptions=(TransientStoreError,),
        )(self._run_once)

        try:
            return await attempt(work)
        except TransientStoreError as e:
            logger.error(
                "Ledger store unavailable after retries",
                extra={"attempts": self.transient_retry_attempts, "error": str(e)},
            )
            raise StoreUnavailableError(str(e)) from e

    async def _run_once(self, work: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(work)
        except sqlite3.OperationalError as e:
            if is_transient_error(e):
                logger.warning("Transient ledger store error", extra={"error": str(e)})
                raise TransientStoreError(str(e)) from e
            raise

    async def ping(self) -> bool:
        """Check the store answers a trivial query."""
        return await self.run_read(lambda conn: conn.execute("SELECT 1").fetchone()[0] == 1)

    def close(self) -> None:
        """Close the store; later units of work raise StoreUnavailableError."""
        self._closed = True
        logger.info("Ledger database closed")

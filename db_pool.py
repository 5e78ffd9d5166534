"""SQLite connection pool with explicit write transactions."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` means the store was busy rather than the query was wrong."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections run in autocommit mode (``isolation_level=None``); callers that
    need a read-modify-write to be serializable use :meth:`transaction`, which
    opens ``BEGIN IMMEDIATE`` so the write lock is taken before the first read.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = float(busy_timeout)
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout * 1000)}")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # Limit reached, wait for a connection to come back
                connection = self._pool.get(block=True, timeout=self.busy_timeout * 2)

        try:
            yield connection
        finally:
            try:
                if connection.in_transaction:
                    connection.rollback()
                self._pool.put(connection)
            except Exception as e:
                logger.error("Error returning connection to pool: %s", e)
                try:
                    connection.close()
                except sqlite3.Error:
                    logger.debug("Closing a broken connection failed", exc_info=True)
                with self._lock:
                    self._created_connections -= 1

    @contextmanager
    def transaction(self, immediate: bool = True) -> Generator[sqlite3.Connection, None, None]:
        """Run the block inside one transaction, committing on success.

        ``immediate`` takes the database write lock up front; concurrent writers
        wait up to ``busy_timeout`` instead of failing mid-way with a stale read.
        """
        with self.get_connection() as connection:
            connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield connection
            except BaseException:
                if connection.in_transaction:
                    connection.execute("ROLLBACK")
                raise
            else:
                connection.execute("COMMIT")

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            with self._lock:
                self._created_connections -= 1

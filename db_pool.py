"""Thread-safe SQLite connection pool shared by the request handlers and worker threads."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Full, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Hand out at most ``max_connections`` connections to one database file.

    Connections are opened with ``check_same_thread=False`` because the
    runtime persists attempts from ``asyncio.to_thread`` workers and the
    host serves requests from a thread pool.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @property
    def created_connections(self) -> int:
        return self._created_connections

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back when it is returned."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Opened SQLite connection to %s (total: %d)", self.database, self._created_connections)
            if connection is None:
                connection = self._pool.get(block=True, timeout=self.timeout)

        try:
            yield connection
        finally:
            self._release(connection)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
            self._pool.put(connection, block=False)
        except (sqlite3.Error, Full) as exc:
            logger.error("Discarding SQLite connection to %s: %s", self.database, exc)
            with self._lock:
                self._created_connections -= 1
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing discarded connection failed", exc_info=True)

    def close_all(self) -> None:
        """Close every idle connection; used on shutdown and between tests."""
        closed = 0
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            closed += 1
        with self._lock:
            self._created_connections = max(0, self._created_connections - closed)
        logger.debug("Closed %d pooled connections to %s", closed, self.database)

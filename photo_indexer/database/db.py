"""
Database connection management.

Every thread gets its own SQLite connection, so a reader never sees another
thread's uncommitted writes. Writers are serialized by a process-wide lock.
"""
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from .schema import init_schema
from .ops import DBOperations
from ..exceptions import StorageConnectionError, TransactionError

T = TypeVar('T')


class Transaction:
    """
    One explicit write transaction. Holds the write lock from begin until
    commit or rollback.
    """

    def __init__(self, conn: sqlite3.Connection, write_lock: threading.Lock):
        self.conn = conn
        self.ops = DBOperations(conn)
        self._write_lock = write_lock
        self._open = False

    def begin(self) -> "Transaction":
        self._write_lock.acquire()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.ProgrammingError as e:
            self._write_lock.release()
            raise StorageConnectionError(f"Database connection lost: {e}") from e
        except sqlite3.Error as e:
            self._write_lock.release()
            raise TransactionError(f"Could not begin transaction: {e}") from e
        self._open = True
        return self

    def run(self, mutation: Callable[[DBOperations], T]) -> T:
        """Applies a mutation (a callable taking DBOperations) inside the transaction."""
        if not self._open:
            raise TransactionError("Transaction is not open")
        try:
            return mutation(self.ops)
        except sqlite3.ProgrammingError as e:
            raise StorageConnectionError(f"Database connection lost: {e}") from e
        except sqlite3.Error as e:
            raise TransactionError(str(e)) from e

    def commit(self):
        if not self._open:
            return
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback_quietly()
            raise TransactionError(f"Commit failed: {e}") from e
        finally:
            self._finish()

    def rollback(self):
        if not self._open:
            return
        try:
            self._rollback_quietly()
        finally:
            self._finish()

    def _rollback_quietly(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # Nothing left to undo if SQLite already rolled back on its own
            logging.debug(f"Rollback skipped: {e}")

    def _finish(self):
        if self._open:
            self._open = False
            self._write_lock.release()


class DBManager:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._local = threading.local()
        self._all_conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        # SQLite WAL mode allows multiple readers, but writes need serialization
        self._write_lock = threading.Lock()
        self._schema_ready = False

    def connect(self) -> sqlite3.Connection:
        """
        Returns this thread's connection, opening and configuring it on first use.
        """
        conn: Optional[sqlite3.Connection] = getattr(self._local, 'conn', None)
        if conn is not None:
            return conn

        logging.debug(f"Connecting to database: {self.db_path}")
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None,
                                   check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.Error as e:
            raise StorageConnectionError(f"Cannot open database {self.db_path}: {e}") from e

        if not self._schema_ready:
            with self._write_lock:
                init_schema(conn)
            self._schema_ready = True

        self._local.conn = conn
        with self._conns_lock:
            self._all_conns.append(conn)
        return conn

    def ops(self) -> DBOperations:
        """Read-only access. Only ever sees committed data."""
        return DBOperations(self.connect())

    def begin_transaction(self) -> Transaction:
        return Transaction(self.connect(), self._write_lock).begin()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Commits on success, rolls back on any exception."""
        tx = self.begin_transaction()
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()

    def close(self):
        with self._conns_lock:
            for conn in self._all_conns:
                conn.close()
            self._all_conns.clear()
        self._local = threading.local()

    def __enter__(self) -> "DBManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for thread-safe database operations."""
        return self._write_lock

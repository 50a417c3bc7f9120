import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class Database:
    """Owns the sqlite file holding users, books, borrow records and edit requests.

    One instance is created by the caller and handed to every store; there is no
    module-level connection state. Each operation opens its own connection, and
    mutating operations that touch several rows go through ``transaction()``.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.database_file
        # Serializes transactions, and every use of the shared in-memory connection
        self._lock = threading.RLock()
        # A shared connection keeps an in-memory database alive between calls
        self._memory_conn: Optional[sqlite3.Connection] = None
        if self.db_file == MEMORY:
            self._memory_conn = self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        if self.db_file != MEMORY:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection in autocommit mode for reads and single-row writes."""
        if self._memory_conn is not None:
            with self._lock:
                yield self._memory_conn
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a read-modify-write unit: commit on success, roll back on any error."""
        with self._lock, self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def create_tables(self) -> None:
        """Create the four collections if they do not exist yet."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    full_name TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('ADMIN', 'LIBRARIAN', 'USER')),
                    password_hash TEXT,
                    avatar TEXT,
                    birth_date TEXT,
                    preferences TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    category TEXT,
                    publish_year INTEGER,
                    total_stock INTEGER NOT NULL CHECK(total_stock >= 0),
                    available_stock INTEGER NOT NULL
                        CHECK(available_stock >= 0 AND available_stock <= total_stock),
                    image_url TEXT,
                    description TEXT,
                    language TEXT,
                    translator TEXT,
                    publisher TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            # No foreign keys: records outlive the users and books they snapshot
            conn.execute("""
                CREATE TABLE IF NOT EXISTS borrow_records (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    user_name TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    book_title TEXT NOT NULL,
                    borrow_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL,
                    fine_amount INTEGER NOT NULL DEFAULT 0 CHECK(fine_amount >= 0),
                    notes TEXT,
                    seq INTEGER
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS edit_requests (
                    id TEXT PRIMARY KEY,
                    target_user_id TEXT UNIQUE NOT NULL,
                    target_current_name TEXT,
                    requested_by TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    new_data TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrows_user ON borrow_records(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrows_book ON borrow_records(book_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrows_status ON borrow_records(status)")

    def is_empty(self) -> bool:
        with self.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0

    def close(self) -> None:
        with self._lock:
            if self._memory_conn is not None:
                self._memory_conn.close()
                self._memory_conn = None

    def drop(self) -> None:
        """Close and delete the database file (tests and ``init --reset``)."""
        self.close()
        if self.db_file == MEMORY:
            return
        for path in (self.db_file, self.db_file + "-wal", self.db_file + "-shm"):
            if os.path.exists(path):
                os.remove(path)
        logger.info("Removed database file %s", self.db_file)

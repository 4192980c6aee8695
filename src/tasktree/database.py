"""
SQLite Storage Layer with Pooled Connections

Provides a fixed pool of WAL-mode SQLite connections checked out per request,
explicit transaction control, schema creation, and classification of storage
errors into the application's error taxonomy.
"""

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .exceptions import BadRequestError, InternalError

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_user_logins (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discord_user_logins (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
        client_id TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lists (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        color TEXT NOT NULL CHECK (length(color) = 7),
        parent_id TEXT REFERENCES lists(id) ON DELETE SET NULL,
        CHECK (parent_id IS NULL OR parent_id != id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        list_id TEXT NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
        parent_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        due_at TEXT NOT NULL,
        due_text TEXT NOT NULL,
        completed INTEGER NOT NULL DEFAULT 0 CHECK (completed IN (0, 1)),
        title TEXT NOT NULL,
        description TEXT,
        CHECK (parent_id IS NULL OR parent_id != id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS labels (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        color TEXT NOT NULL CHECK (length(color) = 7)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_labels (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        label_id TEXT NOT NULL REFERENCES labels(id) ON DELETE CASCADE,
        PRIMARY KEY (task_id, label_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        ip TEXT NOT NULL,
        platform TEXT NOT NULL CHECK (platform IN ('web', 'desktop', 'mobile', 'unknown')),
        user_agent TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expire_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_lists_user_id ON lists(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_lists_parent_id ON lists(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_list_id ON tasks(list_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_labels_user_id ON labels(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_task_labels_label_id ON task_labels(label_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_expire ON sessions(user_id, expire_at)",
]

# Children before parents
TABLES = [
    "task_labels",
    "sessions",
    "tasks",
    "labels",
    "lists",
    "discord_user_logins",
    "email_user_logins",
    "users",
]


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """
    Classify sqlite3 errors raised inside the block.

    Constraint violations become ``BadRequestError``; anything else from the
    storage engine becomes ``InternalError``.
    """
    try:
        yield
    except sqlite3.IntegrityError as e:
        logger.warning(f"Constraint violation during {action}: {e}")
        raise BadRequestError(f"Invalid {action} request.") from e
    except sqlite3.Error as e:
        logger.error(f"Storage failure during {action}: {e}")
        raise InternalError(f"Failed to {action} in database.") from e


class Database:
    """
    Pool of SQLite connections with explicit transaction control.

    Features:
    - WAL mode for concurrent readers alongside one writer
    - Per-request connection checkout with guaranteed return
    - Bounded waits: pool checkout and busy locks both honour timeout_seconds
    - Transactions nest by joining the calling thread's open transaction
    """

    def __init__(self, db_path: str, pool_size: int = 5, timeout_seconds: float = 5.0):
        """
        Initialize the pool; the schema is created by ``initialize``.

        Args:
            db_path: Path to SQLite database file
            pool_size: Number of pooled connections
            timeout_seconds: Max wait for a free connection or a database lock
        """
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.db_path = Path(db_path)
        self.pool_size = pool_size
        self.timeout_seconds = timeout_seconds
        self._pool: "queue.Queue[sqlite3.Connection]" = queue.Queue(maxsize=pool_size)
        self._all_connections = []
        self._local = threading.local()
        self._closed = False

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            for _ in range(pool_size):
                conn = self._connect()
                self._all_connections.append(conn)
                self._pool.put(conn)
        except sqlite3.Error as e:
            self.close()
            raise RuntimeError(f"Failed to open database at {self.db_path}: {e}")

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transaction boundaries are issued explicitly
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(self.timeout_seconds * 1000)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        return conn

    def initialize(self, drop_existing: bool = False) -> None:
        """Create the schema, optionally dropping existing tables first."""
        with self.transaction() as conn:
            if drop_existing:
                for table in TABLES:
                    conn.execute(f"DROP TABLE IF EXISTS {table}")
            for ddl in SCHEMA:
                conn.execute(ddl)
        logger.info(f"Database schema ready at {self.db_path}")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Check out a pooled connection; reuses the thread's open transaction."""
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        if self._closed:
            raise InternalError("Database is closed.")
        try:
            conn = self._pool.get(timeout=self.timeout_seconds)
        except queue.Empty:
            logger.error(f"No database connection available after {self.timeout_seconds}s")
            raise InternalError("Could not fetch database.")
        try:
            yield conn
        finally:
            self._pool.put(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the block inside one transaction.

        Commits when the block completes, rolls back on any exception and
        re-raises it. A nested call joins the outer transaction.
        """
        if getattr(self._local, "conn", None) is not None:
            yield self._local.conn
            return

        with self.connection() as conn:
            with storage_errors("begin transaction"):
                conn.execute("BEGIN IMMEDIATE")
            self._local.conn = conn
            try:
                yield conn
            except BaseException:
                self._local.conn = None
                conn.execute("ROLLBACK")
                raise
            self._local.conn = None
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                logger.error(f"Commit failed: {e}")
                raise InternalError("Failed to commit transaction.") from e

    def ping(self) -> bool:
        """Round-trip a trivial query; used by the health check."""
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except (sqlite3.Error, InternalError) as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def prune_all_expired_sessions(self, now: str) -> int:
        """Delete every session whose expiry is at or before ``now``."""
        with self.transaction() as conn:
            with storage_errors("prune sessions"):
                cursor = conn.execute("DELETE FROM sessions WHERE expire_at <= ?", (now,))
        return cursor.rowcount

    def close(self) -> None:
        """Close every pooled connection."""
        self._closed = True
        for conn in self._all_connections:
            conn.close()
        self._all_connections = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_database(db_path: str, pool_size: int = 5, timeout_seconds: float = 5.0,
                  drop_existing: bool = False) -> Database:
    """Open a pool and make sure the schema exists."""
    db = Database(db_path, pool_size=pool_size, timeout_seconds=timeout_seconds)
    db.initialize(drop_existing=drop_existing)
    return db

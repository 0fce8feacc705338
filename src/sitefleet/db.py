"""sqlite schema for entities and the run ledger.

Tables:
    domains       - DNS/SSL lifecycle (written by the domain reconciler)
    sites         - publishing state and autopost configuration
    posts         - scheduled content (status written by the post publisher)
    servers       - hosting servers (health written by the health checker)
    trigger_runs  - run ledger, one row per trigger name
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS domains (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'unchecked',
    last_checked_at TEXT,
    ssl_expires_at TEXT,
    site_id INTEGER,
    check_attempt INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_domains_status ON domains (status);

CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain_id INTEGER REFERENCES domains (id),
    status TEXT NOT NULL DEFAULT 'draft',
    autopost_enabled INTEGER NOT NULL DEFAULT 0,
    autopost_frequency_seconds INTEGER NOT NULL DEFAULT 259200,
    last_autopost_at TEXT,
    publish_target TEXT,
    autopost_post_types TEXT NOT NULL DEFAULT '["article"]',
    autopost_count INTEGER NOT NULL DEFAULT 0,
    autopost_errors INTEGER NOT NULL DEFAULT 0,
    autopost_last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_sites_autopost ON sites (autopost_enabled);

CREATE TABLE IF NOT EXISTS posts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site_id INTEGER NOT NULL REFERENCES sites (id),
    title TEXT NOT NULL DEFAULT '',
    slug TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    post_type TEXT NOT NULL DEFAULT 'article',
    status TEXT NOT NULL DEFAULT 'draft',
    scheduled_at TEXT,
    published_at TEXT,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_posts_due ON posts (status, scheduled_at);

CREATE TABLE IF NOT EXISTS servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_primary INTEGER NOT NULL DEFAULT 0,
    health_status TEXT NOT NULL DEFAULT 'unknown',
    last_health_check_at TEXT,
    unreachable_streak INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS trigger_runs (
    name TEXT PRIMARY KEY,
    running INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    finished_at TEXT,
    last_error TEXT,
    owner TEXT,
    run_count INTEGER NOT NULL DEFAULT 0
);
"""


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they do not exist."""
    conn.executescript(SCHEMA_SQL)


class Database:
    """A sqlite connection shared by the scheduler, the ledger and the pool.

    The connection runs in autocommit mode, so every statement is its own
    transaction and conditional ``UPDATE ... WHERE`` statements act as
    compare-and-swap. Access is serialised through a re-entrant lock because
    worker threads share the connection.

    Example:
        >>> db = Database.open(":memory:")
        >>> db.execute("UPDATE trigger_runs SET running = 1 WHERE name = ?", ("x",))
        0
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path: str | Path = ":memory:") -> Database:
        """Open (and create if needed) the database at *path*."""
        memory = str(path) == ":memory:"
        if not memory:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if not memory:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
        apply_schema(conn)
        return cls(conn)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        with self._lock:
            cursor = self.conn.execute(sql, tuple(params))
            return cursor.rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run an INSERT and return the new row id."""
        with self._lock:
            cursor = self.conn.execute(sql, tuple(params))
            return int(cursor.lastrowid)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """Run several statements as one transaction.

        Holds the connection lock for the whole block, so statements from
        other threads cannot interleave. Commits on exit, rolls back and
        re-raises on error.

        Example:
            >>> with db.transaction():
            ...     db.execute("UPDATE sites SET autopost_count = autopost_count + 1")
            ...     db.insert("INSERT INTO posts (site_id, title) VALUES (?, ?)", (1, "x"))
        """
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

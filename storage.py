# storage.py
import os
import sqlite3
import threading
from contextlib import contextmanager

from models import utcnow, to_iso

DEFAULT_DB_PATH = "scheduler.db"


class Storage:
    def __init__(self, db_path=None):
        self.db_path = db_path or os.environ.get("EVALQ_DB", DEFAULT_DB_PATH)
        # Autocommit; multi-statement work goes through transaction()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for multiple agents
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")

        # One connection is shared between threads
        self._lock = threading.RLock()
        self._depth = 0

        self._init_schema()

    def _init_schema(self):
        # Agents table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            region TEXT NOT NULL,
            visibility TEXT NOT NULL DEFAULT 'public',
            state TEXT NOT NULL DEFAULT 'idle',
            last_seen_at TEXT,
            last_job_at TEXT,
            created_at TEXT NOT NULL
        )
        """)

        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            region TEXT NOT NULL,
            status TEXT NOT NULL,
            owner_agent_id TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            version INTEGER NOT NULL DEFAULT 1,
            priority INTEGER NOT NULL DEFAULT 0,
            config TEXT,
            started_at TEXT,
            finished_at TEXT,
            duration_seconds REAL,
            error TEXT,
            result TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS jobs_status_region_idx ON jobs(status, region)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS jobs_owner_idx ON jobs(owner_agent_id)")

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    @contextmanager
    def transaction(self):
        """Serialize a group of statements; nested calls join the outer transaction."""
        with self._lock:
            outer = self._depth == 0
            if outer:
                # Takes the write lock up front so other processes wait here
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if outer:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outer:
                    self.conn.execute("COMMIT")

    def execute(self, sql, params=()):
        """Run a write statement and return the number of affected rows."""
        with self._lock:
            return self.conn.execute(sql, params).rowcount

    def query(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self):
        self.conn.close()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        rows = self.query("SELECT value FROM config WHERE key=?", (key,))
        return rows[0]["value"] if rows else default

    def set_config(self, key, value):
        now = to_iso(utcnow())
        self.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))

    def list_config(self):
        return self.query("SELECT key, value, updated_at FROM config ORDER BY key")

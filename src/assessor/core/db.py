from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


SCHEMA = """
CREATE TABLE IF NOT EXISTS evaluations (
    id TEXT PRIMARY KEY,
    candidate TEXT NOT NULL,
    suite_refs_json TEXT NOT NULL,
    status TEXT NOT NULL,
    total INTEGER NOT NULL DEFAULT 0,
    completed INTEGER NOT NULL DEFAULT 0,
    passed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    errored INTEGER NOT NULL DEFAULT 0,
    tool_allowlist_json TEXT NOT NULL DEFAULT '[]',
    settings_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS suites (
    id TEXT NOT NULL,
    version TEXT NOT NULL,
    name TEXT,
    content_sha256 TEXT NOT NULL,
    cases_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (id, version)
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    evaluation_id TEXT NOT NULL,
    test_case_id TEXT NOT NULL,
    candidate TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    scheduled_at REAL NOT NULL,
    lease_expires_at REAL,
    lease_token TEXT,
    leased_by TEXT,
    last_error TEXT,
    last_trace_id TEXT,
    created_at REAL NOT NULL,
    finished_at REAL,
    UNIQUE (evaluation_id, test_case_id)
);

CREATE INDEX IF NOT EXISTS ix_jobs_state_scheduled ON jobs (state, scheduled_at);
CREATE INDEX IF NOT EXISTS ix_jobs_evaluation ON jobs (evaluation_id, state);

CREATE TABLE IF NOT EXISTS results (
    evaluation_id TEXT NOT NULL,
    test_case_id TEXT NOT NULL,
    job_id TEXT,
    verdict TEXT NOT NULL,
    output TEXT,
    detail_json TEXT NOT NULL DEFAULT '{}',
    trace_id TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    error_type TEXT,
    error_message TEXT,
    latency_ms REAL,
    usage_json TEXT,
    prompt_sha256 TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (evaluation_id, test_case_id)
);

CREATE TABLE IF NOT EXISTS spans (
    trace_id TEXT NOT NULL,
    span_id TEXT NOT NULL,
    parent_span_id TEXT,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    start_ns INTEGER NOT NULL,
    end_ns INTEGER NOT NULL,
    attributes_json TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (trace_id, span_id)
);
"""


class Database:
    """Shared SQLite handle for the job queue, results store and span table.

    One connection guarded by a re-entrant lock; write transactions use
    BEGIN IMMEDIATE so separate processes sharing the same file serialize too.
    """

    def __init__(self, path: str | Path = ":memory:", *, busy_timeout_s: float = 30.0) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.path,
            timeout=busy_timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._depth = 0
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self._conn.execute("COMMIT")

    def query(self, sql: str, params: tuple | dict = ()) -> list[sqlite3.Row]:
        with self._lock:
            return list(self._conn.execute(sql, params))

    def query_one(self, sql: str, params: tuple | dict = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        with self._lock:
            self._conn.close()

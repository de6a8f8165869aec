from __future__ import annotations

import json
import sqlite3
import time
import uuid
from typing import Any, Callable, Iterable

from assessor.core.db import Database
from assessor.core.errors import truncate_error
from assessor.core.logger import get_logger
from assessor.core.records import Job, JobSpec, JobState
from assessor.core.retry import BackoffPolicy

log = get_logger(__name__)

DiscardListener = Callable[[Job], None]


class JobQueue:
    """Durable at-least-once job queue backed by the ``jobs`` table.

    A job is visible to one worker at a time through a lease. If the worker
    dies without ack/nack, the lease expires and the next ``dequeue`` reclaims
    the job. ``concurrency`` caps the number of simultaneously leased jobs
    regardless of how many workers poll.
    """

    def __init__(
        self,
        db: Database,
        *,
        concurrency: int = 4,
        lease_s: float = 300.0,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if lease_s <= 0:
            raise ValueError("lease_s must be > 0")
        self._db = db
        self.concurrency = concurrency
        self.lease_s = lease_s
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._listeners: list[DiscardListener] = []

    def add_discard_listener(self, fn: DiscardListener) -> None:
        """Register a callback for jobs discarded after exhausting their attempts."""
        self._listeners.append(fn)

    def enqueue(self, spec: JobSpec) -> str:
        return self.enqueue_many([spec])[0]

    def enqueue_many(self, specs: Iterable[JobSpec]) -> list[str]:
        # Idempotent by (evaluation_id, test_case_id): re-enqueueing returns the existing id.
        now = self._clock()
        ids: list[str] = []
        with self._db.transaction() as conn:
            for spec in specs:
                if spec.max_attempts < 1:
                    raise ValueError("max_attempts must be >= 1")
                conn.execute(
                    """
                    INSERT OR IGNORE INTO jobs (
                        id, evaluation_id, test_case_id, candidate, payload_json,
                        state, attempt, max_attempts, scheduled_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        uuid.uuid4().hex,
                        spec.evaluation_id,
                        spec.test_case_id,
                        spec.candidate,
                        json.dumps(spec.payload, ensure_ascii=False),
                        JobState.AVAILABLE.value,
                        spec.max_attempts,
                        now,
                        now,
                    ),
                )
                row = conn.execute(
                    "SELECT id FROM jobs WHERE evaluation_id = ? AND test_case_id = ?",
                    (spec.evaluation_id, spec.test_case_id),
                ).fetchone()
                ids.append(row["id"])
        return ids

    def dequeue(self, worker_id: str = "worker") -> Job | None:
        """Lease the oldest due job, or return None when nothing is leasable.

        Returns None both when the queue is empty and when the lease budget is
        spent; callers poll again later.
        """
        now = self._clock()
        job: Job | None = None
        with self._db.transaction() as conn:
            exhausted = self._reclaim_expired(conn, now)
            leased = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE state = ?",
                (JobState.EXECUTING.value,),
            ).fetchone()[0]
            if leased < self.concurrency:
                row = conn.execute(
                    """
                    SELECT id FROM jobs
                    WHERE state IN (?, ?) AND scheduled_at <= ?
                    ORDER BY scheduled_at ASC, created_at ASC
                    LIMIT 1
                    """,
                    (JobState.AVAILABLE.value, JobState.RETRYABLE.value, now),
                ).fetchone()
                if row is not None:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, attempt = attempt + 1, lease_token = ?,
                            lease_expires_at = ?, leased_by = ?
                        WHERE id = ?
                        """,
                        (
                            JobState.EXECUTING.value,
                            uuid.uuid4().hex,
                            now + self.lease_s,
                            worker_id,
                            row["id"],
                        ),
                    )
                    job = _row_to_job(conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone())

        self._notify(exhausted)
        if job is not None:
            log.debug("job_leased", job_id=job.id, worker=worker_id, attempt=job.attempt)
        return job

    def ack(self, job: Job, outcome: str | None = None) -> bool:
        """Mark a leased job completed. Returns False if the lease was lost."""
        now = self._clock()
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET state = ?, finished_at = ?, lease_expires_at = NULL
                WHERE id = ? AND state = ? AND lease_token = ?
                """,
                (JobState.COMPLETED.value, now, job.id, JobState.EXECUTING.value, job.lease_token),
            )
            acked = cur.rowcount == 1
        if acked:
            job.state = JobState.COMPLETED
            log.debug("job_acked", job_id=job.id, outcome=outcome, attempt=job.attempt)
        else:
            log.warning("stale_ack", job_id=job.id, attempt=job.attempt)
        return acked

    def nack(
        self,
        job: Job,
        error: str,
        *,
        retry_after: float | None = None,
        trace_id: str | None = None,
    ) -> JobState | None:
        """Return a leased job for retry, or discard it once attempts are exhausted.

        Returns the new state, or None if the lease was lost in the meantime.
        """
        now = self._clock()
        message = truncate_error(error)
        discarded: Job | None = None
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND state = ? AND lease_token = ?",
                (job.id, JobState.EXECUTING.value, job.lease_token),
            ).fetchone()
            if row is None:
                log.warning("stale_nack", job_id=job.id, attempt=job.attempt)
                return None
            current = _row_to_job(row)
            if current.attempt >= current.max_attempts:
                new_state = JobState.DISCARDED
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, last_error = ?, last_trace_id = ?, finished_at = ?,
                        lease_expires_at = NULL
                    WHERE id = ?
                    """,
                    (new_state.value, message, trace_id, now, job.id),
                )
                current.state = new_state
                current.last_error = message
                current.last_trace_id = trace_id
                discarded = current
            else:
                new_state = JobState.RETRYABLE
                delay_s = self.backoff.delay(current.attempt, retry_after=retry_after)
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, last_error = ?, last_trace_id = ?, scheduled_at = ?,
                        lease_expires_at = NULL
                    WHERE id = ?
                    """,
                    (new_state.value, message, trace_id, now + delay_s, job.id),
                )

        job.state = new_state
        job.last_error = message
        job.last_trace_id = trace_id
        log.info("job_nacked", job_id=job.id, attempt=job.attempt, state=new_state.value, error=job.last_error)
        if discarded is not None:
            self._notify([discarded])
        return new_state

    def extend_lease(self, job: Job, lease_s: float | None = None) -> bool:
        now = self._clock()
        expires = now + (lease_s if lease_s is not None else self.lease_s)
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET lease_expires_at = ? WHERE id = ? AND state = ? AND lease_token = ?",
                (expires, job.id, JobState.EXECUTING.value, job.lease_token),
            )
            ok = cur.rowcount == 1
        if ok:
            job.lease_expires_at = expires
        return ok

    def discard_pending(self, evaluation_id: str, reason: str = "cancelled") -> int:
        """Discard every not-yet-leased job of an evaluation. Leased jobs are left alone."""
        now = self._clock()
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET state = ?, last_error = ?, finished_at = ?
                WHERE evaluation_id = ? AND state IN (?, ?)
                """,
                (
                    JobState.DISCARDED.value,
                    reason,
                    now,
                    evaluation_id,
                    JobState.AVAILABLE.value,
                    JobState.RETRYABLE.value,
                ),
            )
            return cur.rowcount

    def get(self, job_id: str) -> Job | None:
        row = self._db.query_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row is not None else None

    def get_by_key(self, evaluation_id: str, test_case_id: str) -> Job | None:
        row = self._db.query_one(
            "SELECT * FROM jobs WHERE evaluation_id = ? AND test_case_id = ?",
            (evaluation_id, test_case_id),
        )
        return _row_to_job(row) if row is not None else None

    def jobs_for(self, evaluation_id: str) -> list[Job]:
        rows = self._db.query(
            "SELECT * FROM jobs WHERE evaluation_id = ? ORDER BY created_at, rowid",
            (evaluation_id,),
        )
        return [_row_to_job(r) for r in rows]

    def leased_count(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) AS n FROM jobs WHERE state = ?", (JobState.EXECUTING.value,))
        return int(row["n"])

    def nonterminal_count(self, evaluation_id: str | None = None) -> int:
        terminal = (JobState.COMPLETED.value, JobState.DISCARDED.value)
        if evaluation_id is None:
            row = self._db.query_one("SELECT COUNT(*) AS n FROM jobs WHERE state NOT IN (?, ?)", terminal)
        else:
            row = self._db.query_one(
                "SELECT COUNT(*) AS n FROM jobs WHERE evaluation_id = ? AND state NOT IN (?, ?)",
                (evaluation_id, *terminal),
            )
        return int(row["n"])

    def state_counts(self, evaluation_id: str) -> dict[str, int]:
        rows = self._db.query(
            "SELECT state, COUNT(*) AS n FROM jobs WHERE evaluation_id = ? GROUP BY state",
            (evaluation_id,),
        )
        return {r["state"]: int(r["n"]) for r in rows}

    def discarded_without_result(self, evaluation_id: str) -> list[Job]:
        """Discarded jobs whose evaluation has no stored result for their test case."""
        rows = self._db.query(
            """
            SELECT j.* FROM jobs j
            LEFT JOIN results r
              ON r.evaluation_id = j.evaluation_id AND r.test_case_id = j.test_case_id
            WHERE j.evaluation_id = ? AND j.state = ? AND r.test_case_id IS NULL
            ORDER BY j.created_at, j.rowid
            """,
            (evaluation_id, JobState.DISCARDED.value),
        )
        return [_row_to_job(r) for r in rows]


    def _reclaim_expired(self, conn: sqlite3.Connection, now: float) -> list[Job]:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE state = ? AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?",
            (JobState.EXECUTING.value, now),
        ).fetchall()
        exhausted: list[Job] = []
        for row in rows:
            job = _row_to_job(row)
            error = f"lease expired during attempt {job.attempt} (worker {job.leased_by})"
            if job.attempt >= job.max_attempts:
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, last_error = ?, finished_at = ?, lease_expires_at = NULL
                    WHERE id = ?
                    """,
                    (JobState.DISCARDED.value, error, now, job.id),
                )
                job.state = JobState.DISCARDED
                job.last_error = error
                exhausted.append(job)
            else:
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, last_error = ?, scheduled_at = ?, lease_expires_at = NULL
                    WHERE id = ?
                    """,
                    (JobState.RETRYABLE.value, error, now + self.backoff.delay(job.attempt), job.id),
                )
            log.warning("lease_expired", job_id=job.id, attempt=job.attempt, worker=job.leased_by)
        return exhausted

    def _notify(self, jobs: list[Job]) -> None:
        # Runs after the discard committed. Coordinator.refresh repairs jobs whose listener failed.
        for job in jobs:
            log.warning("job_discarded", job_id=job.id, attempt=job.attempt, error=job.last_error)
            for fn in self._listeners:
                try:
                    fn(job)
                except Exception:
                    log.exception("discard_listener_failed", job_id=job.id, evaluation_id=job.evaluation_id)


def _row_to_job(row: sqlite3.Row) -> Job:
    payload: Any = json.loads(row["payload_json"])
    return Job(
        id=row["id"],
        evaluation_id=row["evaluation_id"],
        test_case_id=row["test_case_id"],
        candidate=row["candidate"],
        payload=payload,
        state=JobState(row["state"]),
        attempt=int(row["attempt"]),
        max_attempts=int(row["max_attempts"]),
        scheduled_at=float(row["scheduled_at"]),
        lease_expires_at=row["lease_expires_at"],
        lease_token=row["lease_token"],
        leased_by=row["leased_by"],
        last_error=row["last_error"],
        last_trace_id=row["last_trace_id"],
    )

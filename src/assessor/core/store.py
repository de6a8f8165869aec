from __future__ import annotations

import hashlib
import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable

from assessor.core.db import Database
from assessor.core.errors import EvaluationNotFoundError, SuiteConflictError
from assessor.core.records import (
    Evaluation,
    EvaluationCounts,
    EvaluationStatus,
    TestCase,
    TestCaseResult,
    TestSuite,
    Verdict,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResultsStore:
    """Evaluations, suite snapshots, per-test-case results and finished spans."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    # -- suites ---------------------------------------------------------------

    def snapshot_suite(self, suite: TestSuite) -> str:
        """Persist an immutable copy of a suite keyed by (id, version).

        Re-snapshotting identical content is a no-op; different content under
        an already-referenced (id, version) raises SuiteConflictError.
        """
        cases_json = json.dumps([c.to_payload() for c in suite.cases], ensure_ascii=False, sort_keys=True)
        sha = hashlib.sha256(cases_json.encode("utf-8")).hexdigest()
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT content_sha256 FROM suites WHERE id = ? AND version = ?",
                (suite.id, suite.version),
            ).fetchone()
            if row is not None:
                if row["content_sha256"] != sha:
                    raise SuiteConflictError(
                        f"Suite {suite.id}@{suite.version} already exists with different content; "
                        "bump the suite version"
                    )
                return sha
            conn.execute(
                "INSERT INTO suites (id, version, name, content_sha256, cases_json, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (suite.id, suite.version, suite.name, sha, cases_json, utc_now()),
            )
        return sha

    def load_suite(self, suite_id: str, version: str) -> TestSuite:
        row = self._db.query_one("SELECT * FROM suites WHERE id = ? AND version = ?", (suite_id, version))
        if row is None:
            raise KeyError(f"Suite not found: {suite_id}@{version}")
        cases = tuple(
            TestCase(
                id=c["id"],
                input=c["input"],
                assertion=c["assertion"],
                tags=tuple(c.get("tags") or ()),
            )
            for c in json.loads(row["cases_json"])
        )
        return TestSuite(id=row["id"], version=row["version"], name=row["name"], cases=cases)

    # -- evaluations ----------------------------------------------------------

    def create_evaluation(self, evaluation: Evaluation) -> bool:
        """Insert a new evaluation. Returns False if the id already exists."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO evaluations (
                    id, candidate, suite_refs_json, status, total,
                    tool_allowlist_json, settings_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    evaluation.id,
                    evaluation.candidate,
                    json.dumps([list(r) for r in evaluation.suite_refs]),
                    evaluation.status.value,
                    evaluation.counts.total,
                    json.dumps(evaluation.tool_allowlist),
                    json.dumps(evaluation.settings, sort_keys=True),
                    evaluation.created_at,
                ),
            )
            return cur.rowcount == 1

    def get_evaluation(self, evaluation_id: str) -> Evaluation:
        row = self._db.query_one("SELECT * FROM evaluations WHERE id = ?", (evaluation_id,))
        if row is None:
            raise EvaluationNotFoundError(evaluation_id)
        return _row_to_evaluation(row)

    def list_evaluations(self, limit: int = 50) -> list[Evaluation]:
        rows = self._db.query("SELECT * FROM evaluations ORDER BY created_at DESC LIMIT ?", (limit,))
        return [_row_to_evaluation(r) for r in rows]

    def mark_running(self, evaluation_id: str, total: int) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE evaluations SET status = ?, total = ? WHERE id = ? AND status IN (?, ?)",
                (
                    EvaluationStatus.RUNNING.value,
                    total,
                    evaluation_id,
                    EvaluationStatus.PENDING.value,
                    EvaluationStatus.RUNNING.value,
                ),
            )
            return cur.rowcount == 1

    def update_progress(
        self,
        evaluation_id: str,
        counts: EvaluationCounts,
        status: EvaluationStatus,
    ) -> bool:
        """Write derived counts/status. Terminal evaluations are never modified."""
        finished_at = utc_now() if status.terminal else None
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE evaluations
                SET status = ?, completed = ?, passed = ?, failed = ?, errored = ?,
                    finished_at = COALESCE(finished_at, ?)
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    status.value,
                    counts.completed,
                    counts.passed,
                    counts.failed,
                    counts.errored,
                    finished_at,
                    evaluation_id,
                    EvaluationStatus.PENDING.value,
                    EvaluationStatus.RUNNING.value,
                ),
            )
            return cur.rowcount == 1

    # -- results --------------------------------------------------------------

    def put_result(self, result: TestCaseResult) -> bool:
        """Idempotent insert keyed by (evaluation_id, test_case_id).

        The first terminal write wins; a duplicate delivery after a crash
        between "work done" and "ack" leaves the stored row untouched.
        Returns True if this call inserted the row.
        """
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO results (
                    evaluation_id, test_case_id, job_id, verdict, output, detail_json,
                    trace_id, attempt, error_type, error_message, latency_ms,
                    usage_json, prompt_sha256, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (evaluation_id, test_case_id) DO NOTHING
                """,
                (
                    result.evaluation_id,
                    result.test_case_id,
                    result.job_id,
                    result.verdict.value,
                    result.output,
                    json.dumps(result.detail, ensure_ascii=False, default=str),
                    result.trace_id,
                    result.attempt,
                    result.error_type,
                    result.error_message,
                    result.latency_ms,
                    json.dumps(result.usage) if result.usage is not None else None,
                    result.prompt_sha256,
                    result.created_at or utc_now(),
                ),
            )
            return cur.rowcount == 1

    def get_result(self, evaluation_id: str, test_case_id: str) -> TestCaseResult | None:
        row = self._db.query_one(
            "SELECT * FROM results WHERE evaluation_id = ? AND test_case_id = ?",
            (evaluation_id, test_case_id),
        )
        return _row_to_result(row) if row is not None else None

    def results_for(self, evaluation_id: str) -> list[TestCaseResult]:
        rows = self._db.query(
            "SELECT * FROM results WHERE evaluation_id = ? ORDER BY created_at, test_case_id",
            (evaluation_id,),
        )
        return [_row_to_result(r) for r in rows]

    def verdicts_for(self, evaluation_id: str) -> list[Verdict]:
        # Only results of jobs fanned out for this evaluation count.
        rows = self._db.query(
            """
            SELECT r.verdict FROM results r
            JOIN jobs j ON j.evaluation_id = r.evaluation_id AND j.test_case_id = r.test_case_id
            WHERE r.evaluation_id = ?
            """,
            (evaluation_id,),
        )
        return [Verdict(r["verdict"]) for r in rows]

    # -- spans ----------------------------------------------------------------

    def put_spans(self, spans: Iterable[dict[str, Any]]) -> None:
        with self._db.transaction() as conn:
            for s in spans:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO spans (
                        trace_id, span_id, parent_span_id, name, status,
                        start_ns, end_ns, attributes_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        s["trace_id"],
                        s["span_id"],
                        s.get("parent_span_id"),
                        s["name"],
                        s["status"],
                        s["start_ns"],
                        s["end_ns"],
                        json.dumps(s.get("attributes") or {}, ensure_ascii=False, default=str),
                    ),
                )

    def spans_for_trace(self, trace_id: str) -> list[dict[str, Any]]:
        rows = self._db.query("SELECT * FROM spans WHERE trace_id = ? ORDER BY start_ns", (trace_id,))
        return [
            {
                "trace_id": r["trace_id"],
                "span_id": r["span_id"],
                "parent_span_id": r["parent_span_id"],
                "name": r["name"],
                "status": r["status"],
                "start_ns": r["start_ns"],
                "end_ns": r["end_ns"],
                "attributes": json.loads(r["attributes_json"]),
            }
            for r in rows
        ]


def _row_to_evaluation(row: sqlite3.Row) -> Evaluation:
    return Evaluation(
        id=row["id"],
        candidate=row["candidate"],
        suite_refs=[(str(a), str(b)) for a, b in json.loads(row["suite_refs_json"])],
        status=EvaluationStatus(row["status"]),
        created_at=row["created_at"],
        finished_at=row["finished_at"],
        counts=EvaluationCounts(
            total=int(row["total"]),
            completed=int(row["completed"]),
            passed=int(row["passed"]),
            failed=int(row["failed"]),
            errored=int(row["errored"]),
        ),
        tool_allowlist=list(json.loads(row["tool_allowlist_json"])),
        settings=dict(json.loads(row["settings_json"])),
    )


def _row_to_result(row: sqlite3.Row) -> TestCaseResult:
    return TestCaseResult(
        evaluation_id=row["evaluation_id"],
        test_case_id=row["test_case_id"],
        job_id=row["job_id"],
        verdict=Verdict(row["verdict"]),
        output=row["output"],
        detail=json.loads(row["detail_json"]),
        trace_id=row["trace_id"],
        attempt=int(row["attempt"]),
        error_type=row["error_type"],
        error_message=row["error_message"],
        latency_ms=row["latency_ms"],
        usage=json.loads(row["usage_json"]) if row["usage_json"] else None,
        prompt_sha256=row["prompt_sha256"],
        created_at=row["created_at"],
    )

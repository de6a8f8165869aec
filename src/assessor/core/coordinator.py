from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Sequence

from assessor.core.aggregate import derive_status, fold_counts
from assessor.core.candidate import CandidateRef
from assessor.core.errors import ConfigError
from assessor.core.logger import get_logger
from assessor.core.queue import JobQueue
from assessor.core.records import (
    Evaluation,
    EvaluationCounts,
    EvaluationStatus,
    Job,
    JobSpec,
    TestCaseResult,
    TestSuite,
    Verdict,
)
from assessor.core.store import ResultsStore, utc_now

log = get_logger(__name__)

FANOUT_CHUNK = 500


@dataclass(frozen=True)
class EvaluationSpec:
    candidate: str
    suites: Sequence[TestSuite]
    evaluation_id: str | None = None
    max_attempts: int = 5
    tool_allowlist: Sequence[str] = ()
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationSummary:
    evaluation_id: str
    status: EvaluationStatus
    counts: EvaluationCounts
    job_states: dict[str, int]

    @property
    def terminal(self) -> bool:
        return self.status.terminal


class Coordinator:
    """Expands evaluations into jobs and folds results into an evaluation verdict."""

    def __init__(self, queue: JobQueue, store: ResultsStore) -> None:
        self.queue = queue
        self.store = store
        queue.add_discard_listener(self._on_job_discarded)

    def start(self, spec: EvaluationSpec) -> str:
        candidate = str(CandidateRef.parse(spec.candidate))
        if not spec.suites:
            raise ConfigError("An evaluation needs at least one suite")
        seen: set[str] = set()
        for suite in spec.suites:
            for case in suite.cases:
                if case.id in seen:
                    raise ConfigError(f"Duplicate test case id across suites: {case.id}")
                seen.add(case.id)
        if not seen:
            raise ConfigError("An evaluation needs at least one test case")

        for suite in spec.suites:
            self.store.snapshot_suite(suite)

        evaluation_id = spec.evaluation_id or uuid.uuid4().hex
        settings = dict(spec.settings)
        settings["max_attempts"] = spec.max_attempts
        created = self.store.create_evaluation(
            Evaluation(
                id=evaluation_id,
                candidate=candidate,
                suite_refs=[s.ref for s in spec.suites],
                status=EvaluationStatus.PENDING,
                created_at=utc_now(),
                counts=EvaluationCounts(total=len(seen)),
                tool_allowlist=list(spec.tool_allowlist),
                settings=settings,
            )
        )
        if not created:
            log.info("evaluation_exists", evaluation_id=evaluation_id)
        self.resume(evaluation_id)
        return evaluation_id

    def resume(self, evaluation_id: str) -> int:
        """(Re-)expand an evaluation from its stored suite snapshots.

        Safe to call after a crash mid-expansion: jobs are keyed by
        (evaluation_id, test_case_id), so already-created jobs are not duplicated.
        Returns the number of jobs the evaluation has.
        """
        evaluation = self.store.get_evaluation(evaluation_id)
        if evaluation.status.terminal:
            return evaluation.counts.total

        max_attempts = int(evaluation.settings.get("max_attempts", 5))
        specs: list[JobSpec] = []
        for suite_id, version in evaluation.suite_refs:
            suite = self.store.load_suite(suite_id, version)
            for case in suite.cases:
                specs.append(
                    JobSpec(
                        evaluation_id=evaluation_id,
                        test_case_id=case.id,
                        candidate=evaluation.candidate,
                        payload={
                            "suite": {"id": suite_id, "version": version},
                            "test_case": case.to_payload(),
                            "tool_allowlist": evaluation.tool_allowlist,
                        },
                        max_attempts=max_attempts,
                    )
                )

        for i in range(0, len(specs), FANOUT_CHUNK):
            # Status check and insert share a transaction so a concurrent cancel
            # either sees this chunk and discards it, or the chunk is skipped.
            with self.store.db.transaction():
                if self.store.get_evaluation(evaluation_id).status is EvaluationStatus.CANCELLED:
                    log.info("fanout_stopped", evaluation_id=evaluation_id, enqueued=i)
                    return i
                self.queue.enqueue_many(specs[i : i + FANOUT_CHUNK])

        self.store.mark_running(evaluation_id, len(specs))
        log.info("evaluation_started", evaluation_id=evaluation_id, jobs=len(specs))
        # Results may already exist when resuming.
        self.refresh(evaluation_id)
        return len(specs)

    def on_result(self, evaluation_id: str, result: TestCaseResult) -> EvaluationSummary:
        self.store.put_result(result)
        return self.refresh(evaluation_id)

    def refresh(self, evaluation_id: str) -> EvaluationSummary:
        """Recompute counts and status by folding over the stored results."""
        # One transaction so concurrent refreshes cannot write stale counts.
        with self.store.db.transaction():
            evaluation = self.store.get_evaluation(evaluation_id)
            if evaluation.status.terminal:
                return self._summary(evaluation)

            for job in self.queue.discarded_without_result(evaluation_id):
                # The discard listener never ran for this job (crash or failed write).
                self.store.put_result(_exhausted_result(job))
                log.warning("exhausted_result_recovered", evaluation_id=evaluation_id, job_id=job.id)

            counts = fold_counts(evaluation.counts.total, self.store.verdicts_for(evaluation_id))
            jobs_terminal = self.queue.nonterminal_count(evaluation_id) == 0
            status = derive_status(counts, jobs_terminal=jobs_terminal)
            if evaluation.status is EvaluationStatus.PENDING:
                # Fan-out not finished; only progress counts move.
                status = EvaluationStatus.PENDING
            finalized = self.store.update_progress(evaluation_id, counts, status) and status.terminal
        if finalized:
            log.info(
                "evaluation_finalized",
                evaluation_id=evaluation_id,
                status=status.value,
                passed=counts.passed,
                failed=counts.failed,
                errored=counts.errored,
            )
        return self.status(evaluation_id)

    def cancel(self, evaluation_id: str) -> EvaluationSummary:
        with self.store.db.transaction():
            evaluation = self.store.get_evaluation(evaluation_id)
            if evaluation.status.terminal:
                return self._summary(evaluation)
            counts = fold_counts(evaluation.counts.total, self.store.verdicts_for(evaluation_id))
            self.store.update_progress(evaluation_id, counts, EvaluationStatus.CANCELLED)
            discarded = self.queue.discard_pending(evaluation_id)
        log.info("evaluation_cancelled", evaluation_id=evaluation_id, discarded=discarded)
        return self.status(evaluation_id)

    def status(self, evaluation_id: str) -> EvaluationSummary:
        return self._summary(self.store.get_evaluation(evaluation_id))

    def _summary(self, evaluation: Evaluation) -> EvaluationSummary:
        return EvaluationSummary(
            evaluation_id=evaluation.id,
            status=evaluation.status,
            counts=evaluation.counts,
            job_states=self.queue.state_counts(evaluation.id),
        )

    def _on_job_discarded(self, job: Job) -> None:
        # A job that ran out of attempts still gets a terminal result so the
        # evaluation can finish instead of hanging in `running`.
        self.on_result(job.evaluation_id, _exhausted_result(job))


def _exhausted_result(job: Job) -> TestCaseResult:
    return TestCaseResult(
        evaluation_id=job.evaluation_id,
        test_case_id=job.test_case_id,
        job_id=job.id,
        verdict=Verdict.ERROR,
        trace_id=job.last_trace_id,
        attempt=job.attempt,
        error_type="retries_exhausted",
        error_message=job.last_error,
        created_at=utc_now(),
    )


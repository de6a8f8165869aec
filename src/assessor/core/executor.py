from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from assessor.core.assertions import AssertionEngine
from assessor.core.errors import (
    AssertionSpecError,
    MalformedInputError,
    PermanentInferenceError,
    TransientInferenceError,
    truncate_error,
)
from assessor.core.logger import get_logger
from assessor.core.queue import JobQueue
from assessor.core.records import Job, JobState, TestCaseResult, Verdict
from assessor.core.store import ResultsStore, utc_now
from assessor.core.tracing import TraceEmitter

log = get_logger(__name__)

ResultCallback = Callable[[str, TestCaseResult], Any]


class ExecState(str, Enum):
    DEQUEUED = "dequeued"
    TRACE_OPENED = "trace_opened"
    INVOKING = "invoking"
    ASSERTING = "asserting"
    RESULT_WRITTEN = "result_written"
    ACKED = "acked"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_PERMANENT = "failed_permanent"


@dataclass
class ExecutionOutcome:
    job_id: str
    evaluation_id: str
    test_case_id: str
    attempt: int
    history: list[ExecState] = field(default_factory=list)
    verdict: Verdict | None = None
    trace_id: str | None = None
    job_state: JobState | None = None
    error: str | None = None

    @property
    def state(self) -> ExecState:
        return self.history[-1]


class Executor:
    """Drives one leased job through trace -> inference -> assertion -> result -> ack.

    Holds no per-job state between calls; run many instances for parallelism.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: ResultsStore,
        gateway: Any,
        assertions: AssertionEngine,
        tracer: TraceEmitter,
        *,
        worker_id: str = "worker-0",
        on_result: ResultCallback | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.gateway = gateway
        self.assertions = assertions
        self.tracer = tracer
        self.worker_id = worker_id
        self.on_result = on_result

    def run_once(self) -> ExecutionOutcome | None:
        """Lease and execute one job. Returns None when nothing was leasable."""
        job = self.queue.dequeue(self.worker_id)
        if job is None:
            return None
        out = _new_outcome(job)
        try:
            return self._execute(job, out)
        except Exception as e:
            # Store or queue failure outside the inference path: hand the job back.
            log.exception("execution_crashed", job_id=job.id, worker=self.worker_id, trace_id=out.trace_id)
            out.history.append(ExecState.FAILED_TRANSIENT)
            out.error = str(e)
            out.job_state = self.queue.nack(
                job, f"executor_error: {type(e).__name__}: {e}", trace_id=out.trace_id
            )
            return out

    def execute(self, job: Job) -> ExecutionOutcome:
        return self._execute(job, _new_outcome(job))

    def _execute(self, job: Job, out: ExecutionOutcome) -> ExecutionOutcome:
        attrs = {
            "job.id": job.id,
            "job.attempt": job.attempt,
            "evaluation.id": job.evaluation_id,
            "test_case.id": job.test_case_id,
            "worker.id": self.worker_id,
        }
        result: TestCaseResult | None = None
        t0 = time.perf_counter()

        with self.tracer.span("test_case.execute", attributes=attrs) as root:
            out.trace_id = root.trace_id
            out.history.append(ExecState.TRACE_OPENED)
            try:
                case = _test_case(job)
                out.history.append(ExecState.INVOKING)
                with self.tracer.span("inference", parent=root) as inference_span:
                    completion = self.gateway.invoke(
                        job.candidate,
                        case["input"],
                        trace_context=inference_span,
                        tool_allowlist=job.payload.get("tool_allowlist") or (),
                    )

                # The grader call may be slow; keep the lease alive before asserting.
                self.queue.extend_lease(job)
                out.history.append(ExecState.ASSERTING)
                kind = case["assertion"].get("kind") if isinstance(case["assertion"], dict) else None
                with self.tracer.span("assertion", parent=root, attributes={"assertion.kind": kind}) as assertion_span:
                    verdict = self.assertions.evaluate(
                        case["assertion"], completion.text, trace_context=assertion_span
                    )
                    assertion_span.set_attribute("verdict", verdict.verdict.value)

                result = TestCaseResult(
                    evaluation_id=job.evaluation_id,
                    test_case_id=job.test_case_id,
                    job_id=job.id,
                    verdict=verdict.verdict,
                    output=completion.text,
                    detail=verdict.detail,
                    trace_id=root.trace_id,
                    attempt=job.attempt,
                    latency_ms=completion.latency_ms,
                    usage=completion.usage,
                    prompt_sha256=completion.prompt_sha256,
                    created_at=utc_now(),
                )
            except TransientInferenceError as e:
                out.history.append(ExecState.FAILED_TRANSIENT)
                out.error = f"{e.error_type}: {e}"
                root.fail(out.error)
                out.job_state = self.queue.nack(
                    job,
                    out.error,
                    retry_after=getattr(e, "retry_after", None),
                    trace_id=root.trace_id,
                )
                log.info(
                    "transient_failure",
                    job_id=job.id,
                    attempt=job.attempt,
                    error_type=e.error_type,
                    job_state=out.job_state.value if out.job_state else None,
                )
                return out
            except (PermanentInferenceError, MalformedInputError, AssertionSpecError) as e:
                out.history.append(ExecState.FAILED_PERMANENT)
                out.error = str(e)
                root.fail(out.error)
                result = TestCaseResult(
                    evaluation_id=job.evaluation_id,
                    test_case_id=job.test_case_id,
                    job_id=job.id,
                    verdict=Verdict.ERROR,
                    trace_id=root.trace_id,
                    attempt=job.attempt,
                    error_type=getattr(e, "error_type", "permanent"),
                    error_message=truncate_error(str(e)),
                    latency_ms=(time.perf_counter() - t0) * 1000.0,
                    created_at=utc_now(),
                )
                log.info("permanent_failure", job_id=job.id, error_type=result.error_type)

            root.set_attribute("verdict", result.verdict.value)
            self.store.put_result(result)
            out.history.append(ExecState.RESULT_WRITTEN)
            if self.queue.ack(job, result.verdict.value):
                out.history.append(ExecState.ACKED)
                out.job_state = JobState.COMPLETED

        out.verdict = result.verdict
        if self.on_result is not None:
            self.on_result(job.evaluation_id, result)
        return out


def _test_case(job: Job) -> dict[str, Any]:
    case = job.payload.get("test_case") if isinstance(job.payload, dict) else None
    if not isinstance(case, dict) or "input" not in case or "assertion" not in case:
        raise MalformedInputError(f"job {job.id} has no usable test case payload")
    return case


def _new_outcome(job: Job) -> ExecutionOutcome:
    return ExecutionOutcome(
        job_id=job.id,
        evaluation_id=job.evaluation_id,
        test_case_id=job.test_case_id,
        attempt=job.attempt,
        history=[ExecState.DEQUEUED],
    )

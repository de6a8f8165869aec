from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from tqdm import tqdm

from assessor.adapters.gateway import ProviderGateway
from assessor.core.assertions import AssertionEngine
from assessor.core.config import RunSettings, load_evaluation_file
from assessor.core.coordinator import Coordinator, EvaluationSpec
from assessor.core.db import Database
from assessor.core.executor import ExecutionOutcome, Executor
from assessor.core.logger import get_logger
from assessor.core.queue import JobQueue
from assessor.core.retry import BackoffPolicy
from assessor.core.store import ResultsStore
from assessor.core.tracing import TraceEmitter

log = get_logger(__name__)


@dataclass
class Runtime:
    db: Database
    store: ResultsStore
    queue: JobQueue
    tracer: TraceEmitter
    coordinator: Coordinator
    gateway: Any
    assertions: AssertionEngine
    settings: RunSettings

    def executor(self, worker_id: str) -> Executor:
        return Executor(
            self.queue,
            self.store,
            self.gateway,
            self.assertions,
            self.tracer,
            worker_id=worker_id,
            on_result=self.coordinator.on_result,
        )

    def close(self) -> None:
        self.tracer.shutdown()
        self.db.close()


def build_runtime(
    db_path: str | Path,
    settings: RunSettings,
    *,
    gateway: Any = None,
    grader: Any = None,
    grader_candidate: str | None = None,
    clock: Callable[[], float] = time.time,
) -> Runtime:
    db = Database(db_path)
    store = ResultsStore(db)
    queue = JobQueue(
        db,
        concurrency=settings.concurrency,
        lease_s=settings.lease_s,
        backoff=BackoffPolicy(base_s=settings.backoff_base_s, max_s=settings.backoff_max_s),
        clock=clock,
    )
    tracer = TraceEmitter(store)
    if gateway is None:
        gateway = ProviderGateway(
            timeout_s=settings.timeout_s,
            max_output_tokens=settings.max_output_tokens,
            temperature=settings.temperature,
        )
    assertions = AssertionEngine(
        grader=grader if grader is not None else gateway,
        grader_candidate=grader_candidate,
        tracer=tracer,
    )
    return Runtime(
        db=db,
        store=store,
        queue=queue,
        tracer=tracer,
        coordinator=Coordinator(queue, store),
        gateway=gateway,
        assertions=assertions,
        settings=settings,
    )


class WorkerPool:
    """Runs ``workers`` independent executors on threads until ``until()`` holds.

    The pool may be larger than the queue's lease budget; surplus workers
    simply find nothing leasable and back off for ``poll_interval_s``.
    """

    def __init__(self, runtime: Runtime, *, workers: int, poll_interval_s: float = 0.2) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.runtime = runtime
        self.workers = workers
        self.poll_interval_s = poll_interval_s
        self.outcomes: list[ExecutionOutcome] = []
        self._lock = threading.Lock()

    def run(self, until: Callable[[], bool], on_tick: Callable[[], None] | None = None) -> list[ExecutionOutcome]:
        stop = threading.Event()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="assessor-worker") as ex:
            futures = [ex.submit(self._work, f"worker-{i}", stop) for i in range(self.workers)]
            try:
                while not until():
                    done, _ = wait(futures, timeout=self.poll_interval_s, return_when=FIRST_EXCEPTION)
                    if done:
                        break
                    if on_tick is not None:
                        on_tick()
            finally:
                stop.set()
            for fut in futures:
                # Re-raise the first worker crash, if any.
                fut.result()
        if on_tick is not None:
            on_tick()
        return list(self.outcomes)

    def _work(self, worker_id: str, stop: threading.Event) -> None:
        executor = self.runtime.executor(worker_id)
        while not stop.is_set():
            outcome = executor.run_once()
            if outcome is None:
                stop.wait(self.poll_interval_s)
                continue
            with self._lock:
                self.outcomes.append(outcome)


def drive_evaluation(
    runtime: Runtime,
    evaluation_id: str,
    *,
    workers: int | None = None,
    progress: bool = True,
) -> list[ExecutionOutcome]:
    coordinator = runtime.coordinator
    total = coordinator.status(evaluation_id).counts.total
    pbar = tqdm(total=total, unit="case", desc="Evaluation", dynamic_ncols=True, disable=not progress)

    def _tick() -> None:
        summary = coordinator.refresh(evaluation_id)
        pbar.update(summary.counts.completed - pbar.n)
        pbar.set_postfix_str(
            f"pass={summary.counts.passed} fail={summary.counts.failed} error={summary.counts.errored}"
        )

    pool = WorkerPool(
        runtime,
        workers=workers or runtime.settings.concurrency,
        poll_interval_s=runtime.settings.poll_interval_s,
    )
    try:
        return pool.run(until=lambda: coordinator.status(evaluation_id).terminal, on_tick=_tick)
    finally:
        pbar.close()


def run_evaluation(
    *,
    evaluation_path: Path,
    db_path: Path,
    candidate_override: str | None,
    concurrency_override: int | None,
    console: Console,
    gateway: Any = None,
    progress: bool = True,
) -> dict:
    spec_file = load_evaluation_file(evaluation_path)
    settings = spec_file.settings
    if concurrency_override is not None:
        settings = RunSettings(**{**settings.as_dict(), "concurrency": concurrency_override}).validate()

    runtime = build_runtime(db_path, settings, gateway=gateway, grader_candidate=spec_file.grader)
    try:
        evaluation_id = runtime.coordinator.start(
            EvaluationSpec(
                candidate=candidate_override or spec_file.candidate,
                suites=spec_file.suites,
                evaluation_id=spec_file.evaluation_id,
                max_attempts=settings.max_attempts,
                tool_allowlist=spec_file.tool_allowlist,
                settings={**settings.as_dict(), "grader": spec_file.grader},
            )
        )
        console.print(f"Started evaluation [bold]{evaluation_id}[/bold]")
        drive_evaluation(runtime, evaluation_id, progress=progress)
        summary = runtime.coordinator.status(evaluation_id)
    finally:
        runtime.close()

    return {
        "evaluation_id": evaluation_id,
        "status": summary.status.value,
        "counts": summary.counts.__dict__,
    }

from __future__ import annotations

import threading

import pytest

from conftest import ManualClock

from assessor.core.db import Database
from assessor.core.queue import JobQueue
from assessor.core.records import JobSpec, JobState
from assessor.core.retry import BackoffPolicy


def _spec(case_id: str, max_attempts: int = 3) -> JobSpec:
    return JobSpec(
        evaluation_id="ev1",
        test_case_id=case_id,
        candidate="ollama:llama3",
        payload={"test_case": {"id": case_id, "input": "hi", "assertion": {"kind": "exact", "expected": "hi"}}},
        max_attempts=max_attempts,
    )


@pytest.fixture
def queue(tmp_path, clock: ManualClock) -> JobQueue:
    db = Database(tmp_path / "q.db")
    yield JobQueue(
        db,
        concurrency=2,
        lease_s=30.0,
        backoff=BackoffPolicy(base_s=2.0, max_s=10.0, jitter=False),
        clock=clock,
    )
    db.close()


def test_enqueue_is_idempotent_per_test_case(queue: JobQueue) -> None:
    first = queue.enqueue(_spec("a"))
    again = queue.enqueue(_spec("a"))
    assert first == again
    assert len(queue.jobs_for("ev1")) == 1


def test_dequeue_never_exceeds_lease_budget(queue: JobQueue) -> None:
    queue.enqueue_many([_spec(c) for c in "abcde"])

    leased = [queue.dequeue("w1"), queue.dequeue("w2")]
    assert all(j is not None for j in leased)
    assert queue.dequeue("w3") is None
    assert queue.leased_count() == 2

    assert queue.ack(leased[0], "pass")
    assert queue.dequeue("w3") is not None
    assert queue.leased_count() == 2


def test_dequeue_leases_and_counts_attempts(queue: JobQueue, clock: ManualClock) -> None:
    queue.enqueue(_spec("a"))
    job = queue.dequeue("w1")
    assert job.state is JobState.EXECUTING
    assert job.attempt == 1
    assert job.leased_by == "w1"
    assert job.lease_expires_at == clock.now + 30.0
    assert queue.dequeue("w2") is None


def test_nack_schedules_retry_with_exponential_backoff(queue: JobQueue, clock: ManualClock) -> None:
    queue.enqueue(_spec("a"))

    job = queue.dequeue("w1")
    assert queue.nack(job, "timeout") is JobState.RETRYABLE
    assert queue.get(job.id).scheduled_at == clock.now + 2.0
    assert queue.dequeue("w1") is None

    clock.advance(2.0)
    job = queue.dequeue("w1")
    assert job.attempt == 2
    queue.nack(job, "timeout")
    assert queue.get(job.id).scheduled_at == clock.now + 4.0


def test_retry_after_hint_raises_the_delay(queue: JobQueue, clock: ManualClock) -> None:
    queue.enqueue(_spec("a"))
    job = queue.dequeue("w1")
    queue.nack(job, "rate limited", retry_after=7.0)
    assert queue.get(job.id).scheduled_at == clock.now + 7.0


def test_exhausted_job_is_discarded_and_reported(queue: JobQueue) -> None:
    reported = []
    queue.add_discard_listener(reported.append)
    queue.enqueue(_spec("a", max_attempts=1))

    job = queue.dequeue("w1")
    assert queue.nack(job, "outage", trace_id="t" * 32) is JobState.DISCARDED

    stored = queue.get(job.id)
    assert stored.state is JobState.DISCARDED
    assert stored.last_error == "outage"
    assert [j.id for j in reported] == [job.id]
    assert reported[0].last_trace_id == "t" * 32
    assert queue.nonterminal_count("ev1") == 0


def test_expired_lease_makes_job_dequeueable_again(queue: JobQueue, clock: ManualClock) -> None:
    queue.enqueue(_spec("a"))
    crashed = queue.dequeue("w1")

    clock.advance(31.0)
    job = queue.dequeue("w2")
    assert job is None  # reclaimed with backoff, not immediately due

    clock.advance(2.0)
    job = queue.dequeue("w2")
    assert job.id == crashed.id
    assert job.attempt == 2
    assert job.leased_by == "w2"
    assert "lease expired" in job.last_error

    # The crashed worker's late ack is rejected; the live lease is untouched.
    assert queue.ack(crashed) is False
    assert queue.get(job.id).state is JobState.EXECUTING
    assert queue.ack(job) is True


def test_expired_lease_on_last_attempt_discards(queue: JobQueue, clock: ManualClock) -> None:
    reported = []
    queue.add_discard_listener(reported.append)
    queue.enqueue(_spec("a", max_attempts=1))
    queue.dequeue("w1")

    clock.advance(31.0)
    assert queue.dequeue("w2") is None
    assert len(reported) == 1
    assert reported[0].state is JobState.DISCARDED


def test_failing_discard_listener_does_not_abort_dequeue(queue: JobQueue, clock: ManualClock) -> None:
    def broken(job):
        raise RuntimeError("database is locked")

    queue.add_discard_listener(broken)
    queue.enqueue(_spec("a", max_attempts=1))
    first = queue.dequeue("w1")
    clock.advance(1.0)
    queue.enqueue(_spec("b"))

    clock.advance(31.0)
    leased = queue.dequeue("w2")

    assert leased is not None
    assert leased.test_case_id == "b"
    assert queue.get(leased.id).state is JobState.EXECUTING
    assert queue.get(first.id).state is JobState.DISCARDED
    assert [j.test_case_id for j in queue.discarded_without_result("ev1")] == ["a"]


def test_extend_lease_keeps_job_leased(queue: JobQueue, clock: ManualClock) -> None:
    queue.enqueue(_spec("a"))
    job = queue.dequeue("w1")
    clock.advance(20.0)
    assert queue.extend_lease(job)
    clock.advance(20.0)
    assert queue.dequeue("w2") is None
    assert queue.get(job.id).state is JobState.EXECUTING


def test_discard_pending_leaves_leased_jobs(queue: JobQueue) -> None:
    queue.enqueue_many([_spec(c) for c in "abc"])
    leased = queue.dequeue("w1")

    assert queue.discard_pending("ev1") == 2
    states = {j.test_case_id: j.state for j in queue.jobs_for("ev1")}
    assert states[leased.test_case_id] is JobState.EXECUTING
    assert sorted(s.value for s in states.values()) == ["discarded", "discarded", "executing"]
    assert queue.ack(leased)


def test_concurrent_workers_respect_budget(tmp_path) -> None:
    db = Database(tmp_path / "threads.db")
    queue = JobQueue(db, concurrency=3, lease_s=60.0)
    queue.enqueue_many([_spec(f"c{i}") for i in range(40)])

    lock = threading.Lock()
    peak = {"leased": 0}

    def worker(name: str) -> None:
        while True:
            job = queue.dequeue(name)
            if job is None:
                if queue.nonterminal_count("ev1") == 0:
                    return
                continue
            with lock:
                peak["leased"] = max(peak["leased"], queue.leased_count())
            queue.ack(job)

    threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert peak["leased"] <= 3
    assert queue.state_counts("ev1") == {"completed": 40}
    db.close()

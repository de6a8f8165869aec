from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class JobState(str, Enum):
    AVAILABLE = "available"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    RETRYABLE = "retryable"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.DISCARDED)


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (EvaluationStatus.PENDING, EvaluationStatus.RUNNING)


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    id: str
    input: Any
    assertion: dict[str, Any]
    tags: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "input": self.input,
            "assertion": self.assertion,
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class TestSuite:
    __test__ = False

    id: str
    version: str
    cases: tuple[TestCase, ...]
    name: str | None = None

    @property
    def ref(self) -> tuple[str, str]:
        return (self.id, self.version)


@dataclass(frozen=True)
class JobSpec:
    evaluation_id: str
    test_case_id: str
    candidate: str
    payload: dict[str, Any]
    max_attempts: int = 5


@dataclass
class Job:
    id: str
    evaluation_id: str
    test_case_id: str
    candidate: str
    payload: dict[str, Any]
    state: JobState
    attempt: int
    max_attempts: int
    scheduled_at: float
    lease_expires_at: float | None = None
    lease_token: str | None = None
    leased_by: str | None = None
    last_error: str | None = None
    last_trace_id: str | None = None


@dataclass
class TestCaseResult:
    __test__ = False

    evaluation_id: str
    test_case_id: str
    verdict: Verdict
    trace_id: str | None
    job_id: str | None = None
    output: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0

    error_type: str | None = None
    error_message: str | None = None

    latency_ms: float | None = None
    # Token usage as reported by the provider; not comparable across candidates.
    usage: dict[str, Any] | None = None
    prompt_sha256: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class EvaluationCounts:
    total: int = 0
    completed: int = 0
    passed: int = 0
    failed: int = 0
    errored: int = 0


@dataclass
class Evaluation:
    id: str
    candidate: str
    suite_refs: list[tuple[str, str]]
    status: EvaluationStatus
    created_at: str
    finished_at: str | None = None
    counts: EvaluationCounts = field(default_factory=EvaluationCounts)
    tool_allowlist: list[str] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


def result_to_json(rec: TestCaseResult) -> dict[str, Any]:
    data = dict(rec.__dict__)
    data["verdict"] = rec.verdict.value
    return data

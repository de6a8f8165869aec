from __future__ import annotations

import pytest

from conftest import make_suite

from assessor.core.db import Database
from assessor.core.errors import EvaluationNotFoundError, SuiteConflictError
from assessor.core.records import Evaluation, EvaluationCounts, EvaluationStatus, TestCaseResult, Verdict
from assessor.core.store import ResultsStore, utc_now


@pytest.fixture
def store(tmp_path) -> ResultsStore:
    db = Database(tmp_path / "store.db")
    yield ResultsStore(db)
    db.close()


def _evaluation(evaluation_id: str = "ev1", total: int = 2) -> Evaluation:
    return Evaluation(
        id=evaluation_id,
        candidate="ollama:llama3",
        suite_refs=[("smoke", "1")],
        status=EvaluationStatus.RUNNING,
        created_at=utc_now(),
        counts=EvaluationCounts(total=total),
        tool_allowlist=["search"],
        settings={"max_attempts": 3},
    )


def _result(verdict: Verdict, output: str, *, case: str = "c1", attempt: int = 1) -> TestCaseResult:
    return TestCaseResult(
        evaluation_id="ev1",
        test_case_id=case,
        verdict=verdict,
        trace_id="a" * 32,
        output=output,
        attempt=attempt,
        usage={"total_tokens": 12},
    )


def test_put_result_first_write_wins(store: ResultsStore) -> None:
    assert store.put_result(_result(Verdict.PASS, "first")) is True
    assert store.put_result(_result(Verdict.FAIL, "second", attempt=2)) is False

    stored = store.get_result("ev1", "c1")
    assert stored.verdict is Verdict.PASS
    assert stored.output == "first"
    assert stored.attempt == 1
    assert stored.usage == {"total_tokens": 12}
    assert len(store.results_for("ev1")) == 1


def test_get_result_missing_returns_none(store: ResultsStore) -> None:
    assert store.get_result("ev1", "nope") is None


def test_suite_snapshot_is_immutable_per_version(store: ResultsStore) -> None:
    v1 = make_suite(("a", "hi", {"kind": "exact", "expected": "hi"}))
    sha = store.snapshot_suite(v1)
    assert store.snapshot_suite(v1) == sha

    edited = make_suite(("a", "hi", {"kind": "exact", "expected": "hello"}))
    with pytest.raises(SuiteConflictError, match="bump the suite version"):
        store.snapshot_suite(edited)

    bumped = make_suite(("a", "hi", {"kind": "exact", "expected": "hello"}), version="2")
    store.snapshot_suite(bumped)
    assert store.load_suite("smoke", "1").cases[0].assertion == {"kind": "exact", "expected": "hi"}
    assert store.load_suite("smoke", "2").cases[0].assertion == {"kind": "exact", "expected": "hello"}


def test_load_missing_suite_raises(store: ResultsStore) -> None:
    with pytest.raises(KeyError):
        store.load_suite("smoke", "9")


def test_evaluation_round_trip(store: ResultsStore) -> None:
    assert store.create_evaluation(_evaluation()) is True
    assert store.create_evaluation(_evaluation()) is False

    ev = store.get_evaluation("ev1")
    assert ev.suite_refs == [("smoke", "1")]
    assert ev.tool_allowlist == ["search"]
    assert ev.settings == {"max_attempts": 3}
    assert ev.counts.total == 2
    assert [e.id for e in store.list_evaluations()] == ["ev1"]


def test_get_unknown_evaluation_raises(store: ResultsStore) -> None:
    with pytest.raises(EvaluationNotFoundError):
        store.get_evaluation("missing")


def test_terminal_evaluation_is_never_updated(store: ResultsStore) -> None:
    store.create_evaluation(_evaluation())
    done = EvaluationCounts(total=2, completed=2, passed=2)
    assert store.update_progress("ev1", done, EvaluationStatus.PASSED) is True
    finished_at = store.get_evaluation("ev1").finished_at
    assert finished_at is not None

    regressed = EvaluationCounts(total=2, completed=2, passed=1, failed=1)
    assert store.update_progress("ev1", regressed, EvaluationStatus.FAILED) is False
    assert store.mark_running("ev1", 5) is False

    ev = store.get_evaluation("ev1")
    assert ev.status is EvaluationStatus.PASSED
    assert ev.counts == done
    assert ev.finished_at == finished_at


def test_spans_are_returned_in_start_order(store: ResultsStore) -> None:
    store.put_spans(
        [
            {"trace_id": "t1", "span_id": "b", "parent_span_id": "a", "name": "child", "status": "ok",
             "start_ns": 20, "end_ns": 30, "attributes": {"k": "v"}},
            {"trace_id": "t1", "span_id": "a", "parent_span_id": None, "name": "root", "status": "ok",
             "start_ns": 10, "end_ns": 40},
            {"trace_id": "t2", "span_id": "c", "name": "other", "status": "ok", "start_ns": 1, "end_ns": 2},
        ]
    )
    spans = store.spans_for_trace("t1")
    assert [s["name"] for s in spans] == ["root", "child"]
    assert spans[1]["attributes"] == {"k": "v"}
    assert spans[0]["attributes"] == {}

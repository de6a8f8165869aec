from __future__ import annotations

import threading

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from assessor.core.db import Database
from assessor.core.store import ResultsStore
from assessor.core.tracing import TraceEmitter


@pytest.fixture
def emitter(tmp_path, monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    db = Database(tmp_path / "spans.db")
    memory = InMemorySpanExporter()
    tracer = TraceEmitter(ResultsStore(db), exporters=[memory])
    yield tracer, memory
    tracer.shutdown()
    db.close()


def test_children_share_the_root_trace(emitter) -> None:
    tracer, _ = emitter
    root = tracer.open_span("root", attributes={"job.id": "j1", "skipped": None})
    child = tracer.open_span("child", parent=root)
    tracer.close_span(child)
    tracer.close_span(root)

    assert len(root.trace_id) == 32
    assert len(root.span_id) == 16
    assert child.trace_id == root.trace_id

    spans = {s["name"]: s for s in tracer.spans_for_trace(root.trace_id)}
    assert set(spans) == {"root", "child"}
    assert spans["child"]["parent_span_id"] == root.span_id
    assert spans["root"]["attributes"] == {"job.id": "j1"}


def test_roots_never_inherit_ambient_context(emitter) -> None:
    tracer, _ = emitter
    with tracer.span("outer"):
        inner = tracer.open_span("independent")
    tracer.close_span(inner)
    spans = tracer.spans_for_trace(inner.trace_id)
    assert [s["name"] for s in spans] == ["independent"]
    assert spans[0]["parent_span_id"] is None


def test_close_span_is_idempotent(emitter) -> None:
    tracer, memory = emitter
    handle = tracer.open_span("once")
    assert tracer.close_span(handle) is True
    assert tracer.close_span(handle, "error", "late") is False
    assert len(memory.get_finished_spans()) == 1
    assert tracer.spans_for_trace(handle.trace_id)[0]["status"] == "ok"


def test_concurrent_close_ends_span_once(emitter) -> None:
    tracer, memory = emitter
    handle = tracer.open_span("racy")
    results = []
    threads = [threading.Thread(target=lambda: results.append(tracer.close_span(handle))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert len(memory.get_finished_spans()) == 1


def test_span_context_manager_records_errors(emitter) -> None:
    tracer, _ = emitter
    with pytest.raises(ValueError):
        with tracer.span("boom") as handle:
            raise ValueError("bad input")
    row = tracer.spans_for_trace(handle.trace_id)[0]
    assert row["status"] == "error"


def test_fail_marks_span_error_on_close(emitter) -> None:
    tracer, memory = emitter
    with tracer.span("soft") as handle:
        handle.fail("timeout: read timed out")
        handle.set_attribute("usage", {"total_tokens": 3})
    finished = memory.get_finished_spans()[0]
    assert finished.status.description == "timeout: read timed out"
    assert finished.attributes["usage"] == "{'total_tokens': 3}"
    assert tracer.spans_for_trace(handle.trace_id)[0]["status"] == "error"


def test_emitter_without_store_still_traces() -> None:
    memory = InMemorySpanExporter()
    tracer = TraceEmitter(exporters=[memory])
    with tracer.span("loose"):
        pass
    assert tracer.spans_for_trace("0" * 32) == []
    assert [s.name for s in memory.get_finished_spans()] == ["loose"]
    tracer.shutdown()

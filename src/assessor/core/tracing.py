"""Trace emitter built on the OpenTelemetry SDK.

Span context is always passed explicitly (``parent=``); nothing here reads or
sets the ambient "current span", so worker threads never see each other's
traces. Finished spans are written synchronously to the results store so a
trace id stored on a TestCaseResult can be queried right away. If
OTEL_EXPORTER_OTLP_ENDPOINT is set, spans are also exported over OTLP/HTTP.
"""
from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.trace import Status, StatusCode

from assessor.core.logger import get_logger
from assessor.core.store import ResultsStore

log = get_logger(__name__)


class StoreSpanExporter(SpanExporter):
    """Writes finished spans into the ``spans`` table."""

    def __init__(self, store: ResultsStore) -> None:
        self._store = store

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        self._store.put_spans(_span_to_row(s) for s in spans)
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        return None


@dataclass
class SpanHandle:
    name: str
    span: Any
    context: Any
    trace_id: str
    span_id: str
    closed: bool = False
    _error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set_attribute(self, key: str, value: Any) -> None:
        if value is None:
            return
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        self.span.set_attribute(key, value)

    def fail(self, message: str) -> None:
        """Record an error status to apply when the span is closed."""
        self._error = message


class TraceEmitter:
    def __init__(
        self,
        store: ResultsStore | None = None,
        *,
        service_name: str = "assessor",
        exporters: Sequence[SpanExporter] = (),
    ) -> None:
        resource = Resource.create({SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", service_name)})
        self._provider = TracerProvider(resource=resource)
        if store is not None:
            self._provider.add_span_processor(SimpleSpanProcessor(StoreSpanExporter(store)))
        for exporter in exporters:
            self._provider.add_span_processor(SimpleSpanProcessor(exporter))
        if os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
            self._provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            log.info("otlp_export_enabled", endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"))
        self._tracer = self._provider.get_tracer("assessor")
        self._store = store

    def open_span(
        self,
        name: str,
        parent: SpanHandle | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> SpanHandle:
        # An empty Context starts a new trace instead of inheriting ambient state.
        ctx = parent.context if parent is not None else otel_context.Context()
        attrs = {k: v for k, v in (attributes or {}).items() if v is not None}
        span = self._tracer.start_span(name, context=ctx, attributes=attrs)
        sc = span.get_span_context()
        return SpanHandle(
            name=name,
            span=span,
            context=trace.set_span_in_context(span, otel_context.Context()),
            trace_id=format(sc.trace_id, "032x"),
            span_id=format(sc.span_id, "016x"),
        )

    def close_span(self, handle: SpanHandle, status: str = "ok", error: str | None = None) -> bool:
        """End a span. Returns False if it was already closed."""
        with handle._lock:
            if handle.closed:
                return False
            message = error or handle._error
            if status == "error" or message:
                handle.span.set_status(Status(StatusCode.ERROR, message))
            else:
                handle.span.set_status(Status(StatusCode.OK))
            handle.span.end()
            handle.closed = True
        return True

    @contextmanager
    def span(
        self,
        name: str,
        parent: SpanHandle | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[SpanHandle]:
        handle = self.open_span(name, parent, attributes)
        try:
            yield handle
        except BaseException as e:
            handle.span.record_exception(e)
            self.close_span(handle, "error", f"{type(e).__name__}: {e}")
            raise
        else:
            self.close_span(handle)

    def spans_for_trace(self, trace_id: str) -> list[dict[str, Any]]:
        if self._store is None:
            return []
        return self._store.spans_for_trace(trace_id)

    def shutdown(self) -> None:
        self._provider.shutdown()


def _span_to_row(span: ReadableSpan) -> dict[str, Any]:
    parent = span.parent
    return {
        "trace_id": format(span.context.trace_id, "032x"),
        "span_id": format(span.context.span_id, "016x"),
        "parent_span_id": format(parent.span_id, "016x") if parent is not None else None,
        "name": span.name,
        "status": span.status.status_code.name.lower(),
        "start_ns": int(span.start_time or 0),
        "end_ns": int(span.end_time or 0),
        "attributes": dict(span.attributes or {}),
    }

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from assessor.adapters.types import Completion
from assessor.core.config import RunSettings
from assessor.core.records import TestCase, TestSuite
from assessor.core.run import build_runtime


class ManualClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """Scripted gateway: each input maps to a list of replies or exceptions.

    Items are consumed in order; the last one repeats forever.
    """

    def __init__(self, script: dict[str, list[Any]], *, delay_s: float = 0.0) -> None:
        self.script = {k: list(v) for k, v in script.items()}
        self.delay_s = delay_s
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def invoke(self, candidate, input_payload, *, trace_context=None, tool_allowlist=()):
        key = input_payload if isinstance(input_payload, str) else input_payload.get("user")
        with self._lock:
            self.calls.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            with self._lock:
                items = self.script[key]
                item = items.pop(0) if len(items) > 1 else items[0]
            if isinstance(item, Exception):
                raise item
            return Completion(text=item, latency_ms=1.0, prompt_sha256="sha")
        finally:
            with self._lock:
                self.in_flight -= 1


def make_suite(*cases: tuple[str, str, dict], suite_id: str = "smoke", version: str = "1") -> TestSuite:
    return TestSuite(
        id=suite_id,
        version=version,
        cases=tuple(TestCase(id=cid, input=inp, assertion=assertion) for cid, inp, assertion in cases),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_runtime(tmp_path, clock):
    runtimes = []

    def _make(gateway, **settings):
        values = {"backoff_base_s": 0.0, "backoff_max_s": 0.0, "poll_interval_s": 0.01}
        values.update(settings)
        rt = build_runtime(tmp_path / "assessor.db", RunSettings(**values), gateway=gateway, clock=clock)
        runtimes.append(rt)
        return rt

    yield _make
    for rt in runtimes:
        rt.close()

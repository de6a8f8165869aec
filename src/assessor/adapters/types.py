from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence


@dataclass(frozen=True)
class CompletionResult:
    text: str
    raw_usage: dict[str, Any] | None
    usage_derived: dict[str, Any] | None


@dataclass(frozen=True)
class Completion:
    """Output of one gateway invocation."""

    text: str
    latency_ms: float
    prompt_sha256: str | None = None
    usage: dict[str, Any] | None = None


class ProviderAdapter(Protocol):
    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        max_output_tokens: int,
        temperature: float,
        timeout_s: float,
    ) -> CompletionResult: ...


class InferenceGateway(Protocol):
    """Invokes a candidate on an input.

    Raises TransientInferenceError / PermanentInferenceError instead of
    returning output when the call fails.
    """

    def invoke(
        self,
        candidate: str,
        input_payload: Any,
        *,
        trace_context: Any = None,
        tool_allowlist: Sequence[str] = (),
    ) -> Completion: ...

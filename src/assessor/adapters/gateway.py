from __future__ import annotations

import time
from typing import Any, Mapping, Sequence

import httpx
from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError

from assessor.adapters.types import Completion, ProviderAdapter
from assessor.core.candidate import CandidateRef
from assessor.core.errors import (
    ConfigError,
    InferenceError,
    PermanentInferenceError,
    RateLimitedError,
    TransientInferenceError,
)
from assessor.core.prompts import render_prompt
from assessor.core.retry import retry_after_seconds


def default_adapters() -> dict[str, ProviderAdapter]:
    from assessor.adapters.azureopenai import AzureOpenAIAdapter
    from assessor.adapters.ollama import OllamaAdapter
    from assessor.adapters.openrouter import OpenRouterAdapter

    return {
        "openrouter": OpenRouterAdapter(),
        "ollama": OllamaAdapter(),
        "azureopenai": AzureOpenAIAdapter(),
    }


class ProviderGateway:
    """Routes ``provider:model`` candidates to provider adapters.

    Every provider failure is translated into the inference error taxonomy:
    timeouts, 429, 5xx and transport errors are transient (the queue retries
    the job); 4xx, bad candidate references and missing credentials are
    permanent (the test case is recorded as an error).
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        *,
        timeout_s: float = 120.0,
        max_output_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> None:
        self.adapters = dict(adapters) if adapters is not None else default_adapters()
        self.timeout_s = timeout_s
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def invoke(
        self,
        candidate: str,
        input_payload: Any,
        *,
        trace_context: Any = None,
        tool_allowlist: Sequence[str] = (),
    ) -> Completion:
        try:
            ref = CandidateRef.parse(candidate)
        except ConfigError as e:
            raise PermanentInferenceError(str(e), error_type="invalid_candidate") from e
        adapter = self.adapters.get(ref.provider)
        if adapter is None:
            raise PermanentInferenceError(f"No adapter for provider {ref.provider}", error_type="invalid_candidate")

        prompt = render_prompt(input_payload)
        if trace_context is not None:
            trace_context.set_attribute("candidate", str(ref))
            trace_context.set_attribute("prompt.sha256", prompt.rendered_sha256)
            if tool_allowlist:
                trace_context.set_attribute("tools.allowed", ",".join(tool_allowlist))

        t0 = time.perf_counter()
        try:
            resp = adapter.complete(
                model=ref.model,
                system=prompt.system,
                user=prompt.user,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                timeout_s=self.timeout_s,
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        latency_ms = (time.perf_counter() - t0) * 1000.0

        if trace_context is not None:
            trace_context.set_attribute("latency_ms", round(latency_ms, 3))
            for key, value in (resp.usage_derived or {}).items():
                trace_context.set_attribute(f"usage.{key}", value)

        return Completion(
            text=resp.text,
            latency_ms=latency_ms,
            prompt_sha256=prompt.rendered_sha256,
            usage=resp.usage_derived,
        )


def classify_provider_error(err: Exception) -> InferenceError:
    if isinstance(err, InferenceError):
        return err
    if isinstance(err, httpx.TimeoutException):
        return TransientInferenceError(f"timeout: {err}", error_type="timeout")
    if isinstance(err, httpx.HTTPStatusError):
        return _classify_status(err.response.status_code, err.response.headers.get("retry-after"), str(err))
    if isinstance(err, httpx.TransportError):
        return TransientInferenceError(f"transport error: {err}", error_type="transport")
    if isinstance(err, HttpResponseError):
        resp = getattr(err, "response", None)
        headers = getattr(resp, "headers", None) or {}
        status = getattr(err, "status_code", None) or 500
        return _classify_status(int(status), headers.get("retry-after"), str(err))
    if isinstance(err, (ServiceRequestError, ServiceResponseError)):
        return TransientInferenceError(f"transport error: {err}", error_type="transport")
    if isinstance(err, RuntimeError):
        # Adapters raise RuntimeError for missing credentials/endpoints.
        return PermanentInferenceError(str(err), error_type="invalid_candidate")
    return TransientInferenceError(f"{type(err).__name__}: {err}", error_type="provider_error")


def _classify_status(status: int, retry_after: str | None, message: str) -> InferenceError:
    if status == 429:
        return RateLimitedError(f"rate limited: {message}", retry_after=retry_after_seconds(retry_after))
    if status >= 500 or status == 408:
        return TransientInferenceError(f"HTTP {status}: {message}", error_type=f"http_{status}")
    return PermanentInferenceError(f"HTTP {status}: {message}", error_type=f"http_{status}")

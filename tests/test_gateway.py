from __future__ import annotations

import httpx
import pytest
from azure.core.exceptions import HttpResponseError, ServiceRequestError

from assessor.adapters.azureopenai import normalize_azure_endpoint
from assessor.adapters.gateway import ProviderGateway, classify_provider_error
from assessor.adapters.types import CompletionResult
from assessor.core.errors import (
    MalformedInputError,
    PermanentInferenceError,
    RateLimitedError,
    TransientInferenceError,
)


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://example.test/chat/completions")
    response = httpx.Response(status, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _Adapter:
    def __init__(self, result: CompletionResult | None = None, error: Exception | None = None) -> None:
        self.result = result or CompletionResult(
            text="60 mph",
            raw_usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
            usage_derived={"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
        )
        self.error = error
        self.calls = []

    def complete(self, **kwargs) -> CompletionResult:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


class _Span:
    def __init__(self) -> None:
        self.attributes = {}

    def set_attribute(self, key, value) -> None:
        self.attributes[key] = value


def test_classify_timeout_is_transient() -> None:
    err = classify_provider_error(httpx.ReadTimeout("read timed out"))
    assert isinstance(err, TransientInferenceError)
    assert err.error_type == "timeout"


def test_classify_429_carries_retry_after() -> None:
    err = classify_provider_error(_status_error(429, {"retry-after": "7"}))
    assert isinstance(err, RateLimitedError)
    assert err.transient
    assert err.retry_after == 7.0


@pytest.mark.parametrize("status", [500, 502, 503, 408])
def test_classify_server_errors_are_transient(status: int) -> None:
    err = classify_provider_error(_status_error(status))
    assert isinstance(err, TransientInferenceError)
    assert err.error_type == f"http_{status}"


@pytest.mark.parametrize("status", [400, 401, 404, 422])
def test_classify_client_errors_are_permanent(status: int) -> None:
    err = classify_provider_error(_status_error(status))
    assert isinstance(err, PermanentInferenceError)
    assert not err.transient


def test_classify_transport_and_azure_errors() -> None:
    assert isinstance(classify_provider_error(httpx.ConnectError("refused")), TransientInferenceError)
    assert isinstance(classify_provider_error(ServiceRequestError("dns")), TransientInferenceError)
    assert isinstance(classify_provider_error(HttpResponseError("boom")), TransientInferenceError)


def test_classify_missing_credentials_is_permanent() -> None:
    err = classify_provider_error(RuntimeError("OPENROUTER_API_KEY is not set"))
    assert isinstance(err, PermanentInferenceError)
    assert err.error_type == "invalid_candidate"


def test_invoke_routes_to_adapter_and_annotates_span() -> None:
    adapter = _Adapter()
    gateway = ProviderGateway({"ollama": adapter}, timeout_s=9.0, max_output_tokens=64, temperature=0.2)
    span = _Span()

    completion = gateway.invoke(
        "ollama:llama3",
        {"system": "Be terse.", "user": "Convert 96 km/h"},
        trace_context=span,
        tool_allowlist=["calculator"],
    )

    assert completion.text == "60 mph"
    assert completion.usage == {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}
    assert len(completion.prompt_sha256) == 64
    assert adapter.calls == [
        {
            "model": "llama3",
            "system": "Be terse.",
            "user": "Convert 96 km/h",
            "max_output_tokens": 64,
            "temperature": 0.2,
            "timeout_s": 9.0,
        }
    ]
    assert span.attributes["candidate"] == "ollama:llama3"
    assert span.attributes["tools.allowed"] == "calculator"
    assert span.attributes["usage.total_tokens"] == 5
    assert "latency_ms" in span.attributes


def test_invoke_translates_adapter_failures() -> None:
    gateway = ProviderGateway({"ollama": _Adapter(error=_status_error(503))})
    with pytest.raises(TransientInferenceError) as exc:
        gateway.invoke("ollama:llama3", "hi")
    assert exc.value.error_type == "http_503"


def test_invoke_rejects_bad_candidates() -> None:
    gateway = ProviderGateway({"ollama": _Adapter()})
    with pytest.raises(PermanentInferenceError) as exc:
        gateway.invoke("llama3", "hi")
    assert exc.value.error_type == "invalid_candidate"
    with pytest.raises(PermanentInferenceError, match="No adapter"):
        gateway.invoke("openrouter:gpt", "hi")


def test_invoke_rejects_malformed_input_before_calling_provider() -> None:
    adapter = _Adapter()
    gateway = ProviderGateway({"ollama": adapter})
    with pytest.raises(MalformedInputError):
        gateway.invoke("ollama:llama3", {"template": "{missing}"})
    assert adapter.calls == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://res.openai.azure.com/openai/v1/", "https://res.openai.azure.com"),
        ("https://res.openai.azure.com/", "https://res.openai.azure.com"),
        ("  ", None),
        (None, None),
    ],
)
def test_normalize_azure_endpoint(raw, expected) -> None:
    assert normalize_azure_endpoint(raw) == expected

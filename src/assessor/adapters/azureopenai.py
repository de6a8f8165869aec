from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from azure.ai.inference import ChatCompletionsClient
from azure.ai.inference.models import SystemMessage, UserMessage
from azure.core.credentials import AzureKeyCredential

from assessor.adapters.types import CompletionResult


class AzureOpenAIAdapter:
    def __init__(self) -> None:
        self.endpoint = normalize_azure_endpoint(os.environ.get("AZURE_OPENAI_ENDPOINT"))
        self.api_key = os.environ.get("AZURE_OPENAI_API_KEY")
        self.api_version = os.environ.get("AZURE_OPENAI_API_VERSION")
        self.deployment = os.environ.get("AZURE_OPENAI_DEPLOYMENT")

    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        max_output_tokens: int,
        temperature: float,
        timeout_s: float,
    ) -> CompletionResult:
        # For Azure the candidate model is the deployment name.
        deployment = model or self.deployment
        for name, value in (
            ("AZURE_OPENAI_ENDPOINT", self.endpoint),
            ("AZURE_OPENAI_API_KEY", self.api_key),
            ("AZURE_OPENAI_API_VERSION", self.api_version),
        ):
            if not value:
                raise RuntimeError(f"{name} is not set")
        if not deployment:
            raise RuntimeError("Azure deployment is not set (AZURE_OPENAI_DEPLOYMENT or azureopenai:<deployment>)")

        client = ChatCompletionsClient(
            endpoint=f"{self.endpoint}/openai/deployments/{deployment}",
            credential=AzureKeyCredential(self.api_key),
            api_version=self.api_version,
        )
        # HttpResponseError (incl. 429) propagates; the gateway classifies it.
        with client:
            resp = client.complete(
                messages=[SystemMessage(content=system), UserMessage(content=user)],
                temperature=temperature,
                max_tokens=max_output_tokens,
                timeout=timeout_s,
            )

        text = ""
        if resp.choices and resp.choices[0].message and resp.choices[0].message.content:
            text = resp.choices[0].message.content

        raw_usage = _usage_to_dict(getattr(resp, "usage", None))
        usage_derived = None
        if raw_usage:
            usage_derived = {
                "input_tokens": raw_usage.get("prompt_tokens"),
                "output_tokens": raw_usage.get("completion_tokens"),
                "total_tokens": raw_usage.get("total_tokens"),
            }
        return CompletionResult(text=text, raw_usage=raw_usage, usage_derived=usage_derived)


def normalize_azure_endpoint(endpoint: str | None) -> str | None:
    """Strip any ``/openai...`` suffix from an Azure resource endpoint.

    https://<resource>.openai.azure.com/openai/v1/ -> https://<resource>.openai.azure.com
    """
    if not endpoint or not endpoint.strip():
        return None
    parts = urlsplit(endpoint.strip())
    path = parts.path or ""
    idx = path.lower().find("/openai")
    if idx != -1:
        path = path[:idx]
    return urlunsplit((parts.scheme, parts.netloc, path.rstrip("/"), "", ""))


def _usage_to_dict(usage: Any) -> dict[str, Any] | None:
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    if hasattr(usage, "as_dict"):
        return usage.as_dict()
    return {k: v for k, v in vars(usage).items() if not k.startswith("_")}

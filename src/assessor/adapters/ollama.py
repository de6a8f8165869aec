from __future__ import annotations

import os
from typing import Any

import httpx

from assessor.adapters.types import CompletionResult


class OllamaAdapter:
    def __init__(self) -> None:
        self.base_url = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")

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
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_output_tokens},
        }

        with httpx.Client(timeout=timeout_s) as client:
            r = client.post(f"{self.base_url}/api/chat", json=payload)
            r.raise_for_status()
            data = r.json()

        if data.get("error"):
            raise RuntimeError(f"ollama error: {data['error']}")

        text = str((data.get("message") or {}).get("content") or "")
        input_tokens = data.get("prompt_eval_count")
        output_tokens = data.get("eval_count")
        total = None
        if input_tokens is not None and output_tokens is not None:
            total = int(input_tokens) + int(output_tokens)

        return CompletionResult(
            text=text,
            raw_usage={"prompt_eval_count": input_tokens, "eval_count": output_tokens},
            usage_derived={"input_tokens": input_tokens, "output_tokens": output_tokens, "total_tokens": total},
        )

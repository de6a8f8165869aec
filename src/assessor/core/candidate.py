from __future__ import annotations

from dataclasses import dataclass

from assessor.core.errors import ConfigError

PROVIDERS = ("openrouter", "ollama", "azureopenai")


@dataclass(frozen=True)
class CandidateRef:
    """The model under evaluation, written ``provider:model``.

    Everything after the first colon is the provider's model name, so
    ``ollama:granite4:3b`` and ``openrouter:vendor/model:free`` are valid.
    For Azure the model name is the deployment.
    """

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"

    @classmethod
    def parse(cls, text: str) -> "CandidateRef":
        head, sep, model = (text or "").partition(":")
        if not sep:
            raise ConfigError(
                f"Candidate must be 'provider:model', got {text!r} (e.g. openrouter:openai/gpt-4o-mini)"
            )
        provider = head.strip().lower()
        model = model.strip()
        if provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider {provider!r}; expected one of {', '.join(PROVIDERS)}")
        if not model:
            raise ConfigError(f"Candidate {text!r} has no model name")
        return cls(provider=provider, model=model)

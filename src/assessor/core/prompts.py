from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any

from assessor.core.errors import MalformedInputError


DEFAULT_SYSTEM = "You are the model under evaluation. Answer the user's request directly."


@dataclass(frozen=True)
class PromptRendered:
    system: str
    user: str
    rendered_sha256: str


def render_prompt(input_payload: Any, *, default_system: str = DEFAULT_SYSTEM) -> PromptRendered:
    """Turn a test case input into a (system, user) message pair.

    Accepted shapes:
    - a plain string (the user message)
    - a mapping with ``user`` or ``prompt`` and an optional ``system``
    - a mapping with ``template`` and ``vars``; ``template`` is rendered with
      ``str.format`` and every placeholder must be supplied

    Anything else raises MalformedInputError, which the executor records as a
    permanent error rather than retrying.
    """
    system = default_system
    if isinstance(input_payload, str):
        user = input_payload
    elif isinstance(input_payload, dict):
        if input_payload.get("system") is not None:
            system = str(input_payload["system"])
        if "template" in input_payload:
            user = _render_template(input_payload["template"], input_payload.get("vars") or {})
        else:
            user = input_payload.get("user")
            if user is None:
                user = input_payload.get("prompt")
            if not isinstance(user, str):
                raise MalformedInputError("input mapping needs a string 'user' or 'prompt'")
    else:
        raise MalformedInputError(f"Unsupported input type: {type(input_payload).__name__}")

    if not user.strip():
        raise MalformedInputError("input is empty")

    sha = hashlib.sha256((system + "\n\n" + user).encode("utf-8")).hexdigest()
    return PromptRendered(system=system, user=user, rendered_sha256=sha)


def _render_template(template: Any, variables: Any) -> str:
    if not isinstance(template, str):
        raise MalformedInputError("'template' must be a string")
    if not isinstance(variables, dict):
        raise MalformedInputError("'vars' must be a mapping")
    try:
        return template.format(**variables)
    except KeyError as e:
        missing = str(e).strip("'")
        raise MalformedInputError(f"template references {{{missing}}} but no such var was given") from e
    except (IndexError, ValueError) as e:
        raise MalformedInputError(f"template could not be rendered: {e}") from e

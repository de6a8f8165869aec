from __future__ import annotations


class AssessorError(Exception):
    pass


class ConfigError(AssessorError, ValueError):
    pass


class InferenceError(AssessorError):
    """Raised by the inference gateway when a candidate call does not produce output."""

    transient = False

    def __init__(self, message: str, *, error_type: str = "inference_error") -> None:
        super().__init__(message)
        self.error_type = error_type


class TransientInferenceError(InferenceError):
    transient = True

    def __init__(self, message: str, *, error_type: str = "transient") -> None:
        super().__init__(message, error_type=error_type)


class RateLimitedError(TransientInferenceError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, error_type="rate_limited")
        self.retry_after = retry_after


class PermanentInferenceError(InferenceError):
    def __init__(self, message: str, *, error_type: str = "permanent") -> None:
        super().__init__(message, error_type=error_type)


class MalformedInputError(AssessorError, ValueError):
    error_type = "malformed_input"


class AssertionSpecError(AssessorError, ValueError):
    error_type = "invalid_assertion"


class SuiteConflictError(AssessorError):
    pass


class EvaluationNotFoundError(AssessorError, KeyError):
    pass


def truncate_error(text: str | None, limit: int = 800) -> str | None:
    if text is None:
        return None
    return text.strip()[:limit] or None

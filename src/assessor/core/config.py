from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from assessor.core.errors import ConfigError
from assessor.core.records import TestCase, TestSuite


@dataclass(frozen=True)
class RunSettings:
    max_attempts: int = 5
    backoff_base_s: float = 1.0
    backoff_max_s: float = 60.0
    lease_s: float = 300.0
    concurrency: int = 4
    timeout_s: float = 120.0
    max_output_tokens: int = 1024
    temperature: float = 0.0
    poll_interval_s: float = 0.2

    def validate(self) -> "RunSettings":
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be >= 1")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be >= 1")
        if self.lease_s <= self.timeout_s:
            raise ConfigError("lease_s must be greater than timeout_s, or live jobs get re-leased")
        if self.backoff_base_s < 0 or self.backoff_max_s < self.backoff_base_s:
            raise ConfigError("backoff_base_s must be >= 0 and <= backoff_max_s")
        return self

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_stored(cls, values: dict[str, Any]) -> "RunSettings":
        known = set(cls().__dict__)
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass(frozen=True)
class EvaluationFile:
    evaluation_id: str | None
    candidate: str
    suites: list[TestSuite]
    tool_allowlist: list[str] = field(default_factory=list)
    grader: str | None = None
    settings: RunSettings = field(default_factory=RunSettings)


_ENV_OVERRIDES = {
    "ASSESSOR_MAX_ATTEMPTS": ("max_attempts", int),
    "ASSESSOR_CONCURRENCY": ("concurrency", int),
    "ASSESSOR_LEASE_S": ("lease_s", float),
    "ASSESSOR_TIMEOUT_S": ("timeout_s", float),
}


def load_evaluation_file(path: Path) -> EvaluationFile:
    raw = _read_yaml(path)

    candidate = str(raw.get("candidate") or "").strip()
    if not candidate:
        raise ConfigError("candidate is required (provider:model)")

    suite_paths = _parse_str_list(raw.get("suites"), "suites")
    if not suite_paths:
        raise ConfigError("suites must list at least one suite file")
    suites = []
    for p in suite_paths:
        suite_path = (path.parent / p).resolve()
        if not suite_path.exists():
            raise FileNotFoundError(f"suite not found: {suite_path}")
        suites.append(load_suite_file(suite_path))

    return EvaluationFile(
        evaluation_id=str(raw["id"]) if raw.get("id") else None,
        candidate=candidate,
        suites=suites,
        tool_allowlist=_parse_str_list(raw.get("tools"), "tools"),
        grader=str(raw["grader"]) if raw.get("grader") else None,
        settings=settings_from_mapping(raw.get("defaults") or {}),
    )


def load_suite_file(path: Path) -> TestSuite:
    raw = _read_yaml(path)
    suite_id = str(raw.get("id") or path.stem)
    version = str(raw.get("version") or "1")

    cases_raw = raw.get("cases")
    if not isinstance(cases_raw, list) or not cases_raw:
        raise ConfigError(f"{path}: 'cases' must be a non-empty list")

    cases: list[TestCase] = []
    seen: set[str] = set()
    for i, c in enumerate(cases_raw):
        if not isinstance(c, dict):
            raise ConfigError(f"{path}: case #{i} must be a mapping")
        case_id = str(c.get("id") or f"{suite_id}-{i:04d}")
        if case_id in seen:
            raise ConfigError(f"{path}: duplicate case id {case_id}")
        seen.add(case_id)
        if "input" not in c:
            raise ConfigError(f"{path}: case {case_id} has no input")
        # Assertions are validated at execution time so a bad one becomes an
        # error result for that case instead of blocking the whole evaluation.
        assertion = c.get("assert", c.get("assertion"))
        cases.append(
            TestCase(
                id=case_id,
                input=c["input"],
                assertion=assertion if isinstance(assertion, dict) else {"kind": None, "value": assertion},
                tags=tuple(_parse_str_list(c.get("tags"), "tags")),
            )
        )

    return TestSuite(id=suite_id, version=version, name=raw.get("name"), cases=tuple(cases))


def settings_from_mapping(values: dict[str, Any], *, environ: dict[str, str] | None = None) -> RunSettings:
    base = RunSettings()
    known = set(base.__dict__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown defaults: {', '.join(unknown)}")

    updates: dict[str, Any] = {}
    for name, value in values.items():
        updates[name] = type(getattr(base, name))(value)

    env = os.environ if environ is None else environ
    for var, (name, cast) in _ENV_OVERRIDES.items():
        if env.get(var):
            updates[name] = cast(env[var])

    return replace(base, **updates).validate()


def _read_yaml(path: Path) -> dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be a YAML mapping")
    return raw


def _parse_str_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [x.strip() for x in value.split(",") if x.strip()]
    if isinstance(value, list):
        return [str(x) for x in value]
    raise ConfigError(f"Expected {what} to be a list or comma-separated string")

"""Assertion engine.

Assertions are tagged variants: a test case declares ``{"kind": "...", ...}``
and ``parse_assertion`` selects the registered class for that kind. Every
variant implements ``evaluate(output, ctx) -> AssertionOutcome``. A mismatch
is a normal ``fail`` verdict; only a malformed or unknown assertion raises
(``AssertionSpecError``), which the executor records as an ``error`` result.
"""
from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from jsonschema import validators
from jsonschema.exceptions import SchemaError

from assessor.core.code_extract import extract_first_code_block
from assessor.core.errors import AssertionSpecError
from assessor.core.records import Verdict


@dataclass(frozen=True)
class AssertionOutcome:
    verdict: Verdict
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS


@dataclass(frozen=True)
class AssertionContext:
    grader: Any = None
    grader_candidate: str | None = None
    tracer: Any = None
    span: Any = None


ASSERTION_KINDS: dict[str, type["Assertion"]] = {}


def register_assertion(cls: type["Assertion"]) -> type["Assertion"]:
    for name in (cls.kind, *cls.aliases):
        ASSERTION_KINDS[name] = cls
    return cls


class Assertion:
    kind: ClassVar[str] = ""
    aliases: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def from_spec(cls, raw: dict[str, Any]) -> "Assertion":
        params = {k: v for k, v in raw.items() if k != "kind"}
        known = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(set(params) - set(known))
        if unknown:
            raise AssertionSpecError(f"{cls.kind}: unknown field(s) {', '.join(unknown)}")
        for name, f in known.items():
            no_default = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
            if no_default and name not in params:
                raise AssertionSpecError(f"{cls.kind}: missing required field '{name}'")
        return cls(**params)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        raise NotImplementedError


def parse_assertion(raw: Any) -> Assertion:
    if isinstance(raw, Assertion):
        return raw
    if not isinstance(raw, dict):
        raise AssertionSpecError(f"assertion must be a mapping, got {type(raw).__name__}")
    kind = raw.get("kind")
    if not isinstance(kind, str) or not kind:
        raise AssertionSpecError("assertion is missing 'kind'")
    cls = ASSERTION_KINDS.get(kind)
    if cls is None:
        raise AssertionSpecError(f"unknown assertion kind: {kind}")
    try:
        return cls.from_spec(raw)
    except TypeError as e:
        raise AssertionSpecError(f"{kind}: {e}") from e


def _require_str(kind: str, name: str, value: Any) -> None:
    if not isinstance(value, str):
        raise AssertionSpecError(f"{kind}: '{name}' must be a string")


def _outcome(ok: bool, **detail: Any) -> AssertionOutcome:
    return AssertionOutcome(verdict=Verdict.PASS if ok else Verdict.FAIL, detail=detail)


@register_assertion
@dataclass(frozen=True)
class ExactMatch(Assertion):
    kind: ClassVar[str] = "exact"
    aliases: ClassVar[tuple[str, ...]] = ("exact_match", "equals")

    expected: str
    strip: bool = True
    case_sensitive: bool = True

    def __post_init__(self) -> None:
        _require_str(self.kind, "expected", self.expected)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        actual, expected = output or "", self.expected
        if self.strip:
            actual, expected = actual.strip(), expected.strip()
        if not self.case_sensitive:
            actual, expected = actual.casefold(), expected.casefold()
        return _outcome(actual == expected, expected=self.expected, actual=(output or "")[:500])


@register_assertion
@dataclass(frozen=True)
class Contains(Assertion):
    kind: ClassVar[str] = "contains"
    aliases: ClassVar[tuple[str, ...]] = ("substring",)

    substring: str
    case_sensitive: bool = True

    def __post_init__(self) -> None:
        _require_str(self.kind, "substring", self.substring)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        haystack, needle = output or "", self.substring
        if not self.case_sensitive:
            haystack, needle = haystack.casefold(), needle.casefold()
        return _outcome(needle in haystack, substring=self.substring)


@register_assertion
@dataclass(frozen=True)
class NotContains(Assertion):
    kind: ClassVar[str] = "not_contains"

    substring: str
    case_sensitive: bool = True

    def __post_init__(self) -> None:
        _require_str(self.kind, "substring", self.substring)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        haystack, needle = output or "", self.substring
        if not self.case_sensitive:
            haystack, needle = haystack.casefold(), needle.casefold()
        return _outcome(needle not in haystack, substring=self.substring)


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


@register_assertion
@dataclass(frozen=True)
class RegexMatch(Assertion):
    kind: ClassVar[str] = "regex"

    pattern: str
    flags: str = ""

    def __post_init__(self) -> None:
        _require_str(self.kind, "pattern", self.pattern)
        self.compiled()

    def compiled(self) -> re.Pattern[str]:
        flags = 0
        for ch in self.flags:
            if ch not in _REGEX_FLAGS:
                raise AssertionSpecError(f"regex: unsupported flag '{ch}'")
            flags |= _REGEX_FLAGS[ch]
        try:
            return re.compile(self.pattern, flags)
        except re.error as e:
            raise AssertionSpecError(f"regex: invalid pattern: {e}") from e

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        m = self.compiled().search(output or "")
        return _outcome(m is not None, pattern=self.pattern, match=m.group(0) if m else None)


@register_assertion
@dataclass(frozen=True)
class JsonSchema(Assertion):
    kind: ClassVar[str] = "json_schema"
    aliases: ClassVar[tuple[str, ...]] = ("schema",)

    schema: dict[str, Any]
    extract: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.schema, dict):
            raise AssertionSpecError("json_schema: 'schema' must be a mapping")
        try:
            self.validator_cls().check_schema(self.schema)
        except SchemaError as e:
            raise AssertionSpecError(f"json_schema: invalid schema: {e.message}") from e

    def validator_cls(self) -> type[Any]:
        return validators.validator_for(self.schema)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        text = output or ""
        if self.extract:
            block = extract_first_code_block(text, "json")
            if block is not None:
                text = block
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            return _outcome(False, reason="invalid_json", error=str(e))
        validator = self.validator_cls()(self.schema)
        errors = sorted(validator.iter_errors(value), key=lambda err: err.json_path)
        return _outcome(not errors, violations=[f"{err.json_path}: {err.message}" for err in errors[:20]])


JUDGE_SYSTEM = (
    "You are grading another model's response against a rubric.\n"
    "Reply with PASS or FAIL on the first line, then one short sentence explaining why."
)


@register_assertion
@dataclass(frozen=True)
class Judge(Assertion):
    """Delegated judgment: a grader model decides whether the output meets a rubric."""

    kind: ClassVar[str] = "judge"
    aliases: ClassVar[tuple[str, ...]] = ("llm_judge",)

    rubric: str
    grader: str | None = None

    def __post_init__(self) -> None:
        _require_str(self.kind, "rubric", self.rubric)

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        candidate = self.grader or ctx.grader_candidate
        if ctx.grader is None or not candidate:
            raise AssertionSpecError("judge: no grader configured")

        request = {
            "system": JUDGE_SYSTEM,
            "user": f"Rubric:\n{self.rubric}\n\nResponse:\n{output or ''}",
        }
        if ctx.tracer is not None:
            with ctx.tracer.span("grader.inference", parent=ctx.span, attributes={"grader": candidate}) as span:
                reply = ctx.grader.invoke(candidate, request, trace_context=span)
        else:
            reply = ctx.grader.invoke(candidate, request)

        lines = [ln.strip() for ln in (reply.text or "").splitlines() if ln.strip()]
        first = lines[0].upper() if lines else ""
        reason = " ".join(lines[1:])[:500] or None
        if first.startswith("PASS"):
            return _outcome(True, grader=candidate, reason=reason)
        if first.startswith("FAIL"):
            return _outcome(False, grader=candidate, reason=reason)
        return _outcome(False, grader=candidate, reason="unparseable grader reply", reply=(reply.text or "")[:500])


class _Composite(Assertion):
    assertions: tuple[Assertion, ...]

    @classmethod
    def from_spec(cls, raw: dict[str, Any]) -> "Assertion":
        children = raw.get("assertions")
        if not isinstance(children, list) or not children:
            raise AssertionSpecError(f"{cls.kind}: 'assertions' must be a non-empty list")
        extra = sorted(set(raw) - {"kind", "assertions"})
        if extra:
            raise AssertionSpecError(f"{cls.kind}: unknown field(s) {', '.join(extra)}")
        return cls(assertions=tuple(parse_assertion(c) for c in children))

    def _children(self, output: str, ctx: AssertionContext) -> list[AssertionOutcome]:
        return [a.evaluate(output, ctx) for a in self.assertions]


@register_assertion
@dataclass(frozen=True)
class AllOf(_Composite):
    kind: ClassVar[str] = "all_of"

    assertions: tuple[Assertion, ...]

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        outcomes = self._children(output, ctx)
        return _outcome(
            all(o.passed for o in outcomes),
            children=[{"verdict": o.verdict.value, **o.detail} for o in outcomes],
        )


@register_assertion
@dataclass(frozen=True)
class AnyOf(_Composite):
    kind: ClassVar[str] = "any_of"

    assertions: tuple[Assertion, ...]

    def evaluate(self, output: str, ctx: AssertionContext) -> AssertionOutcome:
        outcomes = self._children(output, ctx)
        return _outcome(
            any(o.passed for o in outcomes),
            children=[{"verdict": o.verdict.value, **o.detail} for o in outcomes],
        )


class AssertionEngine:
    """Evaluates a test case's assertion against an already-computed output."""

    def __init__(self, *, grader: Any = None, grader_candidate: str | None = None, tracer: Any = None) -> None:
        self.grader = grader
        self.grader_candidate = grader_candidate
        self.tracer = tracer

    def evaluate(self, assertion: Any, output: str, *, trace_context: Any = None) -> AssertionOutcome:
        try:
            parsed = parse_assertion(assertion)
        except AssertionSpecError:
            raise
        except Exception as e:
            raise AssertionSpecError(f"malformed assertion: {type(e).__name__}: {e}") from e
        ctx = AssertionContext(
            grader=self.grader,
            grader_candidate=self.grader_candidate,
            tracer=self.tracer,
            span=trace_context,
        )
        outcome = parsed.evaluate(output, ctx)
        return AssertionOutcome(verdict=outcome.verdict, detail={"kind": parsed.kind, **outcome.detail})

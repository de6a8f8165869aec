from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Iterator

from assessor.core.records import TestCaseResult, Verdict, result_to_json


def select_results(results: Iterable[TestCaseResult], only: str | None = None) -> list[TestCaseResult]:
    if only is None:
        return list(results)
    wanted = Verdict(only)
    return [r for r in results if r.verdict is wanted]


def write_results_jsonl(path: Path, results: Iterable[TestCaseResult], *, only: str | None = None) -> int:
    """Export results as JSON lines, one per test case.

    Replaces any previous export at ``path`` so re-exporting a finished
    evaluation is repeatable. ``only`` keeps a single verdict.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with path.open("w", encoding="utf-8") as f:
        for rec in select_results(results, only):
            f.write(json.dumps(result_to_json(rec), ensure_ascii=False))
            f.write("\n")
            n += 1
    return n


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)

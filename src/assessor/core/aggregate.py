from __future__ import annotations

from typing import Iterable

from assessor.core.records import EvaluationCounts, EvaluationStatus, Verdict


def fold_counts(total: int, verdicts: Iterable[Verdict]) -> EvaluationCounts:
    passed = failed = errored = 0
    for v in verdicts:
        if v is Verdict.PASS:
            passed += 1
        elif v is Verdict.FAIL:
            failed += 1
        else:
            errored += 1
    return EvaluationCounts(
        total=total,
        completed=passed + failed + errored,
        passed=passed,
        failed=failed,
        errored=errored,
    )


def derive_status(counts: EvaluationCounts, *, jobs_terminal: bool) -> EvaluationStatus:
    """Evaluation status as a pure function of terminal results.

    Stays ``running`` until every job is terminal and every test case has a
    result. Then: any error verdict -> errored, else any fail -> failed, else
    passed.
    """
    if not jobs_terminal or counts.completed < counts.total:
        return EvaluationStatus.RUNNING
    if counts.errored:
        return EvaluationStatus.ERRORED
    if counts.failed:
        return EvaluationStatus.FAILED
    return EvaluationStatus.PASSED

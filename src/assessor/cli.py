from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from assessor.core.config import RunSettings, load_evaluation_file
from assessor.core.coordinator import EvaluationSpec, EvaluationSummary
from assessor.core.dotenv import load_dotenv_if_present
from assessor.core.logger import init_logger
from assessor.core.run import build_runtime, drive_evaluation, run_evaluation
from assessor.core.storage import select_results, write_results_jsonl

DEFAULT_DB = ".assessor/assessor.db"


def _print_summary(console: Console, summary: EvaluationSummary) -> None:
    table = Table(title=f"Evaluation {summary.evaluation_id}")
    table.add_column("status")
    for name in ("total", "completed", "passed", "failed", "errored"):
        table.add_column(name, justify="right")
    c = summary.counts
    table.add_row(summary.status.value, *(str(v) for v in (c.total, c.completed, c.passed, c.failed, c.errored)))
    console.print(table)
    if summary.job_states:
        console.print("jobs: " + ", ".join(f"{k}={v}" for k, v in sorted(summary.job_states.items())))


def _runtime(args: argparse.Namespace, settings: RunSettings | None = None, grader: str | None = None):
    return build_runtime(Path(args.db), settings or RunSettings(), grader_candidate=grader)


def _cmd_run(args: argparse.Namespace) -> int:
    console = Console()
    result = run_evaluation(
        evaluation_path=Path(args.evaluation),
        db_path=Path(args.db),
        candidate_override=args.candidate,
        concurrency_override=args.concurrency,
        console=console,
        progress=not args.no_progress,
    )
    counts = result["counts"]
    console.print(
        f"Evaluation {result['evaluation_id']} finished: [bold]{result['status']}[/bold] "
        f"(total={counts['total']}, passed={counts['passed']}, failed={counts['failed']}, "
        f"errored={counts['errored']})"
    )
    return 0 if result["status"] == "passed" else 1


def _cmd_start(args: argparse.Namespace) -> int:
    console = Console()
    spec_file = load_evaluation_file(Path(args.evaluation))
    runtime = _runtime(args, spec_file.settings, spec_file.grader)
    try:
        evaluation_id = runtime.coordinator.start(
            EvaluationSpec(
                candidate=args.candidate or spec_file.candidate,
                suites=spec_file.suites,
                evaluation_id=spec_file.evaluation_id,
                max_attempts=spec_file.settings.max_attempts,
                tool_allowlist=spec_file.tool_allowlist,
                settings={**spec_file.settings.as_dict(), "grader": spec_file.grader},
            )
        )
    finally:
        runtime.close()
    console.print(evaluation_id)
    return 0


def _cmd_work(args: argparse.Namespace) -> int:
    console = Console()
    runtime = _runtime(args)
    try:
        evaluation = runtime.store.get_evaluation(args.evaluation_id)
    finally:
        runtime.close()

    # Workers use the settings the evaluation was started with.
    settings = RunSettings.from_stored(evaluation.settings)
    runtime = _runtime(args, settings, args.grader or evaluation.settings.get("grader"))
    try:
        runtime.coordinator.resume(args.evaluation_id)
        drive_evaluation(runtime, args.evaluation_id, workers=args.workers, progress=not args.no_progress)
        _print_summary(console, runtime.coordinator.status(args.evaluation_id))
    finally:
        runtime.close()
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    console = Console()
    runtime = _runtime(args)
    try:
        if args.evaluation_id:
            summary = runtime.coordinator.refresh(args.evaluation_id)
            if args.json:
                console.print_json(
                    json.dumps(
                        {
                            "evaluation_id": summary.evaluation_id,
                            "status": summary.status.value,
                            "counts": summary.counts.__dict__,
                            "jobs": summary.job_states,
                        }
                    )
                )
            else:
                _print_summary(console, summary)
        else:
            table = Table(title="Evaluations")
            for col in ("id", "candidate", "status", "completed/total", "created"):
                table.add_column(col)
            for ev in runtime.store.list_evaluations():
                table.add_row(
                    ev.id, ev.candidate, ev.status.value, f"{ev.counts.completed}/{ev.counts.total}", ev.created_at
                )
            console.print(table)
    finally:
        runtime.close()
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    console = Console()
    runtime = _runtime(args)
    try:
        _print_summary(console, runtime.coordinator.cancel(args.evaluation_id))
    finally:
        runtime.close()
    return 0


def _cmd_results(args: argparse.Namespace) -> int:
    console = Console()
    runtime = _runtime(args)
    try:
        results = runtime.store.results_for(args.evaluation_id)
    finally:
        runtime.close()

    if args.out:
        n = write_results_jsonl(Path(args.out), results, only=args.only)
        console.print(f"Wrote {n} results to {args.out}")
        return 0

    table = Table(title=f"Results for {args.evaluation_id}")
    for col in ("test case", "verdict", "attempt", "error", "trace"):
        table.add_column(col)
    style = {"pass": "green", "fail": "yellow", "error": "red"}
    for r in select_results(results, args.only):
        table.add_row(
            r.test_case_id,
            f"[{style[r.verdict.value]}]{r.verdict.value}[/]",
            str(r.attempt),
            r.error_type or "",
            r.trace_id or "",
        )
    console.print(table)
    return 0


def _cmd_trace(args: argparse.Namespace) -> int:
    console = Console()
    runtime = _runtime(args)
    try:
        spans = runtime.store.spans_for_trace(args.trace_id)
    finally:
        runtime.close()
    if not spans:
        console.print(f"No spans for trace {args.trace_id}")
        return 1

    nodes: dict[str, Tree] = {}
    root = Tree(f"trace {args.trace_id}")
    for s in spans:
        ms = (s["end_ns"] - s["start_ns"]) / 1e6
        label = f"{s['name']} [{s['status']}] {ms:.1f}ms"
        parent = nodes.get(s["parent_span_id"] or "", root)
        nodes[s["span_id"]] = parent.add(label)
    console.print(root)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="assessor")
    parser.add_argument("--db", default=None, help=f"SQLite database path (default: ASSESSOR_DB or {DEFAULT_DB})")
    parser.add_argument("--env-file", default=None, help="Load this file instead of searching for .env")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING (default: ASSESSOR_LOG_LEVEL or INFO)")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Start an evaluation and drive it to a verdict")
    p_run.add_argument("evaluation", help="Path to evaluation YAML")
    p_run.add_argument("--candidate", default=None, help="provider:model; overrides the YAML")
    p_run.add_argument("--concurrency", type=int, default=None, help="Max concurrently leased jobs")
    p_run.add_argument("--no-progress", action="store_true")
    p_run.set_defaults(func=_cmd_run)

    p_start = sub.add_parser("start", help="Create an evaluation and enqueue its jobs")
    p_start.add_argument("evaluation", help="Path to evaluation YAML")
    p_start.add_argument("--candidate", default=None)
    p_start.set_defaults(func=_cmd_start)

    p_work = sub.add_parser("work", help="Run workers for an evaluation until it is terminal")
    p_work.add_argument("evaluation_id")
    p_work.add_argument("--workers", type=int, default=None)
    p_work.add_argument("--grader", default=None, help="provider:model used by judge assertions")
    p_work.add_argument("--no-progress", action="store_true")
    p_work.set_defaults(func=_cmd_work)

    p_status = sub.add_parser("status", help="Show evaluation status and counts")
    p_status.add_argument("evaluation_id", nargs="?")
    p_status.add_argument("--json", action="store_true")
    p_status.set_defaults(func=_cmd_status)

    p_cancel = sub.add_parser("cancel", help="Cancel an evaluation (in-flight jobs finish)")
    p_cancel.add_argument("evaluation_id")
    p_cancel.set_defaults(func=_cmd_cancel)

    p_results = sub.add_parser("results", help="List or export per-test-case results")
    p_results.add_argument("evaluation_id")
    p_results.add_argument("--out", default=None, help="Write JSONL here instead of printing")
    p_results.add_argument("--only", choices=["pass", "fail", "error"], default=None)
    p_results.set_defaults(func=_cmd_results)

    p_trace = sub.add_parser("trace", help="Print the span tree of a trace id")
    p_trace.add_argument("trace_id")
    p_trace.set_defaults(func=_cmd_trace)

    args = parser.parse_args(argv)
    # Provider API keys and ASSESSOR_* settings may come from .env instead of the shell.
    load_dotenv_if_present(args.env_file)
    args.db = args.db or os.environ.get("ASSESSOR_DB", DEFAULT_DB)
    init_logger(args.log_level, json_output=args.log_json)
    return int(args.func(args))

"""
Test Summary Formatting
=======================

Renders a TestRun, finished or still running, into the single plain-text
report handed back to a caller.

The report holds the status line, counts, the testset hierarchy and numbered
failure details. When parsing produced neither results nor failures, the tail
of the raw output is shown instead so the caller always gets something it can
act on.
"""
from __future__ import annotations

from pathlib import PurePath

from testfeed.config import ParserSettings, load_settings
from testfeed.models import FailureKind, RunStatus, TestFailure, TestResult, TestRun

RULE_WIDTH = 60

STATUS_LABELS: dict[RunStatus, str] = {
    RunStatus.RUNNING: "RUNNING",
    RunStatus.PASSED: "PASSED",
    RunStatus.FAILED: "FAILED",
    RunStatus.ERRORED: "ERROR",
    RunStatus.CANCELLED: "CANCELLED",
}

FAILURE_KIND_LABELS: dict[FailureKind, str] = {
    FailureKind.FAILED: "",
    FailureKind.ERROR: " (error)",
}


def format_test_summary(run: TestRun, settings: ParserSettings | None = None) -> str:
    """
    Format a TestRun into a focused, human-readable summary.

    Safe to call while another thread is still feeding lines: the run lock
    is held for the whole render.

    Args:
        run: The run to render
        settings: Formatting settings (read from the environment if omitted)

    Returns:
        The report text, newline terminated.
    """
    settings = settings if settings is not None else load_settings()

    with run.lock:
        lines: list[str] = []

        project_name = PurePath(run.project_path).name if run.project_path else ""
        lines.append(f"Test Results: {project_name} - {STATUS_LABELS[run.status]}")
        lines.append("=" * RULE_WIDTH)

        duration = run.duration_seconds
        duration_text = f"{duration:.1f}s" if duration is not None else "running"
        lines.append(
            f"Pass: {run.total_pass} | Fail: {run.total_fail} | "
            f"Error: {run.total_error} | Total: {run.total_tests} | "
            f"Duration: {duration_text}"
        )

        if run.results:
            lines.append("")
            lines.append("Testsets:")
            lines.extend(_format_result(r, settings) for r in run.results)

        if run.failures:
            lines.append("")
            lines.append("Failures:")
            lines.append("-" * RULE_WIDTH)
            for index, failure in enumerate(run.failures, start=1):
                lines.extend(_format_failure(index, failure, settings))
                lines.append("")

        if not run.results and not run.failures and run.raw_lines:
            lines.append("")
            lines.append(f"Raw output (last {settings.raw_tail_lines} lines):")
            lines.append("-" * RULE_WIDTH)
            lines.extend(run.raw_lines[-settings.raw_tail_lines:])

    return "\n".join(lines) + "\n"


def _format_result(result: TestResult, settings: ParserSettings) -> str:
    indent = " " * (settings.indent_width * (result.depth + 1))
    marker = "X" if result.is_failing else "."
    counts = f"{result.pass_count} pass"
    if result.fail_count > 0:
        counts += f", {result.fail_count} fail"
    if result.error_count > 0:
        counts += f", {result.error_count} error"
    return f"{indent}[{marker}] {result.name}: {counts}"


def _format_failure(index: int, failure: TestFailure, settings: ParserSettings) -> list[str]:
    lines = [f"  {index}) {failure.file}:{failure.line}{FAILURE_KIND_LABELS[failure.kind]}"]
    if failure.testset:
        lines.append(f"     Testset: {failure.testset}")
    if failure.expression:
        lines.append(f"     Expression: {failure.expression}")
    if failure.evaluated:
        lines.append(f"     Evaluated: {failure.evaluated}")

    backtrace = failure.backtrace_lines
    limit = settings.backtrace_preview_lines
    lines.extend(f"     {bt_line}" for bt_line in backtrace[:limit])
    if len(backtrace) > limit:
        lines.append(f"     ... ({len(backtrace) - limit} more lines)")
    return lines

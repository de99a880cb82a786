"""
Test Output Parser
==================

Incremental, line-by-line state machine that turns the console output of a
Julia test subprocess (Test.jl and ReTest report formats, plus the structured
``RUNNER:`` sentinel lines printed by the cooperating runner script) into a
TestRun aggregate.

This module provides:
- ParserState: per-run accumulator state, owned by the caller
- LineMatch: explicit matched/unmatched result of each sub-parser
- OutputParser: the accumulator (consume, finish)
- consume / finish_run: convenience functions using a one-off OutputParser

Recognized input, highest priority first:

    RUNNER:START
    RUNNER:GROUP_DONE pass=3 fail=1 error=0 total=4 depth=0 name=My Tests
    RUNNER:RUN_DONE status=failed
    Test Failed at /src/test/a.jl:10
    Error During Test at /src/test/a.jl:12
      Expression: f(1) == 2
       Evaluated: 3 == 2
    Stacktrace:
     [1] macro expansion
       @ ~/src/test/a.jl:10 [inlined]
    Test set: My Tests
    Test Summary: | Pass  Fail  Total
      My Tests    |    3     1      4

Sentinel groups are authoritative. Once one has been seen for a run, plain
summary tables in the same stream are skipped so totals are never counted
twice.

The raw line is always stored on the run before any parsing, and nothing
raised while parsing a line escapes ``consume``.

Usage:
    from testfeed.models import TestRun
    from testfeed.output_parser import OutputParser, ParserState

    parser = OutputParser()
    run = TestRun(run_id=1, project_path="/src/MyPkg")
    state = ParserState()
    for line in lines:
        parser.consume(run, state, line)
    parser.finish(run, state, exit_code=0)
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from testfeed.ansi import strip_ansi
from testfeed.config import ParserSettings, load_settings
from testfeed.models import (
    FailureKind,
    RunStatus,
    TestFailure,
    TestResult,
    TestRun,
)

_logger = logging.getLogger(__name__)


# =============================================================================
# Patterns and Tables
# =============================================================================

EVENT_START = "START"
EVENT_GROUP_DONE = "GROUP_DONE"
EVENT_RUN_DONE = "RUN_DONE"

# name= is emitted last by the runner so group names may contain spaces
NAME_MARKER = " name="

KV_PATTERN = re.compile(r"(\w+)=(\S+)")
# status= may be present with an empty value
STATUS_PATTERN = re.compile(r"(?:^|\s)status=(\S*)")
NUMBER_PATTERN = re.compile(r"\d+", re.ASCII)
WORD_PATTERN = re.compile(r"[A-Za-z]+")

FAILURE_HEADERS: tuple[tuple[re.Pattern[str], FailureKind], ...] = (
    (re.compile(r"Test Failed at (.+):(\d+)$", re.ASCII), FailureKind.FAILED),
    (re.compile(r"Error During Test at (.+):(\d+)$", re.ASCII), FailureKind.ERROR),
)

BACKTRACE_PREFIXES = ("Stacktrace:", "[", "@")

TESTSET_PATTERN = re.compile(r"^\s*Test set:\s*(.+)")

SUMMARY_MARKER = "Test Summary:"

_COLUMN_WORD = r"(?:Pass|Fail|Error|Broken|Total)"

# ReTest prints its column header on its own line, right-aligned
BARE_HEADER_PATTERN = re.compile(rf"^\s+{_COLUMN_WORD}(?:\s+{_COLUMN_WORD})*\s*$")
COLUMN_LINE_PATTERN = re.compile(rf"^\s*{_COLUMN_WORD}(?:\s+{_COLUMN_WORD})*\s*$")
HEADER_CELLS_PATTERN = re.compile(r"^\s*[A-Za-z]+(?:\s+[A-Za-z]+)*\s*$")

# ReTest module line, e.g. "Main.MyPackageTests:"
MODULE_HEADER_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:\s*$")

RULE_CHARS = frozenset("-= ─━")

# Case-insensitive column name -> count bucket
COLUMN_BUCKETS: dict[str, str] = {
    "pass": "pass",
    "passed": "pass",
    "fail": "fail",
    "failed": "fail",
    "error": "error",
    "errors": "error",
    "broken": "broken",
    "total": "total",
}

# Column order assumed when a table never showed a header
POSITIONAL_COLUMNS: tuple[str, ...] = ("pass", "fail", "error", "total")

RUN_DONE_STATUSES: dict[str, RunStatus] = {
    "passed": RunStatus.PASSED,
    "failed": RunStatus.FAILED,
}


class LineMatch(str, Enum):
    """Result of a single sub-parser."""
    MATCHED = "matched"
    UNMATCHED = "unmatched"


# =============================================================================
# Parser State
# =============================================================================

@dataclass
class PendingFailure:
    """A failure block that has started but not been flushed yet."""
    file: str = ""
    line: int = 0
    expression: str = ""
    evaluated: str = ""
    testset: str = ""
    kind: FailureKind = FailureKind.FAILED
    backtrace_lines: list[str] = field(default_factory=list)


@dataclass
class ParserState:
    """
    Transient accumulator state for exactly one run.

    The consumer loop of a run owns one instance for the run's lifetime and
    passes it to every ``consume`` call. Instances are never shared between
    runs. Once the run turns terminal the state is cleared and ``closed``.

    Attributes:
        pending: Failure block being accumulated, None outside a block
        in_summary: Inside a summary table
        summary_columns: Lower-cased column names of the current table
        summary_indent: Leading whitespace of the table's first row
        current_testset: Most recent "Test set:" name
        has_seen_structured_groups: A GROUP_DONE sentinel was parsed
        closed: The run is terminal, nothing more is parsed
    """
    pending: PendingFailure | None = None
    in_summary: bool = False
    summary_columns: tuple[str, ...] | None = None
    summary_indent: int | None = None
    current_testset: str = ""
    has_seen_structured_groups: bool = False
    closed: bool = False

    @property
    def in_failure_block(self) -> bool:
        return self.pending is not None

    def close(self) -> None:
        self.pending = None
        self.in_summary = False
        self.summary_columns = None
        self.summary_indent = None
        self.current_testset = ""
        self.has_seen_structured_groups = False
        self.closed = True


SubParser = Callable[[TestRun, ParserState, str], LineMatch]


# =============================================================================
# Output Parser
# =============================================================================

class OutputParser:
    """
    The block/state accumulator.

    One OutputParser can serve any number of runs; all per-run state lives
    in the ParserState passed to each call.
    """

    def __init__(self, settings: ParserSettings | None = None):
        """
        Initialize the parser.

        Args:
            settings: Parser settings (read from the environment if omitted)
        """
        self.settings = settings if settings is not None else load_settings()
        self._sentinel_handlers: dict[
            str, Callable[[TestRun, ParserState, str], LineMatch]
        ] = {
            EVENT_START: self._on_start,
            EVENT_GROUP_DONE: self._on_group_done,
            EVENT_RUN_DONE: self._on_run_done,
        }
        self._text_parsers: tuple[SubParser, ...] = (
            self._parse_failure_start,
            self._parse_failure_body,
            self._parse_testset,
            self._parse_summary_start,
            self._parse_summary_row,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def consume(self, run: TestRun, state: ParserState, line: str) -> bool:
        """
        Feed one line of subprocess output into the run.

        The raw line is appended to ``run.raw_lines`` first, whatever happens
        next. Never raises for line content.

        Args:
            run: Run aggregate to update
            state: The run's ParserState
            line: One output line, without trailing newline

        Returns:
            True if the line was recognized as meaningful.
        """
        with run.lock:
            run.raw_lines.append(line)

            if state.closed or run.is_terminal:
                # externally cancelled or already done: final flush only
                self._close(run, state)
                return False

            try:
                return self._dispatch(run, state, strip_ansi(line)) is LineMatch.MATCHED
            except Exception:
                _logger.debug(
                    "Run %s: could not parse line %r", run.run_id, line, exc_info=True
                )
                return False

    def finish(
        self,
        run: TestRun,
        state: ParserState,
        exit_code: int | None = None,
    ) -> RunStatus:
        """
        Complete a run whose output stream has ended.

        Flushes any pending failure block and closes the state. A run still
        RUNNING (no RUN_DONE line arrived) gets a status inferred from its
        totals and ``exit_code``.

        Returns:
            The run's final status.
        """
        with run.lock:
            self._close(run, state)
            if not run.is_terminal:
                run.mark_finished(run.infer_final_status(exit_code))
            return run.status

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        if line.startswith(self.settings.sentinel_prefix):
            state.in_summary = False
            return self._parse_sentinel(run, state, line)

        for parser in self._text_parsers:
            if parser(run, state, line) is LineMatch.MATCHED:
                return LineMatch.MATCHED
        return LineMatch.UNMATCHED

    def _close(self, run: TestRun, state: ParserState) -> None:
        if state.closed:
            return
        self._flush_failure(run, state)
        state.close()

    # -------------------------------------------------------------------------
    # Sentinel lines
    # -------------------------------------------------------------------------

    def _parse_sentinel(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        payload = line[len(self.settings.sentinel_prefix):].strip()
        event, _, rest = payload.partition(" ")
        handler = self._sentinel_handlers.get(event)
        if handler is None:
            _logger.debug("Run %s: unknown runner event %r", run.run_id, event)
            return LineMatch.UNMATCHED
        return handler(run, state, rest)

    def _on_start(self, run: TestRun, state: ParserState, rest: str) -> LineMatch:
        _logger.info("Run %s: runner started (%s)", run.run_id, rest or "no details")
        return LineMatch.MATCHED

    def _on_group_done(self, run: TestRun, state: ParserState, rest: str) -> LineMatch:
        text = " " + rest
        marker = text.rfind(NAME_MARKER)
        if marker >= 0:
            name = text[marker + len(NAME_MARKER):].strip()
            kv = dict(KV_PATTERN.findall(text[:marker]))
        else:
            kv = dict(KV_PATTERN.findall(text))
            name = kv.get("name", "")

        counts: dict[str, int] = {}
        for key in ("pass", "fail", "error", "total", "depth"):
            raw = kv.get(key, "0")
            if not NUMBER_PATTERN.fullmatch(raw):
                _logger.debug(
                    "Run %s: malformed %s=%r in GROUP_DONE", run.run_id, key, raw
                )
                return LineMatch.UNMATCHED
            counts[key] = int(raw)

        state.has_seen_structured_groups = True
        run.add_result(
            TestResult(
                name=name,
                pass_count=counts["pass"],
                fail_count=counts["fail"],
                error_count=counts["error"],
                total_count=counts["total"],
                depth=counts["depth"],
            )
        )
        return LineMatch.MATCHED

    def _on_run_done(self, run: TestRun, state: ParserState, rest: str) -> LineMatch:
        m = STATUS_PATTERN.search(rest)
        value = m.group(1) if m is not None else "passed"
        status = RUN_DONE_STATUSES.get(value, RunStatus.ERRORED)
        self._close(run, state)
        run.mark_finished(status)
        return LineMatch.MATCHED

    # -------------------------------------------------------------------------
    # Failure blocks
    # -------------------------------------------------------------------------

    def _parse_failure_start(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        text = line.rstrip()
        for pattern, kind in FAILURE_HEADERS:
            m = pattern.search(text)
            if m is None:
                continue
            self._flush_failure(run, state)
            state.pending = PendingFailure(
                file=m.group(1),
                line=int(m.group(2)),
                testset=state.current_testset,
                kind=kind,
            )
            return LineMatch.MATCHED
        return LineMatch.UNMATCHED

    def _parse_failure_body(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        pending = state.pending
        if pending is None:
            return LineMatch.UNMATCHED

        stripped = line.lstrip()
        if stripped.startswith("Expression:"):
            pending.expression = stripped[len("Expression:"):].strip()
            return LineMatch.MATCHED
        if stripped.startswith("Evaluated:"):
            pending.evaluated = stripped[len("Evaluated:"):].strip()
            return LineMatch.MATCHED
        if stripped.startswith(BACKTRACE_PREFIXES):
            pending.backtrace_lines.append(line)
            return LineMatch.MATCHED
        if pending.backtrace_lines and line[:1] in (" ", "\t"):
            pending.backtrace_lines.append(line)
            return LineMatch.MATCHED

        # anything else closes the block; later parsers still see the line
        self._flush_failure(run, state)
        return LineMatch.UNMATCHED

    def _flush_failure(self, run: TestRun, state: ParserState) -> None:
        pending = state.pending
        state.pending = None
        if pending is None or not (pending.file or pending.expression):
            return
        run.add_failure(
            TestFailure(
                file=pending.file,
                line=pending.line,
                expression=pending.expression,
                evaluated=pending.evaluated,
                testset=pending.testset,
                backtrace="\n".join(pending.backtrace_lines),
                kind=pending.kind,
            )
        )

    # -------------------------------------------------------------------------
    # Testset tracking
    # -------------------------------------------------------------------------

    def _parse_testset(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        m = TESTSET_PATTERN.match(line)
        if m is None:
            return LineMatch.UNMATCHED
        state.current_testset = m.group(1).strip()
        return LineMatch.MATCHED

    # -------------------------------------------------------------------------
    # Summary tables
    # -------------------------------------------------------------------------

    def _parse_summary_start(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        if SUMMARY_MARKER in line:
            self._flush_failure(run, state)
            state.in_summary = True
            state.summary_columns = None
            state.summary_indent = None
            if "|" in line:
                columns = _column_names(line.split("|", 1)[1])
                state.summary_columns = columns or None
            if state.has_seen_structured_groups:
                _logger.debug(
                    "Run %s: skipping summary table, structured groups already seen",
                    run.run_id,
                )
            return LineMatch.MATCHED

        if not state.in_summary and BARE_HEADER_PATTERN.match(line):
            self._flush_failure(run, state)
            state.in_summary = True
            state.summary_columns = _column_names(line)
            state.summary_indent = None
            return LineMatch.MATCHED

        return LineMatch.UNMATCHED

    def _parse_summary_row(self, run: TestRun, state: ParserState, line: str) -> LineMatch:
        if not state.in_summary:
            return LineMatch.UNMATCHED

        stripped = line.strip()

        if state.has_seen_structured_groups:
            if not stripped:
                state.in_summary = False
            return LineMatch.MATCHED

        header = _header_columns(line)
        if header:
            # only the first header of a table counts
            if state.summary_columns is None:
                state.summary_columns = header
            return LineMatch.MATCHED

        if not stripped:
            state.in_summary = False
            return LineMatch.MATCHED

        if all(c in RULE_CHARS for c in stripped):
            return LineMatch.MATCHED

        if "|" in line:
            run.add_result(self._summary_row_result(state, line))
            return LineMatch.MATCHED

        if MODULE_HEADER_PATTERN.match(stripped):
            return LineMatch.MATCHED

        state.in_summary = False
        return LineMatch.UNMATCHED

    def _summary_row_result(self, state: ParserState, line: str) -> TestResult:
        name_part, _, values_part = line.partition("|")
        leading = len(name_part) - len(name_part.lstrip())
        # depth is measured from the first row, which is always a root group
        if state.summary_indent is None:
            state.summary_indent = leading
        indent = max(0, leading - state.summary_indent)
        numbers = [int(n) for n in NUMBER_PATTERN.findall(values_part)]

        counts = dict.fromkeys(("pass", "fail", "error", "broken", "total"), 0)
        columns = state.summary_columns or POSITIONAL_COLUMNS
        for column, value in zip(columns, numbers):
            bucket = COLUMN_BUCKETS.get(column.lower())
            if bucket is not None:
                counts[bucket] = value

        total = counts["total"]
        if total == 0:
            total = counts["pass"] + counts["fail"] + counts["error"] + counts["broken"]

        return TestResult(
            name=name_part.strip(),
            pass_count=counts["pass"],
            fail_count=counts["fail"],
            error_count=counts["error"],
            total_count=total,
            depth=indent // self.settings.indent_width,
        )


def _column_names(text: str) -> tuple[str, ...]:
    return tuple(word.lower() for word in WORD_PATTERN.findall(text))


def _header_columns(line: str) -> tuple[str, ...] | None:
    """Column names if ``line`` is a table header row, else None."""
    if "|" in line:
        cells = line.split("|", 1)[1]
        if not HEADER_CELLS_PATTERN.match(cells):
            return None
        columns = _column_names(cells)
        if not any(column in COLUMN_BUCKETS for column in columns):
            return None
        return columns
    if COLUMN_LINE_PATTERN.match(line):
        return _column_names(line)
    return None


# =============================================================================
# Convenience Functions
# =============================================================================

def consume(
    run: TestRun,
    state: ParserState,
    line: str,
    settings: ParserSettings | None = None,
) -> bool:
    """Feed one line through a one-off OutputParser. See OutputParser.consume."""
    return OutputParser(settings).consume(run, state, line)


def finish_run(
    run: TestRun,
    state: ParserState,
    exit_code: int | None = None,
    settings: ParserSettings | None = None,
) -> RunStatus:
    """Complete a run through a one-off OutputParser. See OutputParser.finish."""
    return OutputParser(settings).finish(run, state, exit_code)

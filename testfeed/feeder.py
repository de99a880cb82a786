"""
Output Stream Feeder
====================

The consumer loop a launcher runs for one test subprocess: pull lines from
the subprocess output, push each through the parser, report progress, and
complete the run when the stream ends.

Spawning the process is the launcher's job; this loop only needs an
iterable of lines (for example ``proc.stdout`` opened in text mode with
stderr merged in).

Usage:
    from testfeed.feeder import feed_lines
    from testfeed.models import TestRun

    run = TestRun(run_id=1, project_path="/src/MyPkg")
    feed_lines(run, proc.stdout, on_progress=print, exit_code=None)
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from testfeed.config import ParserSettings
from testfeed.models import RunStatus, TestRun
from testfeed.output_parser import OutputParser, ParserState

_logger = logging.getLogger(__name__)


def progress_message(run: TestRun) -> str:
    """Short in-flight status, e.g. "5 passed, 1 failed (120 lines)"."""
    with run.lock:
        return (
            f"{run.total_pass} passed, {run.total_fail} failed "
            f"({len(run.raw_lines)} lines)"
        )


def feed_lines(
    run: TestRun,
    lines: Iterable[str],
    *,
    state: ParserState | None = None,
    settings: ParserSettings | None = None,
    on_progress: Callable[[str], None] | None = None,
    exit_code: int | None = None,
) -> TestRun:
    """
    Consume an output stream into ``run`` and finish it.

    Args:
        run: The run to populate
        lines: Output lines; trailing newlines are removed
        state: ParserState to use (a fresh one if omitted)
        settings: Parser settings (read from the environment if omitted)
        on_progress: Called with a progress message after each meaningful line;
            an exception it raises is logged and the stream is still read
        exit_code: Subprocess exit code, used when no RUN_DONE line arrives

    Returns:
        The same run, now terminal.
    """
    parser = OutputParser(settings)
    state = state if state is not None else ParserState()

    _logger.info(
        "Feeding output for run %s: project='%s', pattern='%s'",
        run.run_id, run.project_path, run.pattern,
    )

    iterator = iter(lines)
    while True:
        try:
            line = next(iterator)
        except StopIteration:
            break
        except Exception as e:
            _logger.exception("Output stream for run %s failed", run.run_id)
            with run.lock:
                run.raw_lines.append(f"ERROR: {e}")
                # a broken stream says nothing reliable about the outcome
                if not run.is_terminal:
                    run.mark_finished(RunStatus.ERRORED)
                parser.finish(run, state)
            return run

        meaningful = parser.consume(run, state, line.rstrip("\r\n"))
        if meaningful and on_progress is not None:
            _report_progress(run, on_progress)

    parser.finish(run, state, exit_code)
    return run


def _report_progress(run: TestRun, on_progress: Callable[[str], None]) -> None:
    try:
        on_progress(progress_message(run))
    except Exception:
        # the stream is still read to the end
        _logger.exception("Progress callback for run %s failed", run.run_id)

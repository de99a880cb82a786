"""
Run Registry
============

Thread-safe storage of in-flight runs keyed by run id.

The registry allocates run ids, owns exactly one ParserState per run, and is
the place where a launcher, a progress poller and a cancel request meet. It
is an ordinary object created by the caller; there is no module-level
instance. Each run is guarded by its own lock, so different runs never
contend beyond the short registry lookup.

Asking for a run id the registry does not hold is a programming error and
raises UnknownRunError.

Usage:
    from testfeed.run_registry import RunRegistry

    registry = RunRegistry()
    run = registry.start_run("/src/MyPkg", pattern="parser")
    for line in proc.stdout:
        registry.consume(run.run_id, line.rstrip("\\n"))
    registry.finish(run.run_id, exit_code=proc.wait())
    print(registry.format(run.run_id))
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from testfeed.config import ParserSettings, load_settings
from testfeed.models import RunStatus, TestFeedError, TestRun
from testfeed.output_parser import OutputParser, ParserState
from testfeed.summary import format_test_summary

_logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class UnknownRunError(TestFeedError):
    """Raised when a run id has no backing run in the registry."""

    def __init__(
        self,
        run_id: int,
        known_ids: list[int] | None = None,
        message: str | None = None,
    ):
        self.run_id = run_id
        self.known_ids = known_ids or []
        if message is None:
            message = f"No test run with id {run_id}"
        super().__init__(message)


# =============================================================================
# Registry
# =============================================================================

@dataclass
class _RunEntry:
    run: TestRun
    state: ParserState


class RunRegistry:
    """In-memory registry of test runs and their parser states."""

    def __init__(self, settings: ParserSettings | None = None):
        """
        Initialize the registry.

        Args:
            settings: Settings shared by the parser and formatter
        """
        self.settings = settings if settings is not None else load_settings()
        self._parser = OutputParser(self.settings)
        self._lock = threading.Lock()
        self._entries: dict[int, _RunEntry] = {}
        self._next_id = 0

    def start_run(self, project_path: str, pattern: str = "") -> TestRun:
        """Create a RUNNING run with a fresh ParserState and a new id."""
        with self._lock:
            self._next_id += 1
            run = TestRun(
                run_id=self._next_id,
                project_path=project_path,
                pattern=pattern,
            )
            self._entries[run.run_id] = _RunEntry(run=run, state=ParserState())

        _logger.info(
            "Started test run %s: project='%s', pattern='%s'",
            run.run_id, project_path, pattern,
        )
        return run

    def get(self, run_id: int) -> TestRun:
        return self._entry(run_id).run

    def run_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._entries)

    def consume(self, run_id: int, line: str) -> bool:
        """Feed one output line to the run. See OutputParser.consume."""
        entry = self._entry(run_id)
        return self._parser.consume(entry.run, entry.state, line)

    def finish(self, run_id: int, exit_code: int | None = None) -> RunStatus:
        """Complete the run after its output stream ended."""
        entry = self._entry(run_id)
        return self._parser.finish(entry.run, entry.state, exit_code)

    def cancel(self, run_id: int) -> bool:
        """
        Cancel a running run and flush any pending failure block.

        Returns:
            True if the run was cancelled, False if it had already finished.
        """
        entry = self._entry(run_id)
        with entry.run.lock:
            cancelled = entry.run.cancel()
            # finish() on a terminal run only performs the final flush
            self._parser.finish(entry.run, entry.state)

        if cancelled:
            _logger.info("Cancelled test run %s", run_id)
        return cancelled

    def format(self, run_id: int) -> str:
        """Render the run's current summary. See format_test_summary."""
        return format_test_summary(self._entry(run_id).run, self.settings)

    def discard(self, run_id: int) -> TestRun:
        """Remove a run from the registry and return it."""
        with self._lock:
            entry = self._entries.pop(run_id, None)
            known = sorted(self._entries)
        if entry is None:
            raise UnknownRunError(run_id, known)
        return entry.run

    def _entry(self, run_id: int) -> _RunEntry:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                raise UnknownRunError(run_id, sorted(self._entries))
            return entry

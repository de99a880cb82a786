"""
Test Run Models
===============

The mutable aggregate a run's parser writes into, plus the immutable records
it produces.

This module provides:
- RunStatus / TestStatus / FailureKind: closed status enums
- TestResult: one reported test group (testset), frozen once created
- TestFailure: one flushed assertion or error failure, frozen once created
- TestRun: the per-run aggregate with lifecycle transitions and a per-run lock

Totals on a TestRun are only ever fed by depth-0 results. A depth-0 testset
already carries the cumulative counts of its children, so adding nested rows
would double count. Several independent depth-0 groups add up.

Usage:
    from testfeed.models import TestRun, RunStatus

    run = TestRun(run_id=1, project_path="/src/MyPkg")
    with run.lock:
        run.mark_finished(RunStatus.PASSED)
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

_logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Exceptions
# =============================================================================

class TestFeedError(Exception):
    """Base exception for test output feed errors."""
    pass


class InvalidTransitionError(TestFeedError):
    """Raised when a run is asked to move to a status it cannot reach."""

    def __init__(
        self,
        run_id: int,
        current: "RunStatus",
        requested: "RunStatus",
        message: str | None = None,
    ):
        self.run_id = run_id
        self.current = current
        self.requested = requested
        if message is None:
            message = (
                f"Run {run_id} cannot move from '{current.value}' "
                f"to '{requested.value}'"
            )
        super().__init__(message)


# =============================================================================
# Status Enums
# =============================================================================

class RunStatus(str, Enum):
    """Lifecycle status of a test run. Only RUNNING is non-terminal."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class TestStatus(str, Enum):
    """Outcome of one test group."""
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class FailureKind(str, Enum):
    """Which block header opened a failure."""
    FAILED = "failed"   # "Test Failed at ..."
    ERROR = "error"     # "Error During Test at ..."


def derive_test_status(fail_count: int, error_count: int) -> TestStatus:
    """Errors win over failures; a group with neither passes."""
    if error_count > 0:
        return TestStatus.ERROR
    if fail_count > 0:
        return TestStatus.FAIL
    return TestStatus.PASS


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class TestResult:
    """
    One reported test group.

    Attributes:
        name: Testset name as printed (may contain spaces)
        pass_count: Passing tests, including nested groups
        fail_count: Failing tests, including nested groups
        error_count: Errored tests, including nested groups
        total_count: Total tests, including nested groups
        depth: Nesting level, 0 for a top-level testset
    """
    name: str
    pass_count: int = 0
    fail_count: int = 0
    error_count: int = 0
    total_count: int = 0
    depth: int = 0

    @property
    def status(self) -> TestStatus:
        return derive_test_status(self.fail_count, self.error_count)

    @property
    def is_failing(self) -> bool:
        return self.status is not TestStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "status": self.status.value,
            "pass_count": self.pass_count,
            "fail_count": self.fail_count,
            "error_count": self.error_count,
            "total_count": self.total_count,
            "depth": self.depth,
        }


@dataclass(frozen=True)
class TestFailure:
    """
    One individual assertion failure or test error.

    Attributes:
        file: Source file reported in the block header
        line: Line number reported in the block header
        expression: Text after "Expression:" (empty if never seen)
        evaluated: Text after "Evaluated:" (empty if never seen)
        testset: Best-known enclosing testset when the block started
        backtrace: Captured stack frame lines, newline-joined
        kind: Whether the block was a failed test or an error during a test
    """
    file: str
    line: int
    expression: str = ""
    evaluated: str = ""
    testset: str = ""
    backtrace: str = ""
    kind: FailureKind = FailureKind.FAILED

    @property
    def backtrace_lines(self) -> list[str]:
        return self.backtrace.split("\n") if self.backtrace else []

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "file": self.file,
            "line": self.line,
            "expression": self.expression,
            "evaluated": self.evaluated,
            "testset": self.testset,
            "backtrace": self.backtrace,
            "kind": self.kind.value,
        }


# =============================================================================
# Run Aggregate
# =============================================================================

@dataclass
class TestRun:
    """
    One test execution, mutated line by line while the subprocess runs.

    All mutation and all reads that need a consistent view must hold
    ``lock``. The lock is reentrant so helpers can nest.

    Attributes:
        run_id: Identifier supplied by the launcher
        project_path: Path of the project under test
        pattern: Test filter pattern ("" runs everything)
        started_at: When the run was created (UTC)
        finished_at: When the run became terminal, None while running
        status: Current RunStatus
        results: TestResult entries in arrival order
        failures: TestFailure entries in flush order
        raw_lines: Every line fed to the parser, verbatim
        total_pass / total_fail / total_error / total_tests: depth-0 sums
    """
    run_id: int
    project_path: str = ""
    pattern: str = ""
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    results: list[TestResult] = field(default_factory=list)
    failures: list[TestFailure] = field(default_factory=list)
    raw_lines: list[str] = field(default_factory=list)
    total_pass: int = 0
    total_fail: int = 0
    total_error: int = 0
    total_tests: int = 0
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed seconds, or None while the run has not finished."""
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def add_result(self, result: TestResult) -> None:
        """Append a group result; only depth-0 results feed the totals."""
        with self.lock:
            self.results.append(result)
            if result.depth == 0:
                self.total_pass += result.pass_count
                self.total_fail += result.fail_count
                self.total_error += result.error_count
                self.total_tests += result.total_count

    def add_failure(self, failure: TestFailure) -> None:
        with self.lock:
            self.failures.append(failure)

    def mark_finished(
        self,
        status: RunStatus,
        finished_at: datetime | None = None,
    ) -> bool:
        """
        Move a running run to a terminal status.

        Args:
            status: Terminal status to apply
            finished_at: Completion time (defaults to now)

        Returns:
            True if the transition happened, False if the run was already
            terminal (terminal states never change).

        Raises:
            InvalidTransitionError: If ``status`` is RUNNING
        """
        if not status.is_terminal:
            raise InvalidTransitionError(self.run_id, self.status, status)

        with self.lock:
            if self.is_terminal:
                _logger.debug(
                    "Run %s already %s, ignoring transition to %s",
                    self.run_id, self.status.value, status.value,
                )
                return False
            self.status = status
            self.finished_at = finished_at or _utc_now()

        _logger.info(
            "Run %s finished: status=%s, pass=%d, fail=%d, error=%d, total=%d",
            self.run_id, status.value, self.total_pass, self.total_fail,
            self.total_error, self.total_tests,
        )
        return True

    def cancel(self) -> bool:
        """Cancel a running run. Returns False if it was already terminal."""
        return self.mark_finished(RunStatus.CANCELLED)

    def infer_final_status(self, exit_code: int | None = None) -> RunStatus:
        """
        Terminal status for a stream that ended without a RUN_DONE line.

        Errors take precedence over failures; a clean tally with a
        non-zero exit code still counts as failed.
        """
        with self.lock:
            if self.total_error > 0:
                return RunStatus.ERRORED
            if self.total_fail > 0 or self.failures:
                return RunStatus.FAILED
            if exit_code is not None and exit_code != 0:
                return RunStatus.FAILED
            return RunStatus.PASSED

    def to_dict(self) -> dict[str, Any]:
        """Consistent snapshot for JSON serialization."""
        with self.lock:
            return {
                "run_id": self.run_id,
                "project_path": self.project_path,
                "pattern": self.pattern,
                "started_at": self.started_at.isoformat(),
                "finished_at": (
                    self.finished_at.isoformat() if self.finished_at else None
                ),
                "duration_seconds": self.duration_seconds,
                "status": self.status.value,
                "results": [r.to_dict() for r in self.results],
                "failures": [f.to_dict() for f in self.failures],
                "raw_lines": list(self.raw_lines),
                "total_pass": self.total_pass,
                "total_fail": self.total_fail,
                "total_error": self.total_error,
                "total_tests": self.total_tests,
            }

"""
testfeed
========

Incremental parsing of test subprocess output into structured results.
"""

from testfeed.ansi import strip_ansi
from testfeed.config import ParserSettings, load_settings
from testfeed.feeder import feed_lines, progress_message
from testfeed.models import (
    FailureKind,
    InvalidTransitionError,
    RunStatus,
    TestFailure,
    TestFeedError,
    TestResult,
    TestRun,
    TestStatus,
)
from testfeed.output_parser import (
    LineMatch,
    OutputParser,
    ParserState,
    consume,
    finish_run,
)
from testfeed.run_registry import RunRegistry, UnknownRunError
from testfeed.schemas import TestFailureRecord, TestResultRecord, TestRunRecord
from testfeed.summary import format_test_summary

__all__ = [
    "strip_ansi",
    "ParserSettings",
    "load_settings",
    "feed_lines",
    "progress_message",
    "FailureKind",
    "InvalidTransitionError",
    "RunStatus",
    "TestFailure",
    "TestFeedError",
    "TestResult",
    "TestRun",
    "TestStatus",
    "LineMatch",
    "OutputParser",
    "ParserState",
    "consume",
    "finish_run",
    "RunRegistry",
    "UnknownRunError",
    "TestFailureRecord",
    "TestResultRecord",
    "TestRunRecord",
    "format_test_summary",
]

"""
Test Run Record Schemas
=======================

Pydantic models describing the structured fields of a test run, for the
collaborators that store or forward finished runs. The record is built from
a consistent, locked snapshot of the run, so it can also be taken mid-run.

Raw output lines are not part of the record; only their count is kept.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from testfeed.config import ParserSettings
from testfeed.models import FailureKind, RunStatus, TestRun, TestStatus
from testfeed.summary import format_test_summary

# Stored summaries are cut to this many characters
SUMMARY_MAX_CHARS = 500


def _coerce_enum(enum_cls: type, v: Any, field_name: str) -> Any:
    if isinstance(v, enum_cls):
        return v
    allowed = [member.value for member in enum_cls]
    if v not in allowed:
        raise ValueError(f"{field_name} must be one of {allowed}, got '{v}'")
    return enum_cls(v)


class TestResultRecord(BaseModel):
    """One testset row of a run."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: TestStatus
    pass_count: int = Field(ge=0)
    fail_count: int = Field(ge=0)
    error_count: int = Field(ge=0)
    total_count: int = Field(ge=0)
    depth: int = Field(ge=0)

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> Any:
        return _coerce_enum(TestStatus, v, "status")


class TestFailureRecord(BaseModel):
    """One flushed failure of a run."""

    model_config = ConfigDict(frozen=True)

    file: str
    line: int
    expression: str
    evaluated: str
    testset: str
    backtrace: str
    kind: FailureKind

    @field_validator("kind", mode="before")
    @classmethod
    def validate_kind(cls, v: Any) -> Any:
        return _coerce_enum(FailureKind, v, "kind")


class TestRunRecord(BaseModel):
    """Structured fields of a whole run, plus its shortened summary text."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    project_path: str
    pattern: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float | None = Field(
        default=None,
        description="Seconds between start and finish, None while running",
    )
    status: RunStatus
    total_pass: int = Field(ge=0)
    total_fail: int = Field(ge=0)
    total_error: int = Field(ge=0)
    total_tests: int = Field(ge=0)
    results: list[TestResultRecord] = Field(default_factory=list)
    failures: list[TestFailureRecord] = Field(default_factory=list)
    raw_line_count: int = Field(default=0, ge=0)
    summary: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> Any:
        return _coerce_enum(RunStatus, v, "status")

    @classmethod
    def from_run(
        cls,
        run: TestRun,
        settings: ParserSettings | None = None,
    ) -> "TestRunRecord":
        """
        Build a record from a consistent snapshot of ``run``.

        Args:
            run: The run to export
            settings: Formatting settings for the stored summary
                (read from the environment if omitted)
        """
        with run.lock:
            data = run.to_dict()
            summary = format_test_summary(run, settings)
        data["raw_line_count"] = len(data.pop("raw_lines"))
        data["summary"] = summary[:SUMMARY_MAX_CHARS]
        return cls.model_validate(data)

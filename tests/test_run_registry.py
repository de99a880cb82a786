"""
Tests for the Run Registry
==========================

Tests for testfeed/run_registry.py: id allocation, per-run parser state,
cancellation and concurrent access.

Run with:
    pytest tests/test_run_registry.py -v
"""
import threading

import pytest

from testfeed.config import ParserSettings
from testfeed.models import RunStatus, TestFeedError
from testfeed.run_registry import RunRegistry, UnknownRunError


@pytest.fixture
def registry():
    return RunRegistry(ParserSettings())


class TestRunLifecycle:
    """Tests for starting, feeding and finishing runs."""

    def test_sequential_ids(self, registry):
        """Run ids are allocated in order starting at one."""
        first = registry.start_run("/src/A")
        second = registry.start_run("/src/B", pattern="io")

        assert (first.run_id, second.run_id) == (1, 2)
        assert second.pattern == "io"
        assert registry.run_ids() == [1, 2]
        assert registry.get(2) is second

    def test_consume_and_finish(self, registry):
        """Lines fed through the registry reach the run."""
        run = registry.start_run("/src/MyPkg")
        assert registry.consume(
            run.run_id, "RUNNER:GROUP_DONE pass=2 fail=1 error=0 total=3 depth=0 name=A",
        ) is True
        status = registry.finish(run.run_id, exit_code=1)

        assert status is RunStatus.FAILED
        assert run.total_fail == 1

    def test_states_are_independent(self, registry):
        """A failure block open in one run does not leak into another."""
        a = registry.start_run("/src/A")
        b = registry.start_run("/src/B")
        registry.consume(a.run_id, "Test Failed at a.jl:1")
        registry.consume(b.run_id, "  Expression: leaked")
        registry.finish(a.run_id)
        registry.finish(b.run_id)

        assert a.failures[0].expression == ""
        assert b.failures == []

    def test_format(self, registry):
        """format renders the run's current summary."""
        run = registry.start_run("/src/MyPkg")

        assert registry.format(run.run_id).startswith("Test Results: MyPkg - RUNNING")

    def test_discard(self, registry):
        """A discarded run is no longer known."""
        run = registry.start_run("/src/MyPkg")

        assert registry.discard(run.run_id) is run
        assert registry.run_ids() == []


class TestCancel:
    """Tests for cancel()."""

    def test_cancel_flushes_pending_failure(self, registry):
        """Cancelling records the open failure block."""
        run = registry.start_run("/src/MyPkg")
        registry.consume(run.run_id, "Test Failed at a.jl:4")
        registry.consume(run.run_id, "  Expression: x == 1")

        assert registry.cancel(run.run_id) is True
        assert run.status is RunStatus.CANCELLED
        assert len(run.failures) == 1

    def test_second_cancel_is_noop(self, registry):
        """A run can only be cancelled once."""
        run = registry.start_run("/src/MyPkg")
        registry.cancel(run.run_id)

        assert registry.cancel(run.run_id) is False
        assert run.status is RunStatus.CANCELLED

    def test_cancel_finished_run(self, registry):
        """A finished run keeps its status."""
        run = registry.start_run("/src/MyPkg")
        registry.consume(run.run_id, "RUNNER:RUN_DONE status=passed")

        assert registry.cancel(run.run_id) is False
        assert run.status is RunStatus.PASSED

    def test_lines_after_cancel_are_only_recorded(self, registry):
        """Output arriving after cancel is kept raw but not parsed."""
        run = registry.start_run("/src/MyPkg")
        registry.cancel(run.run_id)

        assert registry.consume(
            run.run_id, "RUNNER:GROUP_DONE pass=1 total=1 depth=0 name=Late",
        ) is False
        assert run.results == []
        assert len(run.raw_lines) == 1


class TestUnknownRuns:
    """Unknown ids raise UnknownRunError."""

    @pytest.mark.parametrize(
        "call",
        [
            lambda r: r.get(99),
            lambda r: r.consume(99, "line"),
            lambda r: r.finish(99),
            lambda r: r.cancel(99),
            lambda r: r.format(99),
            lambda r: r.discard(99),
        ],
    )
    def test_unknown_id(self, registry, call):
        """Every lookup by id rejects an unknown run."""
        registry.start_run("/src/MyPkg")

        with pytest.raises(UnknownRunError) as exc_info:
            call(registry)

        assert exc_info.value.run_id == 99
        assert exc_info.value.known_ids == [1]
        assert isinstance(exc_info.value, TestFeedError)
        assert "99" in str(exc_info.value)


class TestConcurrency:
    """Feeding and formatting from different threads."""

    def test_concurrent_feed_and_format(self, registry):
        """Formatting while lines arrive never sees a torn run."""
        runs = [registry.start_run(f"/src/Pkg{i}") for i in range(4)]
        errors = []

        def feed(run_id):
            try:
                for i in range(200):
                    registry.consume(
                        run_id,
                        f"RUNNER:GROUP_DONE pass=1 fail=0 error=0 total=1 depth=0 name=G{i}",
                    )
                registry.finish(run_id)
            except Exception as e:
                errors.append(e)

        def poll(run_id):
            try:
                for _ in range(50):
                    registry.format(run_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=feed, args=(r.run_id,)) for r in runs]
        threads += [threading.Thread(target=poll, args=(r.run_id,)) for r in runs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for run in runs:
            assert run.status is RunStatus.PASSED
            assert run.total_pass == 200
            assert len(run.results) == 200

    def test_concurrent_start_run(self, registry):
        """Ids stay unique under concurrent allocation."""
        ids = []
        lock = threading.Lock()

        def start():
            run = registry.start_run("/src/MyPkg")
            with lock:
                ids.append(run.run_id)

        threads = [threading.Thread(target=start) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(ids) == list(range(1, 21))

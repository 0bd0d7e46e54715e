"""Tests for the bounded scheduler."""

import threading
import time

import pytest

from statement_import.pipeline.batcher import split
from statement_import.pipeline.executor import (
    BatchExecutor,
    BatchWork,
    MalformedResponseError,
    RetryPolicy,
)
from statement_import.pipeline.scheduler import BoundedScheduler, SchedulerEventKind

from conftest import FakeExtractionInvoker, always_timeout


def _works(total: int, batch_size: int = 1) -> list[BatchWork]:
    rows = [["2024-01-01", f"row {i}", "1,00"] for i in range(total)]
    return [
        BatchWork(batch=b, payload=rows[b.row_range.start : b.row_range.end])
        for b in split(rows, batch_size)
    ]


def _scheduler(max_retries: int = 3, base_delay: float = 0.0, clock=time.monotonic):
    return BoundedScheduler(
        BatchExecutor(5.0),
        RetryPolicy(max_retries=max_retries, base_delay_seconds=base_delay, max_delay_seconds=60.0),
        clock=clock,
    )


def _kinds(events, kind):
    return [e for e in events if e.kind == kind]


class TestBoundedConcurrency:
    """The in-flight set never exceeds parallel_count."""

    @pytest.mark.parametrize("parallel_count", [1, 2, 3])
    def test_never_exceeds_parallel_count(self, parallel_count):
        invoker = FakeExtractionInvoker(delay=0.02)
        events = list(
            _scheduler().run(_works(8), invoker, parallel_count, threading.Event())
        )

        assert invoker.max_active <= parallel_count
        assert all(e.progress.in_flight <= parallel_count for e in events)
        assert len(_kinds(events, SchedulerEventKind.BATCH_SUCCEEDED)) == 8

    def test_dispatch_follows_row_order(self):
        invoker = FakeExtractionInvoker()
        events = list(_scheduler().run(_works(5), invoker, 1, threading.Event()))

        started = [e.batch.index for e in _kinds(events, SchedulerEventKind.BATCH_STARTED)]
        assert started == [0, 1, 2, 3, 4]

    def test_parallel_count_must_be_positive(self):
        with pytest.raises(ValueError):
            list(_scheduler().run(_works(1), FakeExtractionInvoker(), 0, threading.Event()))


class TestRetries:
    """Retry ceiling and failure classification."""

    def test_always_failing_batch_is_tried_max_retries_times(self):
        invoker = FakeExtractionInvoker(errors={0: always_timeout()})
        events = list(_scheduler(max_retries=3).run(_works(1), invoker, 1, threading.Event()))

        assert invoker.calls_for(0) == 3
        retried = _kinds(events, SchedulerEventKind.BATCH_RETRIED)
        assert [e.attempt for e in retried] == [2, 3]
        failed = _kinds(events, SchedulerEventKind.BATCH_FAILED)
        assert len(failed) == 1
        assert failed[0].terminal
        assert failed[0].attempt == 3
        assert failed[0].outcome.retryable

    def test_transient_failure_recovers(self):
        invoker = FakeExtractionInvoker(errors={0: [always_timeout(), always_timeout()]})
        events = list(_scheduler(max_retries=3).run(_works(1), invoker, 1, threading.Event()))

        succeeded = _kinds(events, SchedulerEventKind.BATCH_SUCCEEDED)
        assert len(succeeded) == 1
        assert succeeded[0].attempt == 3
        assert not _kinds(events, SchedulerEventKind.BATCH_FAILED)
        assert events[-1].progress.retried_batches == 1

    def test_non_retryable_failure_is_not_retried(self):
        invoker = FakeExtractionInvoker(errors={0: MalformedResponseError("not JSON")})
        events = list(_scheduler().run(_works(1), invoker, 1, threading.Event()))

        assert invoker.calls_for(0) == 1
        failed = _kinds(events, SchedulerEventKind.BATCH_FAILED)
        assert failed[0].terminal
        assert failed[0].attempt == 1

    def test_first_attempt_continues_after_earlier_attempts(self):
        """A batch with recorded attempts only gets the remaining ones."""
        works = _works(1)
        works[0].batch.retry_count = 2
        invoker = FakeExtractionInvoker(errors={0: always_timeout()})

        events = list(_scheduler(max_retries=3).run(works, invoker, 1, threading.Event()))

        assert invoker.calls_for(0) == 1
        assert _kinds(events, SchedulerEventKind.BATCH_FAILED)[0].attempt == 3


class TestFailureIsolation:
    """One failing batch does not stop the others."""

    def test_other_batches_complete(self):
        invoker = FakeExtractionInvoker(errors={2: MalformedResponseError("garbage")})
        events = list(_scheduler().run(_works(5), invoker, 2, threading.Event()))

        succeeded = {e.batch.index for e in _kinds(events, SchedulerEventKind.BATCH_SUCCEEDED)}
        failed = {e.batch.index for e in _kinds(events, SchedulerEventKind.BATCH_FAILED)}
        assert succeeded == {0, 1, 3, 4}
        assert failed == {2}
        assert events[-1].progress.completed == 5
        assert events[-1].progress.fraction == 1.0


class TestCancellation:
    """Cooperative cancellation at dispatch boundaries."""

    def test_cancel_before_run_dispatches_nothing(self):
        cancel = threading.Event()
        cancel.set()
        invoker = FakeExtractionInvoker()

        events = list(_scheduler().run(_works(3), invoker, 2, cancel))

        assert events == []
        assert invoker.calls == []

    def test_no_new_dispatch_after_cancel(self):
        cancel = threading.Event()
        invoker = FakeExtractionInvoker()
        events = []
        for event in _scheduler().run(_works(4), invoker, 1, cancel):
            events.append(event)
            if event.kind == SchedulerEventKind.BATCH_SUCCEEDED:
                cancel.set()

        assert invoker.calls == [0]
        assert len(_kinds(events, SchedulerEventKind.BATCH_STARTED)) == 1

    def test_in_flight_batches_finish_after_cancel(self):
        cancel = threading.Event()
        invoker = FakeExtractionInvoker(delay=0.05)
        events = []
        for event in _scheduler().run(_works(6), invoker, 3, cancel):
            events.append(event)
            if event.kind == SchedulerEventKind.BATCH_STARTED and event.batch.index == 2:
                cancel.set()

        started = {e.batch.index for e in _kinds(events, SchedulerEventKind.BATCH_STARTED)}
        succeeded = {e.batch.index for e in _kinds(events, SchedulerEventKind.BATCH_SUCCEEDED)}
        assert started == {0, 1, 2}
        assert succeeded == started

    def test_cancel_during_backoff_leaves_batch_retryable(self):
        cancel = threading.Event()
        invoker = FakeExtractionInvoker(errors={0: always_timeout()})
        events = []
        started = time.monotonic()
        for event in _scheduler(base_delay=30.0).run(_works(1), invoker, 1, cancel):
            events.append(event)
            if event.kind == SchedulerEventKind.BATCH_RETRIED:
                cancel.set()

        assert time.monotonic() - started < 10
        assert invoker.calls_for(0) == 1
        failed = _kinds(events, SchedulerEventKind.BATCH_FAILED)
        assert len(failed) == 1
        assert not failed[0].terminal
        assert failed[0].attempt == 1


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestProgress:
    """Progress figures and the time estimate."""

    def test_eta_from_average_batch_time(self):
        clock = FakeClock()

        class TimedInvoker(FakeExtractionInvoker):
            def invoke(self, batch, payload, timeout):
                clock.now += 10.0
                return super().invoke(batch, payload, timeout)

        events = list(
            _scheduler(clock=clock).run(_works(4), TimedInvoker(), 1, threading.Event())
        )

        progress = [e.progress for e in _kinds(events, SchedulerEventKind.PROGRESS)]
        assert progress[0].fraction == 0.25
        assert progress[0].estimated_seconds_left == pytest.approx(30.0)
        assert progress[-1].estimated_seconds_left == pytest.approx(0.0)

    def test_no_eta_before_first_completion(self):
        events = list(
            _scheduler().run(_works(2), FakeExtractionInvoker(), 1, threading.Event())
        )

        assert events[0].kind == SchedulerEventKind.BATCH_STARTED
        assert events[0].progress.estimated_seconds_left is None

    def test_already_completed_counts_towards_total(self):
        events = list(
            _scheduler().run(
                _works(2), FakeExtractionInvoker(), 1, threading.Event(), already_completed=3
            )
        )

        final = events[-1].progress
        assert final.total == 5
        assert final.completed == 5
        assert final.succeeded == 2

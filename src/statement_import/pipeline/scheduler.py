"""
Bounded scheduler.

Drives many batches of one stage through the batch executor on a worker
pool of ``parallel_count`` threads. As soon as one batch finishes the next
pending batch is dispatched, so a slow batch only occupies its own slot.

The scheduler reports everything as a stream of SchedulerEvent values and
never touches the session: the consumer (the orchestrator) checkpoints
each event before it asks for the next one.

Cancellation is cooperative. The cancel signal is checked before every
dispatch and during backoff waits; calls that already started run to
completion and their outcomes are still reported.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from ..schemas.session import BatchRecord, Stage
from .executor import BatchExecutor, BatchOutcome, BatchWork, RetryPolicy, StageInvoker

logger = logging.getLogger(__name__)


class SchedulerEventKind(str, Enum):
    """Kinds of scheduler events."""

    BATCH_STARTED = "batch_started"
    BATCH_RETRIED = "batch_retried"
    BATCH_SUCCEEDED = "batch_succeeded"
    BATCH_FAILED = "batch_failed"
    PROGRESS = "progress"


@dataclass
class SchedulerProgress:
    """Aggregate progress of one scheduler run over a stage."""

    stage: Stage
    total: int
    # Batches of the stage that finished in earlier runs
    previously_completed: int = 0
    succeeded: int = 0
    failed: int = 0
    in_flight: int = 0
    retried_batches: int = 0
    current_retry_attempt: int = 0
    elapsed_seconds: float = 0.0
    estimated_seconds_left: float | None = None

    @property
    def completed(self) -> int:
        return self.previously_completed + self.succeeded + self.failed

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass
class SchedulerEvent:
    """Something that happened during a scheduler run.

    For BATCH_FAILED, ``terminal`` tells whether the batch will be retried
    later (False only when a pending retry was abandoned on cancellation).
    """

    kind: SchedulerEventKind
    progress: SchedulerProgress
    batch: BatchRecord | None = None
    attempt: int = 0
    outcome: BatchOutcome | None = None
    terminal: bool = False
    retry_delay_seconds: float = 0.0


@dataclass
class _Running:
    work: BatchWork
    attempt: int
    previous: BatchOutcome | None = None


@dataclass
class _Counters:
    succeeded: int = 0
    failed: int = 0
    retried: set[int] = field(default_factory=set)
    last_retry_attempt: int = 0


class BoundedScheduler:
    """Worker-pool scheduler with bounded concurrency, retries and ETA."""

    def __init__(
        self,
        executor: BatchExecutor,
        policy: RetryPolicy,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.policy = policy
        self.clock = clock

    def _attempt(
        self,
        work: BatchWork,
        invoker: StageInvoker,
        attempt: int,
        delay: float,
        cancel_signal: threading.Event,
    ) -> BatchOutcome | None:
        """Worker body. Returns None when cancelled during the backoff wait."""
        if delay > 0 and cancel_signal.wait(delay):
            return None
        return self.executor.execute(work, invoker, attempt)

    def run(
        self,
        works: Sequence[BatchWork],
        invoker: StageInvoker,
        parallel_count: int,
        cancel_signal: threading.Event,
        already_completed: int = 0,
    ) -> Iterator[SchedulerEvent]:
        """
        Run batches through the invoker and yield events as they happen.

        Args:
            works: Batches to run, dispatched in the given order
            invoker: Stage invoker shared by all batches
            parallel_count: Maximum number of batches in flight
            cancel_signal: Set to stop dispatching new batches
            already_completed: Batches of the stage finished in earlier runs,
                counted as done in the progress figures

        Yields:
            SchedulerEvent for every start, retry, success, failure and
            progress change. Completion order is not row order.
        """
        if parallel_count <= 0:
            raise ValueError(f"parallel_count must be > 0, got: {parallel_count}")

        stage = invoker.stage
        queue = deque(works)
        counters = _Counters()
        started_at = self.clock()
        in_flight: dict[Future, _Running] = {}

        def snapshot() -> SchedulerProgress:
            completed_now = counters.succeeded + counters.failed
            remaining = len(works) - completed_now
            elapsed = self.clock() - started_at
            eta = None
            if completed_now:
                eta = (elapsed / completed_now) * remaining
            return SchedulerProgress(
                stage=stage,
                total=len(works) + already_completed,
                previously_completed=already_completed,
                succeeded=counters.succeeded,
                failed=counters.failed,
                in_flight=len(in_flight),
                retried_batches=len(counters.retried),
                current_retry_attempt=counters.last_retry_attempt,
                elapsed_seconds=elapsed,
                estimated_seconds_left=eta,
            )

        logger.info(
            "Scheduling %d %s batches (parallel=%d, max_retries=%d)",
            len(works),
            stage.value,
            parallel_count,
            self.policy.max_retries,
        )

        pool = ThreadPoolExecutor(
            max_workers=parallel_count, thread_name_prefix=f"{stage.value}-batch"
        )
        try:
            while queue or in_flight:
                while queue and len(in_flight) < parallel_count and not cancel_signal.is_set():
                    work = queue.popleft()
                    attempt = work.batch.retry_count + 1
                    future = pool.submit(
                        self._attempt, work, invoker, attempt, 0.0, cancel_signal
                    )
                    in_flight[future] = _Running(work, attempt)
                    yield SchedulerEvent(
                        SchedulerEventKind.BATCH_STARTED,
                        snapshot(),
                        batch=work.batch,
                        attempt=attempt,
                    )

                if not in_flight:
                    # Cancelled with nothing running
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    running = in_flight.pop(future)
                    outcome = future.result()
                    batch = running.work.batch

                    if outcome is None:
                        # Backoff wait interrupted by cancellation
                        yield SchedulerEvent(
                            SchedulerEventKind.BATCH_FAILED,
                            snapshot(),
                            batch=batch,
                            attempt=running.attempt - 1,
                            outcome=running.previous,
                            terminal=False,
                        )
                        continue

                    if outcome.succeeded:
                        counters.succeeded += 1
                        yield SchedulerEvent(
                            SchedulerEventKind.BATCH_SUCCEEDED,
                            snapshot(),
                            batch=batch,
                            attempt=outcome.attempt,
                            outcome=outcome,
                        )
                        yield SchedulerEvent(SchedulerEventKind.PROGRESS, snapshot())
                        continue

                    exhausted = self.policy.is_exhausted(outcome.attempt)
                    if outcome.retryable and not exhausted and not cancel_signal.is_set():
                        delay = self.policy.delay_after(outcome.attempt)
                        next_attempt = outcome.attempt + 1
                        counters.retried.add(batch.index)
                        counters.last_retry_attempt = next_attempt
                        retry = pool.submit(
                            self._attempt,
                            running.work,
                            invoker,
                            next_attempt,
                            delay,
                            cancel_signal,
                        )
                        in_flight[retry] = _Running(running.work, next_attempt, outcome)
                        logger.info(
                            "Retrying %s batch %d %s in %.1fs (attempt %d/%d)",
                            stage.value,
                            batch.index,
                            batch.row_range,
                            delay,
                            next_attempt,
                            self.policy.max_retries,
                        )
                        yield SchedulerEvent(
                            SchedulerEventKind.BATCH_RETRIED,
                            snapshot(),
                            batch=batch,
                            attempt=next_attempt,
                            outcome=outcome,
                            retry_delay_seconds=delay,
                        )
                        continue

                    terminal = not outcome.retryable or exhausted
                    if terminal:
                        counters.failed += 1
                        logger.error(
                            "%s batch %d %s failed after %d attempt(s): %s",
                            stage.value,
                            batch.index,
                            batch.row_range,
                            outcome.attempt,
                            outcome.error,
                        )
                    yield SchedulerEvent(
                        SchedulerEventKind.BATCH_FAILED,
                        snapshot(),
                        batch=batch,
                        attempt=outcome.attempt,
                        outcome=outcome,
                        terminal=terminal,
                    )
                    if terminal:
                        yield SchedulerEvent(SchedulerEventKind.PROGRESS, snapshot())
        finally:
            # Consumer gone or run over: let started calls finish, start nothing new
            cancel_signal_was_set = cancel_signal.is_set()
            pool.shutdown(wait=True, cancel_futures=True)
            logger.debug(
                "%s scheduler stopped (succeeded=%d, failed=%d, cancelled=%s)",
                stage.value,
                counters.succeeded,
                counters.failed,
                cancel_signal_was_set,
            )

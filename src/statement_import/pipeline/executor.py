"""
Batch executor.

Runs one batch through one stage invoker and turns the result into a
BatchOutcome. Timeouts and transport failures are retryable; a response
that is well formed but unusable is not. The executor never sleeps and
never mutates the batch: retry scheduling belongs to the scheduler and
state changes belong to the orchestrator.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import PipelineConfig
from ..schemas.session import BatchRecord, Stage

logger = logging.getLogger(__name__)


class StageError(Exception):
    """Base class for failures of an external stage call."""

    retryable = False

    def __init__(self, message: str, stage: Stage | None = None):
        super().__init__(message)
        self.stage = stage


class StageTimeoutError(StageError):
    """The stage call did not answer within its timeout."""

    retryable = True


class StageTransportError(StageError):
    """Network failure or a temporarily unavailable service (429, 5xx)."""

    retryable = True


class MalformedResponseError(StageError):
    """The stage answered, but the answer cannot be used."""

    retryable = False


class StageInvoker(Protocol):
    """External collaborator for one pipeline stage.

    Extraction invokers receive the batch's raw rows and return
    ExtractedTransaction items; categorization invokers receive the batch's
    staged transactions and return CategorizedUpdate items.
    """

    stage: Stage

    def invoke(self, batch: BatchRecord, payload: Sequence[Any], timeout: float) -> list[Any]:
        ...


@dataclass
class BatchWork:
    """A batch together with the input its stage needs."""

    batch: BatchRecord
    payload: Sequence[Any]


@dataclass
class BatchOutcome:
    """Result of one attempt at one batch."""

    batch: BatchRecord
    attempt: int
    succeeded: bool
    items: list[Any] = field(default_factory=list)
    error: str | None = None
    retryable: bool = False
    duration_seconds: float = 0.0

    @classmethod
    def success(
        cls, batch: BatchRecord, attempt: int, items: list[Any], duration: float
    ) -> "BatchOutcome":
        return cls(
            batch=batch,
            attempt=attempt,
            succeeded=True,
            items=items,
            duration_seconds=duration,
        )

    @classmethod
    def failure(
        cls, batch: BatchRecord, attempt: int, error: str, retryable: bool, duration: float
    ) -> "BatchOutcome":
        return cls(
            batch=batch,
            attempt=attempt,
            succeeded=False,
            error=error,
            retryable=retryable,
            duration_seconds=duration,
        )


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Wait before re-dispatching after failed attempt ``attempt`` (1-based).

    min(base_delay * 2^(attempt-1), max_delay)
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got: {attempt}")
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


@dataclass
class RetryPolicy:
    """How often and how patiently a failing batch is retried."""

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
        )

    def delay_after(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay_seconds, self.max_delay_seconds)

    def is_exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_retries


class BatchExecutor:
    """Executes single batch attempts with a per-call timeout."""

    def __init__(self, call_timeout_seconds: float = 120.0):
        if call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be > 0")
        self.call_timeout_seconds = call_timeout_seconds

    def execute(self, work: BatchWork, invoker: StageInvoker, attempt: int) -> BatchOutcome:
        """
        Run one attempt of a batch.

        Args:
            work: Batch and its stage input
            invoker: Stage invoker to call
            attempt: 1-based attempt number

        Returns:
            BatchOutcome; invoker failures are returned, not raised. Errors
            other than StageError are treated as not retryable
        """
        batch = work.batch
        start = time.monotonic()
        try:
            items = invoker.invoke(batch, work.payload, self.call_timeout_seconds)
        except StageError as e:
            duration = time.monotonic() - start
            logger.warning(
                "%s batch %d %s attempt %d failed (%s): %s",
                batch.stage.value,
                batch.index,
                batch.row_range,
                attempt,
                "retryable" if e.retryable else "not retryable",
                e,
            )
            return BatchOutcome.failure(batch, attempt, str(e), e.retryable, duration)
        except Exception as e:
            # Any other invoker failure still only fails this batch
            duration = time.monotonic() - start
            logger.exception(
                "%s batch %d %s attempt %d raised unexpectedly",
                batch.stage.value,
                batch.index,
                batch.row_range,
                attempt,
            )
            return BatchOutcome.failure(
                batch, attempt, f"{type(e).__name__}: {e}", False, duration
            )

        duration = time.monotonic() - start
        if not items:
            logger.warning(
                "%s batch %d %s returned no items",
                batch.stage.value,
                batch.index,
                batch.row_range,
            )
            return BatchOutcome.failure(
                batch, attempt, "Empty response: no items returned", False, duration
            )

        logger.debug(
            "%s batch %d %s succeeded with %d items in %.1fs",
            batch.stage.value,
            batch.index,
            batch.row_range,
            len(items),
            duration,
        )
        return BatchOutcome.success(batch, attempt, list(items), duration)

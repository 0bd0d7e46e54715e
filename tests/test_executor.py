"""Tests for the batch executor and retry policy."""

from decimal import Decimal

import pytest

from statement_import.config import PipelineConfig
from statement_import.pipeline.executor import (
    BatchExecutor,
    BatchWork,
    MalformedResponseError,
    RetryPolicy,
    StageTimeoutError,
    StageTransportError,
    backoff_delay,
)
from statement_import.schemas.session import BatchRecord, ExtractedTransaction, RowRange, Stage


class StubInvoker:
    stage = Stage.EXTRACTION

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.timeouts = []

    def invoke(self, batch, payload, timeout):
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def work() -> BatchWork:
    batch = BatchRecord(index=0, row_range=RowRange(0, 2), stage=Stage.EXTRACTION)
    return BatchWork(batch=batch, payload=[["a"], ["b"]])


def _tx(row: int) -> ExtractedTransaction:
    return ExtractedTransaction(
        row_number=row, date="2024-01-01", description="x", amount=Decimal("1")
    )


class TestBackoff:
    """Exponential backoff with a cap."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0), (5, 30.0), (10, 30.0)],
    )
    def test_delay(self, attempt, expected):
        assert backoff_delay(attempt, 2.0, 30.0) == expected

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            backoff_delay(0, 2.0, 30.0)

    def test_policy_from_config(self):
        config = PipelineConfig(max_retries=5, base_delay_seconds=1.0, max_delay_seconds=4.0)
        policy = RetryPolicy.from_config(config)

        assert policy.max_retries == 5
        assert policy.delay_after(1) == 1.0
        assert policy.delay_after(4) == 4.0

    def test_exhausted_at_max_retries(self):
        policy = RetryPolicy(max_retries=3)

        assert not policy.is_exhausted(1)
        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)


class TestBatchExecutor:
    """Outcome mapping of a single attempt."""

    def test_success(self, work):
        invoker = StubInvoker(result=[_tx(0), _tx(1)])
        outcome = BatchExecutor(30.0).execute(work, invoker, attempt=1)

        assert outcome.succeeded
        assert len(outcome.items) == 2
        assert outcome.attempt == 1
        assert outcome.error is None

    def test_passes_call_timeout(self, work):
        invoker = StubInvoker(result=[_tx(0)])
        BatchExecutor(42.0).execute(work, invoker, attempt=1)

        assert invoker.timeouts == [42.0]

    def test_timeout_is_retryable(self, work):
        invoker = StubInvoker(error=StageTimeoutError("timed out"))
        outcome = BatchExecutor().execute(work, invoker, attempt=2)

        assert not outcome.succeeded
        assert outcome.retryable
        assert outcome.attempt == 2
        assert "timed out" in outcome.error

    def test_transport_error_is_retryable(self, work):
        invoker = StubInvoker(error=StageTransportError("HTTP 503"))
        outcome = BatchExecutor().execute(work, invoker, attempt=1)

        assert outcome.retryable

    def test_malformed_is_not_retryable(self, work):
        invoker = StubInvoker(error=MalformedResponseError("not JSON"))
        outcome = BatchExecutor().execute(work, invoker, attempt=1)

        assert not outcome.succeeded
        assert not outcome.retryable

    def test_empty_response_is_not_retryable(self, work):
        invoker = StubInvoker(result=[])
        outcome = BatchExecutor().execute(work, invoker, attempt=1)

        assert not outcome.succeeded
        assert not outcome.retryable
        assert "Empty response" in outcome.error

    def test_unexpected_error_is_not_retryable_failure(self, work):
        invoker = StubInvoker(error=KeyError("boom"))
        outcome = BatchExecutor().execute(work, invoker, attempt=1)

        assert not outcome.succeeded
        assert not outcome.retryable
        assert outcome.error.startswith("KeyError")

    def test_does_not_mutate_batch(self, work):
        invoker = StubInvoker(error=StageTimeoutError("timed out"))
        BatchExecutor().execute(work, invoker, attempt=1)

        assert work.batch.retry_count == 0
        assert work.batch.last_error is None

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            BatchExecutor(0)

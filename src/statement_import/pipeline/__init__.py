"""
Import pipeline: batching, execution, scheduling, orchestration, finalization.

Data flow:
    rows -> split() -> BoundedScheduler(extraction) -> SessionStore checkpoint
         -> [pause/resume] -> BoundedScheduler(categorization) -> SessionStore
         -> user review -> Finalizer -> permanent ledger
"""

from .batcher import InvalidInput, split, split_range
from .executor import (
    BatchExecutor,
    BatchOutcome,
    BatchWork,
    MalformedResponseError,
    RetryPolicy,
    StageError,
    StageInvoker,
    StageTimeoutError,
    StageTransportError,
    backoff_delay,
)
from .finalizer import FinalizationError, Finalizer, TransferResult, can_approve
from .orchestrator import ImportProgress, PipelineOrchestrator, build_progress
from .scheduler import BoundedScheduler, SchedulerEvent, SchedulerEventKind, SchedulerProgress

__all__ = [
    # Batcher
    "split",
    "split_range",
    "InvalidInput",
    # Executor
    "BatchExecutor",
    "BatchOutcome",
    "BatchWork",
    "RetryPolicy",
    "StageInvoker",
    "StageError",
    "StageTimeoutError",
    "StageTransportError",
    "MalformedResponseError",
    "backoff_delay",
    # Scheduler
    "BoundedScheduler",
    "SchedulerEvent",
    "SchedulerEventKind",
    "SchedulerProgress",
    # Orchestrator
    "PipelineOrchestrator",
    "ImportProgress",
    "build_progress",
    # Finalizer
    "Finalizer",
    "FinalizationError",
    "TransferResult",
    "can_approve",
]

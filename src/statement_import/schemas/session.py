"""
Import session schema (SSOT).

These dataclasses are the ONLY models used to describe an import session across
the pipeline, the session store and the CLI. The session store persists them,
the orchestrator mutates them, everything else reads them.

Row ranges are half-open: ``RowRange(0, 4)`` covers rows 0, 1, 2 and 3.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Lifecycle status of an import session."""

    IDLE = "idle"
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    PAUSED = "paused"
    CATEGORIZING = "categorizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class Stage(str, Enum):
    """AI-driven pipeline stages."""

    EXTRACTION = "extraction"
    CATEGORIZATION = "categorization"


class BatchStatus(str, Enum):
    """Status of a single batch within one stage."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Status transition table. Anything not listed here is rejected.
# The only backward edges are paused -> extracting/categorizing (resume)
# and error -> idle (reset).
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.UPLOADING, SessionStatus.CANCELLED}),
    SessionStatus.UPLOADING: frozenset(
        {SessionStatus.EXTRACTING, SessionStatus.ERROR, SessionStatus.CANCELLED}
    ),
    SessionStatus.EXTRACTING: frozenset(
        {
            SessionStatus.CATEGORIZING,
            SessionStatus.PAUSED,
            SessionStatus.ERROR,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.CATEGORIZING: frozenset(
        {
            SessionStatus.COMPLETED,
            SessionStatus.PAUSED,
            SessionStatus.ERROR,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {
            SessionStatus.EXTRACTING,
            SessionStatus.CATEGORIZING,
            SessionStatus.ERROR,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.COMPLETED: frozenset({SessionStatus.CANCELLED}),
    SessionStatus.ERROR: frozenset({SessionStatus.IDLE, SessionStatus.CANCELLED}),
    SessionStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = frozenset(
    {
        SessionStatus.IDLE,
        SessionStatus.UPLOADING,
        SessionStatus.EXTRACTING,
        SessionStatus.PAUSED,
        SessionStatus.CATEGORIZING,
        SessionStatus.COMPLETED,
        SessionStatus.ERROR,
    }
)


class InvalidTransitionError(Exception):
    """Raised when a session status change is not allowed."""

    def __init__(self, current: SessionStatus, target: SessionStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move import session from '{current.value}' to '{target.value}'")


def check_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


def utc_now() -> str:
    """ISO timestamp in UTC with Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


@dataclass(frozen=True)
class RowRange:
    """Half-open range of spreadsheet rows [start, end)."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end <= self.start:
            raise ValueError(f"Invalid row range [{self.start}, {self.end})")

    def __len__(self) -> int:
        return self.end - self.start

    def __contains__(self, row: object) -> bool:
        return isinstance(row, int) and self.start <= row < self.end

    def __str__(self) -> str:
        return f"[{self.start},{self.end})"

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> RowRange:
        return cls(start=int(data["start"]), end=int(data["end"]))


@dataclass
class BatchRecord:
    """One row-range batch within one stage.

    ``retry_count`` counts the attempts made so far for this stage.
    ``terminal`` is set once the batch will not be retried any further
    (retries exhausted or a non-retryable response).
    """

    index: int
    row_range: RowRange
    stage: Stage
    status: BatchStatus = BatchStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    terminal: bool = False

    @property
    def is_done(self) -> bool:
        """True once the batch reached a terminal state for its stage."""
        return self.status == BatchStatus.SUCCEEDED or (
            self.status == BatchStatus.FAILED and self.terminal
        )

    @property
    def needs_work(self) -> bool:
        return not self.is_done

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "row_range": self.row_range.to_dict(),
            "stage": self.stage.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "terminal": self.terminal,
        }


@dataclass
class ExtractedTransaction:
    """Structured transaction candidate returned by the extraction stage.

    ``row_number`` is the 0-based index of the source row in the file.
    """

    row_number: int
    date: str | None
    description: str
    amount: Decimal
    original_date: str | None = None
    original_amount: str | None = None
    balance: Decimal | None = None
    reference: str | None = None
    counterparty: str | None = None
    transaction_type: str | None = None
    channel: str | None = None
    needs_review: bool = False
    confidence: float = 0.8

    def to_raw_fields(self) -> dict[str, Any]:
        """JSON-safe field mapping stored on the staged transaction."""
        return {
            "date": self.date,
            "original_date": self.original_date,
            "description": self.description,
            "amount": str(self.amount),
            "original_amount": self.original_amount,
            "balance": str(self.balance) if self.balance is not None else None,
            "reference": self.reference,
            "counterparty": self.counterparty,
            "transaction_type": self.transaction_type,
            "channel": self.channel,
            "needs_review": self.needs_review,
            "extraction_confidence": self.confidence,
        }


@dataclass
class CategorizedUpdate:
    """Category assignment returned by the categorization stage."""

    transaction_id: str
    category_code: str
    category_type: str | None
    confidence: float
    reasoning: str = ""
    counterparty: str | None = None
    affects_pnl: bool | None = None
    balance_impact: str | None = None


@dataclass
class StagedTransaction:
    """Transaction candidate held in the session until approval."""

    id: str
    source_row_range: RowRange
    row_number: int
    raw_fields: dict[str, Any]
    category: str | None = None
    category_type: str | None = None
    ai_confidence: float = 0.0
    ai_reasoning: str | None = None
    ai_counterparty: str | None = None
    affects_pnl: bool | None = None
    balance_impact: str | None = None
    needs_review: bool = False
    user_category: str | None = None
    reviewed: bool = False

    @property
    def final_category(self) -> str | None:
        """User choice wins over the AI suggestion."""
        return self.user_category or self.category

    @property
    def is_categorized(self) -> bool:
        return self.final_category is not None

    @property
    def amount(self) -> Decimal:
        return _to_decimal(self.raw_fields.get("amount")) or Decimal("0")

    @property
    def date(self) -> str | None:
        return self.raw_fields.get("date")

    @property
    def description(self) -> str:
        return self.raw_fields.get("description") or ""

    def apply_update(self, update: CategorizedUpdate, low_confidence_threshold: float) -> None:
        """Apply an AI categorization result."""
        self.category = update.category_code
        self.category_type = update.category_type
        self.ai_confidence = update.confidence
        self.ai_reasoning = update.reasoning
        self.ai_counterparty = update.counterparty
        self.affects_pnl = update.affects_pnl
        self.balance_impact = update.balance_impact
        self.needs_review = update.confidence < low_confidence_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_row_range": self.source_row_range.to_dict(),
            "row_number": self.row_number,
            "raw_fields": self.raw_fields,
            "category": self.category,
            "category_type": self.category_type,
            "ai_confidence": self.ai_confidence,
            "ai_reasoning": self.ai_reasoning,
            "ai_counterparty": self.ai_counterparty,
            "affects_pnl": self.affects_pnl,
            "balance_impact": self.balance_impact,
            "needs_review": self.needs_review,
            "user_category": self.user_category,
            "reviewed": self.reviewed,
        }


@dataclass
class FailedBatchRecord:
    """A batch that exhausted its retries, surfaced verbatim to the user."""

    batch_index: int
    row_range: RowRange
    stage: Stage
    error: str
    retry_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "row_range": self.row_range.to_dict(),
            "stage": self.stage.value,
            "error": self.error,
            "retry_count": self.retry_count,
        }


@dataclass
class SessionSummary:
    """Aggregate statistics shown next to the review list."""

    total_transactions: int
    categorized_count: int
    low_confidence_count: int
    total_income: Decimal
    total_expense: Decimal
    date_range_start: str | None
    date_range_end: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_transactions": self.total_transactions,
            "categorized_count": self.categorized_count,
            "low_confidence_count": self.low_confidence_count,
            "total_income": str(self.total_income),
            "total_expense": str(self.total_expense),
            "date_range_start": self.date_range_start,
            "date_range_end": self.date_range_end,
        }


@dataclass
class ImportSession:
    """Durable, user-scoped state of one file import."""

    id: str
    user_id: str
    file_name: str
    file_fingerprint: str
    status: SessionStatus = SessionStatus.IDLE
    total_rows_in_file: int = 0
    batch_size: int = 0
    batches: list[BatchRecord] = field(default_factory=list)
    # Insertion order = extraction order
    staged_transactions: dict[str, StagedTransaction] = field(default_factory=dict)
    failed_batches: list[FailedBatchRecord] = field(default_factory=list)
    # Stage to continue with when leaving `paused`
    resume_stage: Stage | None = None
    error_message: str | None = None
    version: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def batches_for(self, stage: Stage) -> list[BatchRecord]:
        """Batches of one stage in row order."""
        return sorted((b for b in self.batches if b.stage == stage), key=lambda b: b.index)

    def get_batch(self, stage: Stage, index: int) -> BatchRecord | None:
        for batch in self.batches:
            if batch.stage == stage and batch.index == index:
                return batch
        return None

    def transactions_in(self, row_range: RowRange) -> list[StagedTransaction]:
        """Staged transactions extracted from the given row range, in row order."""
        return sorted(
            (t for t in self.staged_transactions.values() if t.source_row_range == row_range),
            key=lambda t: t.row_number,
        )

    def outstanding(self, stage: Stage) -> list[BatchRecord]:
        return [b for b in self.batches_for(stage) if b.needs_work]

    def succeeded_count(self, stage: Stage) -> int:
        return sum(1 for b in self.batches_for(stage) if b.status == BatchStatus.SUCCEEDED)

    def transition_to(self, target: SessionStatus) -> None:
        """Move to ``target`` or raise InvalidTransitionError."""
        check_transition(self.status, target)
        self.status = target
        self.updated_at = utc_now()

    def summary(self, low_confidence_threshold: float = 0.7) -> SessionSummary:
        """Compute review statistics over the staged transactions."""
        txs = list(self.staged_transactions.values())
        categorized = [t for t in txs if t.is_categorized]
        income = Decimal("0")
        expense = Decimal("0")
        for tx in categorized:
            if not tx.affects_pnl:
                continue
            if tx.amount > 0:
                income += tx.amount
            elif tx.amount < 0:
                expense += abs(tx.amount)
        dates = sorted(t.date for t in txs if t.date)
        return SessionSummary(
            total_transactions=len(txs),
            categorized_count=len(categorized),
            low_confidence_count=sum(
                1
                for t in categorized
                if t.user_category is None and t.ai_confidence < low_confidence_threshold
            ),
            total_income=income,
            total_expense=expense,
            date_range_start=dates[0] if dates else None,
            date_range_end=dates[-1] if dates else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Full persisted layout, used by the CLI `status --json` output."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "file_name": self.file_name,
            "file_fingerprint": self.file_fingerprint,
            "status": self.status.value,
            "resume_stage": self.resume_stage.value if self.resume_stage else None,
            "total_rows_in_file": self.total_rows_in_file,
            "batch_size": self.batch_size,
            "batches": [b.to_dict() for b in self.batches],
            "staged_transactions": [t.to_dict() for t in self.staged_transactions.values()],
            "failed_batches": [f.to_dict() for f in self.failed_batches],
            "error_message": self.error_message,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

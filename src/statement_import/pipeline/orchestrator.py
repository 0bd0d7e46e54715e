"""
Pipeline orchestrator.

Owns the lifecycle of an import session and sequences the two stages:

    idle -> uploading -> extracting -> categorizing -> completed
    extracting | categorizing -> paused (stop) -> extracting | categorizing (resume)
    extracting | categorizing -> error (storage failure) -> idle (reset)
    any -> cancelled (session discarded)

The orchestrator is the single writer of a session. The scheduler and the
executor only return outcomes; every outcome and every status change is
checkpointed to the session store before listeners are notified.
"""

import logging
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from ..config import PipelineConfig
from ..schemas.dedupe import generate_transaction_id
from ..schemas.session import (
    ALLOWED_TRANSITIONS,
    BatchRecord,
    BatchStatus,
    CategorizedUpdate,
    ExtractedTransaction,
    FailedBatchRecord,
    ImportSession,
    InvalidTransitionError,
    SessionStatus,
    Stage,
    StagedTransaction,
    check_transition,
)
from ..state_store.sqlite_store import SessionNotFoundError, SessionStore, SessionStoreError
from .batcher import InvalidInput, split
from .executor import BatchExecutor, BatchOutcome, BatchWork, RetryPolicy, StageInvoker
from .finalizer import Finalizer, TransferResult
from .scheduler import BoundedScheduler, SchedulerEvent, SchedulerEventKind, SchedulerProgress

logger = logging.getLogger(__name__)

STAGE_STATUS = {
    Stage.EXTRACTION: SessionStatus.EXTRACTING,
    Stage.CATEGORIZATION: SessionStatus.CATEGORIZING,
}

# Review edits are only allowed while nothing is driving the session
REVIEWABLE_STATUSES = frozenset({SessionStatus.PAUSED, SessionStatus.COMPLETED})


@dataclass
class ImportProgress:
    """Read-only progress projection for the UI."""

    session_id: str
    status: SessionStatus
    stage: Stage | None
    current: int
    total: int
    total_rows_in_file: int
    successful_batches: int
    failed_batches: int
    retried_batches: int
    current_retry_attempt: int
    processed_transactions: int
    expected_transactions: int
    parallel_count: int
    estimated_time_left_seconds: float | None

    @property
    def percent(self) -> float:
        return 100.0 * self.current / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "stage": self.stage.value if self.stage else None,
            "current": self.current,
            "total": self.total,
            "total_rows_in_file": self.total_rows_in_file,
            "successful_batches": self.successful_batches,
            "failed_batches": self.failed_batches,
            "retried_batches": self.retried_batches,
            "current_retry_attempt": self.current_retry_attempt,
            "processed_transactions": self.processed_transactions,
            "expected_transactions": self.expected_transactions,
            "parallel_count": self.parallel_count,
            "estimated_time_left_seconds": self.estimated_time_left_seconds,
        }


ProgressListener = Callable[[ImportProgress, SchedulerEvent | None], None]


def build_progress(
    session: ImportSession,
    parallel_count: int,
    stage: Stage | None = None,
    scheduler_progress: SchedulerProgress | None = None,
) -> ImportProgress:
    """Project session state (and live scheduler figures) for the UI."""
    if stage is None:
        if session.status == SessionStatus.CATEGORIZING:
            stage = Stage.CATEGORIZATION
        elif session.status == SessionStatus.PAUSED:
            stage = session.resume_stage
        elif session.status != SessionStatus.COMPLETED:
            stage = Stage.EXTRACTION
        else:
            stage = Stage.CATEGORIZATION

    batches = session.batches_for(stage) if stage else []
    succeeded = sum(1 for b in batches if b.status == BatchStatus.SUCCEEDED)
    failed = sum(1 for b in batches if b.status == BatchStatus.FAILED and b.terminal)
    staged = list(session.staged_transactions.values())

    if stage == Stage.CATEGORIZATION:
        processed = sum(1 for t in staged if t.category is not None)
        expected = len(staged)
    else:
        processed = len(staged)
        expected = session.total_rows_in_file

    return ImportProgress(
        session_id=session.id,
        status=session.status,
        stage=stage,
        current=succeeded + failed,
        total=len(batches),
        total_rows_in_file=session.total_rows_in_file,
        successful_batches=succeeded,
        failed_batches=failed,
        retried_batches=scheduler_progress.retried_batches if scheduler_progress else 0,
        current_retry_attempt=(
            scheduler_progress.current_retry_attempt if scheduler_progress else 0
        ),
        processed_transactions=processed,
        expected_transactions=expected,
        parallel_count=parallel_count,
        estimated_time_left_seconds=(
            scheduler_progress.estimated_seconds_left if scheduler_progress else None
        ),
    )


class PipelineOrchestrator:
    """
    Drives import sessions through extraction and categorization.

    One orchestrator drives one session at a time. ``stop()`` may be called
    from any thread (e.g. a signal handler); the run then ends in ``paused``
    once the calls already in flight have reported back.
    """

    def __init__(
        self,
        store: SessionStore,
        extraction_invoker: StageInvoker,
        categorization_invoker: StageInvoker,
        config: PipelineConfig | None = None,
        finalizer: Finalizer | None = None,
        scheduler: BoundedScheduler | None = None,
    ):
        self.store = store
        self.config = config or PipelineConfig()
        self.invokers = {
            Stage.EXTRACTION: extraction_invoker,
            Stage.CATEGORIZATION: categorization_invoker,
        }
        self.finalizer = finalizer
        self.scheduler = scheduler or BoundedScheduler(
            BatchExecutor(self.config.call_timeout_seconds),
            RetryPolicy.from_config(self.config),
        )
        self._cancel = threading.Event()
        self._cancel_requested = threading.Event()
        self._driving: str | None = None
        self._listeners: list[ProgressListener] = []
        self._progress: ImportProgress | None = None

    # Listeners

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        self._listeners.remove(listener)

    def _notify(
        self,
        session: ImportSession,
        event: SchedulerEvent | None = None,
        stage: Stage | None = None,
    ) -> None:
        self._progress = build_progress(
            session,
            self.config.parallel_count,
            stage=stage,
            scheduler_progress=event.progress if event else None,
        )
        for listener in list(self._listeners):
            listener(self._progress, event)

    @property
    def progress(self) -> ImportProgress | None:
        """Latest progress snapshot (None before anything happened)."""
        return self._progress

    # Session lifecycle

    def start_upload(self, user_id: str, file_name: str, file_fingerprint: str) -> ImportSession:
        """
        Start a session for an uploaded file.

        If the user already has an active session for the same file, that
        session is returned instead so it can be resumed.
        """
        existing = self.store.find_active(user_id, file_fingerprint)
        if existing is not None:
            logger.info(
                "Found active session %s (%s) for %s",
                existing.id,
                existing.status.value,
                file_name,
            )
            return existing

        session = ImportSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            file_name=file_name,
            file_fingerprint=file_fingerprint,
            batch_size=self.config.batch_size,
        )
        session.transition_to(SessionStatus.UPLOADING)
        self.store.create(session)
        logger.info("Created import session %s for %s", session.id, file_name)
        self._notify(session)
        return session

    def load(self, session_id: str) -> ImportSession:
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _transition(
        self,
        session: ImportSession,
        target: SessionStatus,
        resume_stage: Stage | None = None,
        error_message: str | None = None,
    ) -> None:
        """Checkpoint a status change, then notify."""
        check_transition(session.status, target)
        session.version = self.store.update_status(session.id, target, resume_stage, error_message)
        session.transition_to(target)
        session.resume_stage = resume_stage
        session.error_message = error_message
        logger.info("Session %s -> %s", session.id, target.value)
        self._notify(session)

    def _fail(self, session: ImportSession, error: Exception) -> None:
        """Move a session to error, keeping everything accumulated so far."""
        message = str(error)
        if SessionStatus.ERROR not in ALLOWED_TRANSITIONS[session.status]:
            return
        try:
            session.version = self.store.update_status(
                session.id, SessionStatus.ERROR, session.resume_stage, message
            )
        except SessionStoreError as store_error:
            logger.error(
                "Could not record error status for session %s: %s", session.id, store_error
            )
        session.transition_to(SessionStatus.ERROR)
        session.error_message = message
        logger.error("Session %s failed: %s", session.id, message)
        self._notify(session)

    # Pipeline runs

    def run(self, session_id: str, rows: Sequence[Any]) -> ImportSession:
        """
        Run (or continue) the pipeline over the parsed rows of the file.

        Sessions in ``idle`` (after a reset) or ``uploading`` are split into
        batches and extraction starts; paused or interrupted sessions are
        resumed.
        """
        session = self.load(session_id)

        if session.status == SessionStatus.IDLE:
            self._transition(session, SessionStatus.UPLOADING)

        if session.status == SessionStatus.UPLOADING:
            self._prepare_extraction(session, rows)
            return self._drive(session, rows)

        return self.resume(session_id, rows)

    def _prepare_extraction(self, session: ImportSession, rows: Sequence[Any]) -> None:
        if not rows:
            raise InvalidInput("The file contains no transaction rows")

        if session.batches_for(Stage.EXTRACTION):
            # Reset after an error: keep the existing boundaries and results
            if len(rows) != session.total_rows_in_file:
                raise InvalidInput(
                    f"File has {len(rows)} rows, session expects {session.total_rows_in_file}"
                )
        else:
            batch_size = session.batch_size or self.config.batch_size
            batches = split(rows, batch_size, Stage.EXTRACTION)
            try:
                self.store.set_total_rows(session.id, len(rows), batch_size)
                session.version = self.store.add_batches(session.id, batches)
            except SessionStoreError as e:
                self._fail(session, e)
                raise
            session.total_rows_in_file = len(rows)
            session.batch_size = batch_size
            session.batches.extend(batches)
            logger.info(
                "Session %s: %d rows in %d batches of %d",
                session.id,
                len(rows),
                len(batches),
                batch_size,
            )

        self._transition(session, SessionStatus.EXTRACTING)

    def resume(self, session_id: str, rows: Sequence[Any] | None = None) -> ImportSession:
        """
        Continue a paused (or interrupted) session where it stopped.

        ``rows`` are only needed while extraction batches are outstanding.
        Batches that already succeeded are never run again.
        """
        session = self.load(session_id)

        if session.status in (SessionStatus.IDLE, SessionStatus.UPLOADING):
            if rows is None:
                raise InvalidInput("The file rows are required to start extraction")
            return self.run(session_id, rows)

        if session.status == SessionStatus.PAUSED:
            stage = session.resume_stage or (
                Stage.EXTRACTION if session.outstanding(Stage.EXTRACTION) else Stage.CATEGORIZATION
            )
            if stage == Stage.EXTRACTION:
                self._check_rows(session, rows)
            self._transition(session, STAGE_STATUS[stage])
        elif session.status in (SessionStatus.EXTRACTING, SessionStatus.CATEGORIZING):
            logger.warning(
                "Session %s was interrupted while %s, continuing",
                session.id,
                session.status.value,
            )
        else:
            raise InvalidTransitionError(session.status, SessionStatus.EXTRACTING)

        return self._drive(session, rows)

    def _drive(self, session: ImportSession, rows: Sequence[Any] | None) -> ImportSession:
        self._begin_driving(session)
        try:
            if session.status == SessionStatus.EXTRACTING:
                self._run_extraction(session, rows)
                if self._discard_if_cancelled(session):
                    return session
                if self._cancel.is_set():
                    self._pause_after(session, Stage.EXTRACTION)
                    return session
                self._ensure_categorization_batches(session)
                self._transition(session, SessionStatus.CATEGORIZING)

            if session.status == SessionStatus.CATEGORIZING:
                self._run_stage(session, Stage.CATEGORIZATION)
                if self._discard_if_cancelled(session):
                    return session
                if self._cancel.is_set() and session.outstanding(Stage.CATEGORIZATION):
                    self._transition(session, SessionStatus.PAUSED, Stage.CATEGORIZATION)
                    return session
                self._transition(session, SessionStatus.COMPLETED)
        except InvalidInput:
            raise
        except Exception as e:
            self._fail(session, e)
            raise
        finally:
            self._driving = None
        # A listener may have cancelled on the final status change
        self._discard_if_cancelled(session)
        return session

    def _begin_driving(self, session: ImportSession) -> None:
        self._cancel.clear()
        self._cancel_requested.clear()
        self._driving = session.id

    def _discard_if_cancelled(self, session: ImportSession) -> bool:
        """Finish a cancel that arrived while a stage was running."""
        if not self._cancel_requested.is_set():
            return False
        self._cancel_requested.clear()
        self._transition(session, SessionStatus.CANCELLED)
        self._discard(session.id)
        return True

    def _pause_after(self, session: ImportSession, stage: Stage) -> None:
        """Pause after a stopped stage run, remembering what to continue with."""
        if session.outstanding(stage):
            self._transition(session, SessionStatus.PAUSED, stage)
            return
        # The stage finished anyway; the next one has not started
        self._ensure_categorization_batches(session)
        self._transition(session, SessionStatus.PAUSED, Stage.CATEGORIZATION)

    def _check_rows(self, session: ImportSession, rows: Sequence[Any] | None) -> None:
        """Outstanding extraction needs the same file the session was started with."""
        if not session.outstanding(Stage.EXTRACTION):
            return
        if rows is None:
            raise InvalidInput("The file rows are required to continue extraction")
        if len(rows) != session.total_rows_in_file:
            raise InvalidInput(
                f"File has {len(rows)} rows, session expects {session.total_rows_in_file}"
            )

    def _run_extraction(self, session: ImportSession, rows: Sequence[Any] | None) -> None:
        self._check_rows(session, rows)
        if session.outstanding(Stage.EXTRACTION):
            self._run_stage(session, Stage.EXTRACTION, rows)

    def _ensure_categorization_batches(self, session: ImportSession) -> list[BatchRecord]:
        """One categorization batch per succeeded extraction batch (same index and rows)."""
        existing = {b.index for b in session.batches_for(Stage.CATEGORIZATION)}
        new = [
            BatchRecord(index=b.index, row_range=b.row_range, stage=Stage.CATEGORIZATION)
            for b in session.batches_for(Stage.EXTRACTION)
            if b.status == BatchStatus.SUCCEEDED and b.index not in existing
        ]
        if new:
            session.version = self.store.add_batches(session.id, new)
            session.batches.extend(new)
            logger.debug("Session %s: %d categorization batches added", session.id, len(new))
        return new

    def _works_for(
        self, session: ImportSession, stage: Stage, rows: Sequence[Any] | None
    ) -> list[BatchWork]:
        works = []
        for batch in session.outstanding(stage):
            if stage == Stage.EXTRACTION:
                if rows is None:
                    raise InvalidInput("The file rows are required to run extraction")
                payload: Sequence[Any] = rows[batch.row_range.start : batch.row_range.end]
            else:
                payload = session.transactions_in(batch.row_range)
            works.append(BatchWork(batch=batch, payload=payload))
        return works

    def _run_stage(
        self, session: ImportSession, stage: Stage, rows: Sequence[Any] | None = None
    ) -> None:
        works = self._works_for(session, stage, rows)
        if not works:
            return

        already = len(session.batches_for(stage)) - len(works)
        logger.info(
            "Session %s: running %s on %d batches (%d already done)",
            session.id,
            stage.value,
            len(works),
            already,
        )
        events = self.scheduler.run(
            works,
            self.invokers[stage],
            self.config.parallel_count,
            self._cancel,
            already_completed=already,
        )
        try:
            for event in events:
                self._apply(session, event)
                self._notify(session, event, stage)
        except BaseException:
            # Stop dispatching; started calls finish while the generator closes
            self._cancel.set()
            raise
        finally:
            events.close()

    # Checkpointing

    def _apply(self, session: ImportSession, event: SchedulerEvent) -> None:
        """Checkpoint one scheduler event into the session."""
        if event.kind == SchedulerEventKind.PROGRESS or event.batch is None:
            return

        batch = session.get_batch(event.batch.stage, event.batch.index)
        if batch is None:
            raise SessionStoreError(
                f"Unknown {event.batch.stage.value} batch {event.batch.index}", session.id
            )

        if event.kind == SchedulerEventKind.BATCH_STARTED:
            batch.status = BatchStatus.IN_FLIGHT
            session.version = self.store.mark_batch(
                session.id, batch.stage, batch.index, BatchStatus.IN_FLIGHT, batch.last_error
            )

        elif event.kind == SchedulerEventKind.BATCH_RETRIED:
            outcome = self._require_outcome(session, event)
            batch.status = BatchStatus.IN_FLIGHT
            batch.retry_count = outcome.attempt
            batch.last_error = outcome.error
            session.version = self.store.mark_batch(
                session.id,
                batch.stage,
                batch.index,
                BatchStatus.IN_FLIGHT,
                batch.last_error,
                retry_count=batch.retry_count,
            )

        elif event.kind == SchedulerEventKind.BATCH_SUCCEEDED:
            outcome = self._require_outcome(session, event)
            batch.status = BatchStatus.SUCCEEDED
            batch.retry_count = outcome.attempt
            batch.last_error = None
            batch.terminal = False
            if batch.stage == Stage.EXTRACTION:
                self._apply_extracted(session, batch, outcome.items)
            else:
                self._apply_categorized(session, batch, outcome.items)

        elif event.kind == SchedulerEventKind.BATCH_FAILED:
            batch.status = BatchStatus.FAILED
            batch.retry_count = max(event.attempt, batch.retry_count)
            if event.outcome is not None:
                batch.last_error = event.outcome.error
            batch.terminal = event.terminal
            failed = None
            if event.terminal:
                failed = FailedBatchRecord(
                    batch_index=batch.index,
                    row_range=batch.row_range,
                    stage=batch.stage,
                    error=batch.last_error or "Unknown error",
                    retry_count=batch.retry_count,
                )
                session.failed_batches = [
                    f
                    for f in session.failed_batches
                    if not (f.stage == failed.stage and f.batch_index == failed.batch_index)
                ]
                session.failed_batches.append(failed)
            session.version = self.store.mark_batch(
                session.id,
                batch.stage,
                batch.index,
                BatchStatus.FAILED,
                batch.last_error,
                retry_count=batch.retry_count,
                terminal=batch.terminal,
                failed=failed,
            )

    @staticmethod
    def _require_outcome(session: ImportSession, event: SchedulerEvent) -> BatchOutcome:
        if event.outcome is None:
            raise SessionStoreError(
                f"{event.kind.value} event without an outcome for batch {event.batch.index}",
                session.id,
            )
        return event.outcome

    def _apply_extracted(
        self, session: ImportSession, batch: BatchRecord, items: list[ExtractedTransaction]
    ) -> None:
        staged: list[StagedTransaction] = []
        for item in items:
            tx_id = generate_transaction_id(
                session.file_fingerprint,
                item.row_number,
                item.amount,
                item.date,
                item.description,
            )
            if tx_id in session.staged_transactions or any(t.id == tx_id for t in staged):
                logger.debug("Skipping duplicate extracted transaction %s", tx_id)
                continue
            staged.append(
                StagedTransaction(
                    id=tx_id,
                    source_row_range=batch.row_range,
                    row_number=item.row_number,
                    raw_fields=item.to_raw_fields(),
                )
            )

        session.version = self.store.append_staged_transactions(
            session.id, staged, completed_batch=batch
        )
        for tx in staged:
            session.staged_transactions[tx.id] = tx

    def _apply_categorized(
        self, session: ImportSession, batch: BatchRecord, items: list[CategorizedUpdate]
    ) -> None:
        updated: list[StagedTransaction] = []
        for update in items:
            tx = session.staged_transactions.get(update.transaction_id)
            if tx is None:
                logger.warning(
                    "Categorization returned unknown transaction %s", update.transaction_id
                )
                continue
            tx.apply_update(update, self.config.low_confidence_threshold)
            updated.append(tx)

        session.version = self.store.apply_categorized_updates(
            session.id, updated, completed_batch=batch
        )

    # User controls

    def stop(self) -> None:
        """Request a pause. Safe to call from any thread."""
        if not self._cancel.is_set():
            logger.info("Stop requested, waiting for in-flight batches")
        self._cancel.set()

    def categorize_and_show_paused(self, session_id: str) -> ImportSession:
        """
        Categorize what was already extracted while extraction is paused.

        Ends in ``paused`` (resume continues extraction) when extraction
        batches are still outstanding, otherwise in ``completed``.
        """
        session = self.load(session_id)
        if session.status != SessionStatus.PAUSED:
            raise InvalidTransitionError(session.status, SessionStatus.CATEGORIZING)

        try:
            self._ensure_categorization_batches(session)
        except SessionStoreError as e:
            self._fail(session, e)
            raise
        if not session.batches_for(Stage.CATEGORIZATION):
            raise InvalidInput("Nothing has been extracted yet")

        self._begin_driving(session)
        self._transition(session, SessionStatus.CATEGORIZING)
        try:
            self._run_stage(session, Stage.CATEGORIZATION)
            if self._discard_if_cancelled(session):
                return session
            if session.outstanding(Stage.EXTRACTION):
                self._transition(session, SessionStatus.PAUSED, Stage.EXTRACTION)
            elif session.outstanding(Stage.CATEGORIZATION):
                self._transition(session, SessionStatus.PAUSED, Stage.CATEGORIZATION)
            else:
                self._transition(session, SessionStatus.COMPLETED)
        except SessionStoreError as e:
            self._fail(session, e)
            raise
        finally:
            self._driving = None
        self._discard_if_cancelled(session)
        return session

    def reset(self, session_id: str) -> ImportSession:
        """Move an errored session back to idle; accumulated results are kept."""
        session = self.load(session_id)
        self._transition(session, SessionStatus.IDLE)
        return session

    def retry_failed(self, session_id: str, stage: Stage) -> ImportSession:
        """
        Give the terminally failed batches of a stage a fresh set of retries.

        Only while paused. The session stays paused and picks the
        retried batches up on resume.
        """
        session = self.load(session_id)
        if session.status != SessionStatus.PAUSED:
            raise InvalidTransitionError(session.status, SessionStatus.PAUSED)

        session.version = self.store.reset_failed_batches(session.id, stage)
        for batch in session.batches_for(stage):
            if batch.status == BatchStatus.FAILED:
                batch.status = BatchStatus.PENDING
                batch.retry_count = 0
                batch.last_error = None
                batch.terminal = False
        session.failed_batches = [f for f in session.failed_batches if f.stage != stage]

        resume_stage = (
            Stage.EXTRACTION if session.outstanding(Stage.EXTRACTION) else Stage.CATEGORIZATION
        )
        session.version = self.store.update_status(
            session.id, SessionStatus.PAUSED, resume_stage, session.error_message
        )
        session.resume_stage = resume_stage
        self._notify(session)
        return session

    def update_category(
        self, session_id: str, transaction_id: str, category_code: str
    ) -> ImportSession:
        """Record the user's category for one staged transaction."""
        session = self.load(session_id)
        if session.status not in REVIEWABLE_STATUSES:
            raise InvalidInput(
                f"Categories can only be edited while paused or completed, "
                f"session is '{session.status.value}'"
            )
        if transaction_id not in session.staged_transactions:
            raise InvalidInput(f"Transaction {transaction_id} is not staged in this session")

        session.version = self.store.set_user_category(session.id, transaction_id, category_code)
        tx = session.staged_transactions[transaction_id]
        tx.user_category = category_code
        tx.reviewed = True
        tx.needs_review = False
        return session

    def approve(self, session_id: str) -> TransferResult:
        """Transfer the categorized transactions and close the session."""
        if self.finalizer is None:
            raise RuntimeError("No finalizer configured")
        return self.finalizer.approve(session_id)

    def cancel(self, session_id: str) -> bool:
        """
        Discard the session; the ledger is untouched.

        A session that is being driven right now is discarded once its
        in-flight batches have finished: the running call then returns it
        as ``cancelled``. Safe to call from any thread or listener.
        """
        if self.finalizer is None:
            raise RuntimeError("No finalizer configured")
        if session_id == self._driving:
            logger.info("Cancel requested for running session %s", session_id)
            self._cancel_requested.set()
            self._cancel.set()
            return True
        return self._discard(session_id)

    def _discard(self, session_id: str) -> bool:
        if self.finalizer is None:
            raise RuntimeError("No finalizer configured")
        return self.finalizer.cancel(session_id)

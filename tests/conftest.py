"""Test fixtures and utilities."""

import dataclasses
import threading
import time
from decimal import Decimal
from pathlib import Path

import pytest

from statement_import.config import PipelineConfig
from statement_import.pipeline import PipelineOrchestrator, StageTimeoutError
from statement_import.schemas.categories import CategoryTaxonomy
from statement_import.schemas.dedupe import compute_file_hash
from statement_import.schemas.session import (
    CategorizedUpdate,
    ExtractedTransaction,
    ImportSession,
    SessionStatus,
    Stage,
)
from statement_import.state_store import SessionStore

# Raw statement rows as read from a Turkish bank export
SAMPLE_ROWS = [
    ["02.01.2024", "EFT ACME DANISMANLIK FATURA 101", "15.000,00", "65.000,00"],
    ["03.01.2024", "POS SHELL ISTANBUL", "-1.250,40", "63.749,60"],
    ["04.01.2024", "HAVALE MAAS OCAK", "-22.000,00", "41.749,60"],
    ["05.01.2024", "EFT MASRAFI", "-12,50", "41.737,10"],
    ["08.01.2024", "TURKCELL FATURA", "-649,99", "41.087,11"],
    ["09.01.2024", "GELEN EFT ZDHC GATEWAY", "8.400,00", "49.487,11"],
    ["10.01.2024", "VIRMAN HESAPLAR ARASI", "-5.000,00", "44.487,11"],
    ["11.01.2024", "THY BILET", "-3.120,00", "41.367,11"],
    ["12.01.2024", "KDV ODEMESI GIB", "-4.800,00", "36.567,11"],
    ["15.01.2024", "GELEN EFT SBT RAPOR", "12.000,00", "48.567,11"],
]

SAMPLE_FINGERPRINT = compute_file_hash(b"sample statement")


def _row_amount(row: list[str]) -> Decimal:
    return Decimal(row[2].replace(".", "").replace(",", "."))


class FakeExtractionInvoker:
    """Extraction invoker returning one transaction per row.

    ``errors`` maps a batch index to an exception raised on every call, or
    to a list of exceptions raised on successive calls before succeeding.
    """

    stage = Stage.EXTRACTION

    def __init__(self, errors: dict | None = None, delay: float = 0.0):
        self.errors = dict(errors or {})
        self.delay = delay
        self.calls: list[int] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def calls_for(self, index: int) -> int:
        return self.calls.count(index)

    def invoke(self, batch, payload, timeout):
        with self._lock:
            self.calls.append(batch.index)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            error = self.errors.get(batch.index)
            if isinstance(error, list):
                if error:
                    raise error.pop(0)
            elif error is not None:
                raise error
            return [
                ExtractedTransaction(
                    row_number=batch.row_range.start + i,
                    date="2024-01-%02d" % (batch.row_range.start + i + 1),
                    description=row[1],
                    amount=_row_amount(row),
                    original_date=row[0],
                    original_amount=row[2],
                )
                for i, row in enumerate(payload)
            ]
        finally:
            with self._lock:
                self.active -= 1


class FakeCategorizationInvoker:
    """Categorization invoker assigning the generic income/expense codes."""

    stage = Stage.CATEGORIZATION

    def __init__(self, confidence: float = 0.9, errors: dict | None = None):
        self.confidence = confidence
        self.errors = dict(errors or {})
        self.calls: list[int] = []
        self.taxonomy = CategoryTaxonomy()

    def invoke(self, batch, payload, timeout):
        self.calls.append(batch.index)
        error = self.errors.get(batch.index)
        if error is not None:
            raise error
        updates = []
        for tx in payload:
            code = "DIGER_IN" if tx.amount >= 0 else "DIGER_OUT"
            category = self.taxonomy.get(code)
            updates.append(
                CategorizedUpdate(
                    transaction_id=tx.id,
                    category_code=code,
                    category_type=category.type.value,
                    confidence=self.confidence,
                    reasoning="test",
                    affects_pnl=True,
                    balance_impact="equity_increase" if tx.amount >= 0 else "equity_decrease",
                )
            )
        return updates


def always_timeout() -> StageTimeoutError:
    return StageTimeoutError("AI gateway timed out after 120s", Stage.EXTRACTION)


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> SessionStore:
    """Fresh session store."""
    return SessionStore(temp_db)


@pytest.fixture
def rows() -> list[list[str]]:
    return [list(r) for r in SAMPLE_ROWS]


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """10 rows -> 3 batches, two in flight, no backoff waits."""
    return PipelineConfig(
        batch_size=4,
        parallel_count=2,
        max_retries=3,
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        call_timeout_seconds=5.0,
    )


@pytest.fixture
def make_orchestrator(store, pipeline_config):
    """Factory for orchestrators over the shared store."""

    def _make(extraction=None, categorization=None, config=None, finalizer=None):
        return PipelineOrchestrator(
            store,
            extraction or FakeExtractionInvoker(),
            categorization or FakeCategorizationInvoker(),
            config=config or pipeline_config,
            finalizer=finalizer,
        )

    return _make


@pytest.fixture
def new_session(store):
    """Factory for sessions stored in ``uploading``."""

    def _make(user_id: str = "user-1", fingerprint: str = SAMPLE_FINGERPRINT) -> ImportSession:
        session = ImportSession(
            id=f"session-{fingerprint[:8]}-{user_id}",
            user_id=user_id,
            file_name="ocak.xlsx",
            file_fingerprint=fingerprint,
            batch_size=4,
        )
        session.transition_to(SessionStatus.UPLOADING)
        return store.create(session)

    return _make


@pytest.fixture
def serial_config(pipeline_config) -> PipelineConfig:
    """One batch in flight at a time, for deterministic stop points."""
    return dataclasses.replace(pipeline_config, parallel_count=1)

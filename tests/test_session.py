"""Tests for the import session schema."""

from decimal import Decimal

import pytest

from statement_import.schemas.session import (
    ALLOWED_TRANSITIONS,
    BatchRecord,
    BatchStatus,
    CategorizedUpdate,
    ImportSession,
    InvalidTransitionError,
    RowRange,
    SessionStatus,
    Stage,
    StagedTransaction,
    check_transition,
)


def _tx(row: int, amount: str, category: str | None = None, **kwargs) -> StagedTransaction:
    return StagedTransaction(
        id=f"abc:r{row + 1}",
        source_row_range=RowRange(0, 4),
        row_number=row,
        raw_fields={"date": f"2024-01-0{row + 1}", "description": "x", "amount": amount},
        category=category,
        **kwargs,
    )


class TestRowRange:
    def test_half_open(self):
        rows = RowRange(4, 8)

        assert len(rows) == 4
        assert 4 in rows
        assert 7 in rows
        assert 8 not in rows
        assert str(rows) == "[4,8)"

    @pytest.mark.parametrize("start,end", [(-1, 3), (5, 5), (6, 2)])
    def test_invalid(self, start, end):
        with pytest.raises(ValueError):
            RowRange(start, end)

    def test_dict_round_trip(self):
        assert RowRange.from_dict(RowRange(0, 25).to_dict()) == RowRange(0, 25)


class TestTransitions:
    """The status transition table."""

    def test_forward_path(self):
        session = ImportSession(id="s", user_id="u", file_name="f", file_fingerprint="x")

        for target in (
            SessionStatus.UPLOADING,
            SessionStatus.EXTRACTING,
            SessionStatus.CATEGORIZING,
            SessionStatus.COMPLETED,
        ):
            session.transition_to(target)

        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.parametrize(
        "current,target",
        [
            (SessionStatus.IDLE, SessionStatus.EXTRACTING),
            (SessionStatus.UPLOADING, SessionStatus.COMPLETED),
            (SessionStatus.COMPLETED, SessionStatus.EXTRACTING),
            (SessionStatus.COMPLETED, SessionStatus.PAUSED),
            (SessionStatus.CATEGORIZING, SessionStatus.EXTRACTING),
            (SessionStatus.ERROR, SessionStatus.EXTRACTING),
            (SessionStatus.CANCELLED, SessionStatus.IDLE),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(current, target)

        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_every_active_status_can_cancel(self):
        for status, targets in ALLOWED_TRANSITIONS.items():
            if status != SessionStatus.CANCELLED:
                assert SessionStatus.CANCELLED in targets

    def test_cancelled_is_final(self):
        assert ALLOWED_TRANSITIONS[SessionStatus.CANCELLED] == frozenset()

    def test_failed_transition_leaves_status(self):
        session = ImportSession(id="s", user_id="u", file_name="f", file_fingerprint="x")

        with pytest.raises(InvalidTransitionError):
            session.transition_to(SessionStatus.COMPLETED)

        assert session.status == SessionStatus.IDLE


class TestBatchRecord:
    def test_is_done(self):
        batch = BatchRecord(index=0, row_range=RowRange(0, 4), stage=Stage.EXTRACTION)
        assert batch.needs_work

        batch.status = BatchStatus.FAILED
        assert not batch.is_done

        batch.terminal = True
        assert batch.is_done

        batch.status = BatchStatus.SUCCEEDED
        batch.terminal = False
        assert batch.is_done


class TestStagedTransaction:
    def test_final_category_prefers_user(self):
        tx = _tx(0, "-10.00", "OFIS", user_category="TELEKOM")

        assert tx.final_category == "TELEKOM"
        assert tx.is_categorized

    def test_amount_parsing(self):
        assert _tx(0, "-649.99").amount == Decimal("-649.99")
        assert _tx(0, "garbage").amount == Decimal("0")
        assert _tx(0, "NaN").amount == Decimal("0")
        assert _tx(0, "Infinity").amount == Decimal("0")

    def test_apply_update_flags_low_confidence(self):
        tx = _tx(0, "-10.00")
        update = CategorizedUpdate(
            transaction_id=tx.id,
            category_code="DIGER_OUT",
            category_type="EXPENSE",
            confidence=0.3,
            reasoning="unclear",
        )

        tx.apply_update(update, low_confidence_threshold=0.7)

        assert tx.category == "DIGER_OUT"
        assert tx.ai_reasoning == "unclear"
        assert tx.needs_review


class TestSessionSummary:
    def test_summary(self):
        session = ImportSession(id="s", user_id="u", file_name="f", file_fingerprint="x")
        for tx in (
            _tx(0, "15000.00", "DANIS", affects_pnl=True, ai_confidence=0.9),
            _tx(1, "-649.99", "TELEKOM", affects_pnl=True, ai_confidence=0.5),
            _tx(2, "-5000.00", "IC_TRANSFER", affects_pnl=False, ai_confidence=0.9),
            _tx(3, "-1.00"),
        ):
            session.staged_transactions[tx.id] = tx

        summary = session.summary(low_confidence_threshold=0.7)

        assert summary.total_transactions == 4
        assert summary.categorized_count == 3
        assert summary.low_confidence_count == 1
        assert summary.total_income == Decimal("15000.00")
        assert summary.total_expense == Decimal("649.99")
        assert summary.date_range_start == "2024-01-01"
        assert summary.date_range_end == "2024-01-04"

    def test_transactions_in_row_order(self):
        session = ImportSession(id="s", user_id="u", file_name="f", file_fingerprint="x")
        for tx in (_tx(2, "1"), _tx(0, "1"), _tx(1, "1")):
            session.staged_transactions[tx.id] = tx

        rows = [t.row_number for t in session.transactions_in(RowRange(0, 4))]

        assert rows == [0, 1, 2]
        assert session.transactions_in(RowRange(4, 8)) == []

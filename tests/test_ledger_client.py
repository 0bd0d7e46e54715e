"""
Tests for the ledger backends.

The REST client is tested with the responses library to mock HTTP
requests; the SQLite ledger against a temporary state database.
"""

import json
from decimal import Decimal

import pytest
import responses

from statement_import.config import VatConfig
from statement_import.ledger_client import (
    LedgerAPIError,
    LedgerClient,
    LedgerConnectionError,
    SqliteLedger,
    build_ledger_entry,
)
from statement_import.schemas.session import RowRange, StagedTransaction


def _entry(index: int = 0, amount: str = "-649.99"):
    staged = StagedTransaction(
        id=f"{index:016x}:r{index + 1}",
        source_row_range=RowRange(0, 4),
        row_number=index,
        raw_fields={"date": "2024-01-08", "description": "TURKCELL FATURA", "amount": amount},
        category="TELEKOM",
        category_type="EXPENSE",
        ai_confidence=0.9,
    )
    return build_ledger_entry(staged, "user-1", "ocak.xlsx", VatConfig())


class TestLedgerClient:
    """Test the REST ledger client."""

    BASE_URL = "http://ledger.test"
    TOKEN = "ledger-token-123"
    TRANSACTIONS_URL = f"{BASE_URL}/api/v1/transactions"

    @responses.activate
    def test_lookup_retried_on_server_error(self):
        responses.add(responses.GET, self.TRANSACTIONS_URL, status=503)
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": [{"id": "7"}]})

        client = LedgerClient(self.BASE_URL, self.TOKEN, backoff_factor=0)

        assert client.exists("abc:r1") is True

    @responses.activate
    def test_create_not_retried_on_server_error(self):
        """A POST that failed with 503 may still have been stored, so it is sent once."""
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)
        responses.add(responses.POST, self.TRANSACTIONS_URL, status=503)
        responses.add(responses.POST, self.TRANSACTIONS_URL, json={"data": {"id": "2"}})

        client = LedgerClient(self.BASE_URL, self.TOKEN, backoff_factor=0)
        with pytest.raises(LedgerAPIError) as exc_info:
            client.create_transaction(_entry())

        assert exc_info.value.status_code == 503
        posts = [c for c in responses.calls if c.request.method == "POST"]
        assert len(posts) == 1

    @responses.activate
    def test_auth_header_sent(self):
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)

        LedgerClient(self.BASE_URL, self.TOKEN).exists("abc:r1")

        assert responses.calls[0].request.headers["Authorization"] == f"Bearer {self.TOKEN}"
        assert "external_id=abc%3Ar1" in responses.calls[0].request.url

    @responses.activate
    def test_exists(self):
        responses.add(
            responses.GET,
            self.TRANSACTIONS_URL,
            json={"data": [{"id": "7", "external_id": "abc:r1"}]},
            status=200,
        )

        assert LedgerClient(self.BASE_URL, self.TOKEN).exists("abc:r1") is True

    @responses.activate
    def test_create_transaction(self):
        """Test creating a new transaction sends the entry and session id."""
        entry = _entry()
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)
        responses.add(
            responses.POST, self.TRANSACTIONS_URL, json={"data": {"id": "42"}}, status=200
        )

        created = LedgerClient(self.BASE_URL, self.TOKEN).create_transaction(entry, "session-1")

        assert created is True
        body = json.loads(responses.calls[1].request.body)
        assert body["external_id"] == entry.external_id
        assert body["amount"] == "-649.99"
        assert body["vat_amount"] == "108.33"
        assert body["import_session_id"] == "session-1"

    @responses.activate
    def test_create_skips_existing(self):
        responses.add(
            responses.GET,
            self.TRANSACTIONS_URL,
            json={"data": [{"id": "7"}]},
            status=200,
        )

        created = LedgerClient(self.BASE_URL, self.TOKEN).create_transaction(_entry())

        assert created is False
        assert len(responses.calls) == 1

    @responses.activate
    def test_conflict_counts_as_present(self):
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)
        responses.add(
            responses.POST,
            self.TRANSACTIONS_URL,
            json={"message": "Duplicate external_id"},
            status=409,
        )

        assert LedgerClient(self.BASE_URL, self.TOKEN).create_transaction(_entry()) is False

    @responses.activate
    def test_validation_error(self):
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)
        responses.add(
            responses.POST,
            self.TRANSACTIONS_URL,
            json={"message": "Invalid", "errors": {"amount": ["must not be zero"]}},
            status=422,
        )

        with pytest.raises(LedgerAPIError) as exc_info:
            LedgerClient(self.BASE_URL, self.TOKEN, max_retries=0).create_transaction(_entry())

        assert exc_info.value.status_code == 422
        assert "amount: must not be zero" in str(exc_info.value)

    @responses.activate
    def test_connection_error(self):
        import requests

        responses.add(
            responses.GET,
            self.TRANSACTIONS_URL,
            body=requests.exceptions.ConnectionError("refused"),
        )

        with pytest.raises(LedgerConnectionError):
            LedgerClient(self.BASE_URL, self.TOKEN, max_retries=0).exists("abc:r1")

    @responses.activate
    def test_record_many_returns_inserted(self):
        entries = [_entry(0), _entry(1)]
        responses.add(
            responses.GET,
            self.TRANSACTIONS_URL,
            json={"data": [{"id": "1"}]},
            status=200,
        )
        responses.add(responses.GET, self.TRANSACTIONS_URL, json={"data": []}, status=200)
        responses.add(responses.POST, self.TRANSACTIONS_URL, json={"data": {"id": "2"}}, status=200)

        inserted = LedgerClient(self.BASE_URL, self.TOKEN).record_many(entries, "session-1")

        assert inserted == [entries[1].external_id]


class TestSqliteLedger:
    """Ledger table in the state database."""

    def test_record_many_is_idempotent(self, store, new_session):
        ledger = SqliteLedger(store)
        entries = [_entry(0), _entry(1, "15000.00")]

        first = ledger.record_many(entries, new_session().id)
        second = ledger.record_many(entries, "already-gone")

        assert first == [e.external_id for e in entries]
        assert second == []
        assert len(ledger.list_entries("user-1")) == 2

    def test_record_many_deletes_session(self, store, new_session):
        session = new_session()

        SqliteLedger(store).record_many([_entry()], session.id)

        assert store.load(session.id) is None

    def test_amounts_stored_as_text(self, store, new_session):
        ledger = SqliteLedger(store)
        ledger.record_many([_entry(0, "15000.00")], new_session().id)

        row = ledger.list_entries("user-1")[0]
        assert Decimal(row["amount"]) == Decimal("15000.00")
        assert Decimal(row["net_amount"]) == Decimal("12500.00")
        assert row["is_income"] == 1
        assert ledger.exists(row["external_id"])
        assert not ledger.exists("missing:r1")

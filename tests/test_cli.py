"""Tests for CLI commands.

These tests verify that all CLI commands are properly registered and that
the commands drive sessions end to end against a temporary state database.
"""

import importlib
import json

import openpyxl
import pytest
import yaml
from conftest import SAMPLE_ROWS, FakeCategorizationInvoker, FakeExtractionInvoker

from statement_import.ledger_client import SqliteLedger
from statement_import.pipeline import Finalizer, PipelineOrchestrator
from statement_import.runner.main import create_cli, main
from statement_import.schemas.session import SessionStatus
from statement_import.state_store import SessionStore

# The runner package re-exports main(), which shadows the module attribute
cli = importlib.import_module("statement_import.runner.main")


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config pointing at a temporary state database."""
    for name in ("AI_GATEWAY_API_KEY", "STATEMENT_IMPORT_DB", "STATEMENT_IMPORT_USER"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "pipeline": {
                    "batch_size": 4,
                    "parallel_count": 2,
                    "base_delay_seconds": 0.0,
                    "max_delay_seconds": 0.0,
                },
                "ai": {"api_key": "test-key", "base_url": "http://ai.test/v1"},
                "state_db_path": str(tmp_path / "state.db"),
                "user_id": "user-1",
            }
        )
    )
    return path


@pytest.fixture
def statement_file(tmp_path):
    """The sample rows as an XLSX workbook."""
    path = tmp_path / "ocak.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in SAMPLE_ROWS:
        ws.append(row)
    wb.save(path)
    return path


@pytest.fixture
def fake_pipeline(monkeypatch):
    """Replace the AI-backed invokers with the test fakes."""

    def build(config, store, client, file_name="", taxonomy=None):
        return PipelineOrchestrator(
            store,
            FakeExtractionInvoker(),
            FakeCategorizationInvoker(),
            config=config.pipeline,
            finalizer=Finalizer(store, SqliteLedger(store), config.vat),
        )

    monkeypatch.setattr(cli, "build_orchestrator", build)


def _run(config_file, *args) -> int:
    return main(["-c", str(config_file), *args])


def _only_session(tmp_path):
    store = SessionStore(tmp_path / "state.db")
    sessions = store.list_sessions("user-1")
    assert len(sessions) == 1
    return store, store.load(sessions[0]["id"])


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        parser = create_cli()
        commands = {
            "import": ["import", "a.xlsx"],
            "resume": ["resume", "sid"],
            "categorize-paused": ["categorize-paused", "sid"],
            "status": ["status"],
            "failed": ["failed", "sid"],
            "review": ["review", "sid"],
            "retry-failed": ["retry-failed", "sid"],
            "approve": ["approve", "sid"],
            "cancel": ["cancel", "sid"],
            "init-config": ["init-config"],
        }
        for name, argv in commands.items():
            assert parser.parse_args(argv).command == name

    def test_resume_file_optional(self):
        args = create_cli().parse_args(["resume", "sid"])
        assert args.file is None

    def test_retry_failed_stage(self):
        parser = create_cli()

        assert parser.parse_args(["retry-failed", "sid"]).stage == "extraction"
        args = parser.parse_args(["retry-failed", "sid", "--stage", "categorization"])
        assert args.stage == "categorization"

        with pytest.raises(SystemExit):
            parser.parse_args(["retry-failed", "sid", "--stage", "upload"])

    def test_review_options(self):
        args = create_cli().parse_args(
            ["review", "sid", "--transaction", "abc:r1", "--category", "OFIS"]
        )
        assert args.transaction == "abc:r1"
        assert args.category == "OFIS"
        assert args.all is False

    def test_no_command_returns_error(self):
        assert main([]) == 1


class TestConfigCommands:
    """init-config and config validation."""

    def test_init_config(self, tmp_path):
        path = tmp_path / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1

    def test_import_requires_api_key(self, tmp_path, statement_file, monkeypatch, capsys):
        monkeypatch.delenv("AI_GATEWAY_API_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"state_db_path": str(tmp_path / "state.db")}))

        assert main(["-c", str(path), "import", str(statement_file)]) == 1
        assert "api_key" in capsys.readouterr().out

    def test_status_works_without_api_key(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("AI_GATEWAY_API_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"state_db_path": str(tmp_path / "state.db")}))

        assert main(["-c", str(path), "status"]) == 0
        assert "(none)" in capsys.readouterr().out


class TestImportFlow:
    """import, status, review, approve and cancel against one database."""

    def test_import_completes(
        self, tmp_path, config_file, statement_file, fake_pipeline, capsys
    ):
        assert _run(config_file, "import", str(statement_file)) == 0

        out = capsys.readouterr().out
        assert "Importing 10 rows" in out
        assert "Ready for review" in out

        _, session = _only_session(tmp_path)
        assert session.status == SessionStatus.COMPLETED
        assert len(session.staged_transactions) == 10

    def test_import_same_file_reports_existing(
        self, tmp_path, config_file, statement_file, fake_pipeline, capsys
    ):
        _run(config_file, "import", str(statement_file))
        capsys.readouterr()

        assert _run(config_file, "import", str(statement_file)) == 0
        assert "already complete" in capsys.readouterr().out
        _only_session(tmp_path)

    def test_import_unsupported_file(self, tmp_path, config_file, capsys):
        path = tmp_path / "statement.pdf"
        path.write_bytes(b"%PDF")

        assert _run(config_file, "import", str(path)) == 1
        assert "Unsupported file type" in capsys.readouterr().out

    def test_status_json(self, tmp_path, config_file, statement_file, fake_pipeline, capsys):
        _run(config_file, "import", str(statement_file))
        _, session = _only_session(tmp_path)
        capsys.readouterr()

        assert _run(config_file, "status", session.id, "--json") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "completed"
        assert len(data["staged_transactions"]) == 10

    def test_status_unknown_session(self, config_file, capsys):
        assert _run(config_file, "status", "missing") == 1
        assert "not found" in capsys.readouterr().out

    def test_failed_none(self, tmp_path, config_file, statement_file, fake_pipeline, capsys):
        _run(config_file, "import", str(statement_file))
        _, session = _only_session(tmp_path)
        capsys.readouterr()

        assert _run(config_file, "failed", session.id) == 0
        assert "No failed batches" in capsys.readouterr().out

    def test_review_set_category(self, tmp_path, config_file, statement_file, fake_pipeline):
        _run(config_file, "import", str(statement_file))
        store, session = _only_session(tmp_path)
        tx_id = next(iter(session.staged_transactions))

        argv = ["review", session.id, "--transaction", tx_id, "--category", "ofis"]
        assert _run(config_file, *argv) == 0

        assert store.load(session.id).staged_transactions[tx_id].user_category == "OFIS"

    def test_review_unknown_category(
        self, tmp_path, config_file, statement_file, fake_pipeline, capsys
    ):
        _run(config_file, "import", str(statement_file))
        _, session = _only_session(tmp_path)
        tx_id = next(iter(session.staged_transactions))

        argv = ["review", session.id, "--transaction", tx_id, "--category", "X"]
        assert _run(config_file, *argv) == 1
        assert "Unknown category" in capsys.readouterr().out

    def test_approve(self, tmp_path, config_file, statement_file, fake_pipeline, capsys):
        _run(config_file, "import", str(statement_file))
        store, session = _only_session(tmp_path)
        capsys.readouterr()

        assert _run(config_file, "approve", session.id) == 0

        assert "Transferred 10 transaction(s)" in capsys.readouterr().out
        assert store.load(session.id) is None
        assert len(SqliteLedger(store).list_entries("user-1")) == 10

    def test_cancel(self, tmp_path, config_file, statement_file, fake_pipeline):
        _run(config_file, "import", str(statement_file))
        store, session = _only_session(tmp_path)

        assert _run(config_file, "cancel", session.id) == 0
        assert store.load(session.id) is None
        assert _run(config_file, "cancel", session.id) == 1

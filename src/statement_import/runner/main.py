"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..ai_gateway import AIGatewayClient, CategorizationInvoker, ExtractionInvoker
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..ledger_client import LedgerClient, SqliteLedger, TransactionLedger
from ..pipeline import (
    FinalizationError,
    Finalizer,
    ImportProgress,
    InvalidInput,
    PipelineOrchestrator,
    SchedulerEvent,
    SchedulerEventKind,
)
from ..schemas.categories import CategoryTaxonomy
from ..schemas.session import ImportSession, InvalidTransitionError, SessionStatus, Stage
from ..spreadsheet import SpreadsheetError, compute_file_fingerprint, read_rows
from ..state_store import SessionNotFoundError, SessionStore, SessionStoreError

logger = logging.getLogger(__name__)

# Commands that call the AI gateway and need a complete configuration
AI_COMMANDS = frozenset({"import", "resume", "categorize-paused"})


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="statement-import",
        description="Import bank statement spreadsheets as categorized transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # import command
    import_parser = subparsers.add_parser(
        "import", help="Start (or continue) importing a statement file"
    )
    import_parser.add_argument("file", type=Path, help="CSV or XLSX statement")

    # resume command
    resume_parser = subparsers.add_parser("resume", help="Resume a paused or interrupted session")
    resume_parser.add_argument("session_id", help="Session ID")
    resume_parser.add_argument(
        "file",
        type=Path,
        nargs="?",
        help="Statement file (required while extraction is unfinished)",
    )

    # categorize-paused command
    categorize_parser = subparsers.add_parser(
        "categorize-paused", help="Categorize what a paused session already extracted"
    )
    categorize_parser.add_argument("session_id", help="Session ID")

    # status command
    status_parser = subparsers.add_parser("status", help="Show sessions or one session")
    status_parser.add_argument("session_id", nargs="?", help="Session ID")
    status_parser.add_argument(
        "--json", action="store_true", help="Print the full session state as JSON"
    )

    # failed command
    failed_parser = subparsers.add_parser("failed", help="List failed batches of a session")
    failed_parser.add_argument("session_id", help="Session ID")

    # review command
    review_parser = subparsers.add_parser(
        "review", help="List transactions needing review, or set a category"
    )
    review_parser.add_argument("session_id", help="Session ID")
    review_parser.add_argument("--transaction", help="Transaction ID to recategorize")
    review_parser.add_argument("--category", help="Category code to assign")
    review_parser.add_argument(
        "--all", action="store_true", help="List all transactions, not only flagged ones"
    )

    # retry-failed command
    retry_parser = subparsers.add_parser(
        "retry-failed", help="Reset failed batches of a stage for another run"
    )
    retry_parser.add_argument("session_id", help="Session ID")
    retry_parser.add_argument(
        "--stage",
        choices=[s.value for s in Stage],
        default=Stage.EXTRACTION.value,
        help="Stage whose failed batches are reset (default: extraction)",
    )

    # approve command
    approve_parser = subparsers.add_parser(
        "approve", help="Transfer categorized transactions to the ledger"
    )
    approve_parser.add_argument("session_id", help="Session ID")

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Discard a session")
    cancel_parser.add_argument("session_id", help="Session ID")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def build_ledger(config: Config, store: SessionStore) -> TransactionLedger:
    """Permanent store selected by ``ledger.backend``."""
    if config.ledger.backend == "http":
        return LedgerClient(
            base_url=config.ledger.base_url,
            token=config.ledger.token,
            timeout=config.ledger.timeout,
        )
    return SqliteLedger(store)


def build_orchestrator(
    config: Config,
    store: SessionStore,
    client: AIGatewayClient,
    file_name: str = "",
    taxonomy: CategoryTaxonomy | None = None,
) -> PipelineOrchestrator:
    """Wire invokers, finalizer and orchestrator from the configuration."""
    taxonomy = taxonomy or CategoryTaxonomy()
    return PipelineOrchestrator(
        store,
        ExtractionInvoker(client, config.ai.extraction_model, file_name=file_name),
        CategorizationInvoker(client, config.ai.categorization_model, taxonomy),
        config=config.pipeline,
        finalizer=Finalizer(store, build_ledger(config, store), config.vat, taxonomy),
    )


@contextmanager
def stop_on_signal(orchestrator: PipelineOrchestrator) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a graceful pause while a run is active."""

    def handler(signum, frame):
        print("\n⏸  Stopping after the running batches finish...")
        orchestrator.stop()

    previous = {
        sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def print_progress(progress: ImportProgress, event: SchedulerEvent | None) -> None:
    """Progress listener printing one line per finished batch."""
    if event is None:
        print(f"  ▶ {progress.status.value}")
        return
    if event.kind == SchedulerEventKind.BATCH_RETRIED:
        print(
            f"  ↻ batch {event.batch.index} retry {event.attempt} "
            f"in {event.retry_delay_seconds:.0f}s"
        )
    elif event.kind == SchedulerEventKind.BATCH_FAILED and event.terminal:
        error = event.outcome.error if event.outcome else "unknown error"
        print(f"  ✗ batch {event.batch.index} {event.batch.row_range} failed: {error}")
    elif event.kind == SchedulerEventKind.PROGRESS:
        eta = ""
        if progress.estimated_time_left_seconds is not None:
            eta = f", ~{progress.estimated_time_left_seconds:.0f}s left"
        print(
            f"  {progress.stage.value if progress.stage else ''}: "
            f"{progress.current}/{progress.total} batches ({progress.percent:.0f}%), "
            f"{progress.processed_transactions} transactions{eta}"
        )


def print_session(session: ImportSession, config: Config) -> None:
    summary = session.summary(config.pipeline.low_confidence_threshold)
    print(f"\n📄 {session.file_name} [{session.id}]")
    print("=" * 60)
    print(f"  Status:                 {session.status.value}")
    if session.resume_stage:
        print(f"  Resume stage:           {session.resume_stage.value}")
    if session.error_message:
        print(f"  Error:                  {session.error_message}")
    print(f"  Rows in file:           {session.total_rows_in_file}")
    for stage in Stage:
        batches = session.batches_for(stage)
        if batches:
            print(
                f"  {stage.value.capitalize():<24}{session.succeeded_count(stage)}/"
                f"{len(batches)} batches"
            )
    print(f"  Transactions:           {summary.total_transactions}")
    print(f"  Categorized:            {summary.categorized_count}")
    print(f"  Low confidence:         {summary.low_confidence_count}")
    print(f"  Income:                 {summary.total_income}")
    print(f"  Expense:                {summary.total_expense}")
    if summary.date_range_start:
        print(f"  Dates:                  {summary.date_range_start} .. {summary.date_range_end}")
    print(f"  Failed batches:         {len(session.failed_batches)}")
    print()


def _finish(session: ImportSession, config: Config) -> int:
    print_session(session, config)
    if session.status == SessionStatus.PAUSED:
        print(f"⏸  Paused. Continue with: statement-import resume {session.id}")
    elif session.status == SessionStatus.COMPLETED:
        print(f"✓ Ready for review. Approve with: statement-import approve {session.id}")
    elif session.status == SessionStatus.CANCELLED:
        print(f"✗ Session {session.id} was cancelled and discarded")
    return 0


def cmd_import(config: Config, file_path: Path) -> int:
    """Start or continue the import of a statement file."""
    rows = read_rows(file_path)
    fingerprint = compute_file_fingerprint(file_path)
    store = SessionStore(config.state_db_path)

    with AIGatewayClient(config.ai) as client:
        orchestrator = build_orchestrator(config, store, client, file_path.name)
        orchestrator.add_listener(print_progress)

        session = orchestrator.start_upload(config.user_id, file_path.name, fingerprint)
        if session.status == SessionStatus.COMPLETED:
            print(f"✓ Session {session.id} for this file is already complete")
            return _finish(session, config)
        if session.status == SessionStatus.ERROR:
            session = orchestrator.reset(session.id)

        print(f"📥 Importing {len(rows)} rows from {file_path.name} (session {session.id})")
        with stop_on_signal(orchestrator):
            session = orchestrator.run(session.id, rows)

    return _finish(session, config)


def cmd_resume(config: Config, session_id: str, file_path: Path | None) -> int:
    """Resume a paused or interrupted session."""
    store = SessionStore(config.state_db_path)
    session = store.load(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)

    rows = None
    if file_path is not None:
        if compute_file_fingerprint(file_path) != session.file_fingerprint:
            print(f"❌ {file_path.name} is not the file this session was started with")
            return 1
        rows = read_rows(file_path)

    with AIGatewayClient(config.ai) as client:
        orchestrator = build_orchestrator(config, store, client, session.file_name)
        orchestrator.add_listener(print_progress)
        with stop_on_signal(orchestrator):
            session = orchestrator.resume(session_id, rows)

    return _finish(session, config)


def cmd_categorize_paused(config: Config, session_id: str) -> int:
    """Categorize the transactions a paused session has extracted so far."""
    store = SessionStore(config.state_db_path)
    with AIGatewayClient(config.ai) as client:
        orchestrator = build_orchestrator(config, store, client)
        orchestrator.add_listener(print_progress)
        with stop_on_signal(orchestrator):
            session = orchestrator.categorize_and_show_paused(session_id)
    return _finish(session, config)


def cmd_status(config: Config, session_id: str | None, as_json: bool) -> int:
    """Show all sessions of the user, or one session."""
    store = SessionStore(config.state_db_path)

    if session_id:
        session = store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if as_json:
            print(json.dumps(session.to_dict(), indent=2, default=str))
            return 0
        print_session(session, config)
        return 0

    sessions = store.list_sessions(config.user_id)
    if as_json:
        print(json.dumps(sessions, indent=2, default=str))
        return 0

    print("\n📊 Import Sessions")
    print("=" * 60)
    if not sessions:
        print("  (none)")
    for s in sessions:
        print(
            f"  {s['id']}  {s['status']:<12} {s['file_name']}  "
            f"rows={s['total_rows_in_file']} staged={s['staged_count']} "
            f"failed={s['failed_count']}"
        )
    print()
    return 0


def cmd_failed(config: Config, session_id: str) -> int:
    """List terminally failed batches."""
    store = SessionStore(config.state_db_path)
    session = store.load(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)

    if not session.failed_batches:
        print("✓ No failed batches")
        return 0

    print(f"\n✗ {len(session.failed_batches)} failed batch(es)")
    for failed in session.failed_batches:
        print(
            f"  [{failed.stage.value}] batch {failed.batch_index} rows "
            f"{failed.row_range.start + 1}-{failed.row_range.end} "
            f"after {failed.retry_count} attempt(s): {failed.error}"
        )
    if session.status == SessionStatus.PAUSED:
        print(f"\nRetry with: statement-import retry-failed {session_id} --stage <stage>")
    return 0


def cmd_review(
    config: Config,
    session_id: str,
    transaction_id: str | None,
    category: str | None,
    show_all: bool,
) -> int:
    """List flagged transactions or assign a category to one."""
    store = SessionStore(config.state_db_path)
    taxonomy = CategoryTaxonomy()

    if transaction_id or category:
        if not (transaction_id and category):
            print("❌ --transaction and --category must be given together")
            return 1
        matched = taxonomy.get(category)
        if matched is None:
            print(f"❌ Unknown category '{category}'. Known: {', '.join(taxonomy.codes)}")
            return 1
        with AIGatewayClient(config.ai) as client:
            orchestrator = build_orchestrator(config, store, client, taxonomy=taxonomy)
            orchestrator.update_category(session_id, transaction_id, matched.code)
        print(f"✓ {transaction_id} -> {matched.code} ({matched.name})")
        return 0

    session = store.load(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)

    shown = 0
    for tx in sorted(session.staged_transactions.values(), key=lambda t: t.row_number):
        if not show_all and not (tx.needs_review or not tx.is_categorized):
            continue
        flag = "⚠" if tx.needs_review else " "
        print(
            f"  {flag} {tx.id}  {tx.date or '????-??-??'}  {tx.amount:>12}  "
            f"{(tx.final_category or '-'):<12} {tx.ai_confidence:.2f}  {tx.description[:50]}"
        )
        shown += 1

    if shown == 0:
        print("✓ Nothing to review")
    return 0


def cmd_retry_failed(config: Config, session_id: str, stage: Stage) -> int:
    """Reset the failed batches of a stage."""
    store = SessionStore(config.state_db_path)
    with AIGatewayClient(config.ai) as client:
        orchestrator = build_orchestrator(config, store, client)
        session = orchestrator.retry_failed(session_id, stage)
    print(f"✓ Failed {stage.value} batches reset")
    print(f"  Continue with: statement-import resume {session.id}")
    return 0


def cmd_approve(config: Config, session_id: str) -> int:
    """Transfer categorized transactions to the ledger."""
    store = SessionStore(config.state_db_path)
    finalizer = Finalizer(store, build_ledger(config, store), config.vat)
    try:
        result = finalizer.approve(session_id)
    except FinalizationError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Transferred {result.transferred} transaction(s)")
    if result.already_present:
        print(f"  {result.already_present} were already in the ledger")
    if result.discarded_uncategorized:
        print(f"  {result.discarded_uncategorized} uncategorized transaction(s) discarded")
    return 0


def cmd_cancel(config: Config, session_id: str) -> int:
    """Discard a session."""
    store = SessionStore(config.state_db_path)
    finalizer = Finalizer(store, build_ledger(config, store), config.vat)
    if not finalizer.cancel(session_id):
        raise SessionNotFoundError(session_id)
    print(f"✓ Session {session_id} cancelled")
    return 0


def cmd_init_config(config_path: Path) -> int:
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
        if parsed.command in AI_COMMANDS:
            errors = config.validate()
            if errors:
                raise ConfigValidationError("; ".join(errors))
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    try:
        if parsed.command == "import":
            return cmd_import(config, parsed.file)
        elif parsed.command == "resume":
            return cmd_resume(config, parsed.session_id, parsed.file)
        elif parsed.command == "categorize-paused":
            return cmd_categorize_paused(config, parsed.session_id)
        elif parsed.command == "status":
            return cmd_status(config, parsed.session_id, parsed.json)
        elif parsed.command == "failed":
            return cmd_failed(config, parsed.session_id)
        elif parsed.command == "review":
            return cmd_review(
                config, parsed.session_id, parsed.transaction, parsed.category, parsed.all
            )
        elif parsed.command == "retry-failed":
            return cmd_retry_failed(config, parsed.session_id, Stage(parsed.stage))
        elif parsed.command == "approve":
            return cmd_approve(config, parsed.session_id)
        elif parsed.command == "cancel":
            return cmd_cancel(config, parsed.session_id)
        else:
            parser.print_help()
            return 1
    except (
        SessionNotFoundError, InvalidInput, InvalidTransitionError, SpreadsheetError
    ) as e:
        print(f"❌ {e}")
        return 1
    except SessionStoreError as e:
        logger.error("State store failure: %s", e)
        print(f"❌ State store failure: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""CRM Follow-up Engine -- Command Line Entry Point.

Sub-commands:

    queues   Classify accounts into overdue / due-today / upcoming queues
             and print the team summary, or one owner's digest.
    assign   Resolve a bulk assignment over the store's unassigned
             accounts and apply it one account at a time.
    import   Load the migration workbook into the SQLite store,
             reconciling device batches on the way in.

Usage::

    # From the project root:
    python -m crm_engine.main import --xlsx data/crm_export.xlsx
    python -m crm_engine.main queues
    python -m crm_engine.main queues --owner u-17 --window 7
    python -m crm_engine.main assign --strategy BY_PRIORITY --owners u-1 u-2

    # Custom config / database:
    python -m crm_engine.main --config custom.yaml --db /tmp/crm.db queues
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from .assignment import BulkAssignResult, resolve
from .cadence import next_due_for_account
from .config import CrmEngineConfig, get_config
from .data_loader import LoadResult, load_workbook
from .digest import DigestRenderer
from .errors import CrmEngineError
from .models import Account, AssignmentStrategy, FollowUpTask
from .queue_classifier import QueueBuckets, classify, for_owner, summarize_queues
from .store import FollowUpStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run Results
# ---------------------------------------------------------------------------

@dataclass
class QueueRunResult:
    """Output of the ``queues`` command."""

    buckets: QueueBuckets = field(default_factory=QueueBuckets)
    summary: dict = field(default_factory=dict)
    rendered: str = ""
    accounts_considered: int = 0
    due_dates_computed: int = 0
    cadence_errors: dict[str, str] = field(default_factory=dict)
    digest_path: Path | None = None


@dataclass
class ImportRunResult:
    """Output of the ``import`` command."""

    load_result: LoadResult | None = None
    owners_saved: int = 0
    accounts_saved: int = 0
    tasks_saved: int = 0
    tasks_skipped: int = 0
    tasks_existing: int = 0
    batches_registered: int = 0
    batch_rejections: dict[str, str] = field(default_factory=dict)
    tasks_scheduled: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_now(raw: Optional[str], cfg: CrmEngineConfig) -> datetime:
    """Parse ``--now`` (ISO 8601), defaulting to the current time in the
    configured reference timezone."""
    if not raw:
        return datetime.now(cfg.queue.tzinfo)
    parsed = datetime.fromisoformat(raw)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=cfg.queue.tzinfo)


def _open_store(cfg: CrmEngineConfig, db_path: Optional[str]) -> FollowUpStore:
    if db_path:
        cfg.store.db_path = db_path
    return FollowUpStore.from_config(cfg)


def fill_missing_due_dates(
    accounts: list[Account],
    now: datetime,
    default_months: Optional[int],
) -> tuple[list[Account], int, dict[str, str]]:
    """Compute ``next_follow_up_date`` for schedulable accounts lacking one.

    The cadence counts from the last contact, or from *now* for accounts
    never contacted.  Accounts whose cadence cannot be resolved are left
    unchanged and reported.
    """
    filled: list[Account] = []
    computed = 0
    errors: dict[str, str] = {}
    for account in accounts:
        if account.next_follow_up_date is not None or not account.is_schedulable:
            filled.append(account)
            continue
        try:
            due = next_due_for_account(
                account, account.last_contact_date or now, default_months=default_months,
            )
        except CrmEngineError as exc:
            logger.warning("Account %s: %s", account.account_id, exc)
            errors[account.account_id] = str(exc)
            filled.append(account)
            continue
        filled.append(replace(account, next_follow_up_date=due))
        computed += 1
    return filled, computed, errors


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def run_queues(
    cfg: CrmEngineConfig,
    *,
    xlsx_path: str | Path | None = None,
    db_path: str | None = None,
    owner_id: str | None = None,
    window_days: int | None = None,
    now: datetime,
    write_digest: bool = False,
) -> QueueRunResult:
    """Classify the portfolio and render the summary or an owner digest."""
    result = QueueRunResult()
    window = cfg.queue.upcoming_window_days if window_days is None else window_days
    tasks: list[FollowUpTask] | None = None

    if xlsx_path:
        loaded = load_workbook(xlsx_path)
        accounts, owners, tasks = loaded.accounts, loaded.owners, loaded.tasks
    else:
        store = _open_store(cfg, db_path)
        accounts, owners, tasks = store.list_accounts(), store.list_owners(), store.list_tasks()

    accounts, result.due_dates_computed, result.cadence_errors = fill_missing_due_dates(
        accounts, now, cfg.cadence.default_frequency_months,
    )
    result.accounts_considered = len(accounts)
    result.buckets = classify(accounts, now, window, cfg.queue.tzinfo)
    result.summary = summarize_queues(result.buckets, owners, tasks)

    renderer = DigestRenderer()
    if owner_id:
        owner = next((o for o in owners if o.owner_id == owner_id), None)
        if owner is None:
            raise ValueError(f"Unknown owner: {owner_id}")
        result.rendered = renderer.render_owner_digest(
            owner, for_owner(result.buckets, owner_id), now, window,
        )
    else:
        result.rendered = renderer.render_manager_summary(result.summary, now)

    if write_digest:
        cfg.output.ensure_dirs()
        name = f"digest_{owner_id or 'team'}_{now.strftime('%Y%m%d')}.txt"
        result.digest_path = cfg.output.digest_dir / name
        result.digest_path.write_text(result.rendered, encoding="utf-8")
        logger.info("Digest written to %s", result.digest_path)

    return result


def run_assign(
    cfg: CrmEngineConfig,
    *,
    strategy: str | None = None,
    owner_ids: list[str] | None = None,
    account_ids: list[str] | None = None,
    limit: int | None = None,
    db_path: str | None = None,
    actor: str = "cli",
) -> BulkAssignResult:
    """Resolve and apply a bulk assignment against the store."""
    store = _open_store(cfg, db_path)
    strategy_member = AssignmentStrategy.parse(strategy or cfg.assignment.default_strategy)

    if strategy_member is AssignmentStrategy.LEAST_LOADED:
        store.refresh_open_task_counts()

    owners = store.list_owners(active_only=True)
    if owner_ids:
        by_id = {o.owner_id: o for o in owners}
        owners = [by_id[oid] for oid in owner_ids if oid in by_id]

    plan = resolve(
        strategy_member,
        owners,
        store.list_accounts(unassigned_only=True),
        account_ids=account_ids,
        limit=cfg.assignment.bulk_limit if limit is None else limit,
    )
    return store.apply_assignments(plan, actor=actor)


def run_import(
    cfg: CrmEngineConfig,
    *,
    xlsx_path: str | Path,
    db_path: str | None = None,
    schedule: bool = False,
    now: datetime,
) -> ImportRunResult:
    """Load a workbook into the store."""
    result = ImportRunResult()
    loaded = load_workbook(xlsx_path)
    loaded.print_summary()
    result.load_result = loaded

    store = _open_store(cfg, db_path)
    result.owners_saved = store.upsert_owners(loaded.owners, actor="import")

    known_owners = {o.owner_id for o in loaded.owners} | {o.owner_id for o in store.list_owners()}
    accounts = []
    for account in loaded.accounts:
        if account.account_owner_id and account.account_owner_id not in known_owners:
            logger.warning("Account %s references unknown owner %s -- importing unassigned",
                           account.account_id, account.account_owner_id)
            account = replace(account, account_owner_id=None)
        accounts.append(account)
    result.accounts_saved = store.upsert_accounts(accounts, actor="import")

    known_accounts = {a.account_id for a in accounts}
    for task in loaded.tasks:
        if task.account_id not in known_accounts or task.assigned_to not in known_owners:
            logger.warning("Task %s references an unknown account or owner -- skipping", task.task_id)
            result.tasks_skipped += 1
            continue
        if store.insert_task(task, actor="import"):
            result.tasks_saved += 1
        else:
            result.tasks_existing += 1

    for batch, identifiers in loaded.batches:
        try:
            store.register_batch(batch, identifiers, actor="import")
        except CrmEngineError as exc:
            logger.warning("Batch %s rejected: %s", batch.batch_id, exc)
            result.batch_rejections[batch.batch_id] = str(exc)
            continue
        result.batches_registered += 1

    if schedule:
        for account in accounts:
            try:
                if store.schedule_next_task(account.account_id, now=now) is not None:
                    result.tasks_scheduled += 1
            except CrmEngineError as exc:
                logger.warning("Could not schedule follow-up for %s: %s", account.account_id, exc)

    return result


# ---------------------------------------------------------------------------
# Summary Printers
# ---------------------------------------------------------------------------

def _print_import_summary(result: ImportRunResult) -> None:
    print()
    print("=" * 65)
    print("  CRM Follow-up Engine -- Import Summary")
    print("=" * 65)
    print(f"  Owners saved        : {result.owners_saved}")
    print(f"  Accounts saved      : {result.accounts_saved}")
    print(f"  Tasks saved         : {result.tasks_saved}")
    print(f"  Tasks skipped       : {result.tasks_skipped}")
    print(f"  Tasks already stored: {result.tasks_existing}")
    print(f"  Batches registered  : {result.batches_registered}")
    print(f"  Follow-ups scheduled: {result.tasks_scheduled}")
    if result.batch_rejections:
        print("-" * 65)
        print("  Rejected batches:")
        for batch_id, reason in result.batch_rejections.items():
            print(f"    {batch_id:<20s}: {reason}")
    print("=" * 65)


def _print_assign_summary(result: BulkAssignResult) -> None:
    print()
    print("=" * 65)
    print("  CRM Follow-up Engine -- Bulk Assignment")
    print("=" * 65)
    print(f"  Assigned            : {result.assigned_count}")
    print(f"  Owners used         : {result.owners_used}")
    print(f"  Failed              : {result.failed_count}")
    for account_id, reason in result.failures.items():
        print(f"    {account_id:<20s}: {reason}")
    print("=" * 65)


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CRM Follow-up Engine - queues, bulk assignment and imports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m crm_engine.main import --xlsx data/crm_export.xlsx --schedule\n"
            "  python -m crm_engine.main queues --owner u-17\n"
            "  python -m crm_engine.main assign --strategy ROUND_ROBIN\n"
        ),
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--db", type=str, default=None,
                        help="Path to the SQLite store (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")
    parser.add_argument("--log-to-file", action="store_true",
                        help="Also append log output to output.log_file")

    sub = parser.add_subparsers(dest="command", required=True)

    queues = sub.add_parser("queues", help="Classify follow-up queues")
    queues.add_argument("--xlsx", type=str, default=None,
                        help="Read from a workbook instead of the store")
    queues.add_argument("--owner", type=str, default=None,
                        help="Render this owner's digest instead of the team summary")
    queues.add_argument("--window", type=int, default=None,
                        help="Upcoming window in days (overrides config)")
    queues.add_argument("--now", type=str, default=None,
                        help="Reference moment, ISO 8601 (default: now)")
    queues.add_argument("--write", action="store_true",
                        help="Also write the digest to the output directory")

    assign = sub.add_parser("assign", help="Bulk-assign unassigned accounts")
    assign.add_argument("--strategy", type=str, default=None,
                        choices=[s.value for s in AssignmentStrategy],
                        help="Assignment strategy (default from config)")
    assign.add_argument("--owners", nargs="+", default=None,
                        help="Owner ids to assign to (default: all active)")
    assign.add_argument("--accounts", nargs="+", default=None,
                        help="Account ids, in order (MANUAL strategy)")
    assign.add_argument("--limit", type=int, default=None,
                        help="Maximum accounts to assign (default from config)")

    imp = sub.add_parser("import", help="Import a workbook into the store")
    imp.add_argument("--xlsx", type=str, required=True, help="Path to the XLSX workbook")
    imp.add_argument("--schedule", action="store_true",
                     help="Create the next follow-up task for assigned accounts")
    imp.add_argument("--now", type=str, default=None,
                     help="Reference moment, ISO 8601 (default: now)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        cfg = get_config(args.config)
        if args.log_to_file:
            cfg.output.ensure_dirs()
            handler = logging.FileHandler(cfg.output.log_path, encoding="utf-8")
            handler.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
            ))
            logging.getLogger().addHandler(handler)

        if args.command == "queues":
            result = run_queues(
                cfg,
                xlsx_path=args.xlsx,
                db_path=args.db,
                owner_id=args.owner,
                window_days=args.window,
                now=_resolve_now(args.now, cfg),
                write_digest=args.write,
            )
            print(result.rendered)
            if result.cadence_errors:
                print(f"{len(result.cadence_errors)} account(s) skipped: cadence could not be resolved")

        elif args.command == "assign":
            _print_assign_summary(run_assign(
                cfg,
                strategy=args.strategy,
                owner_ids=args.owners,
                account_ids=args.accounts,
                limit=args.limit,
                db_path=args.db,
            ))

        elif args.command == "import":
            _print_import_summary(run_import(
                cfg,
                xlsx_path=args.xlsx,
                db_path=args.db,
                schedule=args.schedule,
                now=_resolve_now(args.now, cfg),
            ))

        return 0

    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except CrmEngineError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

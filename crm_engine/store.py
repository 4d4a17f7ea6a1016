"""
CRM Follow-up Engine -- SQLite Store

Persistent, SQLite-backed home for accounts, owners, follow-up tasks,
the interaction log and device inventory.  The engine modules are pure;
this store is the collaborator that applies their results and honours
the two concurrency contracts:

    Task completion    one transaction; the task row is flipped with a
                       compare-and-swap on (status, version), so of two
                       concurrent completions exactly one succeeds and
                       the other gets TaskAlreadyTerminal.
    Bulk assignment    one short transaction per account, guarded by
                       ``account_owner_id IS NULL``; an account claimed
                       in the meantime is skipped and reported.

Database schema:
    accounts         - Subscription records with cadence + ownership
    owners           - Team members (active flag, cached open task count)
    followup_tasks   - Follow-up tasks (never deleted)
    interactions     - Append-only contact log
    device_batches   - Received inventory batches
    device_units     - Tracked units (IMEI), globally unique
    audit_log        - Every mutation, for compliance

Usage:
    from crm_engine.store import FollowUpStore

    store = FollowUpStore("path/to/crm.db")
    store.upsert_accounts(accounts)
    completion = store.complete_task(task_id, payload, now=now)
    result = store.apply_assignments(plan, actor="manager@example.com")
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from . import cadence, followups, inventory
from .assignment import AssignmentPlan, BulkAssignResult, apply_plan
from .config import DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS, PROJECT_ROOT
from .errors import (
    DuplicateBatch,
    InvalidAssignee,
    InvalidStatusTransition,
    PreconditionError,
    StaleWriteError,
    TaskAlreadyTerminal,
)
from .models import (
    Account,
    Channel,
    CrmStatus,
    DeviceBatch,
    DeviceStatus,
    DeviceUnit,
    FollowUpTask,
    Interaction,
    InteractionPayload,
    InteractionType,
    Outcome,
    Owner,
    Priority,
    TaskStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_DB_PATH = PROJECT_ROOT / "crm_engine.db"

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS owners (
    owner_id            TEXT PRIMARY KEY,
    first_name          TEXT NOT NULL DEFAULT '',
    last_name           TEXT NOT NULL DEFAULT '',
    email               TEXT NOT NULL DEFAULT '',
    active              INTEGER NOT NULL DEFAULT 1,
    open_task_count     INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS accounts (
    account_id                  TEXT PRIMARY KEY,
    name                        TEXT NOT NULL DEFAULT '',
    crm_status                  TEXT NOT NULL DEFAULT 'ACTIVE',
    priority                    TEXT NOT NULL DEFAULT 'NORMAL',
    follow_up_frequency_months  INTEGER,
    follow_up_times_per_year    INTEGER,
    last_contact_date           TEXT,
    next_follow_up_date         TEXT,
    account_owner_id            TEXT,
    tags_json                   TEXT NOT NULL DEFAULT '[]',     -- JSON array
    version                     INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (account_owner_id) REFERENCES owners(owner_id)
);

CREATE TABLE IF NOT EXISTS followup_tasks (
    task_id             TEXT PRIMARY KEY,
    account_id          TEXT NOT NULL,
    title               TEXT NOT NULL DEFAULT '',
    due_date            TEXT NOT NULL,
    assigned_to         TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'PENDING',
    priority            TEXT NOT NULL DEFAULT 'NORMAL',
    created_at          TEXT,
    completed_at        TEXT,
    cancelled_at        TEXT,
    cancel_reason       TEXT NOT NULL DEFAULT '',
    interaction_id      TEXT,
    system_generated    INTEGER NOT NULL DEFAULT 0,
    version             INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (account_id) REFERENCES accounts(account_id),
    FOREIGN KEY (assigned_to) REFERENCES owners(owner_id)
);

CREATE TABLE IF NOT EXISTS interactions (
    interaction_id      TEXT PRIMARY KEY,
    account_id          TEXT NOT NULL,
    task_id             TEXT,
    interaction_type    TEXT NOT NULL,
    channel             TEXT NOT NULL,
    outcome             TEXT NOT NULL,
    notes               TEXT NOT NULL,
    occurred_at         TEXT NOT NULL,
    duration_minutes    INTEGER,
    recorded_by         TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (account_id) REFERENCES accounts(account_id),
    FOREIGN KEY (task_id) REFERENCES followup_tasks(task_id)
);

CREATE TABLE IF NOT EXISTS device_batches (
    batch_id            TEXT PRIMARY KEY,
    batch_number        TEXT NOT NULL DEFAULT '',
    product_id          TEXT NOT NULL DEFAULT '',
    quantity_received   INTEGER NOT NULL,
    unit_tracked        INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS device_units (
    identifier          TEXT PRIMARY KEY,
    batch_id            TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'AVAILABLE',
    notes               TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (batch_id) REFERENCES device_batches(batch_id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    record_type TEXT NOT NULL,
    record_id   TEXT NOT NULL,
    action      TEXT NOT NULL,
    actor       TEXT NOT NULL DEFAULT 'system',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_accounts_owner ON accounts(account_owner_id);
CREATE INDEX IF NOT EXISTS idx_accounts_next ON accounts(next_follow_up_date);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON followup_tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_account ON followup_tasks(account_id);
CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON followup_tasks(assigned_to);
CREATE INDEX IF NOT EXISTS idx_interactions_account ON interactions(account_id);
CREATE INDEX IF NOT EXISTS idx_units_batch ON device_units(batch_id);
CREATE INDEX IF NOT EXISTS idx_audit_record ON audit_log(record_type, record_id);
"""

# Re-syncing an existing account refreshes its profile only.  Schedule
# dates and the owner are filled when still empty, never overwritten;
# those change through task completion, reassignment or update_crm_config.
_UPSERT_ACCOUNT_SQL = """
INSERT INTO accounts (
    account_id, name, crm_status, priority, follow_up_frequency_months,
    follow_up_times_per_year, last_contact_date, next_follow_up_date,
    account_owner_id, tags_json, version
) VALUES (
    :account_id, :name, :crm_status, :priority, :follow_up_frequency_months,
    :follow_up_times_per_year, :last_contact_date, :next_follow_up_date,
    :account_owner_id, :tags_json, :version
)
ON CONFLICT(account_id) DO UPDATE SET
    name = excluded.name,
    crm_status = excluded.crm_status,
    priority = excluded.priority,
    follow_up_frequency_months = excluded.follow_up_frequency_months,
    follow_up_times_per_year = excluded.follow_up_times_per_year,
    tags_json = excluded.tags_json,
    last_contact_date = COALESCE(accounts.last_contact_date, excluded.last_contact_date),
    next_follow_up_date = COALESCE(accounts.next_follow_up_date, excluded.next_follow_up_date),
    account_owner_id = COALESCE(accounts.account_owner_id, excluded.account_owner_id),
    version = accounts.version + 1
"""

_REFRESH_OPEN_COUNTS_SQL = """
UPDATE owners SET open_task_count = (
    SELECT COUNT(*) FROM followup_tasks
    WHERE followup_tasks.assigned_to = owners.owner_id
      AND followup_tasks.status = 'PENDING'
)
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning("Unparseable timestamp in store: %r", value)
        return None


def _account_to_row(account: Account) -> dict[str, Any]:
    return {
        "account_id": account.account_id,
        "name": account.name,
        "crm_status": account.crm_status.value,
        "priority": account.priority.value,
        "follow_up_frequency_months": account.follow_up_frequency_months,
        "follow_up_times_per_year": account.follow_up_times_per_year,
        "last_contact_date": _dt(account.last_contact_date),
        "next_follow_up_date": _dt(account.next_follow_up_date),
        "account_owner_id": account.account_owner_id,
        "tags_json": json.dumps(account.tags),
        "version": account.version,
    }


def _row_to_account(row: dict[str, Any]) -> Account:
    try:
        tags = json.loads(row.get("tags_json") or "[]")
    except json.JSONDecodeError:
        tags = []
    return Account(
        account_id=row["account_id"],
        name=row.get("name", ""),
        crm_status=CrmStatus.parse(row["crm_status"]),
        priority=Priority.parse(row["priority"]),
        follow_up_frequency_months=row.get("follow_up_frequency_months"),
        follow_up_times_per_year=row.get("follow_up_times_per_year"),
        last_contact_date=_parse_dt(row.get("last_contact_date")),
        next_follow_up_date=_parse_dt(row.get("next_follow_up_date")),
        account_owner_id=row.get("account_owner_id"),
        tags=tags if isinstance(tags, list) else [],
        version=row.get("version", 1),
    )


def _row_to_owner(row: dict[str, Any]) -> Owner:
    return Owner(
        owner_id=row["owner_id"],
        first_name=row.get("first_name", ""),
        last_name=row.get("last_name", ""),
        email=row.get("email", ""),
        active=bool(row.get("active", 1)),
        open_task_count=row.get("open_task_count", 0),
    )


def _task_to_row(task: FollowUpTask) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "account_id": task.account_id,
        "title": task.title,
        "due_date": _dt(task.due_date),
        "assigned_to": task.assigned_to,
        "status": task.status.value,
        "priority": task.priority.value,
        "created_at": _dt(task.created_at),
        "completed_at": _dt(task.completed_at),
        "cancelled_at": _dt(task.cancelled_at),
        "cancel_reason": task.cancel_reason,
        "interaction_id": task.interaction_id,
        "system_generated": 1 if task.system_generated else 0,
        "version": task.version,
    }


def _row_to_task(row: dict[str, Any]) -> FollowUpTask:
    return FollowUpTask(
        task_id=row["task_id"],
        account_id=row["account_id"],
        title=row.get("title", ""),
        due_date=_parse_dt(row["due_date"]),
        assigned_to=row["assigned_to"],
        status=TaskStatus.parse(row["status"]),
        priority=Priority.parse(row["priority"]),
        created_at=_parse_dt(row.get("created_at")),
        completed_at=_parse_dt(row.get("completed_at")),
        cancelled_at=_parse_dt(row.get("cancelled_at")),
        cancel_reason=row.get("cancel_reason", ""),
        interaction_id=row.get("interaction_id"),
        system_generated=bool(row.get("system_generated", 0)),
        version=row.get("version", 1),
    )


def _row_to_interaction(row: dict[str, Any]) -> Interaction:
    return Interaction(
        interaction_id=row["interaction_id"],
        account_id=row["account_id"],
        task_id=row.get("task_id"),
        interaction_type=InteractionType.parse(row["interaction_type"]),
        channel=Channel.parse(row["channel"]),
        outcome=Outcome.parse(row["outcome"]),
        notes=row["notes"],
        occurred_at=_parse_dt(row["occurred_at"]),
        duration_minutes=row.get("duration_minutes"),
        recorded_by=row.get("recorded_by", ""),
    )


def _insert(
    conn: sqlite3.Connection,
    table: str,
    row: dict[str, Any],
    upsert_key: str = "",
    *,
    skip_existing: bool = False,
) -> int:
    """INSERT a row; returns the rowcount (0 when an existing row was skipped)."""
    columns = list(row.keys())
    placeholders = ", ".join(["?"] * len(columns))
    col_str = ", ".join(columns)
    sql = f"INSERT INTO {table} ({col_str}) VALUES ({placeholders})"
    if upsert_key and skip_existing:
        sql += f" ON CONFLICT({upsert_key}) DO NOTHING"
    elif upsert_key:
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != upsert_key)
        sql += f" ON CONFLICT({upsert_key}) DO UPDATE SET {updates}"
    return conn.execute(sql, [row[c] for c in columns]).rowcount


# ---------------------------------------------------------------------------
# FollowUpStore -- the main public API
# ---------------------------------------------------------------------------

class FollowUpStore:
    """Persistent CRM follow-up store backed by SQLite.

    Each public method opens and closes its own connection.  Mutations
    that read-then-write start with ``BEGIN IMMEDIATE`` so the write lock
    is held from the read onwards; the WAL journal keeps readers unblocked.
    """

    def __init__(
        self,
        db_path: str | Path = DEFAULT_DB_PATH,
        *,
        default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
        min_notes_length: int = followups.MIN_NOTES_LENGTH,
        imei_pattern: Optional[str] = inventory.IMEI_PATTERN,
        title_template: str = followups.DEFAULT_TASK_TITLE,
    ):
        self.db_path = Path(db_path)
        self.default_months = default_months
        self.min_notes_length = min_notes_length
        self.imei_pattern = imei_pattern
        self.title_template = title_template

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @classmethod
    def from_config(cls, cfg) -> "FollowUpStore":
        """Build a store from a CrmEngineConfig."""
        return cls(
            cfg.store.resolved_path,
            default_months=cfg.cadence.default_frequency_months,
            min_notes_length=cfg.followups.min_notes_length,
            imei_pattern=cfg.inventory.imei_pattern,
            title_template=cfg.followups.default_title,
        )

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _fetch_one(self, conn: sqlite3.Connection, sql: str, params: tuple) -> Optional[dict[str, Any]]:
        row = conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def upsert_owner(self, owner: Owner, actor: str = "system") -> None:
        self.upsert_owners([owner], actor=actor)

    def upsert_owners(self, owners: Iterable[Owner], actor: str = "system") -> int:
        """Insert or update owners in one transaction.  Returns the count."""
        count = 0
        conn = self._get_conn()
        try:
            for owner in owners:
                row = owner.to_dict()
                row["active"] = 1 if owner.active else 0
                _insert(conn, "owners", row, upsert_key="owner_id")
                self._log_action(conn, "owner", owner.owner_id, "upserted", actor=actor)
                count += 1
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
        finally:
            conn.close()
        return count

    def get_owner(self, owner_id: str) -> Owner | None:
        conn = self._get_conn()
        try:
            row = self._fetch_one(conn, "SELECT * FROM owners WHERE owner_id = ?", (owner_id,))
            return _row_to_owner(row) if row else None
        finally:
            conn.close()

    def list_owners(self, active_only: bool = False) -> list[Owner]:
        """Return owners ordered by id, optionally only the active ones."""
        conn = self._get_conn()
        try:
            sql = "SELECT * FROM owners"
            if active_only:
                sql += " WHERE active = 1"
            rows = conn.execute(sql + " ORDER BY owner_id ASC").fetchall()
            return [_row_to_owner(dict(r)) for r in rows]
        finally:
            conn.close()

    def refresh_open_task_counts(self) -> dict[str, int]:
        """Recompute every owner's cached open (PENDING) task count."""
        conn = self._get_conn()
        try:
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            rows = conn.execute("SELECT owner_id, open_task_count FROM owners").fetchall()
            return {r["owner_id"]: r["open_task_count"] for r in rows}
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def upsert_account(self, account: Account, actor: str = "system") -> None:
        self.upsert_accounts([account], actor=actor)

    def upsert_accounts(self, accounts: Iterable[Account], actor: str = "system") -> int:
        """Insert accounts, or re-sync the profile of existing ones.

        For an account already stored, name, status, priority, cadence and
        tags are refreshed; last contact, next follow-up and owner are
        only filled in when still empty.  Returns the count.
        """
        count = 0
        conn = self._get_conn()
        try:
            for account in accounts:
                conn.execute(_UPSERT_ACCOUNT_SQL, _account_to_row(account))
                self._log_action(conn, "account", account.account_id, "upserted", actor=actor)
                count += 1
            conn.commit()
        finally:
            conn.close()
        return count

    def get_account(self, account_id: str) -> Account | None:
        conn = self._get_conn()
        try:
            row = self._fetch_one(conn, "SELECT * FROM accounts WHERE account_id = ?", (account_id,))
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def list_accounts(
        self,
        owner_id: str | None = None,
        unassigned_only: bool = False,
    ) -> list[Account]:
        """Return accounts ordered by id.

        Args:
            owner_id: Only accounts owned by this owner.
            unassigned_only: Only accounts with no owner.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id:
            clauses.append("account_owner_id = ?")
            params.append(owner_id)
        if unassigned_only:
            clauses.append("account_owner_id IS NULL")

        sql = "SELECT * FROM accounts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY account_id ASC"

        conn = self._get_conn()
        try:
            return [_row_to_account(dict(r)) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def update_crm_config(
        self,
        account_id: str,
        *,
        now: datetime,
        frequency_months: Optional[int] = None,
        times_per_year: Optional[int] = None,
        priority: Optional[Priority | str] = None,
        crm_status: Optional[CrmStatus | str] = None,
        tags: Optional[Iterable[str]] = None,
        expected_version: Optional[int] = None,
        actor: str = "system",
    ) -> Account:
        """
        Change an account's CRM settings; None leaves a field as it is.

        A cadence change recomputes ``next_follow_up_date`` (see
        ``cadence.reconfigure``).  Pending tasks keep their due dates.

        Raises:
            PreconditionError: unknown account.
            InvalidCadenceConfig: a cadence value is not positive.
            StaleWriteError: *expected_version* no longer matches.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            account = self._require_account(conn, account_id)
            if expected_version is not None and expected_version != account.version:
                raise StaleWriteError("Account", account_id, expected_version)

            updated = cadence.reconfigure(
                account,
                now=now,
                frequency_months=frequency_months,
                times_per_year=times_per_year,
                priority=priority,
                crm_status=crm_status,
                tags=tags,
                default_months=self.default_months,
            )
            if updated is account:
                conn.rollback()
                return account

            self._update_account_guarded(conn, updated, account.version)
            self._log_action(conn, "account", account_id, "crm_config_updated", actor=actor, details={
                "follow_up_frequency_months": updated.follow_up_frequency_months,
                "follow_up_times_per_year": updated.follow_up_times_per_year,
                "priority": updated.priority.value,
                "crm_status": updated.crm_status.value,
                "next_follow_up_date": _dt(updated.next_follow_up_date),
            })
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Follow-up tasks
    # ------------------------------------------------------------------

    def _require_active_owner(self, conn: sqlite3.Connection, owner_id: Optional[str]) -> None:
        if not owner_id:
            raise InvalidAssignee(owner_id)
        row = self._fetch_one(
            conn, "SELECT active FROM owners WHERE owner_id = ?", (owner_id,),
        )
        if row is None or not row["active"]:
            raise InvalidAssignee(owner_id)

    def _require_account(self, conn: sqlite3.Connection, account_id: str) -> Account:
        row = self._fetch_one(conn, "SELECT * FROM accounts WHERE account_id = ?", (account_id,))
        if row is None:
            raise PreconditionError(f"Unknown account: {account_id}")
        return _row_to_account(row)

    def create_task(
        self,
        account_id: str,
        due_date: datetime,
        assigned_to: Optional[str],
        priority: Optional[Priority] = None,
        title: Optional[str] = None,
        *,
        now: datetime,
        system_generated: bool = False,
        actor: str = "system",
    ) -> FollowUpTask:
        """Create and persist a PENDING task.

        Raises:
            InvalidAssignee: the assignee is not an active owner.
            PreconditionError: the account does not exist.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._require_active_owner(conn, assigned_to)
            account = self._require_account(conn, account_id)
            task = followups.create_task(
                account, due_date, assigned_to, priority, title,
                now=now, system_generated=system_generated,
                title_template=self.title_template,
            )
            _insert(conn, "followup_tasks", _task_to_row(task))
            self._log_action(conn, "task", task.task_id, "created", actor=actor, details={
                "account_id": account_id,
                "assigned_to": task.assigned_to,
                "due_date": _dt(due_date),
            })
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            return task
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def schedule_next_task(self, account_id: str, *, now: datetime) -> FollowUpTask | None:
        """Create the system task for an account's next cycle.

        Returns None (and writes nothing) when the account is not
        schedulable, has no owner, or already has a PENDING task.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            account = self._require_account(conn, account_id)
            open_row = self._fetch_one(
                conn,
                "SELECT COUNT(*) AS cnt FROM followup_tasks WHERE account_id = ? AND status = ?",
                (account_id, TaskStatus.PENDING.value),
            )
            if not account.is_schedulable or not account.is_assigned or open_row["cnt"]:
                conn.rollback()
                return None

            self._require_active_owner(conn, account.account_owner_id)
            updated, task = followups.schedule_next_task(
                account, now=now, default_months=self.default_months,
                title_template=self.title_template,
            )
            if updated is not account:
                self._update_account_guarded(conn, updated, account.version)
            _insert(conn, "followup_tasks", _task_to_row(task))
            self._log_action(conn, "task", task.task_id, "scheduled", details={
                "account_id": account_id,
                "due_date": _dt(task.due_date),
            })
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            return task
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def insert_task(self, task: FollowUpTask, actor: str = "system") -> bool:
        """Persist an already-built task as-is (used by imports).

        A task id that is already stored is left untouched, so a re-import
        never rewinds a task the state machine has moved on.  Returns
        False in that case.
        """
        conn = self._get_conn()
        try:
            if not _insert(conn, "followup_tasks", _task_to_row(task),
                           upsert_key="task_id", skip_existing=True):
                logger.info("Task %s already stored -- keeping the stored copy", task.task_id)
                return False
            self._log_action(conn, "task", task.task_id, "imported", actor=actor)
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            return True
        finally:
            conn.close()

    def get_task(self, task_id: str) -> FollowUpTask | None:
        conn = self._get_conn()
        try:
            row = self._fetch_one(conn, "SELECT * FROM followup_tasks WHERE task_id = ?", (task_id,))
            return _row_to_task(row) if row else None
        finally:
            conn.close()

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        assigned_to: str | None = None,
        account_id: str | None = None,
    ) -> list[FollowUpTask]:
        """Return tasks ordered by due date, then task id."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus.parse(status).value)
        if assigned_to:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        if account_id:
            clauses.append("account_id = ?")
            params.append(account_id)

        sql = "SELECT * FROM followup_tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY due_date ASC, task_id ASC"

        conn = self._get_conn()
        try:
            return [_row_to_task(dict(r)) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def pending_tasks(self, assigned_to: str | None = None) -> list[FollowUpTask]:
        return self.list_tasks(status=TaskStatus.PENDING, assigned_to=assigned_to)

    def _update_account_guarded(
        self,
        conn: sqlite3.Connection,
        account: Account,
        expected_version: int,
    ) -> None:
        row = _account_to_row(account)
        columns = [c for c in row if c != "account_id"]
        assignments = ", ".join(f"{c} = :{c}" for c in columns)
        result = conn.execute(
            f"UPDATE accounts SET {assignments} "
            "WHERE account_id = :account_id AND version = :expected_version",
            {**row, "expected_version": expected_version},
        )
        if result.rowcount == 0:
            raise StaleWriteError("Account", account.account_id, expected_version)

    def _spawn_follow_on(
        self,
        conn: sqlite3.Connection,
        account: Account,
        *,
        now: datetime,
    ) -> FollowUpTask | None:
        """Insert the next cycle's system task inside the caller's transaction."""
        if not account.is_schedulable or not account.is_assigned or account.next_follow_up_date is None:
            return None
        owner = self._fetch_one(
            conn, "SELECT active FROM owners WHERE owner_id = ?", (account.account_owner_id,),
        )
        if owner is None or not owner["active"]:
            logger.warning("Account %s: owner %s is inactive -- next follow-up not scheduled",
                           account.account_id, account.account_owner_id)
            return None
        open_row = self._fetch_one(
            conn,
            "SELECT COUNT(*) AS cnt FROM followup_tasks WHERE account_id = ? AND status = ?",
            (account.account_id, TaskStatus.PENDING.value),
        )
        if open_row["cnt"]:
            return None

        task = followups.create_task(
            account,
            account.next_follow_up_date,
            account.account_owner_id,
            now=now,
            system_generated=True,
            title_template=self.title_template,
        )
        _insert(conn, "followup_tasks", _task_to_row(task))
        self._log_action(conn, "task", task.task_id, "scheduled", details={
            "account_id": account.account_id,
            "due_date": _dt(task.due_date),
        })
        return task

    def complete_task(
        self,
        task_id: str,
        payload: InteractionPayload,
        *,
        now: datetime,
        actor: str = "system",
    ) -> followups.TaskCompletion:
        """
        Complete a task and persist the interaction, the task flip, the
        account's next follow-up date and the next cycle's system task
        in one transaction.

        The next task is only spawned for a schedulable account whose
        owner is still active; ``completion.next_task`` is None otherwise.

        Raises:
            PreconditionError: unknown task, or notes missing / too short.
            TaskAlreadyTerminal: the task already left PENDING, including
                when another writer completed it first.
            StaleWriteError: the account changed while completing.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = self._fetch_one(conn, "SELECT * FROM followup_tasks WHERE task_id = ?", (task_id,))
            if row is None:
                raise PreconditionError(f"Unknown follow-up task: {task_id}")
            task = _row_to_task(row)
            account = self._require_account(conn, task.account_id)

            completion = followups.complete_task(
                task, account, payload,
                now=now,
                default_months=self.default_months,
                min_notes_length=self.min_notes_length,
            )

            result = conn.execute(
                """UPDATE followup_tasks
                   SET status = ?, completed_at = ?, interaction_id = ?, version = ?
                   WHERE task_id = ? AND status = ? AND version = ?""",
                (
                    TaskStatus.COMPLETED.value,
                    _dt(completion.task.completed_at),
                    completion.interaction.interaction_id,
                    completion.task.version,
                    task_id,
                    TaskStatus.PENDING.value,
                    task.version,
                ),
            )
            if result.rowcount == 0:
                raise TaskAlreadyTerminal(task_id)

            _insert(conn, "interactions", completion.interaction.to_dict())
            self._update_account_guarded(conn, completion.account, account.version)
            self._log_action(conn, "task", task_id, "completed", actor=actor, details={
                "account_id": account.account_id,
                "interaction_id": completion.interaction.interaction_id,
                "next_follow_up_date": _dt(completion.next_follow_up_date),
                "override": completion.used_override,
            })
            next_task = self._spawn_follow_on(conn, completion.account, now=now)
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            return replace(completion, next_task=next_task)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def cancel_task(
        self,
        task_id: str,
        reason: str | None = None,
        *,
        now: datetime,
        actor: str = "system",
    ) -> FollowUpTask:
        """Cancel a PENDING task.  The account's schedule is not touched."""
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = self._fetch_one(conn, "SELECT * FROM followup_tasks WHERE task_id = ?", (task_id,))
            if row is None:
                raise PreconditionError(f"Unknown follow-up task: {task_id}")
            task = _row_to_task(row)
            cancelled = followups.cancel_task(task, reason, now=now)

            result = conn.execute(
                """UPDATE followup_tasks
                   SET status = ?, cancelled_at = ?, cancel_reason = ?, version = ?
                   WHERE task_id = ? AND status = ? AND version = ?""",
                (
                    TaskStatus.CANCELLED.value,
                    _dt(cancelled.cancelled_at),
                    cancelled.cancel_reason,
                    cancelled.version,
                    task_id,
                    TaskStatus.PENDING.value,
                    task.version,
                ),
            )
            if result.rowcount == 0:
                raise TaskAlreadyTerminal(task_id)
            self._log_action(conn, "task", task_id, "cancelled", actor=actor,
                             details={"reason": cancelled.cancel_reason})
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            return cancelled
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_interactions(self, account_id: str) -> list[Interaction]:
        """An account's contact log, oldest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM interactions WHERE account_id = ? ORDER BY occurred_at ASC",
                (account_id,),
            ).fetchall()
            return [_row_to_interaction(dict(r)) for r in rows]
        finally:
            conn.close()

    def log_interaction(
        self,
        account_id: str,
        payload: InteractionPayload,
        *,
        now: datetime,
        task_id: Optional[str] = None,
        actor: str = "system",
    ) -> Interaction:
        """Record a contact outside task completion.

        Updates the account's last contact date; the cadence and any
        referenced task are left as they are.

        Raises:
            PreconditionError: unknown account or task, notes missing /
                too short, or the task belongs to another account.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            account = self._require_account(conn, account_id)
            task = None
            if task_id is not None:
                row = self._fetch_one(conn, "SELECT * FROM followup_tasks WHERE task_id = ?", (task_id,))
                if row is None:
                    raise PreconditionError(f"Unknown follow-up task: {task_id}")
                task = _row_to_task(row)

            updated, interaction = followups.log_interaction(
                account, payload, now=now, task=task,
                min_notes_length=self.min_notes_length,
            )
            _insert(conn, "interactions", interaction.to_dict())
            if updated is not account:
                self._update_account_guarded(conn, updated, account.version)
            self._log_action(conn, "interaction", interaction.interaction_id, "logged", actor=actor,
                             details={"account_id": account_id, "task_id": task_id})
            conn.commit()
            return interaction
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Bulk assignment
    # ------------------------------------------------------------------

    def assign_account(self, account_id: str, owner_id: str, actor: str = "system") -> bool:
        """Claim one unassigned account for *owner_id*.

        Returns False when the account is gone or was already claimed.

        Raises:
            InvalidAssignee: the owner is not active.
        """
        conn = self._get_conn()
        try:
            self._require_active_owner(conn, owner_id)
            result = conn.execute(
                """UPDATE accounts
                   SET account_owner_id = ?, version = version + 1
                   WHERE account_id = ? AND account_owner_id IS NULL""",
                (owner_id, account_id),
            )
            if result.rowcount == 0:
                return False
            self._log_action(conn, "account", account_id, "assigned", actor=actor,
                             details={"owner_id": owner_id})
            conn.commit()
            return True
        finally:
            conn.close()

    def apply_assignments(self, plan: AssignmentPlan, actor: str = "system") -> BulkAssignResult:
        """Apply a resolved plan, one account per transaction."""
        return apply_plan(plan, lambda account_id, owner_id: self.assign_account(
            account_id, owner_id, actor=actor,
        ))

    def reassign_owner(
        self,
        account_id: str,
        owner_id: str,
        *,
        expected_version: Optional[int] = None,
        actor: str = "system",
    ) -> Account:
        """
        Hand an account, and its PENDING tasks, to another active owner.

        Unlike ``assign_account`` this also moves accounts that already
        have an owner.  Completed and cancelled tasks keep their assignee.

        Raises:
            InvalidAssignee: the new owner is unknown or inactive.
            PreconditionError: unknown account.
            StaleWriteError: *expected_version* no longer matches.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._require_active_owner(conn, owner_id)
            account = self._require_account(conn, account_id)
            if expected_version is not None and expected_version != account.version:
                raise StaleWriteError("Account", account_id, expected_version)
            if account.account_owner_id == owner_id:
                conn.rollback()
                return account

            updated = replace(account, account_owner_id=owner_id, version=account.version + 1)
            self._update_account_guarded(conn, updated, account.version)
            moved = conn.execute(
                """UPDATE followup_tasks
                   SET assigned_to = ?, version = version + 1
                   WHERE account_id = ? AND status = ?""",
                (owner_id, account_id, TaskStatus.PENDING.value),
            ).rowcount
            self._log_action(conn, "account", account_id, "reassigned", actor=actor, details={
                "from": account.account_owner_id,
                "to": owner_id,
                "pending_tasks_moved": moved,
            })
            conn.execute(_REFRESH_OPEN_COUNTS_SQL)
            conn.commit()
            logger.info("Account %s reassigned %s -> %s (%d pending task(s) moved)",
                        account_id, account.account_owner_id, owner_id, moved)
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def known_identifiers(self) -> set[str]:
        conn = self._get_conn()
        try:
            return {r["identifier"] for r in conn.execute("SELECT identifier FROM device_units")}
        finally:
            conn.close()

    def register_batch(
        self,
        batch: DeviceBatch,
        submitted_units: Iterable[str | DeviceUnit] = (),
        actor: str = "system",
    ) -> inventory.ReconciliationResult:
        """Reconcile and persist a batch with its units in one transaction.

        The rejection error is raised; nothing is written in that case.

        Raises:
            DuplicateBatch: a batch with this id is already registered.
            QuantityMismatch, DuplicateUnitIdentifier, InvalidUnitIdentifier:
                the submitted units fail reconciliation.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if self._fetch_one(conn, "SELECT 1 FROM device_batches WHERE batch_id = ?", (batch.batch_id,)):
                raise DuplicateBatch(batch.batch_id)
            known = {r["identifier"] for r in conn.execute("SELECT identifier FROM device_units")}
            result = inventory.reconcile(
                batch.quantity_received,
                list(submitted_units),
                unit_tracked=batch.unit_tracked,
                known_identifiers=known,
                identifier_pattern=self.imei_pattern,
                batch_id=batch.batch_id,
            ).raise_for_rejection()

            _insert(conn, "device_batches", {
                "batch_id": batch.batch_id,
                "batch_number": batch.batch_number,
                "product_id": batch.product_id,
                "quantity_received": batch.quantity_received,
                "unit_tracked": 1 if batch.unit_tracked else 0,
                "created_at": _now_iso(),
            })
            for unit in result.units:
                _insert(conn, "device_units", unit.to_dict())
            self._log_action(conn, "batch", batch.batch_id, "registered", actor=actor, details={
                "quantity_received": batch.quantity_received,
                "units": len(result.units),
            })
            conn.commit()
            logger.info("Registered batch %s with %d unit(s)", batch.batch_id, len(result.units))
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_device(self, identifier: str) -> DeviceUnit | None:
        conn = self._get_conn()
        try:
            row = self._fetch_one(conn, "SELECT * FROM device_units WHERE identifier = ?", (identifier,))
            if row is None:
                return None
            return DeviceUnit(
                identifier=row["identifier"],
                status=DeviceStatus.parse(row["status"]),
                batch_id=row["batch_id"],
                notes=row.get("notes", ""),
            )
        finally:
            conn.close()

    def list_devices(self, batch_id: str) -> list[DeviceUnit]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM device_units WHERE batch_id = ? ORDER BY identifier ASC",
                (batch_id,),
            ).fetchall()
            return [
                DeviceUnit(
                    identifier=r["identifier"],
                    status=DeviceStatus.parse(r["status"]),
                    batch_id=r["batch_id"],
                    notes=r["notes"],
                )
                for r in rows
            ]
        finally:
            conn.close()

    def transition_device(
        self,
        identifier: str,
        target: DeviceStatus | str,
        actor: str = "system",
    ) -> DeviceUnit:
        """Move a unit along the device lifecycle.

        Raises:
            PreconditionError: unknown identifier.
            InvalidStatusTransition: the move is not permitted, or the
                unit changed status concurrently.
        """
        unit = self.get_device(identifier)
        if unit is None:
            raise PreconditionError(f"Unknown device: {identifier}")
        moved = inventory.transition(unit, target)

        conn = self._get_conn()
        try:
            result = conn.execute(
                "UPDATE device_units SET status = ? WHERE identifier = ? AND status = ?",
                (moved.status.value, identifier, unit.status.value),
            )
            if result.rowcount == 0:
                raise InvalidStatusTransition(unit.status, moved.status)
            self._log_action(conn, "device", identifier, "status_changed", actor=actor, details={
                "from": unit.status.value,
                "to": moved.status.value,
            })
            conn.commit()
            return moved
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return store statistics.

        Returns a dict with:
            accounts: total account count
            unassigned_accounts: accounts with no owner
            tasks_by_status: {PENDING: N, COMPLETED: N, CANCELLED: N}
            interactions: total logged interactions
            devices_by_status: {AVAILABLE: N, ...}
        """
        conn = self._get_conn()
        try:
            accounts = conn.execute("SELECT COUNT(*) AS cnt FROM accounts").fetchone()["cnt"]
            unassigned = conn.execute(
                "SELECT COUNT(*) AS cnt FROM accounts WHERE account_owner_id IS NULL"
            ).fetchone()["cnt"]
            tasks_by_status = {
                r["status"]: r["cnt"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS cnt FROM followup_tasks GROUP BY status"
                )
            }
            interactions = conn.execute("SELECT COUNT(*) AS cnt FROM interactions").fetchone()["cnt"]
            devices_by_status = {
                r["status"]: r["cnt"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS cnt FROM device_units GROUP BY status"
                )
            }
            return {
                "accounts": accounts,
                "unassigned_accounts": unassigned,
                "tasks_by_status": tasks_by_status,
                "interactions": interactions,
                "devices_by_status": devices_by_status,
            }
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Audit Log
    # ------------------------------------------------------------------

    def get_audit_log(
        self,
        record_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Retrieve audit log entries, newest first."""
        conn = self._get_conn()
        try:
            if record_id:
                rows = conn.execute(
                    """SELECT * FROM audit_log
                       WHERE record_id = ?
                       ORDER BY id DESC LIMIT ?""",
                    (record_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            entries = []
            for r in rows:
                entry = dict(r)
                entry["details"] = json.loads(entry["details"] or "{}")
                entries.append(entry)
            return entries
        finally:
            conn.close()

    def _log_action(
        self,
        conn: sqlite3.Connection,
        record_type: str,
        record_id: str,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log (record_type, record_id, action, actor, details, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record_type,
                record_id,
                action,
                actor,
                json.dumps(details or {}),
                _now_iso(),
            ),
        )

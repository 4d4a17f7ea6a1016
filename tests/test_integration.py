"""Integration tests for the CRM Follow-up Engine.

End-to-end: XLSX -> import -> schedule -> bulk assign -> complete -> queues.

Every step goes through the CLI entry point (``crm_engine.main.main``)
against a throwaway SQLite database and output directory, then checks
the resulting store state and rendered output.
"""

import logging
from datetime import datetime

import openpyxl
import pytest

from crm_engine.config import DB_PATH_ENV_VAR
from crm_engine.main import fill_missing_due_dates, main
from crm_engine.models import Account, CrmStatus, InteractionPayload, TaskStatus
from crm_engine.store import FollowUpStore

NOW_ARG = "2024-03-05T10:00:00"
NOW = datetime(2024, 3, 5, 10, 0)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def workbook(tmp_path):
    wb = openpyxl.Workbook()
    wb.remove(wb.active)

    owners = wb.create_sheet("Owners")
    for row in (
        ["Owner ID", "First Name", "Last Name", "Active"],
        ["u1", "Ana", "Lopez", "yes"],
        ["u2", "Ben", "Kim", "yes"],
    ):
        owners.append(row)

    accounts = wb.create_sheet("Accounts")
    for row in (
        ["Account ID", "Account Name", "CRM Status", "Priority",
         "Follow-up Frequency (Months)", "Follow-ups Per Year",
         "Last Contact Date", "Next Follow-up Date", "Account Owner"],
        ["a1", "Acme Dental", "ACTIVE", "NORMAL", 3, None,
         datetime(2023, 12, 1), datetime(2024, 3, 1), "u1"],
        ["a2", "Bright Optics", "ACTIVE", "NORMAL", None, 4,
         None, datetime(2024, 3, 12), None],
        ["a3", "Cedar Vets", "AT_RISK", "CRITICAL", 1, None,
         None, datetime(2024, 3, 5), None],
        ["a4", "Dune Pharmacy", "PAUSED", "NORMAL", 1, None,
         None, datetime(2024, 2, 1), "u2"],
        ["a5", "Elm Clinic", "ACTIVE", "NORMAL", 2, None,
         None, None, "ghost"],
    ):
        accounts.append(row)

    devices = wb.create_sheet("Devices")
    for row in (
        ["Batch ID", "Quantity Received", "IMEI"],
        ["b-1", 2, "356938035643809, 356938035643817"],
        ["b-2", 3, "356938035643825 356938035643833"],
    ):
        devices.append(row)

    path = tmp_path / "crm_export.xlsx"
    wb.save(path)
    return path


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Config file pointing all output at tmp_path, plus the db path."""
    monkeypatch.delenv(DB_PATH_ENV_VAR, raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "queue:\n"
        "  upcoming_window_days: 14\n"
        "  timezone: UTC\n"
        "output:\n"
        f"  output_dir: {tmp_path / 'digests'}\n"
        f"  log_file: {tmp_path / 'logs' / 'crm_engine.log'}\n",
        encoding="utf-8",
    )
    db_path = tmp_path / "crm.db"
    return {
        "tmp": tmp_path,
        "db": db_path,
        "args": ["--config", str(config_path), "--db", str(db_path)],
    }


def _run(env, *argv) -> int:
    return main([*env["args"], *argv])


# ============================================================================
# Full pipeline
# ============================================================================

class TestFullPipeline:

    def test_step1_import(self, env, workbook):
        assert _run(env, "import", "--xlsx", str(workbook), "--schedule", "--now", NOW_ARG) == 0

        store = FollowUpStore(env["db"])
        stats = store.get_stats()
        assert stats["accounts"] == 5
        # a5 referenced an unknown owner and comes in unassigned
        assert store.get_account("a5").account_owner_id is None
        assert stats["unassigned_accounts"] == 3
        # b-2 declared 3 units but listed 2
        assert stats["devices_by_status"] == {"AVAILABLE": 2}
        # only a1 is assigned and schedulable
        assert [t.account_id for t in store.pending_tasks()] == ["a1"]

    def test_step2_assign(self, env, workbook, capsys):
        _run(env, "import", "--xlsx", str(workbook), "--now", NOW_ARG)
        assert _run(env, "assign", "--strategy", "BY_PRIORITY") == 0

        store = FollowUpStore(env["db"])
        assert store.get_account("a3").account_owner_id == "u1"     # CRITICAL first
        assert store.get_account("a2").account_owner_id == "u2"
        assert store.get_account("a5").account_owner_id == "u1"
        assert store.list_accounts(unassigned_only=True) == []
        assert "Assigned            : 3" in capsys.readouterr().out

    def test_step3_complete_and_queues(self, env, workbook, capsys):
        _run(env, "import", "--xlsx", str(workbook), "--schedule", "--now", NOW_ARG)
        store = FollowUpStore(env["db"])
        task = store.pending_tasks()[0]
        store.complete_task(task.task_id, InteractionPayload("Checked in, all good"), now=NOW)
        assert store.get_account("a1").next_follow_up_date == datetime(2024, 6, 5, 10, 0)
        assert store.get_task(task.task_id).status is TaskStatus.COMPLETED
        capsys.readouterr()

        assert _run(env, "queues", "--now", NOW_ARG) == 0
        out = capsys.readouterr().out
        assert "Team follow-up summary -- Mar 05, 2024" in out
        # a3 due today, a2 upcoming; a1 pushed out, a4 paused, a5 beyond window
        assert "Overdue   : 0" in out
        assert "Due today : 1" in out
        assert "Upcoming  : 1" in out
        # a1 completed, with its next cycle already pending
        assert "Completion: 50%" in out

    def test_step4_owner_digest_written(self, env, workbook, capsys):
        _run(env, "import", "--xlsx", str(workbook), "--schedule", "--now", NOW_ARG)
        capsys.readouterr()

        assert _run(env, "queues", "--owner", "u1", "--now", NOW_ARG, "--write") == 0
        out = capsys.readouterr().out
        assert "Follow-up digest for Ana Lopez" in out
        assert "Acme Dental (4d overdue)" in out

        digest = env["tmp"] / "digests" / "digest_u1_20240305.txt"
        assert digest.read_text(encoding="utf-8").strip() == out.strip()

    def test_queues_from_workbook(self, env, workbook, capsys):
        assert _run(env, "queues", "--xlsx", str(workbook), "--now", NOW_ARG) == 0
        out = capsys.readouterr().out
        assert "Overdue   : 1" in out

    def test_manual_assignment(self, env, workbook):
        _run(env, "import", "--xlsx", str(workbook), "--now", NOW_ARG)
        assert _run(env, "assign", "--strategy", "MANUAL",
                    "--owners", "u2", "--accounts", "a5", "a2") == 0
        store = FollowUpStore(env["db"])
        assert store.get_account("a5").account_owner_id == "u2"
        assert store.get_account("a2").account_owner_id == "u2"
        assert store.get_account("a3").account_owner_id is None


class TestReimport:

    def test_reimport_keeps_lifecycle_state(self, env, workbook, capsys):
        wb = openpyxl.load_workbook(workbook)
        tasks = wb.create_sheet("Tasks")
        tasks.append(["Task ID", "Account ID", "Due Date", "Assigned To"])
        tasks.append(["t1", "a1", datetime(2024, 3, 1), "u1"])
        wb.save(workbook)

        assert _run(env, "import", "--xlsx", str(workbook), "--now", NOW_ARG) == 0
        store = FollowUpStore(env["db"])
        store.complete_task("t1", InteractionPayload("Renewal confirmed"), now=NOW)
        capsys.readouterr()

        assert _run(env, "import", "--xlsx", str(workbook), "--schedule", "--now", NOW_ARG) == 0
        out = capsys.readouterr().out

        assert store.get_task("t1").status is TaskStatus.COMPLETED
        a1 = store.get_account("a1")
        assert a1.next_follow_up_date == datetime(2024, 6, 5, 10, 0)
        assert a1.last_contact_date == NOW
        assert a1.account_owner_id == "u1"
        assert len(store.list_tasks(status=TaskStatus.PENDING, account_id="a1")) == 1

        # The already registered batch is rejected on its own; the rest of the import still ran.
        assert "Batch b-1 is already registered" in out
        assert "Tasks already stored: 1" in out
        assert store.get_stats()["devices_by_status"] == {"AVAILABLE": 2}


# ============================================================================
# Error exits
# ============================================================================

class TestErrorExits:

    def test_missing_config(self, tmp_path):
        assert main(["--config", str(tmp_path / "nope.yaml"), "queues"]) == 1

    def test_missing_workbook(self, env):
        assert _run(env, "import", "--xlsx", str(env["tmp"] / "nope.xlsx")) == 1

    def test_nothing_to_assign(self, env):
        assert _run(env, "assign") == 1

    def test_unknown_owner_digest(self, env, workbook):
        _run(env, "import", "--xlsx", str(workbook), "--now", NOW_ARG)
        assert _run(env, "queues", "--owner", "nobody", "--now", NOW_ARG) == 1

    def test_log_to_file(self, env, workbook):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            assert _run(env, "--log-to-file", "import", "--xlsx", str(workbook), "--now", NOW_ARG) == 0
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
        assert (env["tmp"] / "logs" / "crm_engine.log").exists()


# ============================================================================
# Cross-module consistency
# ============================================================================

class TestFillMissingDueDates:

    def test_fills_only_schedulable(self):
        accounts = [
            Account("a", follow_up_frequency_months=2),
            Account("b", crm_status=CrmStatus.PAUSED),
            Account("c", next_follow_up_date=datetime(2024, 1, 1)),
        ]
        filled, computed, errors = fill_missing_due_dates(accounts, NOW, 3)
        assert computed == 1
        assert errors == {}
        assert filled[0].next_follow_up_date == datetime(2024, 5, 5, 10, 0)
        assert filled[1].next_follow_up_date is None
        assert filled[2] is accounts[2]

    def test_reports_unresolvable(self):
        filled, computed, errors = fill_missing_due_dates([Account("a")], NOW, None)
        assert computed == 0
        assert "a" in errors

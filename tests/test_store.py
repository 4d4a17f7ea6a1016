"""Tests for crm_engine.store -- the SQLite-backed FollowUpStore.

Covers:
- Owner / account persistence and round-trips
- Task creation and next-cycle scheduling
- Atomic task completion (task flip + interaction + account update +
  next-cycle task)
- Re-syncing accounts and tasks without rewinding lifecycle state
- CRM config updates, owner reassignment, standalone interactions
- Concurrent completion: exactly one writer wins
- Cancellation
- Bulk assignment skipping accounts claimed in the meantime
- Batch registration with global identifier and batch id uniqueness
- Device transitions, stats and audit log
"""

import threading
from datetime import datetime

import pytest

from crm_engine.assignment import resolve
from crm_engine.errors import (
    DuplicateBatch,
    DuplicateUnitIdentifier,
    InvalidAssignee,
    InvalidCadenceConfig,
    InvalidStatusTransition,
    MissingInteractionNotes,
    PreconditionError,
    QuantityMismatch,
    StaleWriteError,
    TaskAlreadyTerminal,
)
from crm_engine.models import (
    Account,
    CrmStatus,
    DeviceBatch,
    DeviceStatus,
    FollowUpTask,
    InteractionPayload,
    InteractionType,
    Owner,
    Priority,
    TaskStatus,
)
from crm_engine.store import FollowUpStore

NOW = datetime(2024, 1, 20, 9, 0)


@pytest.fixture
def store(tmp_path):
    s = FollowUpStore(tmp_path / "crm.db")
    s.upsert_owners([
        Owner("u1", "Ana", "Lopez", "ana@example.com"),
        Owner("u2", "Ben", "Kim"),
        Owner("u3", active=False),
    ])
    s.upsert_accounts([
        Account(
            "acc-1", name="Acme Dental", priority=Priority.HIGH_VALUE,
            follow_up_frequency_months=3, account_owner_id="u1",
            next_follow_up_date=datetime(2024, 1, 20), tags=["dental"],
        ),
        Account("acc-2", name="Bright Optics", follow_up_times_per_year=2),
        Account("acc-3", name="Cedar Vets", crm_status=CrmStatus.PAUSED, account_owner_id="u2"),
    ])
    return s


@pytest.fixture
def task(store):
    return store.create_task("acc-1", datetime(2024, 1, 20), "u1", now=NOW)


def _payload(notes="Renewal discussed, all good", **kwargs):
    return InteractionPayload(notes=notes, **kwargs)


# ============================================================================
# Owners / accounts
# ============================================================================

class TestOwnersAndAccounts:

    def test_account_roundtrip(self, store):
        acc = store.get_account("acc-1")
        assert acc.name == "Acme Dental"
        assert acc.priority is Priority.HIGH_VALUE
        assert acc.next_follow_up_date == datetime(2024, 1, 20)
        assert acc.tags == ["dental"]
        assert acc.account_owner_id == "u1"

    def test_missing_account(self, store):
        assert store.get_account("nope") is None

    def test_upsert_overwrites(self, store):
        store.upsert_account(Account("acc-2", name="Bright Optics Ltd"))
        assert store.get_account("acc-2").name == "Bright Optics Ltd"
        assert len(store.list_accounts()) == 3

    def test_list_filters(self, store):
        assert [a.account_id for a in store.list_accounts(owner_id="u1")] == ["acc-1"]
        assert [a.account_id for a in store.list_accounts(unassigned_only=True)] == ["acc-2"]

    def test_owners(self, store):
        assert [o.owner_id for o in store.list_owners()] == ["u1", "u2", "u3"]
        assert [o.owner_id for o in store.list_owners(active_only=True)] == ["u1", "u2"]
        assert store.get_owner("u1").display_name == "Ana Lopez"
        assert not store.get_owner("u3").active


# ============================================================================
# Task creation / scheduling
# ============================================================================

class TestCreateTask:

    def test_persisted(self, store, task):
        saved = store.get_task(task.task_id)
        assert saved.status is TaskStatus.PENDING
        assert saved.assigned_to == "u1"
        assert saved.priority is Priority.HIGH_VALUE
        assert store.get_owner("u1").open_task_count == 1

    @pytest.mark.parametrize("assignee", ["u3", "ghost", None, ""])
    def test_inactive_or_unknown_assignee(self, store, assignee):
        with pytest.raises(InvalidAssignee):
            store.create_task("acc-1", NOW, assignee, now=NOW)
        assert store.list_tasks() == []

    def test_unknown_account(self, store):
        with pytest.raises(PreconditionError):
            store.create_task("nope", NOW, "u1", now=NOW)

    def test_list_tasks_ordering(self, store):
        late = store.create_task("acc-1", datetime(2024, 3, 1), "u1", now=NOW)
        early = store.create_task("acc-1", datetime(2024, 2, 1), "u2", now=NOW)
        assert [t.task_id for t in store.list_tasks()] == [early.task_id, late.task_id]
        assert [t.task_id for t in store.pending_tasks(assigned_to="u2")] == [early.task_id]


class TestScheduleNextTask:

    def test_creates_system_task(self, store):
        t = store.schedule_next_task("acc-1", now=NOW)
        assert t.system_generated
        assert t.due_date == datetime(2024, 1, 20)

    def test_not_duplicated_while_pending(self, store, task):
        assert store.schedule_next_task("acc-1", now=NOW) is None
        assert len(store.list_tasks(account_id="acc-1")) == 1

    def test_paused_account_skipped(self, store):
        assert store.schedule_next_task("acc-3", now=NOW) is None

    def test_unassigned_account_skipped(self, store):
        assert store.schedule_next_task("acc-2", now=NOW) is None

    def test_fills_missing_due_date(self, store):
        store.upsert_account(Account(
            "acc-4", follow_up_frequency_months=1, account_owner_id="u2",
            last_contact_date=datetime(2024, 1, 5),
        ))
        t = store.schedule_next_task("acc-4", now=NOW)
        assert t.due_date == datetime(2024, 2, 5)
        assert store.get_account("acc-4").next_follow_up_date == datetime(2024, 2, 5)


# ============================================================================
# Completion
# ============================================================================

class TestCompleteTask:

    def test_atomic_update(self, store, task):
        completion = store.complete_task(task.task_id, _payload(), now=NOW)

        saved = store.get_task(task.task_id)
        assert saved.status is TaskStatus.COMPLETED
        assert saved.interaction_id == completion.interaction.interaction_id

        acc = store.get_account("acc-1")
        assert acc.next_follow_up_date == datetime(2024, 4, 20, 9, 0)
        assert acc.last_contact_date == NOW
        assert acc.version == 2

        log = store.list_interactions("acc-1")
        assert len(log) == 1
        assert log[0].notes == "Renewal discussed, all good"

        # The next cycle is scheduled in the same transaction.
        follow_on = completion.next_task
        assert follow_on.system_generated
        assert follow_on.due_date == datetime(2024, 4, 20, 9, 0)
        assert [t.task_id for t in store.pending_tasks()] == [follow_on.task_id]
        assert store.get_owner("u1").open_task_count == 1

    def test_override(self, store, task):
        store.complete_task(
            task.task_id, _payload(next_follow_up_override=datetime(2024, 2, 14)), now=NOW,
        )
        assert store.get_account("acc-1").next_follow_up_date == datetime(2024, 2, 14)
        assert store.pending_tasks()[0].due_date == datetime(2024, 2, 14)

    def test_missing_notes_writes_nothing(self, store, task):
        with pytest.raises(MissingInteractionNotes):
            store.complete_task(task.task_id, _payload("   "), now=NOW)
        assert store.get_task(task.task_id).status is TaskStatus.PENDING
        assert store.list_interactions("acc-1") == []
        assert store.get_account("acc-1").version == 1

    def test_double_completion(self, store, task):
        store.complete_task(task.task_id, _payload(), now=NOW)
        with pytest.raises(TaskAlreadyTerminal):
            store.complete_task(task.task_id, _payload(), now=NOW)
        assert len(store.list_interactions("acc-1")) == 1

    def test_unknown_task(self, store):
        with pytest.raises(PreconditionError):
            store.complete_task("nope", _payload(), now=NOW)

    def test_concurrent_completion_single_winner(self, store, task):
        outcomes = []
        barrier = threading.Barrier(2)

        def worker():
            barrier.wait()
            try:
                store.complete_task(task.task_id, _payload(), now=NOW)
                outcomes.append("ok")
            except TaskAlreadyTerminal:
                outcomes.append("terminal")

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "terminal"]
        assert len(store.list_interactions("acc-1")) == 1

    def test_stale_account_write(self, store):
        account = store.get_account("acc-1")
        conn = store._get_conn()
        try:
            with pytest.raises(StaleWriteError):
                store._update_account_guarded(conn, account, expected_version=account.version + 5)
        finally:
            conn.close()


class TestCancelTask:

    def test_cancel_leaves_schedule(self, store, task):
        store.cancel_task(task.task_id, "customer closed for holidays", now=NOW)
        saved = store.get_task(task.task_id)
        assert saved.status is TaskStatus.CANCELLED
        assert saved.cancel_reason == "customer closed for holidays"
        assert store.get_account("acc-1").next_follow_up_date == datetime(2024, 1, 20)

    def test_complete_after_cancel(self, store, task):
        store.cancel_task(task.task_id, now=NOW)
        with pytest.raises(TaskAlreadyTerminal):
            store.complete_task(task.task_id, _payload(), now=NOW)


class TestNextCycle:

    def test_paused_account_gets_no_next_task(self, store):
        task = store.create_task("acc-3", NOW, "u2", now=NOW)
        completion = store.complete_task(task.task_id, _payload(), now=NOW)
        assert completion.next_task is None
        assert store.pending_tasks() == []

    def test_inactive_owner_gets_no_next_task(self, store, task):
        store.upsert_owner(Owner("u1", "Ana", "Lopez", active=False))
        completion = store.complete_task(task.task_id, _payload(), now=NOW)
        assert completion.next_task is None
        assert store.get_task(task.task_id).status is TaskStatus.COMPLETED

    def test_second_cycle_completes_too(self, store, task):
        first = store.complete_task(task.task_id, _payload(), now=NOW)
        later = datetime(2024, 4, 22, 11, 0)
        second = store.complete_task(first.next_task.task_id, _payload(), now=later)
        assert second.next_task.due_date == datetime(2024, 7, 22, 11, 0)
        assert len(store.list_tasks(status=TaskStatus.COMPLETED)) == 2
        assert len(store.pending_tasks()) == 1


# ============================================================================
# Re-sync (imports)
# ============================================================================

class TestResync:

    def test_terminal_task_not_rewound(self, store, task):
        store.complete_task(task.task_id, _payload(), now=NOW)
        assert store.insert_task(task) is False
        saved = store.get_task(task.task_id)
        assert saved.status is TaskStatus.COMPLETED
        assert saved.version == 2

    def test_new_task_inserted(self, store, task):
        fresh = FollowUpTask(
            "t-import", "acc-1", "Imported", datetime(2024, 2, 1), "u2",
        )
        assert store.insert_task(fresh) is True
        assert store.get_task("t-import").assigned_to == "u2"

    def test_profile_refreshed_schedule_kept(self, store, task):
        store.complete_task(task.task_id, _payload(), now=NOW)
        store.upsert_account(Account(
            "acc-1", name="Acme Dental Group", priority=Priority.CRITICAL,
            follow_up_frequency_months=3, account_owner_id="u2",
            last_contact_date=datetime(2023, 10, 1),
            next_follow_up_date=datetime(2024, 1, 20),
        ))
        acc = store.get_account("acc-1")
        assert acc.name == "Acme Dental Group"
        assert acc.priority is Priority.CRITICAL
        assert acc.next_follow_up_date == datetime(2024, 4, 20, 9, 0)
        assert acc.last_contact_date == NOW
        assert acc.account_owner_id == "u1"
        assert acc.version == 3

    def test_empty_fields_filled(self, store):
        store.upsert_account(Account(
            "acc-2", name="Bright Optics", account_owner_id="u2",
            next_follow_up_date=datetime(2024, 2, 1),
        ))
        acc = store.get_account("acc-2")
        assert acc.account_owner_id == "u2"
        assert acc.next_follow_up_date == datetime(2024, 2, 1)


# ============================================================================
# CRM config / reassignment / standalone interactions
# ============================================================================

class TestUpdateCrmConfig:

    def test_frequency_change_recomputes_from_now(self, store):
        acc = store.update_crm_config("acc-1", now=NOW, frequency_months=6)
        assert acc.follow_up_frequency_months == 6
        assert acc.next_follow_up_date == datetime(2024, 7, 20, 9, 0)
        assert store.get_account("acc-1") == acc

    def test_recomputes_from_last_contact(self, store):
        store.upsert_account(Account(
            "acc-5", follow_up_times_per_year=2, last_contact_date=datetime(2024, 1, 5),
        ))
        acc = store.update_crm_config("acc-5", now=NOW, times_per_year=12)
        assert acc.next_follow_up_date == datetime(2024, 2, 5)

    def test_non_cadence_fields_keep_schedule(self, store):
        acc = store.update_crm_config(
            "acc-1", now=NOW, priority="CRITICAL", crm_status="AT_RISK", tags=["dental", " ", "renewal"],
        )
        assert acc.priority is Priority.CRITICAL
        assert acc.crm_status is CrmStatus.AT_RISK
        assert acc.tags == ["dental", "renewal"]
        assert acc.next_follow_up_date == datetime(2024, 1, 20)
        assert acc.version == 2

    def test_unchanged_is_noop(self, store):
        acc = store.update_crm_config("acc-1", now=NOW, frequency_months=3)
        assert acc.version == 1
        assert store.get_audit_log("acc-1")[0]["action"] == "upserted"

    @pytest.mark.parametrize("kwargs", [{"frequency_months": 0}, {"times_per_year": -2}])
    def test_non_positive_cadence(self, store, kwargs):
        with pytest.raises(InvalidCadenceConfig):
            store.update_crm_config("acc-1", now=NOW, **kwargs)
        assert store.get_account("acc-1").version == 1

    def test_stale_version(self, store):
        with pytest.raises(StaleWriteError):
            store.update_crm_config("acc-1", now=NOW, priority="NORMAL", expected_version=7)

    def test_unknown_account(self, store):
        with pytest.raises(PreconditionError):
            store.update_crm_config("nope", now=NOW, priority="NORMAL")


class TestReassignOwner:

    def test_moves_account_and_pending_tasks(self, store, task):
        acc = store.reassign_owner("acc-1", "u2", actor="manager")
        assert acc.account_owner_id == "u2"
        assert store.get_account("acc-1").version == 2
        assert store.get_task(task.task_id).assigned_to == "u2"
        assert store.get_owner("u1").open_task_count == 0
        assert store.get_owner("u2").open_task_count == 1
        assert store.get_audit_log("acc-1")[0]["details"]["from"] == "u1"

    def test_completed_tasks_keep_assignee(self, store, task):
        completion = store.complete_task(task.task_id, _payload(), now=NOW)
        store.reassign_owner("acc-1", "u2")
        assert store.get_task(task.task_id).assigned_to == "u1"
        assert store.get_task(completion.next_task.task_id).assigned_to == "u2"

    def test_unowned_account(self, store):
        assert store.reassign_owner("acc-2", "u1").account_owner_id == "u1"

    @pytest.mark.parametrize("owner_id", ["u3", "ghost"])
    def test_inactive_or_unknown_owner(self, store, owner_id):
        with pytest.raises(InvalidAssignee):
            store.reassign_owner("acc-1", owner_id)
        assert store.get_account("acc-1").account_owner_id == "u1"

    def test_stale_version(self, store):
        with pytest.raises(StaleWriteError):
            store.reassign_owner("acc-1", "u2", expected_version=3)
        assert store.get_account("acc-1").account_owner_id == "u1"


class TestLogInteraction:

    def test_standalone_contact(self, store):
        logged = store.log_interaction(
            "acc-1", _payload("Quick check-in by email", interaction_type=InteractionType.EMAIL), now=NOW,
        )
        assert logged.task_id is None
        assert logged.recorded_by == "u1"
        acc = store.get_account("acc-1")
        assert acc.last_contact_date == NOW
        assert acc.next_follow_up_date == datetime(2024, 1, 20)
        assert [i.interaction_id for i in store.list_interactions("acc-1")] == [logged.interaction_id]

    def test_references_task_without_completing_it(self, store, task):
        logged = store.log_interaction("acc-1", _payload(), now=NOW, task_id=task.task_id)
        assert logged.task_id == task.task_id
        assert store.get_task(task.task_id).status is TaskStatus.PENDING

    def test_task_of_other_account(self, store):
        other = store.create_task("acc-3", NOW, "u2", now=NOW)
        with pytest.raises(PreconditionError):
            store.log_interaction("acc-1", _payload(), now=NOW, task_id=other.task_id)
        assert store.list_interactions("acc-1") == []

    def test_notes_required(self, store):
        with pytest.raises(MissingInteractionNotes):
            store.log_interaction("acc-1", _payload(" "), now=NOW)


# ============================================================================
# Bulk assignment
# ============================================================================

class TestAssignments:

    def test_assign_account(self, store):
        assert store.assign_account("acc-2", "u2")
        acc = store.get_account("acc-2")
        assert acc.account_owner_id == "u2"
        assert acc.version == 2

    def test_already_assigned_not_stolen(self, store):
        assert not store.assign_account("acc-1", "u2")
        assert store.get_account("acc-1").account_owner_id == "u1"

    def test_inactive_owner(self, store):
        with pytest.raises(InvalidAssignee):
            store.assign_account("acc-2", "u3")

    def test_apply_skips_claimed(self, store):
        store.upsert_accounts([Account(f"new-{i}") for i in range(4)])
        plan = resolve("ROUND_ROBIN", store.list_owners(), store.list_accounts())
        # Someone else claims one account between resolve and apply.
        store.assign_account("new-2", "u1")

        result = store.apply_assignments(plan, actor="manager")
        assert result.assigned_count == len(plan) - 1
        assert result.failures == {"new-2": "already assigned"}
        assert store.list_accounts(unassigned_only=True) == []
        assert store.get_audit_log("new-0")[0]["actor"] == "manager"


# ============================================================================
# Inventory
# ============================================================================

IMEIS = [str(356938035643800 + i) for i in range(6)]


class TestInventory:

    def test_register_batch(self, store):
        result = store.register_batch(DeviceBatch("b1", 3), IMEIS[:3])
        assert result.accepted
        devices = store.list_devices("b1")
        assert [d.identifier for d in devices] == IMEIS[:3]
        assert {d.status for d in devices} == {DeviceStatus.AVAILABLE}

    def test_mismatch_writes_nothing(self, store):
        with pytest.raises(QuantityMismatch):
            store.register_batch(DeviceBatch("b1", 5), IMEIS[:4])
        assert store.known_identifiers() == set()
        assert store.list_devices("b1") == []

    def test_identifier_unique_across_batches(self, store):
        store.register_batch(DeviceBatch("b1", 2), IMEIS[:2])
        with pytest.raises(DuplicateUnitIdentifier) as exc_info:
            store.register_batch(DeviceBatch("b2", 2), [IMEIS[1], IMEIS[2]])
        assert exc_info.value.scope == "product"
        assert store.list_devices("b2") == []

    def test_duplicate_batch_id(self, store):
        store.register_batch(DeviceBatch("b1", 2), IMEIS[:2])
        with pytest.raises(DuplicateBatch) as exc_info:
            store.register_batch(DeviceBatch("b1", 2), IMEIS[2:4])
        assert exc_info.value.batch_id == "b1"
        assert [d.identifier for d in store.list_devices("b1")] == IMEIS[:2]
        assert store.known_identifiers() == set(IMEIS[:2])

    def test_untracked_batch(self, store):
        result = store.register_batch(DeviceBatch("b9", 40, unit_tracked=False))
        assert result.accepted
        assert store.list_devices("b9") == []

    def test_transition_device(self, store):
        store.register_batch(DeviceBatch("b1", 1), IMEIS[:1])
        moved = store.transition_device(IMEIS[0], DeviceStatus.ISSUED, actor="ops")
        assert moved.status is DeviceStatus.ISSUED
        assert store.get_device(IMEIS[0]).status is DeviceStatus.ISSUED
        entry = store.get_audit_log(IMEIS[0])[0]
        assert entry["details"] == {"from": "AVAILABLE", "to": "ISSUED"}

    def test_illegal_transition(self, store):
        store.register_batch(DeviceBatch("b1", 1), IMEIS[:1])
        store.transition_device(IMEIS[0], "RETURNED")
        with pytest.raises(InvalidStatusTransition):
            store.transition_device(IMEIS[0], "ACTIVE")

    def test_unknown_device(self, store):
        with pytest.raises(PreconditionError):
            store.transition_device("000000000000000", "ISSUED")


# ============================================================================
# Stats / audit
# ============================================================================

class TestStatsAndAudit:

    def test_stats(self, store, task):
        store.complete_task(task.task_id, _payload(), now=NOW)
        store.register_batch(DeviceBatch("b1", 2), IMEIS[:2])
        stats = store.get_stats()
        assert stats["accounts"] == 3
        assert stats["unassigned_accounts"] == 1
        assert stats["tasks_by_status"] == {"COMPLETED": 1, "PENDING": 1}
        assert stats["interactions"] == 1
        assert stats["devices_by_status"] == {"AVAILABLE": 2}

    def test_audit_newest_first(self, store, task):
        store.complete_task(task.task_id, _payload(), now=NOW, actor="ana")
        entries = store.get_audit_log(task.task_id)
        assert [e["action"] for e in entries] == ["completed", "created"]
        assert entries[0]["actor"] == "ana"
        assert entries[0]["details"]["next_follow_up_date"] == "2024-04-20T09:00:00"

    def test_audit_limit(self, store):
        assert len(store.get_audit_log(limit=2)) == 2

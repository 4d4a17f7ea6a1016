"""
CRM Follow-up Task State Machine

Drives the lifecycle of a single follow-up task:

    PENDING -> COMPLETED   (requires a logged interaction)
            |-> CANCELLED  (no contact happened; cadence untouched)

Both end states are terminal.  Completion is all-or-nothing: every
precondition is checked before any record is built, and the inputs are
never mutated -- the caller receives new versions of the task and
account plus the new interaction, and persists them together (see
``crm_engine.store.FollowUpStore.complete_task``).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .cadence import next_due_for_account
from .config import DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS
from .errors import (
    InvalidAssignee,
    InvalidStatusTransition,
    MissingInteractionNotes,
    PreconditionError,
    TaskAlreadyTerminal,
)
from .models import (
    Account,
    FollowUpTask,
    Interaction,
    InteractionPayload,
    Priority,
    TaskStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_NOTES_LENGTH: int = 2
DEFAULT_TASK_TITLE: str = "Follow-up: {account_name}"

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Completion Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskCompletion:
    """Everything a completion produces; persisted as one unit of work."""
    task: FollowUpTask
    account: Account
    interaction: Interaction
    next_follow_up_date: datetime
    used_override: bool = False
    next_task: Optional[FollowUpTask] = None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def ensure_transition(task: FollowUpTask, target: TaskStatus) -> None:
    """Raise unless *task* may move to *target*.

    A task that already left PENDING reports ``TaskAlreadyTerminal``;
    any other illegal move is an ``InvalidStatusTransition``.
    """
    if task.status.is_terminal:
        raise TaskAlreadyTerminal(task.task_id, task.status)
    if not can_transition(task.status, target):
        raise InvalidStatusTransition(task.status, target)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_task(
    account: Account,
    due_date: datetime,
    assigned_to: Optional[str],
    priority: Optional[Priority] = None,
    title: Optional[str] = None,
    *,
    now: datetime,
    system_generated: bool = False,
    task_id: Optional[str] = None,
    title_template: str = DEFAULT_TASK_TITLE,
) -> FollowUpTask:
    """
    Create a new PENDING follow-up task for *account*.

    Whether the assignee is an active owner is checked by the data layer
    (``FollowUpStore.create_task``); here a null or blank assignee is
    rejected outright.

    Raises:
        InvalidAssignee: if ``assigned_to`` is None or blank.
    """
    if assigned_to is None or not str(assigned_to).strip():
        raise InvalidAssignee(assigned_to)

    task = FollowUpTask(
        task_id=task_id or _new_id(),
        account_id=account.account_id,
        title=title or title_template.format(account_name=account.name or account.account_id),
        due_date=due_date,
        assigned_to=str(assigned_to).strip(),
        status=TaskStatus.PENDING,
        priority=priority or account.priority,
        created_at=now,
        system_generated=system_generated,
    )
    logger.debug(
        "Created follow-up %s for account %s due %s (assignee=%s, system=%s)",
        task.task_id, account.account_id, due_date.isoformat(),
        task.assigned_to, system_generated,
    )
    return task


def schedule_next_task(
    account: Account,
    *,
    now: datetime,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
    title_template: str = DEFAULT_TASK_TITLE,
) -> tuple[Account, FollowUpTask]:
    """
    Spawn the system-generated task for the account's next cadence cycle.

    If the account has no cached ``next_follow_up_date`` it is computed
    from ``last_contact_date`` (or *now* when the account was never
    contacted) and returned on a new account version.

    Raises:
        InvalidAssignee: if the account has no owner.
        InvalidCadenceConfig: if no cadence can be resolved.
    """
    if not account.is_assigned:
        raise InvalidAssignee(account.account_owner_id)

    updated = account
    due = account.next_follow_up_date
    if due is None:
        reference = account.last_contact_date or now
        due = next_due_for_account(account, reference, default_months=default_months)
        updated = replace(account, next_follow_up_date=due, version=account.version + 1)

    task = create_task(
        updated,
        due,
        updated.account_owner_id,
        now=now,
        system_generated=True,
        title_template=title_template,
    )
    return updated, task


# ---------------------------------------------------------------------------
# Completion / Cancellation
# ---------------------------------------------------------------------------

def validate_notes(notes: Optional[str], min_length: int = MIN_NOTES_LENGTH) -> str:
    """Return the stripped notes, or raise MissingInteractionNotes."""
    cleaned = (notes or "").strip()
    if len(cleaned) < max(1, min_length):
        raise MissingInteractionNotes(max(1, min_length))
    return cleaned


def _build_interaction(
    account_id: str,
    payload: InteractionPayload,
    notes: str,
    *,
    task_id: Optional[str],
    occurred_at: datetime,
    recorded_by: str,
    interaction_id: Optional[str] = None,
) -> Interaction:
    return Interaction(
        interaction_id=interaction_id or _new_id(),
        account_id=account_id,
        task_id=task_id,
        interaction_type=payload.interaction_type,
        channel=payload.channel,
        outcome=payload.outcome,
        notes=notes,
        occurred_at=occurred_at,
        duration_minutes=payload.duration_minutes,
        recorded_by=recorded_by,
    )


def log_interaction(
    account: Account,
    payload: InteractionPayload,
    *,
    now: datetime,
    task: Optional[FollowUpTask] = None,
    min_notes_length: int = MIN_NOTES_LENGTH,
    interaction_id: Optional[str] = None,
) -> tuple[Account, Interaction]:
    """
    Record a contact that did not complete a follow-up task.

    The account's ``last_contact_date`` moves forward to *now*; its
    ``next_follow_up_date`` is left alone, since only completing a task
    advances the cadence.  *task*, when given, is referenced but not
    transitioned.

    Raises:
        MissingInteractionNotes: notes are empty / too short.
        PreconditionError: *task* belongs to a different account.
    """
    notes = validate_notes(payload.notes, min_notes_length)
    if task is not None and task.account_id != account.account_id:
        raise PreconditionError(
            f"Task {task.task_id} belongs to account {task.account_id}, "
            f"not {account.account_id}"
        )

    interaction = _build_interaction(
        account.account_id, payload, notes,
        task_id=task.task_id if task is not None else None,
        occurred_at=now,
        recorded_by=payload.recorded_by or account.account_owner_id or "",
        interaction_id=interaction_id,
    )
    updated = account
    if account.last_contact_date is None or account.last_contact_date < now:
        updated = replace(account, last_contact_date=now, version=account.version + 1)
    logger.info("Logged %s interaction for account %s",
                interaction.interaction_type.value, account.account_id)
    return updated, interaction


def complete_task(
    task: FollowUpTask,
    account: Account,
    payload: InteractionPayload,
    *,
    now: datetime,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
    min_notes_length: int = MIN_NOTES_LENGTH,
    interaction_id: Optional[str] = None,
) -> TaskCompletion:
    """
    Complete a PENDING task by logging the interaction that happened.

    The next follow-up date is ``payload.next_follow_up_override`` when
    given, otherwise the account's cadence counted from *now*.

    Raises:
        TaskAlreadyTerminal: the task is COMPLETED or CANCELLED.
        MissingInteractionNotes: notes are empty / too short.
        PreconditionError: the task does not belong to *account*.
        InvalidCadenceConfig: the account's cadence cannot be resolved.
    """
    ensure_transition(task, TaskStatus.COMPLETED)
    notes = validate_notes(payload.notes, min_notes_length)
    if task.account_id != account.account_id:
        raise PreconditionError(
            f"Task {task.task_id} belongs to account {task.account_id}, "
            f"not {account.account_id}"
        )

    used_override = payload.next_follow_up_override is not None
    if used_override:
        next_due = payload.next_follow_up_override
    else:
        next_due = next_due_for_account(account, now, default_months=default_months)

    interaction = _build_interaction(
        account.account_id, payload, notes,
        task_id=task.task_id,
        occurred_at=now,
        recorded_by=payload.recorded_by or task.assigned_to,
        interaction_id=interaction_id,
    )
    completed = replace(
        task,
        status=TaskStatus.COMPLETED,
        completed_at=now,
        interaction_id=interaction.interaction_id,
        version=task.version + 1,
    )
    updated_account = replace(
        account,
        last_contact_date=now,
        next_follow_up_date=next_due,
        version=account.version + 1,
    )

    logger.info(
        "Completed follow-up %s for account %s; next follow-up %s%s",
        task.task_id, account.account_id, next_due.isoformat(),
        " (override)" if used_override else "",
    )
    return TaskCompletion(
        task=completed,
        account=updated_account,
        interaction=interaction,
        next_follow_up_date=next_due,
        used_override=used_override,
    )


def cancel_task(
    task: FollowUpTask,
    reason: Optional[str] = None,
    *,
    now: datetime,
) -> FollowUpTask:
    """
    Cancel a PENDING task.  The account's schedule is left alone.

    Raises:
        TaskAlreadyTerminal: the task is COMPLETED or CANCELLED.
    """
    ensure_transition(task, TaskStatus.CANCELLED)
    cancelled = replace(
        task,
        status=TaskStatus.CANCELLED,
        cancelled_at=now,
        cancel_reason=(reason or "").strip(),
        version=task.version + 1,
    )
    logger.info("Cancelled follow-up %s (%s)", task.task_id, cancelled.cancel_reason or "no reason")
    return cancelled

"""CRM Follow-up Engine - Scheduling, Queues and Assignment.

Dataclasses for accounts, owners, follow-up tasks, interactions and
device batches, plus the engine that schedules follow-ups, buckets them
into overdue / due-today / upcoming queues, distributes unassigned
accounts across owners and reconciles received device batches.

The FollowUpStore provides persistent SQLite-backed storage with
compare-and-swap task completion and an audit log.
"""

from .models import (
    Account,
    AssignmentStrategy,
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
    QueueBucket,
    TaskStatus,
)

from .store import FollowUpStore

__all__ = [
    "Account",
    "AssignmentStrategy",
    "Channel",
    "CrmStatus",
    "DeviceBatch",
    "DeviceStatus",
    "DeviceUnit",
    "FollowUpStore",
    "FollowUpTask",
    "Interaction",
    "InteractionPayload",
    "InteractionType",
    "Outcome",
    "Owner",
    "Priority",
    "QueueBucket",
    "TaskStatus",
]

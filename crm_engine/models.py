"""Data models for the CRM Follow-up Engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
records arrive from the data-access layer (``data_loader``, ``store``)
already resolved into these shapes, and the engine only ever sees enum
members, never raw status strings.

Absent optional fields mean "intentionally empty" (e.g. an account with
``account_owner_id=None`` is unassigned); relation loading is resolved
before a record reaches the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class _LabelEnum(str, Enum):
    """String enum with a tolerant parser for boundary data."""

    @classmethod
    def parse(cls, raw: Any):
        """Map a raw value (member, exact value, or any-case name) to a member.

        Raises ValueError for unknown text so bad rows surface at the
        data-access boundary instead of leaking into the engine.
        """
        if isinstance(raw, cls):
            return raw
        if raw is None:
            raise ValueError(f"{cls.__name__} value is required")
        text = str(raw).strip()
        for member in cls:
            if member.value == text:
                return member
        normalized = text.upper().replace(" ", "_").replace("-", "_")
        for member in cls:
            if member.name == normalized:
                return member
        raise ValueError(f"Unknown {cls.__name__} value: {raw!r}")


class CrmStatus(_LabelEnum):
    """Relationship state of an account."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    AT_RISK = "AT_RISK"
    CANCELLED = "CANCELLED"


class Priority(_LabelEnum):
    """Account / task priority, ordered by ``rank``."""

    NORMAL = "NORMAL"
    HIGH_VALUE = "HIGH_VALUE"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """0 for NORMAL, 1 for HIGH_VALUE, 2 for CRITICAL."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[Priority, int] = {
    Priority.NORMAL: 0,
    Priority.HIGH_VALUE: 1,
    Priority.CRITICAL: 2,
}


class TaskStatus(_LabelEnum):
    """Lifecycle states for a FollowUpTask.

        PENDING -> COMPLETED
                |-> CANCELLED
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class InteractionType(_LabelEnum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    MEETING = "MEETING"
    SMS = "SMS"
    SITE_VISIT = "SITE_VISIT"
    VIDEO_CALL = "VIDEO_CALL"


class Channel(_LabelEnum):
    PHONE = "PHONE"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    IN_PERSON = "IN_PERSON"
    ZOOM = "ZOOM"
    OTHER = "OTHER"


class Outcome(_LabelEnum):
    SUCCESSFUL = "SUCCESSFUL"
    NO_RESPONSE = "NO_RESPONSE"
    FOLLOW_UP_REQUIRED = "FOLLOW_UP_REQUIRED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    SCHEDULED = "SCHEDULED"


class AssignmentStrategy(_LabelEnum):
    """Bulk assignment policies offered to managers."""

    ROUND_ROBIN = "ROUND_ROBIN"
    BY_PRIORITY = "BY_PRIORITY"
    MANUAL = "MANUAL"
    LEAST_LOADED = "LEAST_LOADED"


class DeviceStatus(_LabelEnum):
    """Lifecycle states of a tracked device unit (IMEI)."""

    AVAILABLE = "AVAILABLE"
    ISSUED = "ISSUED"
    ACTIVE = "ACTIVE"
    DAMAGED = "DAMAGED"
    RETURNED = "RETURNED"
    INACTIVE = "INACTIVE"


class QueueBucket(_LabelEnum):
    """Follow-up queue buckets, in dashboard display order."""

    OVERDUE = "OVERDUE"
    DUE_TODAY = "DUE_TODAY"
    UPCOMING = "UPCOMING"

    @property
    def label(self) -> str:
        return _BUCKET_LABELS[self]


_BUCKET_LABELS: dict[QueueBucket, str] = {
    QueueBucket.OVERDUE: "Overdue",
    QueueBucket.DUE_TODAY: "Due Today",
    QueueBucket.UPCOMING: "Upcoming",
}


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Core Records
# ---------------------------------------------------------------------------

@dataclass
class Account:
    """A subscription / customer relationship record.

    Cadence: ``follow_up_frequency_months`` is authoritative when set;
    ``follow_up_times_per_year`` is only consulted when frequency is
    absent.  ``next_follow_up_date`` is derived and cached by the
    follow-up state machine.
    """

    # --- identifiers ---
    account_id: str
    name: str = ""

    # --- CRM configuration ---
    crm_status: CrmStatus = CrmStatus.ACTIVE
    priority: Priority = Priority.NORMAL
    follow_up_frequency_months: Optional[int] = None
    follow_up_times_per_year: Optional[int] = None

    # --- contact history ---
    last_contact_date: Optional[datetime] = None
    next_follow_up_date: Optional[datetime] = None

    # --- ownership ---
    account_owner_id: Optional[str] = None

    # --- misc ---
    tags: list[str] = field(default_factory=list)
    version: int = 1                        # optimistic concurrency token

    @property
    def is_assigned(self) -> bool:
        return bool(self.account_owner_id)

    @property
    def is_schedulable(self) -> bool:
        """False for PAUSED / CANCELLED accounts -- they never enter a queue."""
        return self.crm_status not in (CrmStatus.PAUSED, CrmStatus.CANCELLED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "crm_status": self.crm_status.value,
            "priority": self.priority.value,
            "follow_up_frequency_months": self.follow_up_frequency_months,
            "follow_up_times_per_year": self.follow_up_times_per_year,
            "last_contact_date": _iso(self.last_contact_date),
            "next_follow_up_date": _iso(self.next_follow_up_date),
            "account_owner_id": self.account_owner_id,
            "tags": list(self.tags),
            "version": self.version,
        }


@dataclass
class Owner:
    """A team member who can own accounts and follow-up tasks."""

    owner_id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    active: bool = True
    open_task_count: int = 0

    @property
    def display_name(self) -> str:
        """'First Last', falling back to the owner id."""
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.owner_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "active": self.active,
            "open_task_count": self.open_task_count,
        }


@dataclass
class FollowUpTask:
    """A scheduled follow-up for one account.

    Only mutated through ``crm_engine.followups``.  Never deleted;
    CANCELLED is a terminal status, not removal.
    """

    task_id: str
    account_id: str
    title: str
    due_date: datetime
    assigned_to: str
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.NORMAL

    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: str = ""
    interaction_id: Optional[str] = None
    system_generated: bool = False
    version: int = 1

    @property
    def is_pending(self) -> bool:
        return self.status is TaskStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "account_id": self.account_id,
            "title": self.title,
            "due_date": _iso(self.due_date),
            "assigned_to": self.assigned_to,
            "status": self.status.value,
            "priority": self.priority.value,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "interaction_id": self.interaction_id,
            "system_generated": self.system_generated,
            "version": self.version,
        }


@dataclass(frozen=True)
class Interaction:
    """An immutable entry in an account's append-only contact log."""

    interaction_id: str
    account_id: str
    interaction_type: InteractionType
    channel: Channel
    outcome: Outcome
    notes: str
    occurred_at: datetime
    task_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    recorded_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "interaction_id": self.interaction_id,
            "account_id": self.account_id,
            "task_id": self.task_id,
            "interaction_type": self.interaction_type.value,
            "channel": self.channel.value,
            "outcome": self.outcome.value,
            "notes": self.notes,
            "occurred_at": _iso(self.occurred_at),
            "duration_minutes": self.duration_minutes,
            "recorded_by": self.recorded_by,
        }


@dataclass
class InteractionPayload:
    """What the user records when completing a follow-up.

    ``next_follow_up_override`` replaces the cadence-computed next date
    when supplied.
    """

    notes: str
    interaction_type: InteractionType = InteractionType.CALL
    channel: Channel = Channel.PHONE
    outcome: Outcome = Outcome.SUCCESSFUL
    duration_minutes: Optional[int] = None
    next_follow_up_override: Optional[datetime] = None
    recorded_by: str = ""


# ---------------------------------------------------------------------------
# Inventory Records
# ---------------------------------------------------------------------------

@dataclass
class DeviceUnit:
    """A single tracked device, identified by its IMEI."""

    identifier: str
    status: DeviceStatus = DeviceStatus.AVAILABLE
    batch_id: Optional[str] = None
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "status": self.status.value,
            "batch_id": self.batch_id,
            "notes": self.notes,
        }


@dataclass
class DeviceBatch:
    """A received inventory batch.

    When ``unit_tracked`` is True the batch is only considered fully
    tracked once ``len(units) == quantity_received`` exactly.
    """

    batch_id: str
    quantity_received: int
    batch_number: str = ""
    product_id: str = ""
    unit_tracked: bool = True
    units: list[DeviceUnit] = field(default_factory=list)

    @property
    def is_fully_tracked(self) -> bool:
        return self.unit_tracked and len(self.units) == self.quantity_received

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "product_id": self.product_id,
            "quantity_received": self.quantity_received,
            "unit_tracked": self.unit_tracked,
            "units": [u.to_dict() for u in self.units],
        }

"""CRM Follow-up Engine -- Error Taxonomy.

Every failure the engine reports is a subclass of ``CrmEngineError``,
grouped by kind:

    ConfigurationError   missing / invalid cadence input
    PreconditionError    wrong input for the requested operation
    IntegrityError       quantity mismatch, duplicate identifier or batch,
                         invalid device status transition
    ConcurrencyError     stale write / task already terminal

Configuration, precondition and integrity errors also subclass
``ValueError`` so callers that already guard bad input with
``except ValueError`` keep working.
"""

from __future__ import annotations

from typing import Any, Optional


class CrmEngineError(Exception):
    """Base class for all engine failures."""


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class ConfigurationError(CrmEngineError, ValueError):
    """Invalid or missing configuration."""


class PreconditionError(CrmEngineError, ValueError):
    """The inputs do not satisfy the operation's preconditions."""


class IntegrityError(CrmEngineError, ValueError):
    """The data would violate an integrity rule."""


class ConcurrencyError(CrmEngineError):
    """The record changed underneath the caller."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class InvalidCadenceConfig(ConfigurationError):
    def __init__(
        self,
        message: str,
        frequency_months: Optional[int] = None,
        times_per_year: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.frequency_months = frequency_months
        self.times_per_year = times_per_year


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

class InvalidAssignee(PreconditionError):
    def __init__(self, assignee: Any) -> None:
        super().__init__(f"Invalid assignee for follow-up task: {assignee!r}")
        self.assignee = assignee


class MissingInteractionNotes(PreconditionError):
    def __init__(self, min_length: int) -> None:
        super().__init__(
            f"Interaction notes are required (at least {min_length} characters) "
            "to complete a follow-up"
        )
        self.min_length = min_length


class EmptyOwnerPool(PreconditionError):
    def __init__(self) -> None:
        super().__init__("Select at least 1 owner to assign to")


class NoEligibleAccounts(PreconditionError):
    def __init__(self, requested: int = 0) -> None:
        super().__init__(
            f"No unassigned accounts eligible for assignment "
            f"({requested} requested)"
        )
        self.requested = requested


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

class QuantityMismatch(IntegrityError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Expected exactly {expected} unit(s) for a unit-tracked batch, "
            f"got {actual}"
        )
        self.expected = expected
        self.actual = actual


class DuplicateUnitIdentifier(IntegrityError):
    def __init__(self, identifier: str, scope: str = "batch") -> None:
        super().__init__(f"Duplicate unit identifier in {scope}: {identifier}")
        self.identifier = identifier
        self.scope = scope


class InvalidUnitIdentifier(IntegrityError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"Invalid unit identifier: {identifier!r}")
        self.identifier = identifier


class DuplicateBatch(IntegrityError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch {batch_id} is already registered")
        self.batch_id = batch_id


class InvalidStatusTransition(IntegrityError):
    def __init__(self, current: Any, target: Any) -> None:
        cur = getattr(current, "value", current)
        tgt = getattr(target, "value", target)
        super().__init__(f"Cannot transition from {cur} to {tgt}")
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TaskAlreadyTerminal(ConcurrencyError):
    def __init__(self, task_id: str, status: Any = None) -> None:
        label = getattr(status, "value", status)
        super().__init__(
            f"Follow-up task {task_id} is no longer PENDING"
            + (f" (status: {label})" if label else "")
        )
        self.task_id = task_id
        self.status = status


class StaleWriteError(ConcurrencyError):
    def __init__(self, record: str, record_id: str, expected_version: int) -> None:
        super().__init__(
            f"{record} {record_id} changed since it was read "
            f"(expected version {expected_version})"
        )
        self.record = record
        self.record_id = record_id
        self.expected_version = expected_version

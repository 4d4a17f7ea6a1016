"""
Device Batch Reconciler

Validates a received inventory batch before its units are registered:

    unit-tracked batch   -> exactly ``quantity_received`` identifiers,
                            each well-formed and unique (within the batch
                            and against every identifier already stored)
    untracked batch      -> accepted as-is, no unit records

Accepted units all start AVAILABLE.  Afterwards a unit only moves along
the device lifecycle table below; anything else is rejected.

    AVAILABLE -> ISSUED | ACTIVE | DAMAGED | RETURNED
    ISSUED    -> ACTIVE | DAMAGED | RETURNED
    ACTIVE    -> DAMAGED | RETURNED | INACTIVE
    DAMAGED   -> RETURNED
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import (
    DuplicateUnitIdentifier,
    IntegrityError,
    InvalidStatusTransition,
    InvalidUnitIdentifier,
    PreconditionError,
    QuantityMismatch,
)
from .models import DeviceBatch, DeviceStatus, DeviceUnit

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IMEI_LENGTH: int = 15
IMEI_PATTERN: str = r"^\d{15}$"

_DEVICE_TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.AVAILABLE: frozenset({
        DeviceStatus.ISSUED,
        DeviceStatus.ACTIVE,
        DeviceStatus.DAMAGED,
        DeviceStatus.RETURNED,
    }),
    DeviceStatus.ISSUED: frozenset({
        DeviceStatus.ACTIVE,
        DeviceStatus.DAMAGED,
        DeviceStatus.RETURNED,
    }),
    DeviceStatus.ACTIVE: frozenset({
        DeviceStatus.DAMAGED,
        DeviceStatus.RETURNED,
        DeviceStatus.INACTIVE,
    }),
    DeviceStatus.DAMAGED: frozenset({DeviceStatus.RETURNED}),
    DeviceStatus.RETURNED: frozenset(),
    DeviceStatus.INACTIVE: frozenset(),
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ReconciliationResult:
    """Verdict for one batch.

    ``units`` is empty for untracked batches and for rejections.
    """
    accepted: bool
    units: list[DeviceUnit] = field(default_factory=list)
    error: Optional[IntegrityError | PreconditionError] = None

    @property
    def reason(self) -> str:
        return str(self.error) if self.error else ""

    def raise_for_rejection(self) -> "ReconciliationResult":
        """Re-raise the rejection error; returns self when accepted."""
        if self.error is not None:
            raise self.error
        return self


@dataclass
class BatchReconciliationReport:
    """Per-batch verdicts for a multi-batch import."""
    results: dict[str, ReconciliationResult] = field(default_factory=dict)

    @property
    def accepted_count(self) -> int:
        return sum(1 for r in self.results.values() if r.accepted)

    @property
    def rejected_count(self) -> int:
        return sum(1 for r in self.results.values() if not r.accepted)

    @property
    def rejections(self) -> dict[str, str]:
        return {bid: r.reason for bid, r in self.results.items() if not r.accepted}


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

def extract_identifiers(text: str, length: int = IMEI_LENGTH) -> list[str]:
    """Pull every run of exactly *length* digits out of pasted text.

    Order is preserved and repeats are kept, so duplicates in a paste
    still surface during reconciliation.

    Examples:
        >>> extract_identifiers("356938035643809, 356938035643817\\nfoo 12")
        ['356938035643809', '356938035643817']
    """
    if not text:
        return []
    return re.findall(rf"(?<!\d)\d{{{length}}}(?!\d)", text)


def _normalise(raw: str | DeviceUnit) -> str:
    value = raw.identifier if isinstance(raw, DeviceUnit) else raw
    return str(value if value is not None else "").strip()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def reconcile(
    declared_quantity: int,
    submitted_units: Sequence[str | DeviceUnit],
    *,
    unit_tracked: bool = True,
    known_identifiers: Iterable[str] = (),
    identifier_pattern: Optional[str] = IMEI_PATTERN,
    batch_id: Optional[str] = None,
) -> ReconciliationResult:
    """
    Decide whether a batch may be registered.

    Args:
        declared_quantity: ``quantity_received`` on the batch.
        submitted_units: Identifiers (or DeviceUnit records) entered for
            the batch.
        unit_tracked: Whether individual units are recorded.
        known_identifiers: Identifiers already registered for the product.
        identifier_pattern: Regex every identifier must match; None
            disables the format check.
        batch_id: Stamped onto the accepted units.

    Returns:
        ReconciliationResult.  Nothing is partially accepted: on any
        failure ``units`` is empty and ``error`` carries the reason.

    Examples:
        >>> reconcile(2, ["356938035643809", "356938035643817"]).accepted
        True
        >>> reconcile(5, ["356938035643809"]).reason
        'Expected exactly 5 unit(s) for a unit-tracked batch, got 1'
    """
    if not unit_tracked:
        if declared_quantity is None or declared_quantity < 0:
            return ReconciliationResult(
                accepted=False,
                error=PreconditionError(f"Quantity received must be >= 0, got {declared_quantity}"),
            )
        logger.debug("Batch %s is not unit-tracked; accepting %s unit(s) untracked",
                     batch_id, declared_quantity)
        return ReconciliationResult(accepted=True)

    if declared_quantity is None or declared_quantity < 1:
        return ReconciliationResult(
            accepted=False,
            error=PreconditionError(
                f"A unit-tracked batch needs a positive quantity, got {declared_quantity}"
            ),
        )

    identifiers = [_normalise(u) for u in submitted_units]
    if len(identifiers) != declared_quantity:
        return ReconciliationResult(
            accepted=False,
            error=QuantityMismatch(declared_quantity, len(identifiers)),
        )

    compiled = re.compile(identifier_pattern) if identifier_pattern else None
    known = {str(k).strip() for k in known_identifiers}
    seen: set[str] = set()
    for identifier in identifiers:
        if not identifier or (compiled and not compiled.match(identifier)):
            return ReconciliationResult(accepted=False, error=InvalidUnitIdentifier(identifier))
        if identifier in seen:
            return ReconciliationResult(accepted=False, error=DuplicateUnitIdentifier(identifier))
        if identifier in known:
            return ReconciliationResult(
                accepted=False,
                error=DuplicateUnitIdentifier(identifier, scope="product"),
            )
        seen.add(identifier)

    units = [
        DeviceUnit(identifier=identifier, status=DeviceStatus.AVAILABLE, batch_id=batch_id)
        for identifier in identifiers
    ]
    return ReconciliationResult(accepted=True, units=units)


def reconcile_batches(
    batches: Iterable[tuple[DeviceBatch, Sequence[str | DeviceUnit]]],
    *,
    known_identifiers: Iterable[str] = (),
    identifier_pattern: Optional[str] = IMEI_PATTERN,
) -> BatchReconciliationReport:
    """
    Reconcile several batches independently.

    A rejected batch never blocks its siblings.  Identifiers accepted in
    an earlier batch count as known for the later ones.
    """
    report = BatchReconciliationReport()
    known = {str(k).strip() for k in known_identifiers}

    for batch, submitted in batches:
        result = reconcile(
            batch.quantity_received,
            submitted,
            unit_tracked=batch.unit_tracked,
            known_identifiers=known,
            identifier_pattern=identifier_pattern,
            batch_id=batch.batch_id,
        )
        report.results[batch.batch_id] = result
        if result.accepted:
            known.update(u.identifier for u in result.units)
        else:
            logger.warning("Batch %s rejected: %s", batch.batch_id, result.reason)

    logger.info(
        "Reconciled %d batches: %d accepted, %d rejected",
        len(report.results), report.accepted_count, report.rejected_count,
    )
    return report


# ---------------------------------------------------------------------------
# Device lifecycle
# ---------------------------------------------------------------------------

def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    return target in _DEVICE_TRANSITIONS.get(current, frozenset())


def transition(unit: DeviceUnit, target: DeviceStatus | str) -> DeviceUnit:
    """Return *unit* moved to *target*, or raise InvalidStatusTransition."""
    target = DeviceStatus.parse(target)
    if not can_transition(unit.status, target):
        raise InvalidStatusTransition(unit.status, target)
    return replace(unit, status=target)

"""
CRM Bulk Assignment Resolver

Turns a manager's bulk-assign request into a concrete account -> owner
mapping.  The resolver never writes: it returns an ``AssignmentPlan``
that the caller applies one account at a time (``apply_plan`` or
``FollowUpStore.apply_assignments``), so a single failed write skips
that account instead of aborting the batch.

Strategies:
    ROUND_ROBIN   accounts by id ascending, owners[i % k]
    BY_PRIORITY   CRITICAL > HIGH_VALUE > NORMAL, then longest since
                  last contact (never contacted first), then round-robin
    MANUAL        caller-selected accounts in caller order, owners[i % k]
    LEAST_LOADED  BY_PRIORITY order, each account to the owner with the
                  fewest open tasks (counting this plan's assignments)

Every strategy yields an even +-1 split across owners except
LEAST_LOADED, which evens out total load instead.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .errors import CrmEngineError, EmptyOwnerPool, NoEligibleAccounts, PreconditionError
from .models import Account, AssignmentStrategy, Owner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class AssignmentPlan:
    """Resolved owner per account.

    ``order`` keeps the resolution order (position 0 was assigned first);
    ``skipped`` lists requested accounts that were already assigned or
    unknown.
    """
    strategy: AssignmentStrategy
    order: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def assignments(self) -> dict[str, str]:
        return dict(self.order)

    @property
    def owner_ids(self) -> list[str]:
        return [owner_id for _, owner_id in self.order]

    def __len__(self) -> int:
        return len(self.order)

    def distribution(self) -> dict[str, int]:
        """Owner id -> number of accounts assigned by this plan."""
        return dict(Counter(self.owner_ids))


@dataclass
class BulkAssignResult:
    """Aggregate outcome of applying a plan."""
    assigned: list[tuple[str, str]] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)   # account_id -> reason

    @property
    def assigned_count(self) -> int:
        return len(self.assigned)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def owners_used(self) -> int:
        return len({owner_id for _, owner_id in self.assigned})

    def summary(self) -> str:
        return (
            f"Bulk assignment done: {self.assigned_count} assigned to "
            f"{self.owners_used} users, {self.failed_count} failed"
        )


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def _by_identity(accounts: Iterable[Account]) -> list[Account]:
    return sorted(accounts, key=lambda a: a.account_id)


def _neglect_key(last_contact: Optional[datetime]) -> tuple[int, float]:
    """Never-contacted first, then oldest contact first."""
    if last_contact is None:
        return (0, 0.0)
    return (1, last_contact.timestamp())


def _by_priority(accounts: Iterable[Account]) -> list[Account]:
    return sorted(
        accounts,
        key=lambda a: (-a.priority.rank, _neglect_key(a.last_contact_date), a.account_id),
    )


def _round_robin(accounts: Sequence[Account], owners: Sequence[Owner]) -> list[tuple[str, str]]:
    count = len(owners)
    return [(a.account_id, owners[i % count].owner_id) for i, a in enumerate(accounts)]


def _least_loaded(accounts: Sequence[Account], owners: Sequence[Owner]) -> list[tuple[str, str]]:
    load = {o.owner_id: max(0, o.open_task_count) for o in owners}
    position = {o.owner_id: i for i, o in enumerate(owners)}
    pairs: list[tuple[str, str]] = []
    for account in accounts:
        owner_id = min(load, key=lambda oid: (load[oid], position[oid]))
        pairs.append((account.account_id, owner_id))
        load[owner_id] += 1
    return pairs


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve(
    strategy: AssignmentStrategy | str,
    candidate_owners: Sequence[Owner],
    target_accounts: Iterable[Account],
    *,
    account_ids: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> AssignmentPlan:
    """
    Resolve a bulk-assign request into an AssignmentPlan.

    Args:
        strategy: One of AssignmentStrategy (name strings accepted).
        candidate_owners: Owners selected by the manager; inactive owners
            are dropped and duplicates collapse to the first occurrence.
        target_accounts: Pool to assign from.  Already-assigned accounts
            are filtered out.
        account_ids: MANUAL only -- the caller's selection, in order.
        limit: Maximum number of accounts to assign in this run.

    Raises:
        EmptyOwnerPool: no (active) owners selected.
        PreconditionError: MANUAL without an account selection.
        NoEligibleAccounts: nothing unassigned left to assign.
    """
    strategy = AssignmentStrategy.parse(strategy)

    owners: list[Owner] = []
    seen_owners: set[str] = set()
    for owner in candidate_owners:
        if owner.active and owner.owner_id not in seen_owners:
            owners.append(owner)
            seen_owners.add(owner.owner_id)
    if not owners:
        raise EmptyOwnerPool()

    pool = list(target_accounts)
    plan = AssignmentPlan(strategy=strategy)

    if strategy is AssignmentStrategy.MANUAL:
        if not account_ids:
            raise PreconditionError("Select accounts for MANUAL assignment")
        by_id = {a.account_id: a for a in pool}
        candidates: list[Account] = []
        seen_accounts: set[str] = set()
        for account_id in account_ids:
            if account_id in seen_accounts:
                continue
            seen_accounts.add(account_id)
            account = by_id.get(account_id)
            if account is None or account.is_assigned:
                plan.skipped.append(account_id)
            else:
                candidates.append(account)
        requested = len(seen_accounts)
    else:
        candidates = [a for a in pool if not a.is_assigned]
        plan.skipped.extend(a.account_id for a in pool if a.is_assigned)
        requested = len(pool)

    if strategy is AssignmentStrategy.ROUND_ROBIN:
        candidates = _by_identity(candidates)
    elif strategy in (AssignmentStrategy.BY_PRIORITY, AssignmentStrategy.LEAST_LOADED):
        candidates = _by_priority(candidates)

    if limit is not None:
        candidates = candidates[:max(0, limit)]

    if not candidates:
        raise NoEligibleAccounts(requested)

    if strategy is AssignmentStrategy.LEAST_LOADED:
        plan.order = _least_loaded(candidates, owners)
    else:
        plan.order = _round_robin(candidates, owners)

    logger.info(
        "Resolved %s assignment: %d accounts across %d owners (%d skipped)",
        strategy.value, len(plan.order), len(owners), len(plan.skipped),
    )
    return plan


def is_even(plan: AssignmentPlan, owner_count: int) -> bool:
    """True when every owner got floor(N/K) or ceil(N/K) accounts."""
    if owner_count < 1:
        return False
    total = len(plan)
    low, high = total // owner_count, -(-total // owner_count)
    counts = plan.distribution()
    # Owners that received nothing count as zero.
    values = list(counts.values()) + [0] * (owner_count - len(counts))
    return all(low <= v <= high for v in values)


# ---------------------------------------------------------------------------
# Applying a plan
# ---------------------------------------------------------------------------

def apply_plan(
    plan: AssignmentPlan,
    writer: Callable[[str, str], bool | None],
) -> BulkAssignResult:
    """
    Apply each assignment independently through *writer*.

    ``writer(account_id, owner_id)`` performs one write.  Returning
    ``False`` or raising a ``CrmEngineError`` / ``sqlite3.Error`` marks
    that account as failed; the remaining accounts are still applied.
    """
    result = BulkAssignResult()
    for account_id, owner_id in plan.order:
        try:
            ok = writer(account_id, owner_id)
        except (CrmEngineError, sqlite3.Error) as exc:
            logger.warning("Assignment of %s to %s failed: %s", account_id, owner_id, exc)
            result.failures[account_id] = str(exc)
            continue
        if ok is False:
            logger.warning("Assignment of %s to %s skipped: already claimed", account_id, owner_id)
            result.failures[account_id] = "already assigned"
            continue
        result.assigned.append((account_id, owner_id))

    logger.info(result.summary())
    return result

"""
CRM Cadence Calculator

Computes when an account next needs a follow-up.

Interval resolution (first match wins):
    frequency_months >= 1   -> that many calendar months
    times_per_year   >= 1   -> round(12 / times_per_year) months, minimum 1
    neither                 -> configured default frequency

Month addition clamps to the last day of the target month, so
Jan 31 + 1 month is Feb 28 (or Feb 29 in a leap year).

Everything here is pure: the reference date is always passed in.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from dataclasses import replace
from typing import Iterable, Optional, TypeVar

from dateutil.relativedelta import relativedelta

from .config import DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS
from .errors import InvalidCadenceConfig
from .models import Account, CrmStatus, Priority

_D = TypeVar("_D", date, datetime)

MONTHS_PER_YEAR: int = 12


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------

def add_months(moment: _D, months: int) -> _D:
    """Add calendar months, clamping the day to the target month's length.

    Works for both ``date`` and ``datetime``; time of day and tzinfo are
    preserved.

    Examples:
        >>> add_months(date(2024, 1, 31), 1)
        datetime.date(2024, 2, 29)
        >>> add_months(date(2023, 1, 31), 1)
        datetime.date(2023, 2, 28)
        >>> add_months(date(2024, 11, 15), 3)
        datetime.date(2025, 2, 15)
    """
    return moment + relativedelta(months=months)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Interval resolution
# ---------------------------------------------------------------------------

def interval_months(
    frequency_months: Optional[int] = None,
    times_per_year: Optional[int] = None,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
) -> int:
    """
    Resolve the authoritative follow-up interval in months.

    Raises:
        InvalidCadenceConfig: when every supplied input is non-positive,
            or when nothing is supplied and no positive default exists.

    Examples:
        >>> interval_months(3, 6)
        3
        >>> interval_months(None, 4)
        3
        >>> interval_months(None, 5)
        2
        >>> interval_months(None, 24)
        1
        >>> interval_months(None, None, default_months=6)
        6
    """
    if frequency_months is not None and frequency_months >= 1:
        return int(frequency_months)

    if times_per_year is not None and times_per_year >= 1:
        return max(1, _round_half_up(MONTHS_PER_YEAR / times_per_year))

    if frequency_months is not None or times_per_year is not None:
        raise InvalidCadenceConfig(
            "Follow-up cadence must be a positive number of months or "
            f"times per year (got frequency_months={frequency_months}, "
            f"times_per_year={times_per_year})",
            frequency_months=frequency_months,
            times_per_year=times_per_year,
        )

    if default_months is None or default_months < 1:
        raise InvalidCadenceConfig(
            "Account has no follow-up cadence and no default frequency "
            "is configured"
        )
    return int(default_months)


def compute_next_due_date(
    reference: _D,
    frequency_months: Optional[int] = None,
    times_per_year: Optional[int] = None,
    *,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
) -> _D:
    """
    Compute the next follow-up due date from a reference date.

    Args:
        reference: The date the cadence counts from (usually the moment
            the last follow-up was completed).
        frequency_months: Explicit frequency; takes precedence.
        times_per_year: Used only when frequency is absent.
        default_months: System default when neither is set.

    Returns:
        ``reference`` advanced by the resolved interval.

    Examples:
        >>> compute_next_due_date(date(2024, 1, 20), 3)
        datetime.date(2024, 4, 20)
        >>> compute_next_due_date(date(2024, 1, 31), 1)
        datetime.date(2024, 2, 29)
    """
    months = interval_months(frequency_months, times_per_year, default_months)
    return add_months(reference, months)


def next_due_for_account(
    account: Account,
    reference: _D,
    *,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
) -> _D:
    """Compute the next due date using the account's cadence fields."""
    return compute_next_due_date(
        reference,
        account.follow_up_frequency_months,
        account.follow_up_times_per_year,
        default_months=default_months,
    )


# ---------------------------------------------------------------------------
# Reconfiguration
# ---------------------------------------------------------------------------

def reconfigure(
    account: Account,
    *,
    now: datetime,
    frequency_months: Optional[int] = None,
    times_per_year: Optional[int] = None,
    priority: Optional[Priority | str] = None,
    crm_status: Optional[CrmStatus | str] = None,
    tags: Optional[Iterable[str]] = None,
    default_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS,
) -> Account:
    """
    Apply a partial CRM config change and return the new account version.

    Arguments left as None keep their current value.  When either cadence
    field changes, ``next_follow_up_date`` is recomputed from the last
    contact (or *now* for an account never contacted).

    Raises:
        InvalidCadenceConfig: a supplied cadence value is not positive.
    """
    for label, value in (("frequency_months", frequency_months),
                         ("times_per_year", times_per_year)):
        if value is not None and value < 1:
            raise InvalidCadenceConfig(
                f"{label} must be a positive integer, got {value}",
                frequency_months=frequency_months,
                times_per_year=times_per_year,
            )

    changes: dict = {}
    if frequency_months is not None and frequency_months != account.follow_up_frequency_months:
        changes["follow_up_frequency_months"] = int(frequency_months)
    if times_per_year is not None and times_per_year != account.follow_up_times_per_year:
        changes["follow_up_times_per_year"] = int(times_per_year)
    cadence_changed = bool(changes)

    if priority is not None:
        changes["priority"] = Priority.parse(priority)
    if crm_status is not None:
        changes["crm_status"] = CrmStatus.parse(crm_status)
    if tags is not None:
        changes["tags"] = [str(t).strip() for t in tags if str(t).strip()]

    if not changes:
        return account

    updated = replace(account, **changes)
    if cadence_changed:
        reference = account.last_contact_date or now
        changes["next_follow_up_date"] = next_due_for_account(
            updated, reference, default_months=default_months,
        )
    return replace(account, version=account.version + 1, **changes)

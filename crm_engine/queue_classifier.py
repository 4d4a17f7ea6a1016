"""
CRM Follow-up Queue Classifier

Buckets outstanding follow-up work by how close its due date is to "now".

    OVERDUE:    due <  start_of_day(now)
    DUE_TODAY:  start_of_day(now) <= due <= end_of_day(now)
    UPCOMING:   end_of_day(now) <  due <= now + window_days
    (none):     beyond the window -- eligible but not yet actionable

Day bounds are computed in one reference timezone for both ends.  PAUSED
and CANCELLED accounts, and accounts with no next follow-up date, never
enter a bucket.

Within a bucket items are ordered by due date, then priority
(CRITICAL > HIGH_VALUE > NORMAL), then identity, so the same input always
yields the same output.  The portfolio view and the manager view both
filter one classification and therefore cannot disagree.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional

from .models import Account, FollowUpTask, Owner, QueueBucket, TaskStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configurable defaults
# ---------------------------------------------------------------------------

DEFAULT_UPCOMING_WINDOW_DAYS: int = 14
UNASSIGNED_OWNER_KEY: str = "unassigned"


# ---------------------------------------------------------------------------
# Classification Result
# ---------------------------------------------------------------------------

@dataclass
class ClassificationResult:
    """
    The result of classifying a single due date.

    Attributes:
        bucket: The assigned bucket, or None when beyond the window.
        due: The due date, normalised to the reference timezone.
        days_until_due: Whole calendar days from today to the due day
            (negative when overdue, 0 when due today).
    """
    bucket: Optional[QueueBucket]
    due: datetime
    days_until_due: int

    @property
    def is_overdue(self) -> bool:
        return self.bucket is QueueBucket.OVERDUE


@dataclass
class QueueBuckets:
    """Ordered output of :func:`classify` / :func:`classify_tasks`.

    ``beyond_window`` holds eligible items due after the upcoming window;
    ``excluded`` holds items that are not eligible at all (paused,
    cancelled, no due date, or a terminal task).
    """
    overdue: list[Any] = field(default_factory=list)
    due_today: list[Any] = field(default_factory=list)
    upcoming: list[Any] = field(default_factory=list)
    beyond_window: list[Any] = field(default_factory=list)
    excluded: list[Any] = field(default_factory=list)

    def bucket(self, which: QueueBucket) -> list[Any]:
        if which is QueueBucket.OVERDUE:
            return self.overdue
        if which is QueueBucket.DUE_TODAY:
            return self.due_today
        return self.upcoming

    @property
    def actionable(self) -> list[Any]:
        """Overdue, then due today, then upcoming."""
        return self.overdue + self.due_today + self.upcoming

    def counts(self) -> dict[str, int]:
        return {
            "overdue": len(self.overdue),
            "due_today": len(self.due_today),
            "upcoming": len(self.upcoming),
            "beyond_window": len(self.beyond_window),
            "excluded": len(self.excluded),
        }


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _to_reference(value: date | datetime, tz: Optional[tzinfo]) -> datetime:
    """Express *value* in the reference timezone.

    Naive values are taken to already be reference-local.  With no
    reference timezone everything is compared as naive UTC wall time, so
    an aware value is converted to UTC before its offset is dropped.
    """
    dt = _as_datetime(value)
    if tz is None:
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc)
        return dt.replace(tzinfo=None)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def _reference_tz(now: datetime, tz: Optional[tzinfo]) -> Optional[tzinfo]:
    return tz if tz is not None else now.tzinfo


def day_bounds(now: datetime, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
    """
    Return (start_of_day, end_of_day) for *now* in the reference timezone.

    Both bounds are inclusive; end_of_day is 23:59:59.999999.

    Examples:
        >>> start, end = day_bounds(datetime(2024, 3, 5, 15, 30))
        >>> start, end
        (datetime.datetime(2024, 3, 5, 0, 0), datetime.datetime(2024, 3, 5, 23, 59, 59, 999999))
    """
    ref_tz = _reference_tz(now, tz)
    local_now = _to_reference(now, ref_tz)
    start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


# ---------------------------------------------------------------------------
# Core Classification Functions
# ---------------------------------------------------------------------------

def classify_due(
    due: date | datetime,
    now: datetime,
    upcoming_window_days: int = DEFAULT_UPCOMING_WINDOW_DAYS,
    tz: Optional[tzinfo] = None,
) -> ClassificationResult:
    """
    Classify a single due date relative to *now*.

    Examples:
        >>> now = datetime(2024, 3, 5, 10, 0)
        >>> classify_due(datetime(2024, 3, 4, 23, 0), now).bucket
        <QueueBucket.OVERDUE: 'OVERDUE'>
        >>> classify_due(datetime(2024, 3, 5, 23, 59), now).bucket
        <QueueBucket.DUE_TODAY: 'DUE_TODAY'>
        >>> classify_due(datetime(2024, 3, 6, 9, 0), now).bucket
        <QueueBucket.UPCOMING: 'UPCOMING'>
        >>> classify_due(datetime(2024, 4, 30), now).bucket is None
        True
    """
    if upcoming_window_days < 0:
        raise ValueError(f"upcoming_window_days must be >= 0, got {upcoming_window_days}")

    ref_tz = _reference_tz(now, tz)
    start, end = day_bounds(now, ref_tz)
    local_now = _to_reference(now, ref_tz)
    local_due = _to_reference(due, ref_tz)
    window_end = local_now + timedelta(days=upcoming_window_days)

    if local_due < start:
        bucket: Optional[QueueBucket] = QueueBucket.OVERDUE
    elif local_due <= end:
        bucket = QueueBucket.DUE_TODAY
    elif local_due <= window_end:
        bucket = QueueBucket.UPCOMING
    else:
        bucket = None

    days_until_due = (local_due.date() - start.date()).days
    return ClassificationResult(bucket=bucket, due=local_due, days_until_due=days_until_due)


def bucket_for(
    due: date | datetime,
    now: datetime,
    upcoming_window_days: int = DEFAULT_UPCOMING_WINDOW_DAYS,
    tz: Optional[tzinfo] = None,
) -> Optional[QueueBucket]:
    """Quick lookup: return just the bucket (or None) for a due date."""
    return classify_due(due, now, upcoming_window_days, tz).bucket


def _sort_key(due: datetime, priority_rank: int, identity: str) -> tuple:
    return (due, -priority_rank, identity)


def _partition(
    items: Iterable[Any],
    *,
    now: datetime,
    window: int,
    tz: Optional[tzinfo],
    eligible,
    due_of,
    rank_of,
    id_of,
) -> QueueBuckets:
    result = QueueBuckets()
    keyed: dict[Optional[QueueBucket], list[tuple[tuple, Any]]] = {
        QueueBucket.OVERDUE: [],
        QueueBucket.DUE_TODAY: [],
        QueueBucket.UPCOMING: [],
        None: [],
    }

    for item in items:
        due = due_of(item)
        if due is None or not eligible(item):
            result.excluded.append(item)
            continue
        classification = classify_due(due, now, window, tz)
        key = _sort_key(classification.due, rank_of(item), id_of(item))
        keyed[classification.bucket].append((key, item))

    for bucket_key, pairs in keyed.items():
        pairs.sort(key=lambda pair: pair[0])
        ordered = [item for _, item in pairs]
        if bucket_key is None:
            result.beyond_window = ordered
        else:
            result.bucket(bucket_key).extend(ordered)

    return result


def classify(
    accounts: Iterable[Account],
    now: datetime,
    upcoming_window_days: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> QueueBuckets:
    """
    Partition accounts into overdue / due-today / upcoming queues.

    Args:
        accounts: Accounts with their cached ``next_follow_up_date``.
        now: The reference moment (never read from the clock here).
        upcoming_window_days: Size of the upcoming window.  Defaults to
            ``DEFAULT_UPCOMING_WINDOW_DAYS``.
        tz: Reference timezone for the day bounds.  Defaults to
            ``now.tzinfo``.

    Returns:
        QueueBuckets with each list ordered by (due date, priority desc,
        account id).
    """
    window = DEFAULT_UPCOMING_WINDOW_DAYS if upcoming_window_days is None else upcoming_window_days
    buckets = _partition(
        accounts,
        now=now,
        window=window,
        tz=tz,
        eligible=lambda a: a.is_schedulable,
        due_of=lambda a: a.next_follow_up_date,
        rank_of=lambda a: a.priority.rank,
        id_of=lambda a: a.account_id,
    )
    logger.debug("Classified accounts: %s", buckets.counts())
    return buckets


def classify_tasks(
    tasks: Iterable[FollowUpTask],
    now: datetime,
    upcoming_window_days: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> QueueBuckets:
    """
    Same bucketing over follow-up tasks.  Only PENDING tasks are eligible.
    """
    window = DEFAULT_UPCOMING_WINDOW_DAYS if upcoming_window_days is None else upcoming_window_days
    buckets = _partition(
        tasks,
        now=now,
        window=window,
        tz=tz,
        eligible=lambda t: t.status is TaskStatus.PENDING,
        due_of=lambda t: t.due_date,
        rank_of=lambda t: t.priority.rank,
        id_of=lambda t: t.task_id,
    )
    logger.debug("Classified tasks: %s", buckets.counts())
    return buckets


# ---------------------------------------------------------------------------
# Portfolio / Manager Views
# ---------------------------------------------------------------------------

def for_owner(buckets: QueueBuckets, owner_id: Optional[str]) -> QueueBuckets:
    """
    Narrow a classification to one owner's portfolio.

    Works for both account and task buckets (``account_owner_id`` /
    ``assigned_to``).  Order is preserved.
    """
    def _mine(item: Any) -> bool:
        return _owner_of(item) == owner_id

    return QueueBuckets(
        overdue=[i for i in buckets.overdue if _mine(i)],
        due_today=[i for i in buckets.due_today if _mine(i)],
        upcoming=[i for i in buckets.upcoming if _mine(i)],
        beyond_window=[i for i in buckets.beyond_window if _mine(i)],
        excluded=[i for i in buckets.excluded if _mine(i)],
    )


def _owner_of(item: Any) -> Optional[str]:
    if isinstance(item, FollowUpTask):
        return item.assigned_to or None
    return getattr(item, "account_owner_id", None) or None


def completion_rate(tasks: Iterable[FollowUpTask]) -> float:
    """COMPLETED / (COMPLETED + PENDING).  Cancelled tasks don't count."""
    completed = pending = 0
    for task in tasks:
        if task.status is TaskStatus.COMPLETED:
            completed += 1
        elif task.status is TaskStatus.PENDING:
            pending += 1
    total = completed + pending
    return completed / total if total else 0.0


def summarize_queues(
    buckets: QueueBuckets,
    owners: Iterable[Owner] = (),
    tasks: Optional[Iterable[FollowUpTask]] = None,
) -> dict[str, Any]:
    """
    Produce the manager dashboard aggregate for a classification.

    Returns:
        A summary dict with overall bucket counts, a per-owner breakdown
        (keyed by owner id, plus ``"unassigned"``), and -- when tasks are
        given -- the follow-up completion rate.

    Example:
        >>> now = datetime(2024, 3, 5, 9, 0)
        >>> accts = [Account("a1", next_follow_up_date=datetime(2024, 3, 1), account_owner_id="u1")]
        >>> summarize_queues(classify(accts, now))["totals"]["overdue"]
        1
    """
    owner_names = {o.owner_id: o.display_name for o in owners}
    summary: dict[str, Any] = {
        "totals": buckets.counts(),
        "owners": {},
    }

    for owner_id, name in owner_names.items():
        summary["owners"][owner_id] = {
            "name": name,
            "overdue": 0,
            "due_today": 0,
            "upcoming": 0,
        }

    for key, items in (
        ("overdue", buckets.overdue),
        ("due_today", buckets.due_today),
        ("upcoming", buckets.upcoming),
    ):
        for item in items:
            owner_key = _owner_of(item) or UNASSIGNED_OWNER_KEY
            entry = summary["owners"].setdefault(owner_key, {
                "name": owner_names.get(owner_key, owner_key),
                "overdue": 0,
                "due_today": 0,
                "upcoming": 0,
            })
            entry[key] += 1

    if tasks is not None:
        summary["completion_rate"] = completion_rate(tasks)

    return summary

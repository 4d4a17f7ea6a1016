"""Tests for crm_engine.queue_classifier -- dashboard queue bucketing.

Covers:
- Day bounds and bucket boundaries (start / end of day, window edge)
- Timezone handling of the reference day
- Exclusion of PAUSED / CANCELLED accounts and missing due dates
- Partition property over a mixed portfolio
- Deterministic ordering within a bucket
- Task bucketing (PENDING only)
- Owner filter, completion rate and manager summary
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from crm_engine.models import (
    Account,
    CrmStatus,
    FollowUpTask,
    Owner,
    Priority,
    QueueBucket,
    TaskStatus,
)
from crm_engine.queue_classifier import (
    DEFAULT_UPCOMING_WINDOW_DAYS,
    UNASSIGNED_OWNER_KEY,
    bucket_for,
    classify,
    classify_due,
    classify_tasks,
    completion_rate,
    day_bounds,
    for_owner,
    summarize_queues,
)

NOW = datetime(2024, 3, 5, 10, 0)


def _acct(account_id, due, status=CrmStatus.ACTIVE, priority=Priority.NORMAL, owner=None):
    return Account(
        account_id,
        crm_status=status,
        priority=priority,
        next_follow_up_date=due,
        account_owner_id=owner,
    )


# ============================================================================
# Day bounds / single classification
# ============================================================================

class TestDayBounds:
    def test_naive(self):
        start, end = day_bounds(NOW)
        assert start == datetime(2024, 3, 5)
        assert end == datetime(2024, 3, 5, 23, 59, 59, 999999)

    def test_reference_timezone(self):
        # 02:00 UTC on Mar 5 is still Mar 4 in New York.
        now = datetime(2024, 3, 5, 2, 0, tzinfo=timezone.utc)
        start, _ = day_bounds(now, ZoneInfo("America/New_York"))
        assert start.date() == datetime(2024, 3, 4).date()


class TestClassifyDue:

    @pytest.mark.parametrize("due,expected", [
        (datetime(2024, 3, 4, 23, 59, 59), QueueBucket.OVERDUE),
        (datetime(2024, 1, 1), QueueBucket.OVERDUE),
        (datetime(2024, 3, 5, 0, 0), QueueBucket.DUE_TODAY),
        (datetime(2024, 3, 5, 9, 0), QueueBucket.DUE_TODAY),      # earlier today, not overdue
        (datetime(2024, 3, 5, 23, 59, 59, 999999), QueueBucket.DUE_TODAY),
        (datetime(2024, 3, 6, 0, 0), QueueBucket.UPCOMING),
        (datetime(2024, 3, 19, 10, 0), QueueBucket.UPCOMING),     # now + 14d exactly
        (datetime(2024, 3, 19, 10, 1), None),                     # just past the window
        (datetime(2024, 6, 1), None),
    ])
    def test_boundaries(self, due, expected):
        assert bucket_for(due, NOW) is expected

    def test_default_window(self):
        assert DEFAULT_UPCOMING_WINDOW_DAYS == 14

    def test_custom_window(self):
        assert bucket_for(datetime(2024, 3, 10), NOW, upcoming_window_days=3) is None
        assert bucket_for(datetime(2024, 3, 10), NOW, upcoming_window_days=7) is QueueBucket.UPCOMING

    def test_zero_window_has_no_upcoming(self):
        assert bucket_for(datetime(2024, 3, 6), NOW, upcoming_window_days=0) is None

    def test_negative_window_rejected(self):
        with pytest.raises(ValueError):
            classify_due(NOW, NOW, upcoming_window_days=-1)

    def test_days_until_due(self):
        assert classify_due(datetime(2024, 3, 1), NOW).days_until_due == -4
        assert classify_due(datetime(2024, 3, 5, 22), NOW).days_until_due == 0
        assert classify_due(datetime(2024, 3, 8), NOW).days_until_due == 3

    def test_is_overdue(self):
        assert classify_due(datetime(2024, 3, 1), NOW).is_overdue

    def test_aware_due_is_converted_to_reference_day(self):
        tz = ZoneInfo("America/New_York")
        now = datetime(2024, 3, 5, 12, 0, tzinfo=tz)
        # 03:00 UTC on Mar 6 is 22:00 on Mar 5 in New York.
        due = datetime(2024, 3, 6, 3, 0, tzinfo=timezone.utc)
        assert bucket_for(due, now, tz=tz) is QueueBucket.DUE_TODAY

    def test_aware_due_with_naive_now_compared_in_utc(self):
        # 20:00 on Mar 4 at UTC-8 is 04:00 UTC on Mar 5.
        due = datetime(2024, 3, 4, 20, 0, tzinfo=timezone(timedelta(hours=-8)))
        assert bucket_for(due, NOW) is QueueBucket.DUE_TODAY

    def test_date_only_due(self):
        assert bucket_for(NOW.date(), NOW) is QueueBucket.DUE_TODAY


# ============================================================================
# Portfolio classification
# ============================================================================

class TestClassifyAccounts:

    @pytest.mark.parametrize("status", [CrmStatus.PAUSED, CrmStatus.CANCELLED])
    @pytest.mark.parametrize("offset_days", [-30, -1, 0, 1, 10, 100])
    def test_paused_and_cancelled_never_bucketed(self, status, offset_days):
        account = _acct("a1", NOW + timedelta(days=offset_days), status=status)
        buckets = classify([account], NOW)
        assert buckets.actionable == []
        assert buckets.beyond_window == []
        assert buckets.excluded == [account]

    def test_at_risk_is_bucketed(self):
        account = _acct("a1", NOW - timedelta(days=2), status=CrmStatus.AT_RISK)
        assert classify([account], NOW).overdue == [account]

    def test_missing_due_date_excluded(self):
        account = _acct("a1", None)
        assert classify([account], NOW).excluded == [account]

    def test_partition(self):
        accounts = [
            _acct(f"a{i:02d}", NOW + timedelta(days=offset))
            for i, offset in enumerate(range(-20, 40, 3))
        ]
        buckets = classify(accounts, NOW)
        groups = [buckets.overdue, buckets.due_today, buckets.upcoming, buckets.beyond_window]
        placed = [a.account_id for group in groups for a in group]
        assert sorted(placed) == sorted(a.account_id for a in accounts)
        assert len(placed) == len(set(placed))
        assert buckets.excluded == []

    def test_ordering_due_then_priority_then_id(self):
        due = datetime(2024, 3, 1)
        accounts = [
            _acct("b", due, priority=Priority.NORMAL),
            _acct("a", due, priority=Priority.NORMAL),
            _acct("c", due, priority=Priority.CRITICAL),
            _acct("d", datetime(2024, 2, 1)),
            _acct("e", due, priority=Priority.HIGH_VALUE),
        ]
        ids = [a.account_id for a in classify(accounts, NOW).overdue]
        assert ids == ["d", "c", "e", "a", "b"]

    def test_deterministic_regardless_of_input_order(self):
        accounts = [_acct(f"a{i}", NOW + timedelta(days=i % 5)) for i in range(10)]
        forward = classify(accounts, NOW)
        backward = classify(list(reversed(accounts)), NOW)
        assert forward.actionable == backward.actionable

    def test_counts(self):
        accounts = [
            _acct("a1", NOW - timedelta(days=1)),
            _acct("a2", NOW),
            _acct("a3", NOW + timedelta(days=2)),
            _acct("a4", NOW + timedelta(days=60)),
            _acct("a5", None),
        ]
        assert classify(accounts, NOW).counts() == {
            "overdue": 1, "due_today": 1, "upcoming": 1, "beyond_window": 1, "excluded": 1,
        }


class TestClassifyTasks:
    def test_only_pending(self):
        tasks = [
            FollowUpTask("t1", "a1", "x", NOW, "u1"),
            FollowUpTask("t2", "a1", "x", NOW, "u1", status=TaskStatus.COMPLETED),
            FollowUpTask("t3", "a1", "x", NOW, "u1", status=TaskStatus.CANCELLED),
        ]
        buckets = classify_tasks(tasks, NOW)
        assert [t.task_id for t in buckets.due_today] == ["t1"]
        assert len(buckets.excluded) == 2


# ============================================================================
# Owner view / manager summary
# ============================================================================

class TestOwnerViews:

    @pytest.fixture
    def buckets(self):
        return classify([
            _acct("a1", NOW - timedelta(days=3), owner="u1"),
            _acct("a2", NOW, owner="u2"),
            _acct("a3", NOW + timedelta(days=1), owner="u1"),
            _acct("a4", NOW - timedelta(days=1)),
        ], NOW)

    def test_for_owner_filters_same_classification(self, buckets):
        mine = for_owner(buckets, "u1")
        assert [a.account_id for a in mine.overdue] == ["a1"]
        assert [a.account_id for a in mine.upcoming] == ["a3"]
        assert mine.due_today == []

    def test_owner_views_sum_to_team_view(self, buckets):
        total = sum(
            len(for_owner(buckets, owner).actionable) for owner in ("u1", "u2", None)
        )
        assert total == len(buckets.actionable)

    def test_summary(self, buckets):
        owners = [Owner("u1", "Ana", "Lopez"), Owner("u2", "Ben", "Kim"), Owner("u3")]
        summary = summarize_queues(buckets, owners)
        assert summary["totals"]["overdue"] == 2
        assert summary["owners"]["u1"] == {"name": "Ana Lopez", "overdue": 1, "due_today": 0, "upcoming": 1}
        assert summary["owners"]["u3"]["overdue"] == 0
        assert summary["owners"][UNASSIGNED_OWNER_KEY]["overdue"] == 1
        assert "completion_rate" not in summary

    def test_summary_with_tasks(self, buckets):
        tasks = [
            FollowUpTask("t1", "a1", "x", NOW, "u1", status=TaskStatus.COMPLETED),
            FollowUpTask("t2", "a1", "x", NOW, "u1", status=TaskStatus.COMPLETED),
            FollowUpTask("t3", "a1", "x", NOW, "u1"),
            FollowUpTask("t4", "a1", "x", NOW, "u1", status=TaskStatus.CANCELLED),
        ]
        summary = summarize_queues(buckets, [], tasks)
        assert summary["completion_rate"] == pytest.approx(2 / 3)


class TestCompletionRate:
    def test_empty(self):
        assert completion_rate([]) == 0.0

    def test_cancelled_ignored(self):
        tasks = [FollowUpTask("t", "a", "x", NOW, "u", status=TaskStatus.CANCELLED)]
        assert completion_rate(tasks) == 0.0

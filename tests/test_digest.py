"""Tests for crm_engine.digest -- Jinja2 digest rendering.

Covers:
- Template filters (format_date, priority_badge, format_percent)
- Owner digest sections, badges and overdue day counts
- Manager summary ordering and completion line
- Template discovery
"""

from datetime import datetime, timedelta

import pytest

from crm_engine.digest import (
    DigestRenderer,
    format_date,
    format_percent,
    priority_badge,
)
from crm_engine.models import Account, FollowUpTask, Owner, Priority
from crm_engine.queue_classifier import classify, classify_tasks, for_owner, summarize_queues

NOW = datetime(2024, 3, 5, 10, 0)


@pytest.fixture
def renderer():
    return DigestRenderer()


@pytest.fixture
def accounts():
    return [
        Account("a1", name="Acme Dental", priority=Priority.CRITICAL,
                next_follow_up_date=NOW - timedelta(days=3), account_owner_id="u1"),
        Account("a2", name="Bright Optics",
                next_follow_up_date=NOW + timedelta(days=2), account_owner_id="u1"),
        Account("a3", name="Cedar Vets", priority=Priority.HIGH_VALUE,
                next_follow_up_date=NOW - timedelta(days=1), account_owner_id="u2"),
    ]


# ============================================================================
# Filters
# ============================================================================

class TestFilters:

    def test_format_date(self):
        assert format_date(datetime(2026, 2, 5)) == "Feb 05, 2026"
        assert format_date(None) == ""

    @pytest.mark.parametrize("priority,expected", [
        (Priority.CRITICAL, "[CRITICAL] "),
        ("HIGH_VALUE", "[HIGH] "),
        (Priority.NORMAL, ""),
        (None, ""),
    ])
    def test_priority_badge(self, priority, expected):
        assert priority_badge(priority) == expected

    def test_format_percent(self):
        assert format_percent(0.5) == "50%"
        assert format_percent(None) == "n/a"


# ============================================================================
# Owner digest
# ============================================================================

class TestOwnerDigest:

    def test_sections(self, renderer, accounts):
        buckets = for_owner(classify(accounts, NOW), "u1")
        text = renderer.render_owner_digest(Owner("u1", "Ana", "Lopez"), buckets, NOW)

        assert text.startswith("Follow-up digest for Ana Lopez -- Mar 05, 2024")
        assert "Overdue (1)" in text
        assert "Due Today (0)" in text
        assert "Upcoming (1)" in text
        assert "[CRITICAL] Acme Dental (3d overdue)" in text
        assert "Bright Optics" in text
        assert "Cedar Vets" not in text
        assert "Nothing here." in text
        assert "2 follow-up(s) need attention in the next 14 days." in text

    def test_sections_in_display_order(self, renderer, accounts):
        buckets = for_owner(classify(accounts, NOW), "u1")
        text = renderer.render_owner_digest(Owner("u1"), buckets, NOW)
        assert text.index("Overdue (") < text.index("Due Today (") < text.index("Upcoming (")

    def test_task_items(self, renderer):
        tasks = [FollowUpTask("t1", "a1", "Renewal call", NOW, "u1", priority=Priority.HIGH_VALUE)]
        text = renderer.render_owner_digest(Owner("u1"), classify_tasks(tasks, NOW), NOW, 7)
        assert "[HIGH] Renewal call" in text
        assert "next 7 days" in text

    def test_empty_queue_renders(self, renderer):
        text = renderer.render_owner_digest(Owner("u9"), classify([], NOW), NOW)
        assert "Overdue (0)" in text
        assert text.count("Nothing here.") == 3
        assert "0 follow-up(s) need attention" in text


# ============================================================================
# Manager summary
# ============================================================================

class TestManagerSummary:

    def test_owner_rows_sorted_by_overdue(self, renderer, accounts):
        owners = [Owner("u1", "Ana", "Lopez"), Owner("u2", "Ben", "Kim"), Owner("u3", "Cy", "Zed")]
        accounts.append(Account("a4", next_follow_up_date=NOW - timedelta(days=9), account_owner_id="u2"))
        summary = summarize_queues(classify(accounts, NOW), owners)
        text = renderer.render_manager_summary(summary, NOW)

        assert "Overdue   : 3" in text
        assert "Completion" not in text
        assert text.index("Ben Kim") < text.index("Ana Lopez") < text.index("Cy Zed")

    def test_completion_line(self, renderer, accounts):
        tasks = [
            FollowUpTask("t1", "a1", "x", NOW, "u1"),
        ]
        summary = summarize_queues(classify(accounts, NOW), [], tasks)
        text = renderer.render_manager_summary(summary, NOW)
        assert "Completion: 0%" in text


class TestTemplates:

    def test_available(self, renderer):
        assert renderer.get_available_templates() == ["manager_summary.txt.j2", "owner_digest.txt.j2"]

    def test_missing_dir(self, tmp_path):
        assert DigestRenderer(tmp_path / "nope").get_available_templates() == []

    def test_custom_template_dir(self, tmp_path):
        (tmp_path / "owner_digest.txt.j2").write_text(
            "{{ owner_name }}: {{ total }}", encoding="utf-8",
        )
        custom = DigestRenderer(tmp_path)
        buckets = classify([], NOW)
        assert custom.render_owner_digest(Owner("u9"), buckets, NOW) == "u9: 0"

"""
CRM Follow-up Engine -- Digest Renderer

Renders plain-text follow-up digests with Jinja2:

  1. Owner digest: one owner's overdue / due-today / upcoming queue
  2. Manager summary: the team aggregate from ``summarize_queues``

Rendering only.  Delivering a digest (email, chat, ...) is the caller's
business.

Usage:
    from crm_engine.digest import DigestRenderer

    renderer = DigestRenderer()
    text = renderer.render_owner_digest(owner, for_owner(buckets, owner.owner_id), now)
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .models import Account, FollowUpTask, Owner, Priority, QueueBucket
from .queue_classifier import DEFAULT_UPCOMING_WINDOW_DAYS, QueueBuckets, classify_due

_DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_DATE_FORMAT = "%b %d, %Y"

OWNER_DIGEST_TEMPLATE = "owner_digest.txt.j2"
MANAGER_SUMMARY_TEMPLATE = "manager_summary.txt.j2"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def format_date(d: date | datetime | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Feb 05, 2026').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def priority_badge(priority: Priority | str | None) -> str:
    """'[CRITICAL] ' / '[HIGH] ' prefix; NORMAL gets no badge."""
    if priority is None:
        return ""
    priority = Priority.parse(priority)
    if priority is Priority.CRITICAL:
        return "[CRITICAL] "
    if priority is Priority.HIGH_VALUE:
        return "[HIGH] "
    return ""


def format_percent(rate: float | None) -> str:
    if rate is None:
        return "n/a"
    return f"{rate:.0%}"


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

class DigestRenderer:
    """Jinja2 renderer for follow-up digests.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the templates directory.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else _DEFAULT_TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # plain text output
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["priority_badge"] = priority_badge
        self.env.filters["format_percent"] = format_percent

    def render_owner_digest(
        self,
        owner: Owner,
        buckets: QueueBuckets,
        now: datetime,
        upcoming_window_days: int = DEFAULT_UPCOMING_WINDOW_DAYS,
    ) -> str:
        """Render one owner's queue.

        *buckets* should already be narrowed to the owner
        (``queue_classifier.for_owner``).
        """
        sections = [
            {
                "label": bucket.label,
                "entries": [
                    _item_context(item, now, upcoming_window_days)
                    for item in buckets.bucket(bucket)
                ],
            }
            for bucket in QueueBucket
        ]
        return self.render_template_string(OWNER_DIGEST_TEMPLATE, {
            "owner_name": owner.display_name,
            "generated_at": now,
            "sections": sections,
            "total": len(buckets.actionable),
            "window_days": upcoming_window_days,
        })

    def render_manager_summary(self, summary: dict[str, Any], now: datetime) -> str:
        """Render the team aggregate produced by ``summarize_queues``."""
        owners = sorted(
            summary["owners"].values(),
            key=lambda o: (-o["overdue"], -o["due_today"], o["name"]),
        )
        return self.render_template_string(MANAGER_SUMMARY_TEMPLATE, {
            "generated_at": now,
            "totals": summary["totals"],
            "owners": owners,
            "completion_rate": summary.get("completion_rate"),
        })

    def render_template_string(self, template_file: str, context: dict) -> str:
        """Render a named template with the given context."""
        return self.env.get_template(template_file).render(**context)

    def get_available_templates(self) -> list[str]:
        """Sorted list of template filenames in the template directory."""
        if not self.template_dir.is_dir():
            return []
        return sorted(
            f.name for f in self.template_dir.iterdir()
            if f.suffix == ".j2" and f.is_file()
        )


def _item_context(item: Account | FollowUpTask, now: datetime, window: int) -> dict[str, Any]:
    if isinstance(item, FollowUpTask):
        name: Optional[str] = item.title
        due = item.due_date
    else:
        name = item.name or item.account_id
        due = item.next_follow_up_date
    classification = classify_due(due, now, window)
    return {
        "name": name,
        "due": classification.due,
        "priority": item.priority,
        "days_until_due": classification.days_until_due,
    }

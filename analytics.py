"""Dashboard aggregates computed over already-fetched ticket dictionaries."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from policy import COMPLETED_STATUSES, HIGH_PRIORITIES, PRIORITIES, STATUSES

ACTIVITY_FEED_LIMIT = 20
COMMENT_PREVIEW_CHARS = 50
TOP_DESIGNATIONS = 8
UNKNOWN_LABEL = "Unknown"


def _as_utc(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ticket_stats(tickets: list[dict], viewer_id: str | None = None) -> dict[str, int]:
    statuses = Counter(t.get("status") for t in tickets)
    completed = sum(statuses[s] for s in COMPLETED_STATUSES)
    return {
        "total": len(tickets),
        "open": statuses["Open"],
        "in_progress": statuses["In Progress"],
        "resolved": statuses["Resolved"],
        "closed": statuses["Closed"],
        "high_priority": sum(1 for t in tickets if t.get("priority") in HIGH_PRIORITIES),
        "mine": sum(1 for t in tickets if viewer_id and t.get("creator_id") == viewer_id),
        "active": len(tickets) - completed,
    }


def _ordered_counts(tickets: list[dict], key: str, vocabulary: list[str]) -> list[dict]:
    counter = Counter(t.get(key) for t in tickets)
    return [{"name": name, "value": counter[name]} for name in vocabulary]


def counts_by_status(tickets: list[dict]) -> list[dict]:
    return _ordered_counts(tickets, "status", STATUSES)


def counts_by_priority(tickets: list[dict]) -> list[dict]:
    return _ordered_counts(tickets, "priority", PRIORITIES)


def counts_by_branch(tickets: list[dict]) -> list[dict]:
    counter: Counter[str] = Counter()
    for ticket in tickets:
        branch = (ticket.get("creator_branch") or "").strip() or UNKNOWN_LABEL
        counter[branch] += 1
    return [{"name": name, "value": count} for name, count in counter.most_common()]


def counts_by_designation(tickets: list[dict], limit: int = TOP_DESIGNATIONS) -> list[dict]:
    """Count tickets per creator designation; a multi-role creator counts once per tag."""
    counter: Counter[str] = Counter()
    for ticket in tickets:
        tags = ticket.get("creator_designations") or []
        if not tags:
            counter[UNKNOWN_LABEL] += 1
            continue
        for tag in tags:
            counter[tag] += 1
    return [{"name": name, "value": count} for name, count in counter.most_common(limit)]


def resolution_rate(tickets: list[dict]) -> float:
    if not tickets:
        return 0.0
    completed = sum(1 for t in tickets if t.get("status") in COMPLETED_STATUSES)
    return round(completed * 100.0 / len(tickets), 1)


def average_resolution_hours(tickets: list[dict]) -> Optional[float]:
    durations = []
    for ticket in tickets:
        created = _as_utc(ticket.get("created_at"))
        completed = _as_utc(ticket.get("completed_at"))
        if created and completed and completed >= created:
            durations.append((completed - created).total_seconds() / 3600)
    if not durations:
        return None
    return round(sum(durations) / len(durations), 1)


def percent_change(value: float, previous: float | None) -> Optional[float]:
    if previous is None:
        return None
    if previous == 0:
        return 0.0
    return round((value - previous) * 100.0 / previous, 1)


def weekly_trend(tickets: list[dict], today: datetime | None = None) -> list[dict]:
    """Tickets created and completed per day over the last seven days, oldest first."""
    today = _as_utc(today) or datetime.now(timezone.utc)
    days = [(today - timedelta(days=offset)).date() for offset in range(6, -1, -1)]
    created: Counter = Counter()
    resolved: Counter = Counter()
    for ticket in tickets:
        created_at = _as_utc(ticket.get("created_at"))
        if created_at:
            created[created_at.date()] += 1
        completed_at = _as_utc(ticket.get("completed_at"))
        if completed_at:
            resolved[completed_at.date()] += 1
    return [
        {
            "day": day.strftime("%a"),
            "date": day.isoformat(),
            "tickets": created[day],
            "resolved": resolved[day],
        }
        for day in days
    ]


def week_over_week(tickets: list[dict], today: datetime | None = None) -> dict:
    today = _as_utc(today) or datetime.now(timezone.utc)
    week_start = today - timedelta(days=7)
    prior_start = today - timedelta(days=14)
    this_week = 0
    last_week = 0
    for ticket in tickets:
        created_at = _as_utc(ticket.get("created_at"))
        if not created_at:
            continue
        if week_start < created_at <= today:
            this_week += 1
        elif prior_start < created_at <= week_start:
            last_week += 1
    return {
        "this_week": this_week,
        "last_week": last_week,
        "change": percent_change(this_week, last_week),
    }


def unassigned_open(tickets: list[dict]) -> list[dict]:
    return [
        t for t in tickets
        if not t.get("assigned_to") and t.get("status") not in COMPLETED_STATUSES
    ]


def build_analytics(tickets: list[dict], viewer_id: str | None = None,
                    today: datetime | None = None) -> dict:
    return {
        "stats": ticket_stats(tickets, viewer_id),
        "by_status": counts_by_status(tickets),
        "by_priority": counts_by_priority(tickets),
        "by_branch": counts_by_branch(tickets),
        "by_designation": counts_by_designation(tickets),
        "weekly_trend": weekly_trend(tickets, today),
        "week_over_week": week_over_week(tickets, today),
        "resolution_rate": resolution_rate(tickets),
        "avg_resolution_hours": average_resolution_hours(tickets),
        "unassigned": len(unassigned_open(tickets)),
    }


def _preview(text: str, limit: int = COMMENT_PREVIEW_CHARS) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def activity_feed(tickets: Iterable[dict], comments: Iterable[dict],
                  limit: int = ACTIVITY_FEED_LIMIT) -> list[dict]:
    """Merge recent tickets and comments into a single newest-first feed."""
    items = []
    for ticket in tickets:
        items.append(
            {
                "id": f"ticket-{ticket['id']}",
                "type": "ticket_created",
                "title": "New Ticket Created",
                "description": ticket.get("title") or "",
                "user": ticket.get("creator_name") or "Unknown User",
                "timestamp": _as_utc(ticket.get("created_at")),
                "ticket_id": ticket["id"],
                "priority": ticket.get("priority"),
                "status": ticket.get("status"),
            }
        )
    for comment in comments:
        ticket_title = comment.get("ticket_title") or f"Ticket #{comment.get('ticket_id')}"
        items.append(
            {
                "id": f"comment-{comment['id']}",
                "type": "comment_added",
                "title": "Comment Added",
                "description": f'"{_preview(comment.get("message") or "")}" on "{ticket_title}"',
                "user": comment.get("author_name") or "Unknown User",
                "timestamp": _as_utc(comment.get("created_at")),
                "ticket_id": comment.get("ticket_id"),
            }
        )
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    items.sort(key=lambda item: item["timestamp"] or epoch, reverse=True)
    return items[:limit]

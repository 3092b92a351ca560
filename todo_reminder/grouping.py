"""
Grace-period grouping of attributed markers by author.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .git_handler import BlameInfo


def in_grace_period(todo: BlameInfo, grace_period: timedelta, now: datetime) -> bool:
    """True while a marker is younger than the grace period."""
    return now - todo.author_time < grace_period


def group_by_grace_period(
    todos: Iterable[BlameInfo],
    grace_period: timedelta = timedelta(0),
    now: Optional[datetime] = None,
) -> dict[str, list[BlameInfo]]:
    """
    Partition markers by author email, dropping those still in grace.

    Keys are compared as exact strings. Authors whose markers are all
    in grace get no entry. Within a group, input order is kept.

    Args:
        todos: Attributed markers, usually in scan order.
        grace_period: Minimum age before a marker is reported.
        now: Reference instant (default: current UTC time). A naive
            value is read as local time.

    Returns:
        Mapping of author email to their reportable markers.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.astimezone(timezone.utc)

    groups: dict[str, list[BlameInfo]] = {}
    for todo in todos:
        if in_grace_period(todo, grace_period, now):
            continue
        groups.setdefault(todo.author_mail, []).append(todo)

    return groups

"""
Category-grouped view-models for the summary side panel.
"""

from typing import Callable
from typing import Iterable

from team_calendar.models import CalendarEvent
from team_calendar.models import EventCategory
from team_calendar.timelib import format_range
from team_calendar.timelib import to_inclusive_end

GroupKey = Callable[[CalendarEvent], str]


def by_category(event: CalendarEvent) -> str:
    return event.category


def by_title(event: CalendarEvent) -> str:
    return event.title


def event_date_range(event: CalendarEvent) -> str:
    """``MM/DD/YYYY - MM/DD/YYYY`` using the inclusive end."""
    return format_range(event.start_date, to_inclusive_end(event.end_date, event.start_date))


def _default_describe(events: list[CalendarEvent]) -> str:
    if len(events) == 1:
        return event_date_range(events[0])
    return f"{len(events)} events"


def project_summary(
    entities: Iterable[CalendarEvent],
    group_by: GroupKey = by_category,
    color_for: Callable[[str], str | None] | None = None,
    describe: Callable[[list[CalendarEvent]], str] | None = None,
    image_for: Callable[[CalendarEvent], str | None] | None = None,
) -> list[EventCategory]:
    """Group *entities* into summary rows.

    Rows are ordered by the start date of their earliest event (title breaks
    ties); each row's ``linked_events`` are sorted by start date ascending.
    """
    groups: dict[str, list[CalendarEvent]] = {}
    for event in entities:
        groups.setdefault(group_by(event), []).append(event)

    describe = describe or _default_describe
    rows = []
    for key, events in groups.items():
        events.sort(key=lambda e: (e.start_date, e.end_date, e.order, e.title))
        first = events[0]
        rows.append(
            EventCategory(
                title=key,
                sub_title=describe(events),
                event_count=len(events),
                color=color_for(key) if color_for else first.color,
                image_url=image_for(first) if image_for else None,
                url=first.url,
                linked_event=first,
                linked_events=events,
            )
        )
    rows.sort(key=lambda row: (row.linked_event.start_date, row.title))
    return rows

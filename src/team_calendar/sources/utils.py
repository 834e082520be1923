"""
Stateless conversion and grouping helpers shared by the event sources.
"""

from datetime import date
from typing import Iterable

from team_calendar.models import DAYS_OFF_CATEGORY
from team_calendar.models import DAYS_OFF_ID
from team_calendar.models import FREEFORM_ID
from team_calendar.models import ITERATION_CATEGORY
from team_calendar.models import ITERATION_ID
from team_calendar.models import CalendarEvent
from team_calendar.models import CapacityRecord
from team_calendar.models import EventIcon
from team_calendar.models import FreeFormEvent
from team_calendar.models import GroupedDaysOff
from team_calendar.models import Iteration
from team_calendar.timelib import to_exclusive_end


def prefixed_id(prefix: str, raw_id: str) -> str:
    return f"{prefix}.{raw_id}"


def strip_prefix(event_id: str, prefix: str) -> str:
    """``freeform.<uuid>`` → ``<uuid>``; bare ids pass through unchanged."""
    head = prefix + "."
    return event_id[len(head):] if event_id.startswith(head) else event_id


def freeform_to_calendar_event(event: FreeFormEvent) -> CalendarEvent:
    return CalendarEvent(
        id=prefixed_id(FREEFORM_ID, event.id),
        title=event.title,
        start_date=event.start_date,
        end_date=to_exclusive_end(event.end_date),
        category=event.category,
        description=event.description,
        order=event.order,
    )


def iteration_to_calendar_event(iteration: Iteration, url: str | None = None) -> CalendarEvent:
    """Iterations render as background bands spanning the whole sprint."""
    return CalendarEvent(
        id=prefixed_id(ITERATION_ID, iteration.id),
        title=iteration.name,
        start_date=iteration.start_date,
        end_date=to_exclusive_end(iteration.end_date),
        category=ITERATION_CATEGORY,
        display="background",
        url=url or iteration.url or None,
    )


def capacity_to_calendar_event(record: CapacityRecord) -> CalendarEvent:
    """Per-member event linked from cluster icons and summary detail rows."""
    return CalendarEvent(
        id=prefixed_id(
            DAYS_OFF_ID, f"{record.start_date.isoformat()}.{record.member_id}"
        ),
        title=record.member_display_name,
        start_date=record.start_date,
        end_date=to_exclusive_end(record.end_date),
        category=DAYS_OFF_CATEGORY,
    )


def records_covering(records: Iterable[CapacityRecord], day: date) -> list[CapacityRecord]:
    """Records whose inclusive interval covers *day*, first occurrence per member.

    Input order is preserved; this is the icon order shown on the calendar.
    """
    seen: set[str] = set()
    covering = []
    for record in records:
        if record.start_date <= day <= record.end_date and record.member_id not in seen:
            seen.add(record.member_id)
            covering.append(record)
    return covering


def build_grouped_event(day: date, covering: list[CapacityRecord]) -> GroupedDaysOff:
    """One clustered entry for *day* with an icon per member."""
    if len(covering) == 1:
        title = covering[0].member_display_name
    else:
        title = f"{len(covering)} people off"
    icons = [
        EventIcon(image_url=r.member_avatar_url, linked_event=capacity_to_calendar_event(r))
        for r in covering
    ]
    event = CalendarEvent(
        id=prefixed_id(DAYS_OFF_ID, day.isoformat()),
        title=title,
        start_date=day,
        end_date=to_exclusive_end(day),
        category=DAYS_OFF_CATEGORY,
        description=", ".join(r.member_display_name for r in covering),
        icons=icons,
    )
    return GroupedDaysOff(date=day, records=covering, event=event)


def group_days_off(records: Iterable[CapacityRecord], day: date) -> GroupedDaysOff | None:
    covering = records_covering(records, day)
    if not covering:
        return None
    return build_grouped_event(day, covering)

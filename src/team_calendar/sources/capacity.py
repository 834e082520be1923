"""
Iterations and member days off from the remote work-tracking service.
"""

import asyncio
import logging
from datetime import date
from datetime import timedelta
from typing import TYPE_CHECKING
from urllib.parse import quote

from team_calendar.colors import default_color
from team_calendar.models import DAYS_OFF_CATEGORY
from team_calendar.models import ITERATION_CATEGORY
from team_calendar.models import CalendarEvent
from team_calendar.models import CapacityRecord
from team_calendar.models import EventCategory
from team_calendar.models import GroupedDaysOff
from team_calendar.models import Iteration
from team_calendar.models import TeamCalendarError
from team_calendar.observable import ObservableValue
from team_calendar.sources.utils import build_grouped_event
from team_calendar.sources.utils import capacity_to_calendar_event
from team_calendar.sources.utils import group_days_off
from team_calendar.sources.utils import iteration_to_calendar_event
from team_calendar.sources.utils import records_covering
from team_calendar.summary import by_title
from team_calendar.summary import event_date_range
from team_calendar.summary import project_summary
from team_calendar.timelib import MonthAndYear
from team_calendar.timelib import iter_days
from team_calendar.timelib import month_grid_range
from team_calendar.timelib import overlaps
from team_calendar.timelib import to_exclusive_end

if TYPE_CHECKING:
    from team_calendar.colors import ColorSettings
    from team_calendar.devops_client import CapacityClient

logger = logging.getLogger(__name__)

# Iterations this close to the requested window are fetched too, so the
# leading/trailing days of a month grid are never blank.
PADDING_DAYS = 7


def _url_segment(value: str) -> str:
    return quote(value, safe="")


class CapacityEventSource:
    """Cached iterations and days off for one team, grouped for rendering."""

    def __init__(self, colors: "ColorSettings | None" = None):
        self._colors = colors
        self.project_id = ""
        self.project_name = ""
        self.team_id = ""
        self._team_name = ""
        self.host_url = ""
        self._client: "CapacityClient | None" = None
        self._generation = 0
        self._iterations: list[Iteration] | None = None
        self._capacity: dict[str, list[CapacityRecord]] = {}
        self._failed: set[str] = set()
        self._records: list[CapacityRecord] = []
        self._summary_range: tuple[date, date] | None = None

        self._iteration_summary: ObservableValue[list[EventCategory]] = ObservableValue([])
        self._capacity_summary: ObservableValue[list[EventCategory]] = ObservableValue([])
        self._iteration_url: ObservableValue[str] = ObservableValue("")
        self._capacity_url: ObservableValue[str] = ObservableValue("")
        if colors is not None:
            colors.observable.subscribe(lambda _overrides: self._refresh_summaries())

    def initialize(
        self,
        project_id: str,
        project_name: str,
        team_id: str,
        team_name: str,
        host_url: str,
        client: "CapacityClient",
    ):
        """Rebind to a project/team and drop everything cached for the previous one."""
        self.project_id = project_id
        self.project_name = project_name
        self.team_id = team_id
        self._team_name = team_name or team_id
        self.host_url = host_url.rstrip("/") + "/" if host_url else ""
        self._client = client
        self._generation += 1
        self._iterations = None
        self._capacity = {}
        self._failed = set()
        self._records = []
        self._summary_range = None
        self._refresh_summaries()

    @property
    def team_name(self) -> str:
        return self._team_name

    def update_team_name(self, name: str | None):
        """Adopt a freshly resolved team name; empty results keep the last known one."""
        if name:
            self._team_name = name
            self._refresh_urls()

    @property
    def iterations(self) -> list[Iteration]:
        return list(self._iterations or [])

    @property
    def failed_iterations(self) -> set[str]:
        return set(self._failed)

    # ------------------------------------------------------------------ #
    # Preload                                                             #
    # ------------------------------------------------------------------ #

    async def preload_iterations(self, range_start: date, range_end: date):
        """Fetch iterations and their days off for ``[range_start, range_end)``.

        Never raises for remote failures: a failed iteration stays empty and
        is remembered so it is not re-requested on every preload.
        """
        if self._client is None:
            raise TeamCalendarError("CapacityEventSource used before initialize()")
        generation = self._generation
        client, project_id, team_id = self._client, self.project_id, self.team_id

        if self._iterations is None:
            try:
                iterations = await client.get_iterations(project_id, team_id)
            except TeamCalendarError as e:
                logger.warning("Could not load iterations for team %s: %s", team_id, e)
                iterations = []
            if generation != self._generation:
                logger.debug("Discarding stale iterations for team %s", team_id)
                return
            self._iterations = sorted(iterations, key=lambda i: (i.start_date, i.name))

        padding = timedelta(days=PADDING_DAYS)
        window_start, window_end = range_start - padding, range_end + padding
        pending = [
            it
            for it in self._iterations
            if it.id not in self._capacity
            and it.id not in self._failed
            and overlaps(it.start_date, to_exclusive_end(it.end_date), window_start, window_end)
        ]
        if pending:
            logger.debug("Loading capacity for %d iteration(s) of team %s", len(pending), team_id)
            results = await asyncio.gather(
                *(self._fetch_days_off(client, project_id, team_id, it) for it in pending)
            )
            if generation != self._generation:
                logger.debug("Discarding stale capacity for team %s", team_id)
                return
            for iteration, records in zip(pending, results):
                if records is None:
                    self._failed.add(iteration.id)
                else:
                    self._capacity[iteration.id] = records
            self._rebuild_records()

        self._summary_range = (range_start, range_end)
        self._refresh_summaries()

    async def preload_month(self, month: MonthAndYear, first_day_of_week: int = 0):
        start, end = month_grid_range(month, first_day_of_week)
        await self.preload_iterations(start, end)

    def retry_failed(self):
        """Allow the next preload to re-request iterations that failed before."""
        self._failed.clear()
        if self._iterations == []:
            self._iterations = None

    async def _fetch_days_off(
        self, client: "CapacityClient", project_id: str, team_id: str, iteration: Iteration
    ) -> list[CapacityRecord] | None:
        try:
            team_days, member_days = await asyncio.gather(
                client.get_team_days_off(project_id, team_id, iteration.id),
                client.get_capacity(project_id, team_id, iteration.id),
            )
        except TeamCalendarError as e:
            logger.warning(
                "Could not load days off for iteration %s (%s): %s", iteration.name, team_id, e
            )
            return None
        return list(team_days) + list(member_days)

    def _rebuild_records(self):
        """Flatten cached records in iteration order, dropping exact duplicates.

        Iteration order (not network completion order) fixes the icon order.
        """
        seen = set()
        records = []
        for iteration in self._iterations or []:
            for record in self._capacity.get(iteration.id, []):
                key = (record.member_id, record.start_date, record.end_date)
                if key in seen:
                    continue
                seen.add(key)
                records.append(record)
        self._records = records

    # ------------------------------------------------------------------ #
    # Reads                                                               #
    # ------------------------------------------------------------------ #

    def get_events(self, range_start: date, range_end: date) -> list[CalendarEvent]:
        """Iteration bands, then one clustered days-off entry per covered date."""
        events = [
            iteration_to_calendar_event(it, self.get_iteration_page_url(it))
            for it in self._iterations or []
            if overlaps(it.start_date, to_exclusive_end(it.end_date), range_start, range_end)
        ]
        in_range = [
            r
            for r in self._records
            if overlaps(r.start_date, to_exclusive_end(r.end_date), range_start, range_end)
        ]
        if in_range:
            for day in iter_days(range_start, range_end):
                covering = records_covering(in_range, day)
                if covering:
                    events.append(build_grouped_event(day, covering).event)
        return events

    def get_grouped_event_for_date(self, day: date) -> GroupedDaysOff | None:
        return group_days_off(self._records, day)

    def get_days_off(self) -> list[CapacityRecord]:
        return list(self._records)

    def get_iteration_summary_data(self) -> ObservableValue[list[EventCategory]]:
        return self._iteration_summary

    def get_capacity_summary_data(self) -> ObservableValue[list[EventCategory]]:
        return self._capacity_summary

    def get_iteration_url(self) -> ObservableValue[str]:
        return self._iteration_url

    def get_capacity_url(self) -> ObservableValue[str]:
        return self._capacity_url

    # ------------------------------------------------------------------ #
    # Deep links                                                          #
    # ------------------------------------------------------------------ #

    def _team_base_url(self) -> str:
        if not self.host_url:
            return ""
        team = _url_segment(self._team_name or self.team_id)
        return f"{self.host_url}{_url_segment(self.project_name or self.project_id)}/{team}"

    def _backlog_url(self) -> str:
        base = self._team_base_url()
        if not base:
            return ""
        return f"{base}/_sprints/backlog/{_url_segment(self._team_name or self.team_id)}"

    def _iteration_path_segment(self, iteration: Iteration) -> str:
        path = (iteration.path or iteration.name).replace("\\", "/")
        return quote(path, safe="/")

    def get_iteration_page_url(self, iteration: Iteration) -> str:
        backlog = self._backlog_url()
        return f"{backlog}/{self._iteration_path_segment(iteration)}" if backlog else ""

    def _current_iteration(self) -> Iteration | None:
        iterations = self._iterations or []
        today = date.today()
        for it in iterations:
            if it.start_date <= today <= it.end_date:
                return it
        if self._summary_range is not None:
            for it in iterations:
                if overlaps(it.start_date, to_exclusive_end(it.end_date), *self._summary_range):
                    return it
        return None

    def _refresh_urls(self):
        backlog = self._backlog_url()
        self._iteration_url.value = backlog
        current = self._current_iteration()
        if current is not None and backlog:
            team = _url_segment(self._team_name or self.team_id)
            self._capacity_url.value = (
                f"{self._team_base_url()}/_sprints/capacity/{team}/"
                f"{self._iteration_path_segment(current)}"
            )
        else:
            self._capacity_url.value = backlog

    # ------------------------------------------------------------------ #
    # Summaries                                                           #
    # ------------------------------------------------------------------ #

    def _color_for(self, category: str) -> str:
        if self._colors is not None:
            return self._colors.resolve(category)
        return default_color(category)

    def _refresh_summaries(self):
        if self._summary_range is not None:
            start, end = self._summary_range
            iterations = [
                it
                for it in self._iterations or []
                if overlaps(it.start_date, to_exclusive_end(it.end_date), start, end)
            ]
            records = [
                r
                for r in self._records
                if overlaps(r.start_date, to_exclusive_end(r.end_date), start, end)
            ]
        else:
            iterations = list(self._iterations or [])
            records = list(self._records)

        iteration_color = self._color_for(ITERATION_CATEGORY)
        self._iteration_summary.value = project_summary(
            [iteration_to_calendar_event(it, self.get_iteration_page_url(it)) for it in iterations],
            by_title,
            color_for=lambda _title: iteration_color,
        )

        avatars = {r.member_display_name: r.member_avatar_url for r in records}
        days_off_color = self._color_for(DAYS_OFF_CATEGORY)
        self._capacity_summary.value = project_summary(
            [capacity_to_calendar_event(r) for r in records],
            by_title,
            color_for=lambda _title: days_off_color,
            describe=_describe_days_off,
            image_for=lambda event: avatars.get(event.title) or None,
        )
        self._refresh_urls()


def _describe_days_off(events: list[CalendarEvent]) -> str:
    if len(events) == 1:
        return event_date_range(events[0])
    total = sum((e.end_date - e.start_date).days for e in events)
    return f"{total} days off"

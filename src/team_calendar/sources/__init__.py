"""
TeamCalendar, a thin orchestrator over the two event sources.
"""

import asyncio
import logging
from datetime import date

from team_calendar.colors import ColorSettings
from team_calendar.devops_client import DevOpsClient
from team_calendar.models import CalendarEvent
from team_calendar.models import NotFoundError
from team_calendar.models import Team
from team_calendar.models import TeamCalendarError
from team_calendar.models import TeamMember
from team_calendar.sources.capacity import CapacityEventSource
from team_calendar.sources.freeform import FreeFormEventSource
from team_calendar.storage import USER_SCOPE
from team_calendar.storage import DataStore
from team_calendar.storage import selected_team_key
from team_calendar.timelib import MonthAndYear
from team_calendar.timelib import month_grid_range


def find_team(teams: list[Team], ref: str) -> Team | None:
    """Match *ref* against team ids first, then names (case-insensitive)."""
    for team in teams:
        if team.id == ref:
            return team
    lowered = ref.casefold()
    for team in teams:
        if team.name.casefold() == lowered:
            return team
    return None


class TeamCalendar:
    """Wires a project's teams, both event sources and the color settings together."""

    def __init__(
        self,
        store: DataStore,
        client: DevOpsClient,
        project: str,
        first_day_of_week: int = 0,
    ):
        self.store = store
        self.client = client
        self.project = project
        self.first_day_of_week = first_day_of_week
        self.logger = logging.getLogger(__name__)

        self.colors = ColorSettings()
        self.freeform = FreeFormEventSource(self.colors)
        self.capacity = CapacityEventSource(self.colors)

        self.project_id = ""
        self.project_name = ""
        self.teams: list[Team] = []
        self.team: Team | None = None

    async def open(self, team: str | None = None) -> Team:
        """Resolve project and team, bind both sources and load color settings.

        Team precedence: explicit *team*, then the user's stored selection for
        this project, then the first team alphabetically.
        """
        self.logger.debug("Resolving project %s...", self.project)
        self.project_id, self.project_name = await self.client.get_project(self.project)
        self.teams = await self.client.get_teams(self.project_id)
        if not self.teams:
            raise NotFoundError(f"Project '{self.project_name}' has no teams")

        selected = None
        if team:
            selected = find_team(self.teams, team)
            if selected is None:
                raise NotFoundError(f"Team '{team}' not found in project '{self.project_name}'")
        else:
            stored = await self._stored_team_id()
            if stored:
                selected = find_team(self.teams, stored)
                if selected is None:
                    self.logger.info("Stored team %s no longer exists, using default", stored)
        if selected is None:
            selected = self.teams[0]

        await asyncio.gather(self.colors.load(self.store), self._bind(selected))
        return selected

    async def select_team(self, team: str) -> Team:
        """Switch to *team* and remember it as this user's selection."""
        selected = find_team(self.teams, team)
        if selected is None:
            raise NotFoundError(f"Team '{team}' not found in project '{self.project_name}'")
        await self._bind(selected)
        await self.store.set_value(
            selected_team_key(self.project_id), selected.id, scope=USER_SCOPE
        )
        return selected

    async def _stored_team_id(self) -> str | None:
        try:
            value = await self.store.get_value(selected_team_key(self.project_id), scope=USER_SCOPE)
        except TeamCalendarError as e:
            self.logger.warning("Could not read stored team selection: %s", e)
            return None
        return value if isinstance(value, str) and value else None

    async def _bind(self, team: Team):
        # Sources are rebound before the name lookup so a slow lookup cannot
        # leave them pointing at the previous team.
        self.team = team
        self.freeform.initialize(team.id, self.store)
        self.capacity.initialize(
            self.project_id,
            self.project_name,
            team.id,
            team.name,
            self.client.organization_url,
            self.client,
        )
        try:
            resolved = await self.client.get_team(self.project_id, team.id)
        except TeamCalendarError as e:
            self.logger.warning("Failed to get team with ID %s: %s", team.id, e)
            return
        if self.team is team:
            self.capacity.update_team_name(resolved.name)

    async def preload(self, range_start: date, range_end: date):
        """Fill both caches for ``[range_start, range_end)`` concurrently."""
        await asyncio.gather(
            self.freeform.preload(range_start, range_end),
            self.capacity.preload_iterations(range_start, range_end),
        )

    async def preload_month(self, month: MonthAndYear) -> tuple[date, date]:
        start, end = month_grid_range(month, self.first_day_of_week)
        await self.preload(start, end)
        return start, end

    def get_events(self, range_start: date, range_end: date) -> list[CalendarEvent]:
        """Both sources' cached events with render colors resolved."""
        events = self.capacity.get_events(range_start, range_end)
        events += self.freeform.get_events(range_start, range_end)
        for event in events:
            event.color = self.colors.resolve(event.category)
        return events

    def get_categories(self) -> list[str]:
        return sorted(self.freeform.get_categories(), key=str.casefold)

    async def get_team_members(self) -> list[TeamMember]:
        if self.team is None:
            return []
        return await self.client.get_team_members(self.project_id, self.team.id)

    async def save_colors(self, updates: dict[str, str]):
        self.colors.merge(updates)
        await self.colors.save(self.store)

    async def reset_color(self, category: str):
        self.colors.reset(category)
        await self.colors.save(self.store)

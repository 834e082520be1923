"""
Azure DevOps work-tracking REST wrapper (teams, iterations, capacity).
"""

import logging
from typing import Any
from typing import Protocol
from urllib.parse import quote

import httpx

from team_calendar.models import TEAM_MEMBER_ID
from team_calendar.models import TEAM_MEMBER_NAME
from team_calendar.models import CapacityRecord
from team_calendar.models import DecodeError
from team_calendar.models import Iteration
from team_calendar.models import Team
from team_calendar.models import TeamMember
from team_calendar.models import TransportError
from team_calendar.timelib import parse_date

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
TEAMS_PAGE_SIZE = 1000
DEFAULT_TIMEOUT_SECONDS = 30.0


class CapacityClient(Protocol):
    """Remote-fetch collaborator consumed by ``CapacityEventSource``."""

    async def get_iterations(self, project: str, team: str) -> list[Iteration]: ...

    async def get_capacity(
        self, project: str, team: str, iteration_id: str
    ) -> list[CapacityRecord]: ...

    async def get_team_days_off(
        self, project: str, team: str, iteration_id: str
    ) -> list[CapacityRecord]: ...


def _segment(value: str) -> str:
    return quote(value, safe="")


def _require(obj: Any, key: str, what: str) -> Any:
    if not isinstance(obj, dict) or key not in obj or obj[key] is None:
        raise DecodeError(f"{what}: missing '{key}'")
    return obj[key]


def _items(payload: Any, key: str, what: str) -> list:
    items = payload.get(key) if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise DecodeError(f"{what}: expected a '{key}' list")
    return items


def _parse_iteration(item: dict) -> Iteration | None:
    """Return None for iterations without dates (they cannot be rendered)."""
    attributes = item.get("attributes") or {}
    start = attributes.get("startDate")
    finish = attributes.get("finishDate")
    if not start or not finish:
        return None
    try:
        return Iteration(
            id=str(_require(item, "id", "iteration")),
            name=str(item.get("name") or ""),
            start_date=parse_date(start),
            end_date=parse_date(finish),
            url=str(item.get("url") or ""),
            path=str(item.get("path") or ""),
        )
    except ValueError as e:
        raise DecodeError(f"iteration {item.get('id')!r}: {e}") from e


def _parse_days_off(
    ranges: list, member_id: str, name: str, avatar: str, iteration_id: str
) -> list[CapacityRecord]:
    records = []
    for entry in ranges:
        try:
            records.append(
                CapacityRecord(
                    member_id=member_id,
                    member_display_name=name,
                    member_avatar_url=avatar,
                    start_date=parse_date(_require(entry, "start", "day off")),
                    end_date=parse_date(_require(entry, "end", "day off")),
                    iteration_id=iteration_id,
                )
            )
        except ValueError as e:
            raise DecodeError(f"day off for {name!r}: {e}") from e
    return records


class DevOpsClient:
    """Async client for the Azure DevOps REST endpoints the calendar needs."""

    def __init__(
        self,
        organization_url: str,
        token: str,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.organization_url = organization_url.rstrip("/") + "/"
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._auth = httpx.BasicAuth("", token) if token else None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = self.organization_url + path.lstrip("/")
        query = {"api-version": API_VERSION}
        if params:
            query.update(params)
        try:
            response = await self._http_client.get(url, params=query, auth=self._auth)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise TransportError(
                f"GET {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            # Azure DevOps answers expired PATs with an HTML sign-in page and 203.
            raise TransportError(f"GET {url} returned a non-JSON response") from e

    # ------------------------------------------------------------------ #
    # Core API                                                            #
    # ------------------------------------------------------------------ #

    async def get_project(self, project: str) -> tuple[str, str]:
        """Return ``(project_id, project_name)`` for a project id or name."""
        payload = await self._get_json(f"_apis/projects/{_segment(project)}")
        return str(_require(payload, "id", "project")), str(_require(payload, "name", "project"))

    async def get_teams(self, project_id: str) -> list[Team]:
        """All teams in a project, paged, sorted case-insensitively by name."""
        teams: list[Team] = []
        skip = 0
        while True:
            payload = await self._get_json(
                f"_apis/projects/{_segment(project_id)}/teams",
                {"$top": TEAMS_PAGE_SIZE, "$skip": skip},
            )
            page = _items(payload, "value", "teams")
            for item in page:
                teams.append(
                    Team(
                        id=str(_require(item, "id", "team")),
                        name=str(_require(item, "name", "team")),
                    )
                )
            if len(page) < TEAMS_PAGE_SIZE:
                break
            skip += TEAMS_PAGE_SIZE
        teams.sort(key=lambda t: t.name.upper())
        return teams

    async def get_team(self, project_id: str, team_id: str) -> Team:
        payload = await self._get_json(
            f"_apis/projects/{_segment(project_id)}/teams/{_segment(team_id)}"
        )
        return Team(
            id=str(_require(payload, "id", "team")),
            name=str(_require(payload, "name", "team")),
        )

    async def get_team_members(self, project_id: str, team_id: str) -> list[TeamMember]:
        payload = await self._get_json(
            f"_apis/projects/{_segment(project_id)}/teams/{_segment(team_id)}/members"
        )
        members = []
        for item in _items(payload, "value", "team members"):
            identity = item.get("identity") or item
            members.append(
                TeamMember(
                    id=str(_require(identity, "id", "team member")),
                    display_name=str(identity.get("displayName") or ""),
                    image_url=str(identity.get("imageUrl") or ""),
                    unique_name=str(identity.get("uniqueName") or ""),
                )
            )
        return members

    # ------------------------------------------------------------------ #
    # Work API                                                            #
    # ------------------------------------------------------------------ #

    def _work_path(self, project: str, team: str, tail: str) -> str:
        return f"{_segment(project)}/{_segment(team)}/_apis/work/teamsettings/{tail}"

    async def get_iterations(self, project: str, team: str) -> list[Iteration]:
        """Team iterations that have both a start and a finish date."""
        payload = await self._get_json(self._work_path(project, team, "iterations"))
        iterations = []
        for item in _items(payload, "value", "iterations"):
            iteration = _parse_iteration(item)
            if iteration is None:
                logger.debug("Skipping undated iteration %s", item.get("name"))
                continue
            iterations.append(iteration)
        iterations.sort(key=lambda i: (i.start_date, i.name))
        return iterations

    async def get_capacity(
        self, project: str, team: str, iteration_id: str
    ) -> list[CapacityRecord]:
        """Per-member days off for one iteration, in service order."""
        payload = await self._get_json(
            self._work_path(project, team, f"iterations/{_segment(iteration_id)}/capacities")
        )
        # api-version 7.x wraps members in 'teamMembers'; 5.x/6.x used 'value'.
        if isinstance(payload, dict) and "teamMembers" in payload:
            entries = _items(payload, "teamMembers", "capacity")
        else:
            entries = _items(payload, "value", "capacity")

        records = []
        for entry in entries:
            member = _require(entry, "teamMember", "capacity")
            days_off = entry.get("daysOff") or []
            if not days_off:
                continue
            records.extend(
                _parse_days_off(
                    days_off,
                    member_id=str(_require(member, "id", "team member")),
                    name=str(member.get("displayName") or ""),
                    avatar=str(member.get("imageUrl") or ""),
                    iteration_id=iteration_id,
                )
            )
        return records

    async def get_team_days_off(
        self, project: str, team: str, iteration_id: str
    ) -> list[CapacityRecord]:
        """Team-wide days off, reported as records for the pseudo member 'Everyone'."""
        payload = await self._get_json(
            self._work_path(project, team, f"iterations/{_segment(iteration_id)}/teamdaysoff")
        )
        return _parse_days_off(
            _items(payload, "daysOff", "team days off"),
            member_id=TEAM_MEMBER_ID,
            name=TEAM_MEMBER_NAME,
            avatar="",
            iteration_id=iteration_id,
        )

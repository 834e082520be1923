"""
Shared pytest fixtures and record builders.
"""

from datetime import date

import pytest

from team_calendar.colors import ColorSettings
from team_calendar.models import CapacityRecord
from team_calendar.models import Iteration
from team_calendar.sources import TeamCalendar
from team_calendar.sources.capacity import CapacityEventSource
from team_calendar.sources.freeform import FreeFormEventSource
from tests.fake_client import FakeDevOpsClient
from tests.fake_store import FakeDataStore

TEAM_A = "t1"
TEAM_B = "t2"
HOST_URL = "https://dev.azure.com/contoso/"


def make_iteration(
    iteration_id: str, name: str, start: date, end: date, path: str | None = None
) -> Iteration:
    return Iteration(
        id=iteration_id,
        name=name,
        start_date=start,
        end_date=end,
        path=path if path is not None else f"Contoso\\{name}",
    )


def make_record(
    member_id: str, name: str, start: date, end: date | None = None, iteration_id: str = ""
) -> CapacityRecord:
    """A member's day(s) off; ``end`` defaults to a single day."""
    return CapacityRecord(
        member_id=member_id,
        member_display_name=name,
        member_avatar_url=f"https://avatars.example/{member_id}.png",
        start_date=start,
        end_date=end or start,
        iteration_id=iteration_id,
    )


SPRINT_1 = make_iteration("it1", "Sprint 1", date(2024, 3, 4), date(2024, 3, 15))
SPRINT_2 = make_iteration("it2", "Sprint 2", date(2024, 3, 18), date(2024, 3, 29))
SPRINT_9 = make_iteration("it9", "Sprint 9", date(2024, 9, 2), date(2024, 9, 13))

# Month grid for March 2024 with Monday as the first day of the week.
MARCH_START = date(2024, 2, 26)
MARCH_END = date(2024, 4, 8)


@pytest.fixture
def store():
    return FakeDataStore()


@pytest.fixture
def client():
    """Two teams; Alpha has three sprints with Alice and Bob off in Sprint 1."""
    fake = FakeDevOpsClient(organization_url=HOST_URL)
    fake.add_team(TEAM_A, "Alpha")
    fake.add_team(TEAM_B, "Beta")
    fake.iterations[TEAM_A] = [SPRINT_1, SPRINT_2, SPRINT_9]
    fake.add_days_off(
        TEAM_A,
        "it1",
        make_record("alice", "Alice", date(2024, 3, 6), date(2024, 3, 7), "it1"),
        make_record("bob", "Bob", date(2024, 3, 7), date(2024, 3, 8), "it1"),
    )
    fake.iterations[TEAM_B] = [
        make_iteration("b1", "Beta Sprint", date(2024, 3, 4), date(2024, 3, 22)),
    ]
    fake.add_days_off(
        TEAM_B, "b1", make_record("carol", "Carol", date(2024, 3, 12), iteration_id="b1")
    )
    return fake


@pytest.fixture
def colors():
    return ColorSettings()


@pytest.fixture
def freeform(store):
    source = FreeFormEventSource()
    source.initialize(TEAM_A, store)
    return source


@pytest.fixture
def capacity(client):
    source = CapacityEventSource()
    source.initialize("p1", "Contoso", TEAM_A, "Alpha", HOST_URL, client)
    return source


@pytest.fixture
def calendar(store, client):
    return TeamCalendar(store, client, "Contoso")

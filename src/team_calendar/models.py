"""
Pure data models; no httpx or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import date
from pathlib import Path

DEFAULT_DATA_DB = Path.home() / ".local/share/team-calendar-data.db"
DEFAULT_CONFIG = Path.home() / ".config/team-calendar.conf"

# Calendar-surface id prefixes; the part after the dot is source-specific.
FREEFORM_ID = "freeform"
DAYS_OFF_ID = "daysoff"
ITERATION_ID = "iteration"

DAYS_OFF_CATEGORY = "Days Off"
ITERATION_CATEGORY = "Iteration"
UNCATEGORIZED = "Uncategorized"

# member_id used for team-wide days off
TEAM_MEMBER_ID = "team"
TEAM_MEMBER_NAME = "Everyone"


class TeamCalendarError(Exception):
    """Base exception for team calendar errors."""

    pass


class TransportError(TeamCalendarError):
    """The key-value store or the remote service could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(TeamCalendarError):
    """A stored blob or remote payload does not have the expected shape."""

    pass


class NotFoundError(TeamCalendarError):
    """An edit or delete referenced an id that is not in the cache."""

    pass


class ValidationError(TeamCalendarError, ValueError):
    """Inverted or malformed input, rejected before any I/O."""

    pass


@dataclass
class CalendarConfig:
    """Configuration for a team calendar session."""

    organization_url: str
    project: str
    token: str
    data_db_path: Path
    team: str | None = None
    first_day_of_week: int = 0  # 0 = Monday, 6 = Sunday
    verbose: bool = False


@dataclass
class EventIcon:
    """One avatar in a clustered days-off entry."""

    image_url: str
    linked_event: "CalendarEvent"


@dataclass
class CalendarEvent:
    """Render entity; ``end_date`` is exclusive."""

    id: str
    title: str
    start_date: date
    end_date: date
    category: str
    description: str | None = None
    all_day: bool = True
    icons: list[EventIcon] = field(default_factory=list)
    color: str | None = None
    display: str = "auto"  # 'auto' or 'background'
    order: int = 0
    url: str | None = None


@dataclass
class FreeFormEvent:
    """User-created event; ``end_date`` is inclusive as entered."""

    id: str
    title: str
    category: str
    description: str
    start_date: date
    end_date: date
    order: int = 0


@dataclass
class CapacityRecord:
    """One member's day(s) off; ``end_date`` is inclusive."""

    member_id: str
    member_display_name: str
    member_avatar_url: str
    start_date: date
    end_date: date
    iteration_id: str = ""


@dataclass
class Iteration:
    """Team sprint/cycle; ``end_date`` is inclusive."""

    id: str
    name: str
    start_date: date
    end_date: date
    url: str = ""
    path: str = ""


@dataclass
class GroupedDaysOff:
    """Every member off on a single date, in fetch order."""

    date: date
    records: list[CapacityRecord]
    event: CalendarEvent


@dataclass
class EventCategory:
    """Summary-panel row."""

    title: str
    sub_title: str
    event_count: int
    color: str | None = None
    image_url: str | None = None
    url: str | None = None
    linked_event: CalendarEvent | None = None
    linked_events: list[CalendarEvent] = field(default_factory=list)


@dataclass
class Team:
    id: str
    name: str


@dataclass
class TeamMember:
    id: str
    display_name: str
    image_url: str = ""
    unique_name: str = ""

"""
Free-form (user-authored) events, month-bucketed in the key-value store.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import date
from datetime import datetime
from typing import TYPE_CHECKING
from typing import Any

from team_calendar.colors import default_color
from team_calendar.models import FREEFORM_ID
from team_calendar.models import UNCATEGORIZED
from team_calendar.models import CalendarEvent
from team_calendar.models import DecodeError
from team_calendar.models import EventCategory
from team_calendar.models import FreeFormEvent
from team_calendar.models import NotFoundError
from team_calendar.models import TeamCalendarError
from team_calendar.models import ValidationError
from team_calendar.observable import ObservableValue
from team_calendar.sources.utils import freeform_to_calendar_event
from team_calendar.sources.utils import strip_prefix
from team_calendar.storage import events_key
from team_calendar.summary import by_category
from team_calendar.summary import project_summary
from team_calendar.timelib import MonthAndYear
from team_calendar.timelib import month_grid_range
from team_calendar.timelib import month_keys_in_range
from team_calendar.timelib import overlaps
from team_calendar.timelib import parse_date
from team_calendar.timelib import to_exclusive_end

if TYPE_CHECKING:
    from team_calendar.colors import ColorSettings
    from team_calendar.storage import DataStore

logger = logging.getLogger(__name__)


def encode_bucket(events: list[FreeFormEvent]) -> list[dict[str, Any]]:
    return [
        {
            "id": e.id,
            "title": e.title,
            "category": e.category,
            "description": e.description,
            "startDate": e.start_date.isoformat(),
            "endDate": e.end_date.isoformat(),
            "order": e.order,
        }
        for e in events
    ]


def decode_bucket(value: Any, key: str) -> list[FreeFormEvent]:
    """Decode a stored month bucket; ``None`` (never written) is an empty bucket."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"Bucket {key!r} is a {type(value).__name__}, expected a list")
    events = []
    for item in value:
        if not isinstance(item, dict):
            raise DecodeError(f"Bucket {key!r} contains a non-object entry")
        try:
            events.append(
                FreeFormEvent(
                    id=str(item["id"]),
                    title=str(item.get("title") or ""),
                    category=str(item.get("category") or UNCATEGORIZED),
                    description=str(item.get("description") or ""),
                    start_date=parse_date(item["startDate"]),
                    end_date=parse_date(item["endDate"]),
                    order=int(item.get("order") or 0),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Bucket {key!r} has a malformed event: {e!r}") from e
    return events


def _coerce_date(value, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValidationError(f"{name} must be a date, got {type(value).__name__}")


def _validate(title: str, start, end) -> tuple[str, date, date]:
    if not title or not title.strip():
        raise ValidationError("Event title must not be empty")
    start = _coerce_date(start, "start")
    end = _coerce_date(end, "end")
    if start > end:
        raise ValidationError(
            f"Event start {start.isoformat()} is after its end {end.isoformat()}"
        )
    return title.strip(), start, end


def bucket_keys(start: date, inclusive_end: date) -> list[str]:
    """Every month bucket an event is written to (start month through end month)."""
    return month_keys_in_range(start, to_exclusive_end(inclusive_end))


class FreeFormEventSource:
    """CRUD over user events with a month-bucketed in-memory cache.

    Reads (``get_events``, ``get_event``, ``get_categories``) are synchronous
    and never touch the store; call ``preload`` for the visible window first.
    """

    def __init__(self, colors: "ColorSettings | None" = None):
        self._colors = colors
        self._team_id = ""
        self._store: "DataStore | None" = None
        self._generation = 0
        self._buckets: dict[str, list[FreeFormEvent]] = {}
        self._events: dict[str, FreeFormEvent] = {}
        self._summary_range: tuple[date, date] | None = None
        self._lock = asyncio.Lock()
        self._summary: ObservableValue[list[EventCategory]] = ObservableValue([])
        if colors is not None:
            colors.observable.subscribe(lambda _overrides: self._refresh_summary())

    @property
    def team_id(self) -> str:
        return self._team_id

    def initialize(self, team_id: str, store: "DataStore"):
        """Rebind to *team_id*'s namespace and drop everything cached."""
        self._team_id = team_id
        self._store = store
        self._generation += 1
        self._buckets = {}
        self._events = {}
        self._summary_range = None
        self._refresh_summary()

    def is_month_loaded(self, key: str) -> bool:
        return key in self._buckets

    # ------------------------------------------------------------------ #
    # Preload                                                             #
    # ------------------------------------------------------------------ #

    async def preload(self, range_start: date, range_end: date):
        """Fetch every uncached month bucket overlapping ``[range_start, range_end)``.

        A missing bucket is empty; an unreadable one is logged, left uncached
        and skipped, so one bad month never aborts the rest.
        """
        if self._store is None:
            raise TeamCalendarError("FreeFormEventSource used before initialize()")
        generation = self._generation
        team_id = self._team_id
        store = self._store

        keys = [k for k in month_keys_in_range(range_start, range_end) if k not in self._buckets]
        if keys:
            logger.debug("Preloading %d event bucket(s) for team %s", len(keys), team_id)
            results = await asyncio.gather(
                *(self._fetch_bucket_quietly(store, team_id, k) for k in keys)
            )
            if generation != self._generation:
                logger.debug("Discarding stale event buckets for team %s", team_id)
                return
            for key, events in zip(keys, results):
                # A mutation may have loaded the bucket while we were waiting.
                if events is not None and key not in self._buckets:
                    self._buckets[key] = events
            self._reindex()

        self._summary_range = (range_start, range_end)
        self._refresh_summary()

    async def preload_month(self, month: MonthAndYear, first_day_of_week: int = 0):
        start, end = month_grid_range(month, first_day_of_week)
        await self.preload(start, end)

    async def _fetch_bucket_quietly(
        self, store: "DataStore", team_id: str, key: str
    ) -> list[FreeFormEvent] | None:
        try:
            return decode_bucket(await store.get_value(events_key(team_id, key)), key)
        except TeamCalendarError as e:
            logger.warning("Skipping event bucket %s for team %s: %s", key, team_id, e)
            return None

    # ------------------------------------------------------------------ #
    # Reads                                                               #
    # ------------------------------------------------------------------ #

    def get_events(self, range_start: date, range_end: date) -> list[CalendarEvent]:
        """Cached events intersecting ``[range_start, range_end)``."""
        matching = [
            e
            for e in self._events.values()
            if overlaps(e.start_date, to_exclusive_end(e.end_date), range_start, range_end)
        ]
        matching.sort(key=lambda e: (e.start_date, e.order, e.title))
        return [freeform_to_calendar_event(e) for e in matching]

    def get_event(self, event_id: str) -> FreeFormEvent | None:
        """Look up by bare UUID or calendar-surface id (``freeform.<uuid>``)."""
        return self._events.get(strip_prefix(event_id, FREEFORM_ID))

    def get_categories(self) -> set[str]:
        return {e.category for e in self._events.values()}

    def get_summary_data(self) -> ObservableValue[list[EventCategory]]:
        return self._summary

    # ------------------------------------------------------------------ #
    # Mutations                                                           #
    # ------------------------------------------------------------------ #

    async def create(
        self,
        title: str,
        start: date,
        end: date,
        category: str = "",
        description: str = "",
    ) -> str:
        """Persist a new event and return its bare UUID."""
        title, start, end = _validate(title, start, end)
        store = self._require_store()
        async with self._lock:
            generation, team_id = self._generation, self._team_id
            keys = bucket_keys(start, end)
            current = await self._buckets_for_write(store, team_id, keys)

            orders = [e.order for events in current.values() for e in events]
            event = FreeFormEvent(
                id=str(uuid.uuid4()),
                title=title,
                category=(category or "").strip() or UNCATEGORIZED,
                description=description or "",
                start_date=start,
                end_date=end,
                order=max(orders) + 1 if orders else 0,
            )
            updated = {k: current[k] + [event] for k in keys}
            await self._write_buckets(store, team_id, updated, current)
            self._apply(generation, updated)
        logger.info("Created event %s (%s) for team %s", event.id, title, team_id)
        return event.id

    async def update(
        self,
        event_id: str,
        title: str,
        start: date,
        end: date,
        category: str = "",
        description: str = "",
    ):
        """Rewrite an event, moving it between month buckets when its dates change."""
        title, start, end = _validate(title, start, end)
        store = self._require_store()
        async with self._lock:
            generation, team_id = self._generation, self._team_id
            existing = self.get_event(event_id)
            if existing is None:
                raise NotFoundError(f"Event {event_id} not found")

            revised = replace(
                existing,
                title=title,
                category=(category or "").strip() or UNCATEGORIZED,
                description=description or "",
                start_date=start,
                end_date=end,
            )
            old_keys = bucket_keys(existing.start_date, existing.end_date)
            new_keys = bucket_keys(start, end)
            keys = old_keys + [k for k in new_keys if k not in old_keys]
            current = await self._buckets_for_write(store, team_id, keys)

            updated = {}
            for key in keys:
                events = current[key]
                if key not in new_keys:
                    updated[key] = [e for e in events if e.id != existing.id]
                elif any(e.id == existing.id for e in events):
                    updated[key] = [revised if e.id == existing.id else e for e in events]
                else:
                    updated[key] = events + [revised]

            await self._write_buckets(store, team_id, updated, current)
            self._apply(generation, updated)
        logger.info("Updated event %s for team %s", existing.id, team_id)

    async def delete(self, event_id: str):
        store = self._require_store()
        async with self._lock:
            generation, team_id = self._generation, self._team_id
            existing = self.get_event(event_id)
            if existing is None:
                raise NotFoundError(f"Event {event_id} not found")

            keys = bucket_keys(existing.start_date, existing.end_date)
            current = await self._buckets_for_write(store, team_id, keys)
            updated = {k: [e for e in current[k] if e.id != existing.id] for k in keys}
            await self._write_buckets(store, team_id, updated, current)
            self._apply(generation, updated)
        logger.info("Deleted event %s for team %s", existing.id, team_id)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                    #
    # ------------------------------------------------------------------ #

    def _require_store(self) -> "DataStore":
        if self._store is None:
            raise TeamCalendarError("FreeFormEventSource used before initialize()")
        return self._store

    async def _buckets_for_write(
        self, store: "DataStore", team_id: str, keys: list[str]
    ) -> dict[str, list[FreeFormEvent]]:
        """Current contents of *keys*; uncached buckets are read strictly.

        Unlike preload, a read failure here propagates: writing on top of a
        bucket we could not read would discard its other events.
        """
        current = {}
        for key in keys:
            if key in self._buckets:
                current[key] = list(self._buckets[key])
            else:
                current[key] = decode_bucket(await store.get_value(events_key(team_id, key)), key)
        return current

    async def _write_buckets(
        self,
        store: "DataStore",
        team_id: str,
        updated: dict[str, list[FreeFormEvent]],
        previous: dict[str, list[FreeFormEvent]],
    ):
        """Write every bucket in *updated*; on failure restore the ones already written."""
        written = []
        try:
            for key, events in updated.items():
                await store.set_value(events_key(team_id, key), encode_bucket(events))
                written.append(key)
        except TeamCalendarError as e:
            logger.error("Writing event buckets for team %s failed: %s", team_id, e)
            for key in written:
                try:
                    await store.set_value(events_key(team_id, key), encode_bucket(previous[key]))
                except TeamCalendarError as rollback_error:
                    logger.error("Could not restore bucket %s: %s", key, rollback_error)
            raise

    def _apply(self, generation: int, updated: dict[str, list[FreeFormEvent]]):
        if generation != self._generation:
            # Team switched while the write was in flight; the new team's cache
            # does not hold these buckets.
            return
        self._buckets.update(updated)
        self._reindex()
        self._refresh_summary()

    def _reindex(self):
        self._events = {e.id: e for events in self._buckets.values() for e in events}

    def _color_for(self, category: str) -> str:
        if self._colors is not None:
            return self._colors.resolve(category)
        return default_color(category)

    def _refresh_summary(self):
        if self._summary_range is not None:
            events = self.get_events(*self._summary_range)
        else:
            events = [freeform_to_calendar_event(e) for e in self._events.values()]
        self._summary.value = project_summary(events, by_category, color_for=self._color_for)

"""
Tests for FreeFormEventSource: month-bucketed persistence, preload caching,
mutations and team switching.
"""

import asyncio
from datetime import date

import pytest

from team_calendar.colors import ColorSettings
from team_calendar.colors import generate_color
from team_calendar.models import UNCATEGORIZED
from team_calendar.models import DecodeError
from team_calendar.models import NotFoundError
from team_calendar.models import TeamCalendarError
from team_calendar.models import TransportError
from team_calendar.models import ValidationError
from team_calendar.sources.freeform import FreeFormEventSource
from team_calendar.sources.freeform import bucket_keys
from team_calendar.sources.freeform import decode_bucket
from team_calendar.timelib import MonthAndYear
from tests.conftest import MARCH_END
from tests.conftest import MARCH_START
from tests.conftest import TEAM_A
from tests.conftest import TEAM_B

MARCH_KEY = f"events-{TEAM_A}-2024-03"


def stored_event(event_id: str, title: str, start: str, end: str, category: str = "Offsite"):
    return {
        "id": event_id,
        "title": title,
        "category": category,
        "description": "",
        "startDate": start,
        "endDate": end,
        "order": 0,
    }


class TestBucketCodec:
    def test_never_written_bucket_is_empty(self):
        assert decode_bucket(None, "2024-03") == []

    def test_rejects_non_list(self):
        with pytest.raises(DecodeError):
            decode_bucket({"id": "x"}, "2024-03")

    def test_rejects_entry_without_dates(self):
        with pytest.raises(DecodeError):
            decode_bucket([{"id": "x", "title": "t"}], "2024-03")

    def test_bucket_keys_span_start_through_end_month(self):
        assert bucket_keys(date(2024, 1, 30), date(2024, 3, 2)) == [
            "2024-01",
            "2024-02",
            "2024-03",
        ]
        assert bucket_keys(date(2024, 3, 5), date(2024, 3, 5)) == ["2024-03"]


class TestCreate:
    async def test_created_event_is_visible_with_exclusive_end(self, freeform):
        event_id = await freeform.create("Offsite", date(2024, 3, 5), date(2024, 3, 6), "Offsite")

        events = freeform.get_events(MARCH_START, MARCH_END)
        assert len(events) == 1
        assert events[0].id == f"freeform.{event_id}"
        assert events[0].start_date == date(2024, 3, 5)
        assert events[0].end_date == date(2024, 3, 7)

    async def test_get_events_returns_identical_fields(self, freeform):
        event_id = await freeform.create(
            "Offsite", date(2024, 3, 5), date(2024, 3, 6), "Travel", "Lisbon"
        )

        (event,) = freeform.get_events(MARCH_START, MARCH_END)
        assert event.id == f"freeform.{event_id}"
        assert (event.title, event.category, event.description) == (
            "Offsite",
            "Travel",
            "Lisbon",
        )

    async def test_persists_camel_case_json(self, freeform, store):
        await freeform.create("Offsite", date(2024, 3, 5), date(2024, 3, 6), "Offsite", "Lisbon")

        (stored,) = store.peek(MARCH_KEY)
        assert stored["startDate"] == "2024-03-05"
        assert stored["endDate"] == "2024-03-06"
        assert stored["description"] == "Lisbon"

    async def test_multi_month_event_written_to_every_month(self, freeform, store):
        event_id = await freeform.create("Long leave", date(2024, 1, 30), date(2024, 3, 2))

        for month in ("2024-01", "2024-02", "2024-03"):
            ids = [e["id"] for e in store.peek(f"events-{TEAM_A}-{month}")]
            assert ids == [event_id], month

    async def test_blank_category_becomes_uncategorized(self, freeform):
        event_id = await freeform.create("Lunch", date(2024, 3, 5), date(2024, 3, 5), "  ")
        assert freeform.get_event(event_id).category == UNCATEGORIZED

    async def test_order_increments_within_bucket(self, freeform):
        first = await freeform.create("A", date(2024, 3, 5), date(2024, 3, 5))
        second = await freeform.create("B", date(2024, 3, 5), date(2024, 3, 5))
        assert freeform.get_event(first).order == 0
        assert freeform.get_event(second).order == 1

    async def test_inverted_range_rejected_before_io(self, freeform, store):
        with pytest.raises(ValidationError):
            await freeform.create("Oops", date(2024, 3, 6), date(2024, 3, 5))
        assert store.gets == []
        assert store.sets == []

    async def test_empty_title_rejected(self, freeform):
        with pytest.raises(ValidationError):
            await freeform.create("   ", date(2024, 3, 5), date(2024, 3, 5))

    async def test_concurrent_creates_do_not_lose_events(self, freeform, store):
        await asyncio.gather(
            freeform.create("A", date(2024, 3, 5), date(2024, 3, 5)),
            freeform.create("B", date(2024, 3, 6), date(2024, 3, 6)),
            freeform.create("C", date(2024, 3, 7), date(2024, 3, 7)),
        )
        titles = sorted(e["title"] for e in store.peek(MARCH_KEY))
        assert titles == ["A", "B", "C"]

    async def test_partial_write_failure_restores_written_buckets(self, freeform, store):
        store.fail_set.add(f"events-{TEAM_A}-2024-02")

        with pytest.raises(TransportError):
            await freeform.create("Long leave", date(2024, 1, 30), date(2024, 2, 2))

        assert store.peek(f"events-{TEAM_A}-2024-01") == []
        assert freeform.get_events(date(2024, 1, 1), date(2024, 3, 1)) == []


class TestPreload:
    async def test_round_trip_through_fresh_source(self, freeform, store):
        event_id = await freeform.create(
            "Offsite", date(2024, 3, 5), date(2024, 3, 6), "Offsite", "Lisbon"
        )

        fresh = FreeFormEventSource()
        fresh.initialize(TEAM_A, store)
        await fresh.preload(MARCH_START, MARCH_END)

        reloaded = fresh.get_event(event_id)
        assert reloaded.title == "Offsite"
        assert reloaded.category == "Offsite"
        assert reloaded.description == "Lisbon"
        assert (reloaded.start_date, reloaded.end_date) == (date(2024, 3, 5), date(2024, 3, 6))

    async def test_preload_is_idempotent(self, freeform, store):
        store.put(MARCH_KEY, [stored_event("e1", "Offsite", "2024-03-05", "2024-03-06")])

        await freeform.preload(MARCH_START, MARCH_END)
        first = freeform.get_events(MARCH_START, MARCH_END)
        store.reset_counters()

        await freeform.preload(MARCH_START, MARCH_END)
        assert store.gets == []
        assert freeform.get_events(MARCH_START, MARCH_END) == first

    async def test_preload_month_loads_grid_buckets(self, freeform):
        await freeform.preload_month(MonthAndYear(2024, 3))
        for month in ("2024-02", "2024-03", "2024-04"):
            assert freeform.is_month_loaded(month)

    async def test_multi_month_event_reported_once(self, freeform, store):
        shared = stored_event("e1", "Long leave", "2024-02-28", "2024-03-02")
        store.put(f"events-{TEAM_A}-2024-02", [shared])
        store.put(MARCH_KEY, [shared])

        await freeform.preload(date(2024, 2, 1), date(2024, 4, 1))
        assert [e.id for e in freeform.get_events(date(2024, 2, 1), date(2024, 4, 1))] == [
            "freeform.e1"
        ]

    async def test_failed_bucket_is_skipped_and_retried(self, freeform, store):
        feb = stored_event("e2", "Feb", "2024-02-27", "2024-02-27")
        store.put(f"events-{TEAM_A}-2024-02", [feb])
        store.put(MARCH_KEY, [stored_event("e1", "Offsite", "2024-03-05", "2024-03-06")])
        store.fail_get.add(MARCH_KEY)

        await freeform.preload(MARCH_START, MARCH_END)
        assert [e.title for e in freeform.get_events(MARCH_START, MARCH_END)] == ["Feb"]
        assert not freeform.is_month_loaded("2024-03")

        store.fail_get.clear()
        await freeform.preload(MARCH_START, MARCH_END)
        assert [e.title for e in freeform.get_events(MARCH_START, MARCH_END)] == [
            "Feb",
            "Offsite",
        ]

    async def test_malformed_bucket_does_not_abort_preload(self, freeform, store):
        store.put(MARCH_KEY, "garbage")
        april = stored_event("e1", "Apr", "2024-04-02", "2024-04-02")
        store.put(f"events-{TEAM_A}-2024-04", [april])

        await freeform.preload(MARCH_START, MARCH_END)
        assert [e.title for e in freeform.get_events(MARCH_START, MARCH_END)] == ["Apr"]

    async def test_surrogate_category_does_not_abort_preload(self, freeform, store):
        store.put(
            MARCH_KEY,
            [stored_event("e1", "Palm", "2024-03-05", "2024-03-05", category="\ud83d")],
        )
        store.put(
            f"events-{TEAM_A}-2024-04",
            [stored_event("e2", "Apr", "2024-04-02", "2024-04-02")],
        )

        await freeform.preload(MARCH_START, MARCH_END)

        titles = [e.title for e in freeform.get_events(MARCH_START, MARCH_END)]
        assert titles == ["Palm", "Apr"]
        assert [r.title for r in freeform.get_summary_data().value] == ["\ud83d", "Offsite"]

    async def test_empty_range_returns_nothing(self, freeform):
        await freeform.create("Offsite", date(2024, 3, 9), date(2024, 3, 11))

        assert freeform.get_events(date(2024, 3, 10), date(2024, 3, 10)) == []
        assert len(freeform.get_events(date(2024, 3, 10), date(2024, 3, 11))) == 1

    async def test_range_query_filters_cached_events(self, freeform, store):
        store.put(
            MARCH_KEY,
            [
                stored_event("e1", "Early", "2024-03-01", "2024-03-01"),
                stored_event("e2", "Late", "2024-03-20", "2024-03-22"),
            ],
        )
        await freeform.preload(MARCH_START, MARCH_END)

        titles = [e.title for e in freeform.get_events(date(2024, 3, 21), date(2024, 3, 22))]
        assert titles == ["Late"]
        assert freeform.get_events(date(2024, 3, 2), date(2024, 3, 20)) == []


class TestUpdateDelete:
    async def test_update_moves_event_between_buckets(self, freeform, store):
        event_id = await freeform.create("Offsite", date(2024, 3, 5), date(2024, 3, 6))

        await freeform.update(event_id, "Offsite", date(2024, 4, 10), date(2024, 4, 11))

        assert store.peek(MARCH_KEY) == []
        assert [e["id"] for e in store.peek(f"events-{TEAM_A}-2024-04")] == [event_id]
        assert freeform.get_events(date(2024, 3, 1), date(2024, 4, 1)) == []
        assert len(freeform.get_events(date(2024, 4, 1), date(2024, 5, 1))) == 1

    async def test_update_in_place_keeps_id_and_order(self, freeform):
        await freeform.create("First", date(2024, 3, 4), date(2024, 3, 4))
        event_id = await freeform.create("Offsite", date(2024, 3, 5), date(2024, 3, 6))

        await freeform.update(
            f"freeform.{event_id}", "Team offsite", date(2024, 3, 5), date(2024, 3, 7), "Travel"
        )

        updated = freeform.get_event(event_id)
        assert updated.title == "Team offsite"
        assert updated.category == "Travel"
        assert updated.end_date == date(2024, 3, 7)
        assert updated.order == 1

    async def test_shrinking_offsite_to_one_day(self, freeform):
        event_id = await freeform.create(
            "Offsite", date(2024, 3, 10), date(2024, 3, 12), "Offsite"
        )
        (event,) = freeform.get_events(MARCH_START, MARCH_END)
        assert event.end_date == date(2024, 3, 13)

        await freeform.update(event_id, "Offsite", date(2024, 3, 10), date(2024, 3, 10), "Offsite")

        (event,) = freeform.get_events(MARCH_START, MARCH_END)
        assert (event.start_date, event.end_date) == (date(2024, 3, 10), date(2024, 3, 11))
        assert freeform.get_event(event_id).end_date == date(2024, 3, 10)
        assert freeform.get_events(date(2024, 3, 11), date(2024, 3, 13)) == []

    async def test_update_unknown_id_raises(self, freeform):
        with pytest.raises(NotFoundError):
            await freeform.update("missing", "x", date(2024, 3, 5), date(2024, 3, 5))

    async def test_update_rejects_inverted_range(self, freeform):
        event_id = await freeform.create("Offsite", date(2024, 3, 5), date(2024, 3, 6))
        with pytest.raises(ValidationError):
            await freeform.update(event_id, "Offsite", date(2024, 3, 9), date(2024, 3, 6))

    async def test_delete_removes_from_every_bucket(self, freeform, store):
        event_id = await freeform.create("Long leave", date(2024, 2, 28), date(2024, 3, 2))

        await freeform.delete(event_id)

        assert store.peek(f"events-{TEAM_A}-2024-02") == []
        assert store.peek(MARCH_KEY) == []
        assert freeform.get_event(event_id) is None

    async def test_delete_unknown_id_raises(self, freeform):
        with pytest.raises(NotFoundError):
            await freeform.delete("freeform.missing")


class TestTeamSwitch:
    async def test_initialize_clears_cache_and_namespace(self, freeform, store):
        await freeform.create("Alpha event", date(2024, 3, 5), date(2024, 3, 5))

        freeform.initialize(TEAM_B, store)
        assert freeform.get_events(MARCH_START, MARCH_END) == []

        await freeform.create("Beta event", date(2024, 3, 5), date(2024, 3, 5))
        assert [e["title"] for e in store.peek(f"events-{TEAM_B}-2024-03")] == ["Beta event"]
        assert [e["title"] for e in store.peek(MARCH_KEY)] == ["Alpha event"]

    async def test_stale_preload_is_discarded(self, freeform, store):
        store.put(MARCH_KEY, [stored_event("e1", "Alpha event", "2024-03-05", "2024-03-05")])
        gate = store.gate(MARCH_KEY)

        task = asyncio.create_task(freeform.preload(date(2024, 3, 1), date(2024, 4, 1)))
        await asyncio.sleep(0)
        freeform.initialize(TEAM_B, store)
        gate.set()
        await task

        assert freeform.get_events(MARCH_START, MARCH_END) == []
        assert not freeform.is_month_loaded("2024-03")

    async def test_preload_before_initialize_raises(self):
        with pytest.raises(TeamCalendarError):
            await FreeFormEventSource().preload(MARCH_START, MARCH_END)


class TestSummary:
    async def test_rows_grouped_by_category(self, freeform):
        await freeform.preload(MARCH_START, MARCH_END)
        await freeform.create("Day one", date(2024, 3, 5), date(2024, 3, 5), "Offsite")
        await freeform.create("Day two", date(2024, 3, 12), date(2024, 3, 12), "Offsite")
        await freeform.create("Release", date(2024, 3, 1), date(2024, 3, 1), "Release")

        rows = freeform.get_summary_data().value
        assert [r.title for r in rows] == ["Release", "Offsite"]
        offsite = rows[1]
        assert offsite.event_count == 2
        assert offsite.sub_title == "2 events"
        assert [e.title for e in offsite.linked_events] == ["Day one", "Day two"]
        assert rows[0].sub_title == "03/01/2024"

    async def test_summary_scoped_to_preloaded_range(self, freeform):
        await freeform.create("April", date(2024, 4, 20), date(2024, 4, 20), "Offsite")
        await freeform.preload(MARCH_START, MARCH_END)
        assert freeform.get_summary_data().value == []

    async def test_color_override_reaches_summary_synchronously(self, store):
        colors = ColorSettings()
        source = FreeFormEventSource(colors)
        source.initialize(TEAM_A, store)
        await source.preload(MARCH_START, MARCH_END)
        await source.create("Offsite", date(2024, 3, 5), date(2024, 3, 6), "Offsite")

        (row,) = source.get_summary_data().value
        assert row.color == generate_color("Offsite")

        colors.merge({"Offsite": "#123456"})
        (row,) = source.get_summary_data().value
        assert row.color == "#123456"

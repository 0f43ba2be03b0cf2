"""
Unit tests for CalendarStore and the in-memory cache.

WHAT: Tests calendar assembly, caching and invalidation.

WHY: Calendars are read on every recompute; they must be cached, yet
configuration changes must become visible after invalidation.

HOW: Counts repository calls through a fake ICalendarRepository.
"""

from datetime import date

import pytest

from config import Weekday
from core.exceptions import ConfigurationError
from infrastructure.cache import InMemoryCacheService
from sla.application.services import CalendarStore, ICalendarRepository
from sla.domain import EffectiveCalendar, DayWindow, HolidayDate


class CountingCalendarRepository(ICalendarRepository):
    def __init__(self):
        self.schedules = {
            "office": EffectiveCalendar(
                schedule_id="office",
                name="office",
                is_24x7=False,
                days={Weekday.MONDAY: DayWindow(540, 1020)},
            ),
            "always": EffectiveCalendar(schedule_id="always", name="always", is_24x7=True),
        }
        self.holidays = {"national": [HolidayDate(date(2024, 1, 15), name="Holiday")]}
        self.schedule_calls = 0
        self.holiday_calls = 0

    async def get_schedule(self, schedule_id):
        self.schedule_calls += 1
        return self.schedules.get(schedule_id)

    async def get_holidays(self, calendar_id):
        self.holiday_calls += 1
        return self.holidays.get(calendar_id)


@pytest.fixture
def repository():
    return CountingCalendarRepository()


@pytest.fixture
def store(repository):
    return CalendarStore(repository, InMemoryCacheService(), ttl_seconds=300)


class TestCalendarStore:
    """Tests for effective calendar assembly."""

    @pytest.mark.asyncio
    async def test_combines_schedule_and_holidays(self, store):
        calendar = await store.get_calendar("office", "national")

        assert calendar.name == "office"
        assert date(2024, 1, 15) in calendar.holidays
        assert calendar.working_segments(date(2024, 1, 15)) == []

    @pytest.mark.asyncio
    async def test_without_schedule_runs_around_the_clock(self, store, repository):
        calendar = await store.get_calendar(None, "national")

        assert calendar.is_24x7
        assert repository.schedule_calls == 0

    @pytest.mark.asyncio
    async def test_24x7_schedule_ignores_holidays(self, store, repository):
        calendar = await store.get_calendar("always", "national")

        assert calendar.is_24x7
        assert repository.holiday_calls == 0

    @pytest.mark.asyncio
    async def test_missing_schedule_raises(self, store):
        with pytest.raises(ConfigurationError) as exc_info:
            await store.get_calendar("nope")

        assert exc_info.value.details == {"schedule_id": "nope"}

    @pytest.mark.asyncio
    async def test_missing_holiday_calendar_yields_no_holidays(self, store, repository):
        calendar = await store.get_calendar("office", "gone")
        await store.get_calendar("office", "gone")

        assert calendar.holidays == {}
        assert repository.holiday_calls == 1

    @pytest.mark.asyncio
    async def test_results_are_cached(self, store, repository):
        await store.get_calendar("office", "national")
        await store.get_calendar("office", "national")

        assert repository.schedule_calls == 1
        assert repository.holiday_calls == 1

    @pytest.mark.asyncio
    async def test_invalidation(self, store, repository):
        await store.get_calendar("office", "national")

        store.invalidate_schedule("office")
        await store.get_calendar("office", "national")
        assert (repository.schedule_calls, repository.holiday_calls) == (2, 1)

        store.invalidate_holidays("national")
        await store.get_calendar("office", "national")
        assert (repository.schedule_calls, repository.holiday_calls) == (2, 2)

        store.invalidate_all()
        await store.get_calendar("office", "national")
        assert (repository.schedule_calls, repository.holiday_calls) == (3, 3)


class TestInMemoryCacheService:
    """Tests for TTL expiry and statistics."""

    def test_get_and_set(self):
        cache = InMemoryCacheService()
        cache.set("key", "value")

        assert cache.get("key") == "value"
        assert cache.get("other") is None
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_zero_ttl_expires_immediately(self):
        cache = InMemoryCacheService()
        cache.set("key", "value", ttl_seconds=0)

        assert cache.get("key") is None
        assert cache.stats()["entries"] == 0

    def test_invalidate_and_clear(self):
        cache = InMemoryCacheService()
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.clear()
        assert cache.get("b") is None

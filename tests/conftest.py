"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.

The SLA engine is exercised against an in-memory SQLite database with
the same repositories used in production. The ticket service and the
notification webhook are replaced by in-process fakes, and time is
driven by a controllable clock.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import RecipientOutcome
from infrastructure.database import Base
from infrastructure.cache import InMemoryCacheService
from sla.application.services import ITicketDirectory, INotificationDispatcher
from sla.domain import (
    AssetSnapshot, TicketSnapshot, Recipient, OutboundMessage, DeliveryOutcome, MatchContext,
)
from sla.domain.catalog import SlaCatalog
from sla.infrastructure import models  # noqa: F401
from sla.infrastructure.repositories import SQLAlchemyCatalogRepository
from sla.infrastructure.wiring import SlaRuntime


# Test database URL
# WHY: SQLite keeps the suite free of external services. StaticPool
# shares the single in-memory database between sessions.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday 16:30 UTC, half an hour before the office closes
MONDAY_1630 = datetime(2024, 1, 15, 16, 30, tzinfo=timezone.utc)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday")

TEST_CATALOG = {
    "schedules": [
        {
            "name": "office",
            "timezone": "UTC",
            "days": {day: {"start": "09:00", "end": "17:00"} for day in WEEKDAYS},
            "breaks": [{"name": "lunch", "start": "13:00", "end": "14:00"}],
        },
        {"name": "always-on", "is_24x7": True},
    ],
    "holiday_calendars": [
        {
            "name": "holidays",
            "year": 2024,
            "dates": [{"date": "2024-01-26", "name": "Republic Day"}],
        },
    ],
    "rules": [
        {
            "name": "VIP",
            "priority_order": 1,
            "is_vip_override": True,
            "min_tat": 15,
            "avg_tat": 60,
            "max_tat": 120,
            "schedule": "always-on",
            "allow_pause_resume": False,
            "escalations": [
                {"level": 1, "trigger_type": "breached", "recipient_type": "it_head"},
            ],
        },
        {
            "name": "Critical assets",
            "priority_order": 10,
            "asset_importance": ["critical", "high"],
            "ticket_type": "incident",
            "min_tat": 60,
            "avg_tat": 240,
            "max_tat": 480,
            "schedule": "office",
            "holiday_calendar": "holidays",
            "pause_conditions": {"awaiting_vendor": True},
            "escalations": [
                {"level": 1, "trigger_type": "warning_zone", "recipient_type": "assigned_engineer"},
                {"level": 2, "trigger_type": "imminent_breach", "recipient_type": "coordinator"},
                {
                    "level": 3,
                    "trigger_type": "breached",
                    "recipient_type": "department_head",
                    "recipients": ["duty-manager@example.com"],
                },
                {
                    "level": 4,
                    "trigger_type": "recurring_breach",
                    "recipient_type": "static",
                    "recipients": ["ops@example.com"],
                    "repeat_interval_minutes": 30,
                    "max_repeat_count": 2,
                },
            ],
        },
        {
            "name": "Default",
            "priority_order": 100,
            "min_tat": 240,
            "avg_tat": 1440,
            "max_tat": 2880,
            "schedule": "office",
            "holiday_calendar": "holidays",
            "escalations": [
                {"level": 1, "trigger_type": "breached", "recipient_type": "coordinator"},
            ],
        },
    ],
}

CRITICAL_CONTEXT = MatchContext(
    asset_importance="critical",
    asset_categories=["server"],
    ticket_type="incident",
    ticket_channel="portal",
)
DEFAULT_CONTEXT = MatchContext(ticket_type="incident", ticket_channel="portal")
VIP_CONTEXT = MatchContext(is_vip=True, ticket_type="incident", ticket_channel="portal")


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant in the week of Monday 2024-01-15 (day 15 = Monday)."""
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


# ========== Fakes ==========

class FakeClock:
    """Controllable time source."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTicketDirectory(ITicketDirectory):
    """In-memory ticket service."""

    def __init__(self):
        self.tickets: Dict[str, TicketSnapshot] = {}
        self.assets: Dict[str, AssetSnapshot] = {}
        self.users: Dict[str, Recipient] = {}
        self.vip_users = set()
        self.role_members: Dict[tuple, List[Recipient]] = {}
        self.role_queries: List[tuple] = []

    def add_role(self, role: str, department_id: Optional[str], *emails: str) -> None:
        self.role_members[(role, department_id)] = [
            Recipient(email=email, name=email.split("@")[0], role=role) for email in emails
        ]

    async def get_ticket(self, ticket_id: str) -> Optional[TicketSnapshot]:
        return self.tickets.get(ticket_id)

    async def get_assets(self, asset_ids: Sequence[str]) -> List[AssetSnapshot]:
        return [self.assets[a] for a in asset_ids if a in self.assets]

    async def is_vip_user(self, user_id: str) -> bool:
        return user_id in self.vip_users

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        return self.users.get(user_id)

    async def find_users_by_role(
        self, role: str, department_id: Optional[str] = None, limit: int = 3
    ) -> List[Recipient]:
        self.role_queries.append((role, department_id, limit))
        return list(self.role_members.get((role, department_id), []))[:limit]


class RecordingDispatcher(INotificationDispatcher):
    """Records messages; addresses in ``failing`` are reported as failed."""

    def __init__(self):
        self.messages: List[OutboundMessage] = []
        self.failing = set()

    async def send(self, messages: List[OutboundMessage]) -> List[DeliveryOutcome]:
        outcomes = []
        for message in messages:
            self.messages.append(message)
            if message.recipient_email in self.failing:
                outcomes.append(DeliveryOutcome(message.recipient_email, RecipientOutcome.FAILED, "HTTP 500"))
            else:
                outcomes.append(DeliveryOutcome(message.recipient_email, RecipientOutcome.SENT))
        return outcomes


# ========== Database ==========

@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state,
    preventing test pollution and ensuring test isolation.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    """Session factory for code that opens its own sessions (sweep, consumer)."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


# ========== SLA runtime ==========

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY_1630)


@pytest.fixture
def directory() -> FakeTicketDirectory:
    return FakeTicketDirectory()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def catalog() -> SlaCatalog:
    return SlaCatalog.model_validate(TEST_CATALOG)


@pytest.fixture
def runtime(clock, directory, dispatcher) -> SlaRuntime:
    """
    Runtime wired with fakes.

    WHY: Services built from the runtime are the same objects the API
    and the sweep use, so tests cover the real wiring.
    """
    return SlaRuntime(
        cache=InMemoryCacheService(default_ttl_seconds=300),
        dispatcher=dispatcher,
        ticket_directory=directory,
        clock=clock,
    )


@pytest_asyncio.fixture
async def catalog_applied(db_session, catalog) -> dict:
    """Seed schedules, holidays and rules from the test catalog."""
    summary = await SQLAlchemyCatalogRepository(db_session).apply(catalog)
    await db_session.commit()
    return summary


@pytest_asyncio.fixture
async def services(runtime, db_session, catalog_applied):
    """SLA services bound to the test session, catalog already applied."""
    return runtime.services(db_session)


@pytest_asyncio.fixture
async def rules(services) -> dict:
    """Active rules keyed by name."""
    return {rule.name: rule for rule in await services.rule_repository.list_active_rules()}

"""
Pytest fixtures for test database, client, and authentication.

Every test gets a throwaway SQLite file database (set TEST_DATABASE_URL to
run against PostgreSQL instead). Services are exercised directly through
`session_factory`; HTTP tests go through `client`, which opens a fresh
session per request exactly like the real `get_db`.
"""

import os

os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./registrations_dev.db")

from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.db.base import Base
from app.db.session import build_engine, get_db, unit_of_work
from app.core.security import create_access_token
from app.models.event import Event, EventStatus, EventType
from app.models.student import Student
from app.services.actors import AdminActor, EventManagerActor, StudentActor
from app.services.interfaces.offline_payment import OfflinePaymentProvider
from app.services.provider_factory import get_payment_provider

MANAGER_ID = 500
ADMIN_ID = 1
SCHOOL_ID = 10
OTHER_SCHOOL_ID = 20


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables, yield the engine, then drop tables for isolation."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    kwargs = {"poolclass": NullPool} if url.startswith("sqlite") else {}
    test_engine = build_engine(url, **kwargs)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def payment_provider() -> OfflinePaymentProvider:
    return OfflinePaymentProvider()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, payment_provider) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the DB and payment dependencies pointed at the test fixtures."""

    async def override_get_db():
        async with unit_of_work(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_token(role: str, sub: int, school_id=None) -> str:
    claims = {"sub": str(sub), "role": role}
    if school_id is not None:
        claims["school_id"] = school_id
    return create_access_token(data=claims)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin() -> AdminActor:
    return AdminActor(actor_id=ADMIN_ID)


@pytest.fixture
def manager() -> EventManagerActor:
    return EventManagerActor(actor_id=MANAGER_ID, school_id=SCHOOL_ID)


@pytest.fixture
def admin_headers() -> dict:
    return bearer(make_token("ADMIN", ADMIN_ID))


@pytest.fixture
def manager_headers() -> dict:
    return bearer(make_token("EVENT_MANAGER", MANAGER_ID, SCHOOL_ID))


def student_headers(student: Student) -> dict:
    return bearer(make_token("STUDENT", student.id))


def student_actor(student: Student) -> StudentActor:
    return StudentActor(actor_id=student.id)


async def add_students(session_factory, count: int, school_id: int = SCHOOL_ID, prefix: str = "REG") -> list[Student]:
    async with session_factory() as session:
        students = [
            Student(
                registration_no=f"{prefix}{i:04d}",
                full_name=f"Student {prefix}{i:04d}",
                school_id=school_id,
            )
            for i in range(count)
        ]
        session.add_all(students)
        await session.commit()
        return students


async def add_event(session_factory, **overrides) -> Event:
    fields = dict(
        title="Science Fair",
        event_type=EventType.FREE,
        price=Decimal("0"),
        currency="INR",
        start_date=datetime.now(timezone.utc) + timedelta(days=30),
        status=EventStatus.ACTIVE,
        organizer_id=MANAGER_ID,
        capacity=100,
        confirmed_count=0,
        waitlist_enabled=False,
        refund_enabled=False,
        cancellation_deadline_hours=24,
        refund_tiers=[],
        version=1,
    )
    fields.update(overrides)
    async with session_factory() as session:
        event = Event(**fields)
        session.add(event)
        await session.commit()
        await session.refresh(event)
        return event


@pytest_asyncio.fixture
async def students(session_factory) -> list[Student]:
    """Ten students of the manager's school."""
    return await add_students(session_factory, 10)


@pytest_asyncio.fixture
async def test_event(session_factory) -> Event:
    """Active free event with 100 slots."""
    return await add_event(session_factory)


@pytest_asyncio.fixture
async def paid_event(session_factory) -> Event:
    """Active paid event with tiered refunds and 5 slots."""
    return await add_event(
        session_factory,
        title="Robotics Workshop",
        event_type=EventType.PAID,
        price=Decimal("1000.00"),
        capacity=5,
        waitlist_enabled=True,
        refund_enabled=True,
        cancellation_deadline_hours=0,
        refund_tiers=[
            {"days_before": 7, "percent": 100},
            {"days_before": 3, "percent": 50},
            {"days_before": 0, "percent": 0},
        ],
    )

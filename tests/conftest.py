import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from clinicdesk.core.security import create_access_token
from clinicdesk.database import get_db
from clinicdesk.dependencies import get_cache_manager, get_card_gateway, get_rate_limiter
from clinicdesk.main import app
from clinicdesk.models import metadata
from clinicdesk.models.appointments import appointments
from clinicdesk.models.patients import patients
from clinicdesk.models.users import users
from clinicdesk.schemas.users import Actor, Role
from clinicdesk.services.payment_gateway import MockCardGateway

load_dotenv()

# In-memory SQLite unless a disposable Postgres database is configured
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

DOCTOR_ID = "doc-house"
OTHER_DOCTOR_ID = "doc-wilson"

SUCCESS_CARD = "4111111111111111"
DECLINED_CARD = "4000000000000002"
NETWORK_ERROR_CARD = "4084084084084084"


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh schema per test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        # Enforce foreign keys the way PostgreSQL does
        @event.listens_for(engine.sync_engine, "connect")
        def enable_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test session and no Redis."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_manager] = lambda: None
    app.dependency_overrides[get_rate_limiter] = lambda: None
    app.dependency_overrides[get_card_gateway] = lambda: MockCardGateway(latency_ms=0)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def future_slot(days: int = 3, hour: int = 10, minutes: int = 30) -> tuple[datetime, datetime]:
    """A slot-aligned interval ``days`` from now at ``hour`` UTC."""
    day = (datetime.now(UTC) + timedelta(days=days)).replace(
        hour=hour, minute=0, second=0, microsecond=0
    )
    return day, day + timedelta(minutes=minutes)


def headers_for(user: dict) -> dict[str, str]:
    """Bearer headers for a seeded user."""
    token = create_access_token(
        data={"sub": str(user["id"]), "email": user["email"]},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


def actor_for(user: dict) -> Actor:
    return Actor.model_validate(user)


async def _insert_patient(db: AsyncSession, **values) -> dict:
    now = datetime.now(UTC)
    data = {
        "id": uuid4(),
        "first_name": "Test",
        "last_name": "Patient",
        "government_eligible": False,
        "version": 0,
        "created_at": now,
        "updated_at": now,
        **values,
    }
    await db.execute(insert(patients).values(**data))
    await db.commit()
    return data


async def _insert_user(db: AsyncSession, role: Role, email: str, full_name: str, **values) -> dict:
    data = {
        "id": uuid4(),
        "email": email,
        "full_name": full_name,
        "role": role.value,
        "is_active": True,
        "linked_patient_id": None,
        "doctor_profile_id": None,
        **values,
    }
    await db.execute(insert(users).values(**data))
    await db.commit()
    return data


@pytest_asyncio.fixture
async def patient(db_session: AsyncSession) -> dict:
    """Insured patient record."""
    return await _insert_patient(
        db_session,
        first_name="Jane",
        last_name="Doe",
        insurance_provider="Acme Health",
        insurance_policy_number="ACM-1",
    )


@pytest_asyncio.fixture
async def uninsured_patient(db_session: AsyncSession) -> dict:
    return await _insert_patient(db_session, first_name="Sam", last_name="Plain")


@pytest_asyncio.fixture
async def government_patient(db_session: AsyncSession) -> dict:
    return await _insert_patient(
        db_session, first_name="Gov", last_name="Covered", government_eligible=True
    )


@pytest_asyncio.fixture
async def patient_user(db_session: AsyncSession, patient: dict) -> dict:
    return await _insert_user(
        db_session,
        Role.PATIENT,
        "jane@example.com",
        "Jane Doe",
        linked_patient_id=str(patient["id"]),
    )


@pytest_asyncio.fixture
async def other_patient_user(db_session: AsyncSession, uninsured_patient: dict) -> dict:
    return await _insert_user(
        db_session,
        Role.PATIENT,
        "sam@example.com",
        "Sam Plain",
        linked_patient_id=str(uninsured_patient["id"]),
    )


@pytest_asyncio.fixture
async def doctor_user(db_session: AsyncSession) -> dict:
    return await _insert_user(
        db_session,
        Role.DOCTOR,
        "house@example.com",
        "Gregory House",
        doctor_profile_id=DOCTOR_ID,
    )


@pytest_asyncio.fixture
async def other_doctor_user(db_session: AsyncSession) -> dict:
    return await _insert_user(
        db_session,
        Role.DOCTOR,
        "wilson@example.com",
        "James Wilson",
        doctor_profile_id=OTHER_DOCTOR_ID,
    )


@pytest_asyncio.fixture
async def staff_user(db_session: AsyncSession) -> dict:
    return await _insert_user(db_session, Role.STAFF, "desk@example.com", "Front Desk")


@pytest_asyncio.fixture
async def manager_user(db_session: AsyncSession) -> dict:
    return await _insert_user(db_session, Role.MANAGER, "boss@example.com", "Clinic Manager")


@pytest.fixture
def patient_headers(patient_user: dict) -> dict:
    return headers_for(patient_user)


@pytest.fixture
def doctor_headers(doctor_user: dict) -> dict:
    return headers_for(doctor_user)


@pytest.fixture
def staff_headers(staff_user: dict) -> dict:
    return headers_for(staff_user)


async def insert_appointment(
    db: AsyncSession,
    patient_id: UUID | str,
    doctor_id: str = DOCTOR_ID,
    status: str = "BOOKED",
    starts_at: datetime | None = None,
    minutes: int = 30,
) -> dict:
    """Insert an appointment row directly, bypassing the service."""
    if starts_at is None:
        starts_at, _ = future_slot()
    now = datetime.now(UTC)
    data = {
        "id": uuid4(),
        "patient_id": str(patient_id),
        "doctor_id": doctor_id,
        "starts_at": starts_at,
        "ends_at": starts_at + timedelta(minutes=minutes),
        "status": status,
        "created_at": now,
        "updated_at": now,
    }
    await db.execute(insert(appointments).values(**data))
    await db.commit()
    return data

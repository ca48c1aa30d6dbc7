import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

# Settings are read at import time; tests run against SQLite without .env
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_bootstrap.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-scheduling-tests")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.clock import FixedClock
from app.core.exceptions import ExternalProviderError, WebhookSignatureInvalid
from app.core.payments import (
    CheckoutRequest,
    CheckoutSession,
    NoOpGateway,
    PaymentGateway,
    VerifiedEvent,
)
from app.core.security import create_access_token
from app.database import get_db
from app.dependencies import get_cache_manager, get_clock, get_payment_gateway
from app.main import app
from app.models import metadata
from app.models.doctors import doctors
from app.models.users import users
from app.services.appointment_service import SchedulingService

CLINIC_TZ = "Europe/Berlin"

# Friday 30 May 2025, 09:00 clinic time
NOW = datetime(2025, 5, 30, 9, 0, 0)

VALID_SIGNATURE = "valid-signature"


@dataclass
class FakeGateway(PaymentGateway):
    """In-memory payment provider: records sessions, trusts one signature."""

    is_configured: bool = True
    fail_next: bool = False
    sessions: list[CheckoutRequest] = field(default_factory=list)
    events: dict[bytes, VerifiedEvent] = field(default_factory=dict)
    expired: list[str] = field(default_factory=list)

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        if self.fail_next:
            self.fail_next = False
            raise ExternalProviderError("Could not create payment session: boom")
        self.sessions.append(request)
        n = len(self.sessions)
        return CheckoutSession(
            session_id=f"cs_test_{n}",
            url=f"https://checkout.stripe.test/pay/cs_test_{n}",
        )

    async def expire_checkout_session(self, session_id: str) -> bool:
        self.expired.append(session_id)
        return True

    def verify_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureInvalid("No signatures found matching the expected signature")
        return self.events[payload]

    def completed_event(
        self,
        session_id: str,
        appointment_id: object,
        amount_total: int | None = 2000,
        event_type: str = "checkout.session.completed",
    ) -> bytes:
        """Register an event and return the raw body that stands for it."""
        body = f"{event_type}:{session_id}:{uuid4()}".encode()
        self.events[body] = VerifiedEvent(
            event_id=f"evt_{uuid4().hex[:12]}",
            event_type=event_type,
            session_id=session_id,
            metadata={"appointment_id": str(appointment_id)},
            amount_total=amount_total,
            currency="eur",
        )
        return body


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test database."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FixedClock:
    """Clinic clock pinned to NOW."""
    return FixedClock(CLINIC_TZ, NOW)


@pytest.fixture
def gateway() -> FakeGateway:
    """Configured fake payment provider."""
    return FakeGateway()


@pytest.fixture
def service(db_session, gateway, clock) -> SchedulingService:
    """Scheduling service without a cache."""
    return SchedulingService(db_session, gateway, clock)


@pytest.fixture
def noop_service(db_session, clock) -> SchedulingService:
    """Scheduling service with payments switched off."""
    return SchedulingService(db_session, NoOpGateway(), clock)


@pytest_asyncio.fixture
async def client(
    session_factory,
    gateway: FakeGateway,
    clock: FixedClock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_cache_manager] = lambda: None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _create_user(db: AsyncSession, role: str, email: str) -> dict:
    user = {
        "id": uuid4(),
        "email": email,
        "full_name": email.split("@")[0].title(),
        "phone": "+4930123456",
        "role": role,
        "is_active": True,
    }
    await db.execute(insert(users).values(**user))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def patient(db_session) -> dict:
    """Create a patient user in the database."""
    return await _create_user(db_session, "patient", "patient@example.com")


@pytest_asyncio.fixture
async def other_patient(db_session) -> dict:
    """A second patient competing for slots."""
    return await _create_user(db_session, "patient", "other@example.com")


@pytest_asyncio.fixture
async def doctor_user(db_session) -> dict:
    """User account behind the doctor profile."""
    return await _create_user(db_session, "doctor", "doctor@example.com")


@pytest_asyncio.fixture
async def doctor(db_session, doctor_user) -> dict:
    """Create an available doctor with a 20.00 EUR fee."""
    row = {
        "id": uuid4(),
        "user_id": doctor_user["id"],
        "full_name": "Dr. Anna Weber",
        "specialization": "General Practice",
        "consultation_fee": Decimal("20.00"),
        "currency": "EUR",
        "is_available": True,
    }
    await db_session.execute(insert(doctors).values(**row))
    await db_session.commit()
    return row


@pytest_asyncio.fixture
async def admin(db_session) -> dict:
    """Create an admin user."""
    return await _create_user(db_session, "admin", "admin@example.com")


def auth_headers_for(user: dict) -> dict:
    """Bearer headers for a user."""
    token = create_access_token(
        data={"sub": str(user["id"]), "email": user["email"]},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(patient) -> dict:
    """Create authentication headers for the patient."""
    return auth_headers_for(patient)


@pytest.fixture
def doctor_headers(doctor, doctor_user) -> dict:
    """Create authentication headers for the doctor."""
    return auth_headers_for(doctor_user)


@pytest.fixture
def slot() -> datetime:
    """A bookable slot: Monday 2 June 2025, 10:00 clinic time."""
    return datetime(2025, 6, 2, 10, 0, 0)


@pytest.fixture
def other_headers(other_patient) -> dict:
    """Create authentication headers for the second patient."""
    return auth_headers_for(other_patient)

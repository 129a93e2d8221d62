"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database, fakeredis in place of Redis,
a stub payment gateway, and ready-made users and a tour.
"""

import os
import tempfile
import uuid
from datetime import date, timedelta
from decimal import Decimal

# Settings are read at import time; configure them before the app loads.
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"tour_marketplace_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "testing"
os.environ["DEBUG"] = "false"

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from services.payment.gateway import CheckoutSession, get_payment_gateway
from shared.exceptions import GatewayError
from shared.models.models import (
    AccountStatus,
    Tour,
    TourCategory,
    TourStatus,
    User,
    UserRole,
)
from shared.utils.security import create_access_token

TOUR_DATE = date.today() + timedelta(days=7)


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


class StubGateway:
    """Stands in for SSLCommerz: records checkout requests, returns a fixed page."""

    page_url = "https://sandbox.sslcommerz.com/EasyCheckOut/test-session"

    def __init__(self):
        self.requests = []
        self.fail = False

    async def initiate(self, request):
        self.requests.append(request)
        if self.fail:
            raise GatewayError("Could not reach the payment gateway")
        return CheckoutSession(gateway_page_url=self.page_url, raw={"status": "SUCCESS"})


# ── Infrastructure ────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def setup_database():
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
async def client(redis, gateway):
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def error_client(client):
    """Like `client`, but unhandled errors come back as 500 responses instead of raising."""
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


# ── Users ─────────────────────────────────────────────────────

async def _create_user(db, role: UserRole, name: str, **fields) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}@example.com",
        name=name,
        role=role,
        account_status=AccountStatus.ACTIVE,
        **fields,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def tourist(db) -> User:
    return await _create_user(
        db, UserRole.TOURIST, "Test Tourist",
        phone="+8801700000000", address="House 1, Road 2, Dhaka",
    )


@pytest.fixture
async def other_tourist(db) -> User:
    return await _create_user(db, UserRole.TOURIST, "Other Tourist")


@pytest.fixture
async def guide(db) -> User:
    return await _create_user(db, UserRole.GUIDE, "Test Guide", languages=["English", "Bangla"])


@pytest.fixture
async def other_guide(db) -> User:
    return await _create_user(db, UserRole.GUIDE, "Other Guide")


@pytest.fixture
async def admin(db) -> User:
    return await _create_user(db, UserRole.ADMIN, "Test Admin")


# ── Tours ─────────────────────────────────────────────────────

@pytest.fixture
async def tour(db, guide) -> Tour:
    tour = Tour(
        id=uuid.uuid4(),
        guide_id=guide.id,
        slug="old-dhaka-food-walk",
        title="Old Dhaka Food Walk",
        description="Street food tasting through the lanes of Old Dhaka.",
        category=TourCategory.FOOD,
        location="Dhaka",
        meeting_point="Lalbagh Fort gate",
        tour_fee=Decimal("100.00"),
        max_duration=Decimal("3.0"),
        max_group_size=6,
        available_dates=[{"date": TOUR_DATE.isoformat(), "times": ["09:00", "15:00"]}],
        status=TourStatus.ACTIVE,
    )
    db.add(tour)
    await db.commit()
    return tour


def booking_payload(tour: Tour, guests: int = 2, when: date = TOUR_DATE, time: str = "09:00") -> dict:
    return {
        "tour_id": str(tour.id),
        "booking_date": when.isoformat(),
        "booking_time": time,
        "number_of_guests": guests,
    }


async def completed_booking(client: AsyncClient, tourist: User, guide: User, tour: Tour) -> dict:
    """Drive a booking through PENDING → CONFIRMED → COMPLETED over the API."""
    response = await client.post("/bookings", headers=auth_headers(tourist), json=booking_payload(tour))
    assert response.status_code == 201
    booking_id = response.json()["id"]

    for target in ("CONFIRMED", "COMPLETED"):
        response = await client.patch(
            f"/bookings/{booking_id}/status",
            headers=auth_headers(guide),
            json={"status": target},
        )
        assert response.status_code == 200
    return response.json()

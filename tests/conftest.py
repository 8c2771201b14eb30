import os

# Configure the environment before the app modules read it
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["APP_URL"] = "http://localhost:3000"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
for name in (
    "REVENIU_API_SECRET",
    "REVENIU_WEBHOOK_SECRET",
    "RESEND_API_KEY",
    "WHATSAPP_ID",
    "WHATSAPP_TOKEN",
    "REDIS_URL",
):
    os.environ.pop(name, None)

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import models  # noqa: E402
from app.cache import cache  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app as fastapi_app  # noqa: E402

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}

# 12:00 in Santiago (UTC-3 while daylight saving applies)
NOW = datetime(2025, 3, 10, 15, 0, 0)


class FakeRedis:
    """In-memory stand-in for the few redis commands the cache issues"""

    def __init__(self):
        self.store = {}

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db):
    def override_get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(fastapi_app)
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    return fake


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    # Fail-open cache unless a test installs fake_redis
    monkeypatch.setattr(cache, "redis_client", None)


@pytest.fixture()
def make_profile(db):
    def _make(
        user_id="user-1",
        status=models.SubscriptionStatus.TRIAL.value,
        created_at=None,
        email="pro@example.com",
        **fields,
    ):
        profile = models.Profile(
            id=user_id,
            name=fields.pop("name", "Ana Pérez"),
            email=email,
            whatsapp=fields.pop("whatsapp", "+56 9 1234 5678"),
            business_name=fields.pop("business_name", "Peluquería Ana"),
            subscription_status=status,
            created_at=created_at or NOW - timedelta(days=1),
            **fields,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture()
def make_service(db):
    def _make(user_id="user-1", duration=60, name="Corte de pelo"):
        service = models.Service(user_id=user_id, name=name, duration=duration, price=10000)
        db.add(service)
        db.commit()
        return service

    return _make


@pytest.fixture()
def make_appointment(db):
    def _make(
        start: datetime,
        status=models.AppointmentStatus.PENDING.value,
        service=None,
        user_id="user-1",
        completed_at=None,
        client_name="Carlos Soto",
    ):
        appointment = models.Appointment(
            user_id=user_id,
            service_id=service.id if service else None,
            date=start.date(),
            time=start.time(),
            status=status,
            client_name=client_name,
            client_email="carlos@example.com",
            client_phone="+56987654321",
            completed_at=completed_at,
        )
        db.add(appointment)
        db.commit()
        return appointment

    return _make


@pytest.fixture()
def make_plan(db):
    def _make(name="Único", price=8500, is_active=True, reveniu_plan_id=None):
        plan = models.Plan(
            name=name,
            price=price,
            currency="CLP",
            is_active=is_active,
            reveniu_plan_id=reveniu_plan_id,
        )
        db.add(plan)
        db.commit()
        return plan

    return _make
import os
import sys
import time
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from auth.core.enums import UserRole, SessionStatus, PaymentStatus
from auth.core.security import create_access_token
from auth.database import Base, get_db, utcnow
from auth.models.user import Profile
from parking.models import ParkingSpace, ParkingSession, Vehicle, Payment, UserActivity
from parking.store import ParkingStore, get_store
from realtime.feed import ChangeFeed

# --- test database ---
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture(scope="function")
def db_session():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def change_feed():
    return ChangeFeed()

@pytest.fixture(scope="function")
def store(db_session, change_feed):
    return ParkingStore(TestingSessionLocal, change_feed)

@pytest.fixture(scope="function")
def client(db_session, store):
    """TestClient with get_db and get_store pointed at the test database."""
    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: store

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()

# --- data helpers ---
def make_profile(db, role=UserRole.USER, name="Juan Dela Cruz", email=None, profile_id=None):
    p = Profile(id=profile_id, name=name, email=email, role=role) if profile_id else Profile(name=name, email=email, role=role)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p

def auth_headers(profile):
    token = create_access_token({"sub": profile.id}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}

def make_space(db, space_number="SP-07", section="North Wing", occupied=False, vehicle_id=None, space_id=None):
    kwargs = dict(
        space_number=space_number,
        section=section,
        address="1 Rizal Ave",
        category="car",
        daily_rate=Decimal("150.00"),
        is_occupied=occupied,
        occupied_since=utcnow() if occupied else None,
        vehicle_id=vehicle_id,
    )
    if space_id:
        kwargs["id"] = space_id
    s = ParkingSpace(**kwargs)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s

def make_vehicle(db, owner_id=None, plate="ABC 1234", vehicle_type="sedan", vehicle_id=None):
    kwargs = dict(owner_id=owner_id, plate=plate, vehicle_type=vehicle_type, make="Toyota", model="Vios", color="white")
    if vehicle_id:
        kwargs["id"] = vehicle_id
    v = Vehicle(**kwargs)
    db.add(v)
    db.commit()
    db.refresh(v)
    return v

def make_session(db, space_id=None, user_id=None, vehicle_id=None, status=SessionStatus.BOOKED, session_id=None, start_time=None):
    kwargs = dict(
        space_id=space_id,
        user_id=user_id,
        vehicle_id=vehicle_id,
        status=status,
        start_time=start_time or utcnow(),
        daily_rate_snapshot=Decimal("150.00"),
        days_booked=1,
    )
    if session_id:
        kwargs["id"] = session_id
    s = ParkingSession(**kwargs)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s

def make_payment(db, session_id="S1", user_id="U1", amount=Decimal("150.00"), status=PaymentStatus.COMPLETED, created_at=None):
    p = Payment(session_id=session_id, user_id=user_id, amount=amount, payment_method="gcash", status=status, created_at=created_at or utcnow())
    db.add(p)
    db.commit()
    db.refresh(p)
    return p

def make_user_activity(db, action="booking_created", details=None, session_id=None, space_id=None, activity_type="booking", created_at=None):
    a = UserActivity(type=activity_type, action=action, details=details, session_id=session_id, space_id=space_id, created_at=created_at or utcnow())
    db.add(a)
    db.commit()
    db.refresh(a)
    return a

class SlowStore(ParkingStore):
    """Store whose every query holds its worker thread, like a stalled database driver."""

    def __init__(self, *args, delay=0.5, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay

    @contextmanager
    def _session(self, operation):
        time.sleep(self.delay)
        with super()._session(operation) as db:
            yield db

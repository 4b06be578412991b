import os
import tempfile

# configuration is read at import time, so set it before importing the app.
# A file database: store work runs on executor threads, each with its own connection.
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="smartpark-"), "test.db")
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["RECONCILE_INTERVAL_SECONDS"] = "0"
os.environ["DB_INIT_MAX_RETRIES"] = "1"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from smartpark.auth import create_access_token, hash_password
from smartpark.db import ParkingLot, ParkingSlot, User, drop_db, engine, init_db


class FakeConnection:
    """Stands in for a WebSocket: records every frame it is sent."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.closed_with = None

    async def send_text(self, msg):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(msg)

    async def close(self, code=1000):
        self.closed_with = code


@pytest.fixture(autouse=True)
def fresh_db():
    drop_db()
    init_db()
    yield
    drop_db()


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


def make_lot(session, total=10, available=5, name="Test Lot", hourly_rate=4.0):
    """Lot whose first `available` slots are available and the rest occupied."""
    lot = ParkingLot(name=name, total_slots=total, available_slots=available, hourly_rate=hourly_rate)
    session.add(lot)
    session.flush()
    for number in range(1, total + 1):
        session.add(ParkingSlot(lot_id=lot.id, slot_number=number,
                                status="available" if number <= available else "occupied"))
    session.commit()
    session.refresh(lot)
    return lot


def slots_of(session, lot_id):
    from sqlmodel import select
    return session.exec(select(ParkingSlot).where(ParkingSlot.lot_id == lot_id)
                        .order_by(ParkingSlot.slot_number)).all()


def make_user(session, email, role="user", password="password123"):
    user = User(email=email, password_hash=hash_password(password), name=email.split("@")[0], role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def lot(session):
    return make_lot(session)


@pytest.fixture
def users(session):
    return {
        "admin": make_user(session, "admin@parking.com", "admin"),
        "staff": make_user(session, "staff@parking.com", "staff"),
        "user": make_user(session, "user@parking.com", "user"),
    }


@pytest.fixture
def tokens(users):
    return {role: create_access_token(user) for role, user in users.items()}


@pytest.fixture
def client():
    from smartpark.main import app, rate_limiter
    rate_limiter.reset()
    with TestClient(app) as c:
        yield c


def bearer(token):
    return {"Authorization": f"Bearer {token}"}

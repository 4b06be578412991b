import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, UniqueConstraint, inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from .config import DATABASE_URL

logger = logging.getLogger(__name__)


def make_engine(url: str):
    """Create the SQLAlchemy engine. In-memory SQLite shares one connection."""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)


def utcnow() -> datetime:
    """Timezone-aware UTC now; every stored timestamp goes through here."""
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """ISO-8601 with a trailing Z, as sent to clients."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# Models
class User(SQLModel, table=True):
    __tablename__ = "app_user"
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    name: str
    phone: Optional[str] = None
    role: str = Field(default="user", index=True)
    profile: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    refresh_token: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ParkingLot(SQLModel, table=True):
    __tablename__ = "parking_lot"
    __table_args__ = (
        CheckConstraint(
            "available_slots >= 0 AND available_slots <= total_slots",
            name="ck_parking_lot_available_range",
        ),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    total_slots: int = Field(default=0)
    available_slots: int = Field(default=0)
    traffic_condition: str = Field(default="low")
    hourly_rate: float = Field(default=3.0)
    currency: str = Field(default="USD")
    status: str = Field(default="active", index=True)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ParkingSlot(SQLModel, table=True):
    __tablename__ = "parking_slot"
    __table_args__ = (UniqueConstraint("lot_id", "slot_number", name="uq_parking_slot_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    lot_id: int = Field(foreign_key="parking_lot.id", index=True)
    slot_number: int

    status: str = Field(default="available", index=True)
    confidence: float = Field(default=1.0)
    vehicle_entry: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    # bumped on every write; compare-and-swap token for concurrent updates
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Reservation(SQLModel, table=True):
    __tablename__ = "reservation"
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="app_user.id", index=True)
    slot_id: int = Field(foreign_key="parking_slot.id", index=True)
    lot_id: int = Field(foreign_key="parking_lot.id", index=True)

    status: str = Field(default="pending", index=True)
    reservation_time: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    start_time: datetime = Field(sa_type=DateTime(timezone=True))
    end_time: datetime = Field(sa_type=DateTime(timezone=True))
    price: float
    currency: str = Field(default="USD")
    payment_status: str = Field(default="pending")
    qr_code: str

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class SlotEvent(SQLModel, table=True):
    __tablename__ = "slot_event"
    id: Optional[int] = Field(default=None, primary_key=True)
    slot_id: int = Field(index=True)
    lot_id: int = Field(index=True)
    previous_status: str
    status: str = Field(index=True)
    confidence: Optional[float] = None
    delta: int = Field(default=0)
    source: str = Field(default="api")
    actor_id: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)


def get_session():
    with Session(engine) as session:
        yield session


def init_db(bind=None):
    bind = bind if bind is not None else engine
    SQLModel.metadata.create_all(bind)
    insp = inspect(bind)
    logger.info(f"DB: Tables now in database: {insp.get_table_names()}")


def drop_db(bind=None):
    SQLModel.metadata.drop_all(bind if bind is not None else engine)

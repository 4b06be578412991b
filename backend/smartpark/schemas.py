import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .transitions import SlotStatus

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

TrafficCondition = Literal["low", "moderate", "heavy"]
LotStatus = Literal["active", "closed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Auth / users ---
class RegisterIn(CamelModel):
    email: str
    password: str = Field(min_length=8)
    name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = None
    role: str = "user"

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not EMAIL_RE.match(v):
            raise ValueError("Valid email is required")
        return v


class LoginIn(CamelModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RefreshIn(CamelModel):
    refresh_token: str


class UserOut(CamelModel):
    id: int
    email: str
    name: str
    phone: Optional[str] = None
    role: str
    profile: Optional[Dict[str, Any]] = None
    is_active: bool = True


class UserUpdateIn(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None


# --- Lots ---
class LotIn(CamelModel):
    name: str = Field(min_length=1)
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    total_slots: int = Field(ge=0, le=5000)
    traffic_condition: TrafficCondition = "low"
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    currency: str = "USD"


class LotUpdateIn(CamelModel):
    name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    traffic_condition: Optional[TrafficCondition] = None
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    status: Optional[LotStatus] = None


class LotOut(CamelModel):
    id: int
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    total_slots: int
    available_slots: int
    traffic_condition: str
    hourly_rate: float
    currency: str
    status: str
    updated_at: datetime


# --- Slots ---
class VehicleEntry(CamelModel):
    vehicle_id: Optional[str] = None
    entry_time: Optional[datetime] = None
    plate: Optional[str] = None


class SlotUpdateIn(CamelModel):
    status: Optional[SlotStatus] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    vehicle_entry: Optional[VehicleEntry] = None

    def to_updates(self) -> Dict[str, Any]:
        """Only the fields the client actually sent; an explicit null vehicleEntry clears it."""
        updates: Dict[str, Any] = {}
        if self.status is not None:
            updates["status"] = self.status.value
        if self.confidence is not None:
            updates["confidence"] = self.confidence
        if "vehicle_entry" in self.model_fields_set:
            updates["vehicle_entry"] = (
                self.vehicle_entry.model_dump(by_alias=True, mode="json") if self.vehicle_entry else None
            )
        return updates


class SlotOut(CamelModel):
    id: int
    lot_id: int
    slot_number: int
    status: str
    confidence: float
    vehicle_entry: Optional[Dict[str, Any]] = None
    version: int
    updated_at: datetime


# --- Reservations ---
class ReservationIn(CamelModel):
    slot_id: int
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return _aware_utc(v)


class ReservationOut(CamelModel):
    id: int
    user_id: int
    slot_id: int
    lot_id: int
    status: str
    reservation_time: datetime
    start_time: datetime
    end_time: datetime
    price: float
    currency: str
    payment_status: str
    qr_code: str


class SlotEventOut(CamelModel):
    id: int
    slot_id: int
    lot_id: int
    previous_status: str
    status: str
    confidence: Optional[float] = None
    delta: int
    source: str
    actor_id: Optional[int] = None
    timestamp: datetime


def dump(model_cls, obj) -> Dict[str, Any]:
    return model_cls.model_validate(obj).model_dump(by_alias=True, mode="json")


def dump_all(model_cls, objs) -> List[Dict[str, Any]]:
    return [dump(model_cls, o) for o in objs]

# backend/smartpark/reservations.py
import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Tuple

from sqlmodel import Session, select

from .config import DEFAULT_HOURLY_RATE
from .db import ParkingLot, ParkingSlot, Reservation, utcnow
from .errors import Conflict, InvalidInput, NotFound
from .slot_state import SlotStateStore, SlotTransition
from .transitions import SlotStatus

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("confirmed", "active")
TERMINAL_STATUSES = ("completed", "cancelled")


def quote_price(lot: ParkingLot, start_time: datetime, end_time: datetime) -> float:
    hours = (end_time - start_time).total_seconds() / 3600
    rate = lot.hourly_rate if lot is not None and lot.hourly_rate is not None else DEFAULT_HOURLY_RATE
    return round(hours * rate, 2)


def make_qr_code() -> str:
    return f"QR_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


async def create_reservation(store: SlotStateStore, user_id: int, slot_id: int,
                             start_time: datetime, end_time: datetime) -> Tuple[Reservation, SlotTransition]:
    """Reserve an available slot. The slot moves to `reserved` in the same transaction."""
    if start_time >= end_time:
        raise InvalidInput("startTime must be before endTime")

    loop = asyncio.get_running_loop()
    async with store.slot_lock(slot_id):
        reservation, transition = await loop.run_in_executor(
            None, _reserve, store, user_id, slot_id, start_time, end_time)

    logger.info(f"RESERVATION: {reservation.id} created for slot {slot_id} by user {user_id}")
    await store.publish(transition)
    return reservation, transition


def _reserve(store: SlotStateStore, user_id: int, slot_id: int,
             start_time: datetime, end_time: datetime) -> Tuple[Reservation, SlotTransition]:
    with Session(store.engine) as session:
        try:
            slot = session.get(ParkingSlot, slot_id)
            if slot is None:
                raise NotFound("Parking slot not found")
            if slot.status != SlotStatus.AVAILABLE.value:
                raise Conflict("Parking slot is not available")

            overlapping = session.exec(
                select(Reservation).where(
                    Reservation.slot_id == slot_id,
                    Reservation.status.in_(ACTIVE_STATUSES),
                    Reservation.start_time <= end_time,
                    Reservation.end_time >= start_time,
                )
            ).first()
            if overlapping is not None:
                raise Conflict("Slot already reserved for this time period")

            lot = session.get(ParkingLot, slot.lot_id)
            now = utcnow()
            reservation = Reservation(
                user_id=user_id, slot_id=slot_id, lot_id=slot.lot_id,
                status="confirmed", reservation_time=now,
                start_time=start_time, end_time=end_time,
                price=quote_price(lot, start_time, end_time),
                currency=lot.currency if lot is not None else "USD",
                payment_status="pending", qr_code=make_qr_code(),
                created_at=now, updated_at=now,
            )
            transition = store.transition(
                session, slot_id, {"status": SlotStatus.RESERVED.value},
                expected_status=SlotStatus.AVAILABLE.value, source="reservation", actor_id=user_id,
            )
            session.add(reservation)
            session.commit()
            session.refresh(reservation)
            session.expunge(reservation)
        except Exception:
            session.rollback()
            raise
    return reservation, transition


async def cancel_reservation(store: SlotStateStore, user_id: int, reservation_id: int) -> Tuple[Reservation, SlotTransition]:
    """Cancel an open reservation and free its slot."""
    loop = asyncio.get_running_loop()
    slot_id = await loop.run_in_executor(None, _reserved_slot_id, store, user_id, reservation_id)

    async with store.slot_lock(slot_id):
        reservation, transition = await loop.run_in_executor(
            None, _cancel, store, user_id, reservation_id, slot_id)

    logger.info(f"RESERVATION: {reservation_id} cancelled by user {user_id}, slot {slot_id} freed")
    await store.publish(transition)
    return reservation, transition


def _reserved_slot_id(store: SlotStateStore, user_id: int, reservation_id: int) -> int:
    with Session(store.engine) as session:
        reservation = session.exec(
            select(Reservation).where(Reservation.id == reservation_id, Reservation.user_id == user_id)
        ).first()
        if reservation is None:
            raise NotFound("Reservation not found")
        return reservation.slot_id


def _cancel(store: SlotStateStore, user_id: int, reservation_id: int,
            slot_id: int) -> Tuple[Reservation, SlotTransition]:
    with Session(store.engine) as session:
        try:
            reservation = session.get(Reservation, reservation_id)
            if reservation.status in TERMINAL_STATUSES:
                raise InvalidInput("Cannot cancel this reservation")
            now = utcnow()
            reservation.status = "cancelled"
            reservation.updated_at = now
            session.add(reservation)
            session.flush()
            transition = store.transition(
                session, slot_id, {"status": SlotStatus.AVAILABLE.value},
                source="reservation", actor_id=user_id,
            )
            session.commit()
            session.refresh(reservation)
            session.expunge(reservation)
        except Exception:
            session.rollback()
            raise
    return reservation, transition

# backend/smartpark/slot_state.py
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from .config import SLOT_UPDATE_MAX_RETRIES
from .db import ParkingLot, ParkingSlot, SlotEvent, isoformat, utcnow
from .errors import Conflict, InvalidInput, NotFound, StaleSlotError
from .transitions import validate

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("status", "confidence", "vehicle_entry")


@dataclass
class SlotTransition:
    slot_id: int
    lot_id: int
    previous_status: str
    status: str
    delta: int
    # subscriber-visible fields: status?, confidence?, vehicleEntry?, updatedAt
    updates: Dict[str, Any] = field(default_factory=dict)
    slot: Optional[ParkingSlot] = None


class SlotStateStore:
    """
    Canonical owner of slot status and lot availability counters.

    A transition is one database transaction: a compare-and-swap write on the
    slot's version, the lot counter increment, and a SlotEvent row. Writers on
    the same slot inside this process queue on a per-slot lock; writers in other
    processes lose the version check and are retried.
    """

    def __init__(self, engine, hub=None, max_retries: int = SLOT_UPDATE_MAX_RETRIES):
        self.engine = engine
        self.hub = hub
        self.max_retries = max_retries
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def slot_lock(self, slot_id: int):
        async with self._locks[slot_id]:
            yield

    async def apply_transition(self, slot_id: int, updates: Mapping[str, Any],
                               expected_status: Optional[str] = None,
                               source: str = "api", actor_id: Optional[int] = None) -> SlotTransition:
        """Apply `updates` to a slot, commit, then publish. Raises NotFound, InvalidInput or Conflict."""
        loop = asyncio.get_running_loop()
        async with self.slot_lock(slot_id):
            for attempt in range(1, self.max_retries + 1):
                try:
                    result = await loop.run_in_executor(
                        None, self._commit_transition, slot_id, updates, expected_status, source, actor_id)
                except StaleSlotError:
                    logger.warning(f"STORE: Slot {slot_id} changed concurrently (attempt {attempt}/{self.max_retries}).")
                    continue
                break
            else:
                raise Conflict(f"Slot {slot_id} is being updated concurrently, retry later")
        await self.publish(result)
        return result

    def _commit_transition(self, slot_id: int, updates: Mapping[str, Any], expected_status: Optional[str],
                           source: str, actor_id: Optional[int]) -> SlotTransition:
        with Session(self.engine) as session:
            try:
                result = self.transition(session, slot_id, updates, expected_status, source, actor_id)
                session.commit()
            except Exception:
                session.rollback()
                raise
            result.slot = self._load_slot(session, slot_id)
        return result

    def transition(self, session: Session, slot_id: int, updates: Mapping[str, Any],
                   expected_status: Optional[str] = None,
                   source: str = "api", actor_id: Optional[int] = None) -> SlotTransition:
        """Perform the slot write and counter adjustment inside the caller's transaction."""
        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Unknown slot fields: {', '.join(sorted(unknown))}")

        slot = session.get(ParkingSlot, slot_id)
        if slot is None:
            raise NotFound("Parking slot not found")
        previous_status, version, lot_id = slot.status, slot.version, slot.lot_id

        if expected_status is not None and previous_status != expected_status:
            raise Conflict(f"Parking slot is {previous_status}, expected {expected_status}")

        requested = updates.get("status")
        verdict = validate(previous_status, requested, updates.get("confidence"))
        if not verdict.accepted:
            raise InvalidInput(verdict.reason)

        now = utcnow()
        values: Dict[str, Any] = {k: updates[k] for k in UPDATABLE_FIELDS if k in updates}
        values["updated_at"] = now
        values["version"] = version + 1
        stmt = (
            update(ParkingSlot)
            .where(ParkingSlot.id == slot_id, ParkingSlot.version == version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if session.exec(stmt).rowcount != 1:
            raise StaleSlotError(f"Slot {slot_id} version {version} is stale")

        if verdict.delta:
            self.adjust_lot_counter(session, lot_id, verdict.delta)

        new_status = requested if requested is not None else previous_status
        session.add(SlotEvent(
            slot_id=slot_id, lot_id=lot_id, previous_status=previous_status, status=new_status,
            confidence=updates.get("confidence"), delta=verdict.delta, source=source,
            actor_id=actor_id, timestamp=now,
        ))
        session.flush()

        wire_updates: Dict[str, Any] = {}
        if "status" in updates:
            wire_updates["status"] = updates["status"]
        if "confidence" in updates:
            wire_updates["confidence"] = updates["confidence"]
        if "vehicle_entry" in updates:
            wire_updates["vehicleEntry"] = updates["vehicle_entry"]
        wire_updates["updatedAt"] = isoformat(now)

        logger.info(f"STORE: Slot {slot_id} (lot {lot_id}) {previous_status} -> {new_status}, delta {verdict.delta:+d}")
        return SlotTransition(slot_id=slot_id, lot_id=lot_id, previous_status=previous_status,
                              status=new_status, delta=verdict.delta, updates=wire_updates)

    def adjust_lot_counter(self, session: Session, lot_id: int, delta: int) -> None:
        """Atomically add `delta` to the lot's available counter, staying within [0, total]."""
        new_value = ParkingLot.available_slots + delta
        stmt = (
            update(ParkingLot)
            .where(ParkingLot.id == lot_id, new_value >= 0, new_value <= ParkingLot.total_slots)
            .values(available_slots=new_value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if session.exec(stmt).rowcount == 1:
            return
        if session.get(ParkingLot, lot_id) is None:
            raise NotFound("Parking lot not found")
        # the cached counter no longer matches the slots; rebuild it in this transaction
        logger.warning(f"STORE: Lot {lot_id} counter out of range for delta {delta:+d}; recounting from slots.")
        self._recount(session, lot_id)

    def reconcile_lot(self, session: Session, lot_id: int) -> Optional[ParkingLot]:
        """Recount one lot. Returns the lot if its counter had to be corrected."""
        lot = self._lock_lot(session, lot_id)
        if lot is None:
            raise NotFound("Parking lot not found")
        before = lot.available_slots
        actual = self._recount(session, lot_id)
        if actual != before:
            logger.warning(f"STORE: Lot {lot_id} available_slots corrected {before} -> {actual}")
            return lot
        return None

    def reconcile_all(self) -> List[int]:
        """Recount every lot, one transaction per lot; returns ids of lots that were corrected."""
        corrected: List[int] = []
        with Session(self.engine) as session:
            lot_ids = session.exec(select(ParkingLot.id)).all()
            for lot_id in lot_ids:
                try:
                    if self.reconcile_lot(session, lot_id) is not None:
                        corrected.append(lot_id)
                    session.commit()
                except NotFound:
                    # deleted since the id scan
                    session.rollback()
        logger.info(f"STORE: Reconciled {len(lot_ids)} lots, corrected {len(corrected)}.")
        return corrected

    async def publish(self, transition: SlotTransition) -> None:
        if self.hub is None:
            return
        try:
            await self.hub.publish_transition(transition)
        except Exception as e:
            # the write is committed; subscribers reconcile by re-fetching
            logger.error(f"STORE: Broadcast failed for slot {transition.slot_id}: {e}", exc_info=True)

    def _lock_lot(self, session: Session, lot_id: int) -> Optional[ParkingLot]:
        # row lock: a transition touching this lot commits before or after the count, never during
        return session.exec(
            select(ParkingLot).where(ParkingLot.id == lot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def _recount(self, session: Session, lot_id: int) -> int:
        self._lock_lot(session, lot_id)
        available = session.exec(
            select(func.count()).select_from(ParkingSlot)
            .where(ParkingSlot.lot_id == lot_id, ParkingSlot.status == "available")
        ).one()
        session.exec(
            update(ParkingLot)
            .where(ParkingLot.id == lot_id)
            .values(available_slots=available, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.expire_all()
        return available

    def _load_slot(self, session: Session, slot_id: int) -> ParkingSlot:
        slot = session.get(ParkingSlot, slot_id, populate_existing=True)
        session.expunge(slot)
        return slot

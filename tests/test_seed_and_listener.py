import json
import random

from sqlalchemy import func
from sqlmodel import Session, select

from smartpark.auth import check_password
from smartpark.db import ParkingLot, ParkingSlot, User, engine
from smartpark.listener import describe, subscribe_frames
from smartpark.seed import DEMO_LOTS, DEMO_PASSWORD, seed_demo_data
from smartpark.slot_state import SlotStateStore


def test_seed_counters_match_slots():
    with Session(engine) as s:
        seeded = seed_demo_data(s, rng=random.Random(7))
        assert len(seeded["lots"]) == len(DEMO_LOTS)
        for lot in s.exec(select(ParkingLot)).all():
            available = s.exec(select(func.count()).select_from(ParkingSlot).where(
                ParkingSlot.lot_id == lot.id, ParkingSlot.status == "available")).one()
            assert lot.available_slots == available
            assert s.exec(select(func.count()).select_from(ParkingSlot).where(
                ParkingSlot.lot_id == lot.id)).one() == lot.total_slots
        admin = s.exec(select(User).where(User.email == "admin@parking.com")).one()
        assert admin.role == "admin"
        assert check_password(DEMO_PASSWORD, admin.password_hash)

    assert SlotStateStore(engine).reconcile_all() == []


def test_seed_twice_keeps_users_unique():
    with Session(engine) as s:
        seed_demo_data(s, rng=random.Random(1))
        seed_demo_data(s, rng=random.Random(2))
        assert s.exec(select(func.count()).select_from(User)).one() == 3


def test_listener_subscribe_frames():
    frames = [json.loads(f) for f in subscribe_frames([1, 2])]
    assert frames == [
        {"event": "subscribe", "data": {"type": "lot", "id": 1}},
        {"event": "subscribe", "data": {"type": "lot", "id": 2}},
    ]


def test_listener_describe():
    slot_frame = json.dumps({"event": "slot:updated", "data": {
        "type": "slot.status_changed", "slotId": 4, "lotId": 1,
        "updates": {"status": "occupied", "confidence": 0.9}}})
    assert "lot 1 slot 4: occupied" in describe(slot_frame)
    assert "availability -1" in describe(json.dumps({"event": "lot:updated", "data": {"lotId": 1, "delta": -1}}))
    assert describe("nope").startswith("??")

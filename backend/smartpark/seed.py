"""Create tables and load demo users, lots and slots.

    python -m smartpark.seed [--reset]
"""
import argparse
import logging
import random
from typing import Dict, List, Optional

from sqlmodel import Session, select

from .auth import hash_password
from .db import ParkingLot, ParkingSlot, User, drop_db, engine, init_db

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"

DEMO_USERS = [
    {"email": "admin@parking.com", "name": "Admin User", "phone": "+1234567890", "role": "admin"},
    {"email": "staff@parking.com", "name": "Jane Smith", "phone": "+1234567891", "role": "staff"},
    {"email": "user@parking.com", "name": "John Doe", "phone": "+1234567892", "role": "user",
     "profile": {"vehicleInfo": {"licensePlate": "ABC-1234", "vehicleType": "car"}}},
]

DEMO_LOTS = [
    {"name": "Downtown Plaza Parking", "address": "123 Main St", "latitude": 40.7128, "longitude": -74.0060,
     "total_slots": 40, "traffic_condition": "heavy", "hourly_rate": 5.0},
    {"name": "Airport Long-Term Lot", "address": "1 Terminal Rd", "latitude": 40.6413, "longitude": -73.7781,
     "total_slots": 60, "traffic_condition": "moderate", "hourly_rate": 2.5},
    {"name": "University Garage", "address": "500 College Ave", "latitude": 40.7295, "longitude": -73.9965,
     "total_slots": 25, "traffic_condition": "low", "hourly_rate": 3.0},
]

# initial mix of slot statuses for demo data
STATUS_WEIGHTS = {"available": 0.55, "occupied": 0.35, "reserved": 0.05, "maintenance": 0.05}


def seed_demo_data(session: Session, rng: Optional[random.Random] = None) -> Dict[str, List]:
    """Insert demo rows. Each lot's available counter matches its generated slots."""
    rng = rng or random.Random()
    users = []
    for spec in DEMO_USERS:
        existing = session.exec(select(User).where(User.email == spec["email"])).first()
        if existing:
            users.append(existing)
            continue
        user = User(password_hash=hash_password(DEMO_PASSWORD), **spec)
        session.add(user)
        users.append(user)

    lots = []
    statuses, weights = zip(*STATUS_WEIGHTS.items())
    for spec in DEMO_LOTS:
        lot = ParkingLot(**spec, available_slots=0)
        session.add(lot)
        session.flush()
        available = 0
        for number in range(1, spec["total_slots"] + 1):
            status = rng.choices(statuses, weights)[0]
            available += status == "available"
            session.add(ParkingSlot(
                lot_id=lot.id, slot_number=number, status=status,
                confidence=round(rng.uniform(0.85, 0.99), 2),
            ))
        lot.available_slots = available
        session.add(lot)
        lots.append(lot)
        logger.info(f"SEED: Lot '{lot.name}' with {spec['total_slots']} slots, {available} available.")

    session.commit()
    return {"users": users, "lots": lots}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed the parking database with demo data.")
    parser.add_argument("--reset", action="store_true", help="drop all tables first")
    args = parser.parse_args(argv)

    if args.reset:
        logger.warning("SEED: Dropping all tables.")
        drop_db()
    init_db()
    with Session(engine) as session:
        seeded = seed_demo_data(session)
    logger.info(f"SEED: Done. {len(seeded['users'])} users, {len(seeded['lots'])} lots. Password: {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()

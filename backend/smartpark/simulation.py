# backend/smartpark/simulation.py
"""
Simulated AI camera feed.

Logs in through the public API and keeps pushing slot status / confidence
updates the same way an edge detector would. It is just another API client:
every update goes through PUT /slots/{id} and the normal broadcast path.

    python -m smartpark.simulation --api-url http://localhost:8000/api/v1
"""
import argparse
import logging
import os
import random
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Status weights for realistic simulation
STATUS_TRANSITIONS = {
    "available": [("occupied", 0.3), ("reserved", 0.05), ("available", 0.65)],
    "occupied": [("available", 0.2), ("occupied", 0.8)],
    "reserved": [("occupied", 0.7), ("available", 0.1), ("reserved", 0.2)],
    "maintenance": [("available", 0.1), ("maintenance", 0.9)],
}


class SimulationDriver:
    def __init__(self, api_url: str, email: str, password: str,
                 http: Optional[requests.Session] = None, rng: Optional[random.Random] = None,
                 timeout: float = 5.0):
        self.api_url = api_url.rstrip("/")
        self.email = email
        self.password = password
        self.http = http or requests.Session()
        self.rng = rng or random.Random()
        self.timeout = timeout
        self.token: Optional[str] = None
        self.lot: Optional[Dict[str, Any]] = None
        self.slots: List[Dict[str, Any]] = []

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def login(self) -> bool:
        logger.info(f"SIM: Logging in as {self.email}...")
        try:
            response = self.http.post(f"{self.api_url}/auth/login",
                                      json={"email": self.email, "password": self.password},
                                      timeout=self.timeout)
            response.raise_for_status()
            self.token = response.json()["data"]["token"]
            logger.info("SIM: Login successful.")
            return True
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.error(f"SIM: Login failed: {e}")
            return False

    def fetch_slots(self, lot_index: int = 0) -> bool:
        if not self.token:
            return False
        try:
            lots = self.http.get(f"{self.api_url}/lots", headers=self._headers(), timeout=self.timeout)
            lots.raise_for_status()
            lot_list = lots.json()["data"]
            if not lot_list:
                logger.warning("SIM: No parking lots found.")
                return False
            self.lot = lot_list[lot_index % len(lot_list)]
            logger.info(f"SIM: Fetching slots for lot: {self.lot['name']}")
            slots = self.http.get(f"{self.api_url}/lots/{self.lot['id']}/slots",
                                  params={"limit": 1000}, headers=self._headers(), timeout=self.timeout)
            slots.raise_for_status()
            self.slots = slots.json()["data"]
            logger.info(f"SIM: Loaded {len(self.slots)} slots for simulation.")
            return True
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.error(f"SIM: Failed to fetch slots: {e}")
            return False

    def next_status(self, current: str) -> str:
        transitions = STATUS_TRANSITIONS.get(current, STATUS_TRANSITIONS["available"])
        roll = self.rng.random()
        cumulative = 0.0
        for status, weight in transitions:
            cumulative += weight
            if roll <= cumulative:
                return status
        return current

    def generate_confidence(self, status: str) -> float:
        if status in ("occupied", "available"):
            return round(0.85 + self.rng.random() * 0.14, 3)
        return round(0.70 + self.rng.random() * 0.25, 3)

    def update_random_slot(self) -> Optional[Dict[str, Any]]:
        """Push one synthetic detection. Returns the updated slot, or None if skipped/failed."""
        if not self.slots or not self.token:
            return None
        index = self.rng.randrange(len(self.slots))
        slot = self.slots[index]
        previous = slot["status"]
        new_status = self.next_status(previous)
        # unchanged status is only re-sent sometimes, as a confidence refresh
        if new_status == previous and self.rng.random() > 0.3:
            return None
        confidence = self.generate_confidence(new_status)
        try:
            response = self.http.put(f"{self.api_url}/slots/{slot['id']}",
                                     json={"status": new_status, "confidence": confidence},
                                     headers=self._headers(), timeout=self.timeout)
            if response.status_code == 401:
                logger.warning("SIM: Token expired, re-logging in...")
                self.login()
                return None
            response.raise_for_status()
            updated = response.json()["data"]
        except (requests.RequestException, KeyError, ValueError) as e:
            # a timed-out update may still have been applied; the next refresh resyncs
            logger.error(f"SIM: Error updating slot {slot.get('slotNumber')}: {e}")
            return None
        self.slots[index] = updated
        logger.info(f"SIM: Slot {updated.get('slotNumber')} {previous} -> {new_status} ({confidence * 100:.1f}%)")
        return updated

    def burst(self, count: int, spacing: float = 0.5) -> int:
        logger.info(f"SIM: Batch burst: {count} updates")
        done = 0
        for i in range(count):
            if self.update_random_slot() is not None:
                done += 1
            if spacing and i < count - 1:
                time.sleep(spacing)
        return done

    def run(self, iterations: Optional[int] = None, min_interval: float = 2.0, max_interval: float = 5.0,
            burst_every: float = 20.0, refresh_every: float = 300.0) -> None:
        if not self.login():
            raise SystemExit("SIM: Login failed.")
        if not self.fetch_slots():
            raise SystemExit("SIM: Data fetch failed.")

        logger.info(f"SIM: Simulation running against {self.api_url}")
        last_burst = last_refresh = time.monotonic()
        done = 0
        while iterations is None or done < iterations:
            self.update_random_slot()
            done += 1
            now = time.monotonic()
            if now - last_burst >= burst_every:
                self.burst(2 + self.rng.randrange(3))
                last_burst = now
            if now - last_refresh >= refresh_every:
                logger.info("SIM: Refreshing slot cache...")
                self.fetch_slots()
                last_refresh = now
            time.sleep(self.rng.uniform(min_interval, max_interval))


def main(argv=None):
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    parser = argparse.ArgumentParser(description="Simulate AI slot detections against the parking API.")
    parser.add_argument("--api-url", default=os.getenv("API_URL", "http://localhost:8000/api/v1"))
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL", "admin@parking.com"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD", "password123"))
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    driver = SimulationDriver(args.api_url, args.email, args.password, rng=random.Random(args.seed))
    try:
        driver.run(iterations=args.iterations)
    except KeyboardInterrupt:
        logger.info("SIM: Stopping AI simulation...")


if __name__ == "__main__":
    main()

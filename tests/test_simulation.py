import random
from unittest.mock import MagicMock

import pytest

from smartpark.simulation import STATUS_TRANSITIONS, SimulationDriver


class ScriptedRandom:
    """Returns queued values from random(); randrange always picks the first slot."""

    def __init__(self, values):
        self.values = list(values)

    def random(self):
        return self.values.pop(0)

    def randrange(self, n):
        return 0

    def uniform(self, a, b):
        return a


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def make_driver(rng=None, http=None):
    return SimulationDriver("http://api.test/api/v1/", "admin@parking.com", "password123",
                            http=http or MagicMock(), rng=rng or random.Random(0))


def test_transition_weights_sum_to_one():
    for status, transitions in STATUS_TRANSITIONS.items():
        assert sum(w for _, w in transitions) == pytest.approx(1.0), status


@pytest.mark.parametrize("roll,current,expected", [
    (0.10, "available", "occupied"),
    (0.32, "available", "reserved"),
    (0.90, "available", "available"),
    (0.15, "occupied", "available"),
    (0.50, "reserved", "occupied"),
    (0.95, "maintenance", "maintenance"),
])
def test_next_status_follows_weights(roll, current, expected):
    driver = make_driver(rng=ScriptedRandom([roll]))
    assert driver.next_status(current) == expected


def test_confidence_ranges():
    driver = make_driver(rng=random.Random(5))
    for _ in range(200):
        assert 0.85 <= driver.generate_confidence("occupied") <= 0.99
        assert 0.70 <= driver.generate_confidence("maintenance") <= 0.95


def test_login_stores_token():
    http = MagicMock()
    http.post.return_value = response(payload={"success": True, "data": {"token": "tok"}})
    driver = make_driver(http=http)
    assert driver.login()
    assert driver.token == "tok"
    http.post.assert_called_once_with("http://api.test/api/v1/auth/login",
                                      json={"email": "admin@parking.com", "password": "password123"},
                                      timeout=5.0)


def test_fetch_slots_loads_first_lot():
    http = MagicMock()
    http.get.side_effect = [
        response(payload={"data": [{"id": 3, "name": "Downtown"}]}),
        response(payload={"data": [{"id": 30, "slotNumber": 1, "status": "available"}]}),
    ]
    driver = make_driver(http=http)
    driver.token = "tok"
    assert driver.fetch_slots()
    assert driver.lot["id"] == 3
    assert driver.slots[0]["id"] == 30
    assert http.get.call_args_list[1].args[0] == "http://api.test/api/v1/lots/3/slots"


def test_update_random_slot_puts_new_status():
    http = MagicMock()
    updated = {"id": 30, "slotNumber": 1, "status": "occupied", "confidence": 0.92}
    http.put.return_value = response(payload={"success": True, "data": updated})
    # 0.1 -> occupied, 0.5 -> confidence 0.92
    driver = make_driver(rng=ScriptedRandom([0.1, 0.5]), http=http)
    driver.token = "tok"
    driver.slots = [{"id": 30, "slotNumber": 1, "status": "available"}]

    assert driver.update_random_slot() == updated
    http.put.assert_called_once_with("http://api.test/api/v1/slots/30",
                                     json={"status": "occupied", "confidence": 0.92},
                                     headers={"Authorization": "Bearer tok"}, timeout=5.0)
    assert driver.slots[0]["status"] == "occupied"


def test_unchanged_status_is_usually_skipped():
    http = MagicMock()
    # 0.9 -> stays available, 0.8 > 0.3 -> skip
    driver = make_driver(rng=ScriptedRandom([0.9, 0.8]), http=http)
    driver.token = "tok"
    driver.slots = [{"id": 30, "slotNumber": 1, "status": "available"}]
    assert driver.update_random_slot() is None
    http.put.assert_not_called()


def test_expired_token_triggers_relogin():
    http = MagicMock()
    http.put.return_value = response(status_code=401)
    http.post.return_value = response(payload={"data": {"token": "fresh"}})
    driver = make_driver(rng=ScriptedRandom([0.1, 0.5]), http=http)
    driver.token = "stale"
    driver.slots = [{"id": 30, "slotNumber": 1, "status": "available"}]
    assert driver.update_random_slot() is None
    assert driver.token == "fresh"
    assert driver.slots[0]["status"] == "available"


def test_no_slots_means_no_requests():
    http = MagicMock()
    driver = make_driver(http=http)
    driver.token = "tok"
    assert driver.update_random_slot() is None
    http.put.assert_not_called()

import pytest

from smartpark.transitions import SLOT_STATUSES, SlotStatus, validate


@pytest.mark.parametrize("current,requested,delta", [
    ("available", "occupied", -1),
    ("occupied", "available", 1),
    ("occupied", "reserved", 0),
    ("reserved", "available", 1),
    ("maintenance", "maintenance", 0),
    ("available", "maintenance", -1),
    ("maintenance", "reserved", 0),
])
def test_delta_table(current, requested, delta):
    result = validate(current, requested)
    assert result.accepted
    assert result.delta == delta
    assert result.reason is None


@pytest.mark.parametrize("status", sorted(SLOT_STATUSES))
def test_same_status_is_accepted_with_zero_delta(status):
    result = validate(status, status, confidence=0.42)
    assert result.accepted and result.delta == 0


def test_every_target_is_legal_from_every_status():
    for current in SLOT_STATUSES:
        for requested in SLOT_STATUSES:
            assert validate(current, requested).accepted


def test_status_outside_enum_is_rejected():
    result = validate("available", "flying")
    assert not result.accepted
    assert result.delta == 0
    assert "flying" in result.reason


def test_metadata_only_update_keeps_counter():
    result = validate("available", None, confidence=0.9)
    assert result.accepted and result.delta == 0


def test_enum_members_accepted():
    assert validate(SlotStatus.OCCUPIED, SlotStatus.AVAILABLE).delta == 1


def test_confidence_never_gates_validity():
    assert validate("available", "occupied", confidence=-3).accepted
    assert validate("available", "occupied", confidence=7.5).delta == -1

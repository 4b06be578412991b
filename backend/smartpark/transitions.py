# backend/smartpark/transitions.py
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


SLOT_STATUSES = frozenset(s.value for s in SlotStatus)


@dataclass(frozen=True)
class TransitionResult:
    accepted: bool
    delta: int
    reason: Optional[str] = None


def validate(current_status: str, requested_status: Optional[str], confidence: Optional[float] = None) -> TransitionResult:
    """
    Decides whether a slot may move from `current_status` to `requested_status`
    and computes the change to the lot's available-slot counter.

    Every known status is a legal target from every other status; only values
    outside the enum are refused. `requested_status=None` means a metadata-only
    update (confidence, vehicle entry) and keeps the counter unchanged.
    Confidence is carried for the caller but never affects the outcome.
    """
    if requested_status is None:
        return TransitionResult(accepted=True, delta=0)

    requested = requested_status.value if isinstance(requested_status, SlotStatus) else requested_status
    if requested not in SLOT_STATUSES:
        return TransitionResult(
            accepted=False,
            delta=0,
            reason=f"Invalid status '{requested}'. Expected one of: {', '.join(sorted(SLOT_STATUSES))}",
        )

    current = current_status.value if isinstance(current_status, SlotStatus) else current_status
    was_available = current == SlotStatus.AVAILABLE.value
    is_available = requested == SlotStatus.AVAILABLE.value
    delta = (-1 if was_available else 0) + (1 if is_available else 0)
    return TransitionResult(accepted=True, delta=delta)

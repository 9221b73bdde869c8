"""Shipment lifecycle state machine.

Holds the legal status transitions and the mapping from raw carrier
status codes to ShipmentStatus. The shipment service consults these
functions on every status change; nothing here touches the database.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol

from shipdesk.db.models import ShipmentStatus
from shipdesk.errors import InvalidStateTransition

logger = logging.getLogger(__name__)


# Valid state transitions for the shipment lifecycle
VALID_TRANSITIONS: dict[ShipmentStatus, list[ShipmentStatus]] = {
    ShipmentStatus.pending: [ShipmentStatus.created],
    ShipmentStatus.created: [
        ShipmentStatus.in_transit,
        ShipmentStatus.exception,
        ShipmentStatus.cancelled,
    ],
    ShipmentStatus.in_transit: [
        ShipmentStatus.delivered,
        ShipmentStatus.exception,
        ShipmentStatus.returned,
    ],
    ShipmentStatus.exception: [
        ShipmentStatus.in_transit,
        ShipmentStatus.delivered,
        ShipmentStatus.returned,
    ],
    ShipmentStatus.delivered: [],  # terminal
    ShipmentStatus.returned: [],  # terminal
    ShipmentStatus.cancelled: [],  # terminal
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Raw carrier status code (lowercase) -> shipment status
CARRIER_STATUS_MAP: dict[str, ShipmentStatus] = {
    "picked_up": ShipmentStatus.in_transit,
    "in_transit": ShipmentStatus.in_transit,
    "departed_facility": ShipmentStatus.in_transit,
    "arrived_at_facility": ShipmentStatus.in_transit,
    "out_for_delivery": ShipmentStatus.in_transit,
    "delivered": ShipmentStatus.delivered,
    "exception": ShipmentStatus.exception,
    "delivery_attempted": ShipmentStatus.exception,
    "held_at_customs": ShipmentStatus.exception,
    "address_issue": ShipmentStatus.exception,
    "damaged": ShipmentStatus.exception,
    "returned": ShipmentStatus.returned,
    "return_to_sender": ShipmentStatus.returned,
}


def _validate_status_map(mapping: dict[str, ShipmentStatus]) -> None:
    """Reject maps that target unknown or pre-shipment statuses."""
    forbidden = {ShipmentStatus.pending, ShipmentStatus.created, ShipmentStatus.cancelled}
    for code, status in mapping.items():
        if not isinstance(status, ShipmentStatus):
            raise ValueError(f"Carrier status '{code}' maps to non-status {status!r}")
        if status in forbidden:
            raise ValueError(
                f"Carrier status '{code}' may not map to '{status.value}'"
            )
        if code != code.lower():
            raise ValueError(f"Carrier status code '{code}' must be lowercase")


_validate_status_map(CARRIER_STATUS_MAP)


class _DatedEvent(Protocol):
    event_date: str
    carrier_status: str


def allowed_transitions(current: ShipmentStatus) -> list[ShipmentStatus]:
    """Legal targets from ``current``."""
    return VALID_TRANSITIONS[current]


def is_terminal(status: ShipmentStatus) -> bool:
    """True for statuses with no outgoing transitions."""
    return status in TERMINAL_STATUSES


def validate_transition(current: ShipmentStatus, target: ShipmentStatus) -> None:
    """Raise unless ``current -> target`` is a legal transition.

    Raises:
        InvalidStateTransition: The move is not in VALID_TRANSITIONS.
    """
    allowed = VALID_TRANSITIONS[current]
    if target not in allowed:
        raise InvalidStateTransition(
            current.value, target.value, [s.value for s in allowed],
        )


def status_for_code(carrier_status: str) -> ShipmentStatus | None:
    """Map a raw carrier status code, or None if the code is unknown."""
    return CARRIER_STATUS_MAP.get(carrier_status.strip().lower())


def normalize_event_date(value: str | datetime) -> str:
    """Normalize an event timestamp to a UTC ISO8601 string.

    Naive timestamps are taken to be UTC. Normalizing makes stored event
    dates sort chronologically as strings.

    Raises:
        ValueError: Unparseable timestamp.
    """
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        parsed = value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat()


def derive_status(events: Iterable[_DatedEvent]) -> ShipmentStatus | None:
    """Status implied by the latest-dated event with a known carrier code.

    Events with the same date keep their given order, so the later one wins.

    Returns:
        The derived status, or None when no event carries a known code.
    """
    derived: ShipmentStatus | None = None
    for event in sorted(events, key=lambda e: e.event_date):
        mapped = status_for_code(event.carrier_status)
        if mapped is not None:
            derived = mapped
    return derived


def next_status_after_events(
    current: ShipmentStatus,
    events: Iterable[_DatedEvent],
) -> ShipmentStatus | None:
    """Decide the status change caused by a shipment's events.

    Args:
        current: Shipment's current status.
        events: All events of the shipment, including the new one.

    Returns:
        The new status, or None when the status stays as it is (terminal
        shipment, no known codes, or derived status equals current).

    Raises:
        InvalidStateTransition: The derived status is not reachable from
            ``current``.
    """
    if is_terminal(current):
        return None
    derived = derive_status(events)
    if derived is None or derived == current:
        return None
    validate_transition(current, derived)
    return derived

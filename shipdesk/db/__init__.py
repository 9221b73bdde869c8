"""Database module for ShipDesk shipment persistence."""

from shipdesk.db.connection import (
    build_engine,
    configure,
    get_db_context,
    get_engine,
    init_db,
    new_session,
)
from shipdesk.db.models import (
    Base,
    DimensionUnit,
    IntentStatus,
    LabelIntent,
    NoteType,
    Shipment,
    ShipmentNote,
    ShipmentStatus,
    TrackingEvent,
)

__all__ = [
    # Models
    "Base",
    "Shipment",
    "TrackingEvent",
    "ShipmentNote",
    "LabelIntent",
    # Enums
    "ShipmentStatus",
    "NoteType",
    "DimensionUnit",
    "IntentStatus",
    # Connection
    "build_engine",
    "configure",
    "get_engine",
    "init_db",
    "new_session",
    "get_db_context",
]

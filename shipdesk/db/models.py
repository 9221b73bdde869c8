"""SQLAlchemy ORM models for the ShipDesk shipment database.

This module defines shipments, their tracking events and notes, and the
write-ahead label intent records used by batch label purchases. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class ShipmentStatus(str, Enum):
    """Lifecycle status of a shipment.

    Lifecycle: pending -> created -> in_transit -> delivered/exception/returned
               created -> exception
               exception -> in_transit/delivered/returned
               created -> cancelled (label voided before pickup)
    delivered, returned and cancelled are terminal.
    """

    pending = "pending"
    created = "created"
    in_transit = "in_transit"
    delivered = "delivered"
    exception = "exception"
    returned = "returned"
    cancelled = "cancelled"


class NoteType(str, Enum):
    """Who a shipment note is addressed to or written by."""

    customer = "customer"
    vendor = "vendor"
    system = "system"


class DimensionUnit(str, Enum):
    """Unit system for stored package dimensions."""

    imperial = "imperial"
    metric = "metric"


class IntentStatus(str, Enum):
    """Status values for write-ahead label intents.

    Lifecycle: pending -> purchased -> completed
               pending -> failed
    purchased means the carrier sold the label but no shipment row exists.
    """

    pending = "pending"
    purchased = "purchased"
    completed = "completed"
    failed = "failed"


UNRESOLVED_INTENT_STATUSES = (IntentStatus.pending.value, IntentStatus.purchased.value)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Shipment(Base):
    """One carrier shipment for an order.

    Attributes:
        id: UUID primary key
        order_id: Storefront order this shipment fulfils
        carrier: Carrier code (UPS, FEDEX, USPS, DHL)
        service_level: Carrier service name
        tracking_number: Carrier tracking number (set together with label_url)
        tracking_url: Public tracking page
        label_url: Printable label URL (set together with tracking_number)
        carrier_shipment_id: Carrier-side shipment identifier
        status: Current lifecycle status
        cost_cents: Label cost in cents (avoids floating point issues)
        damaged_reported: Set once when damage is reported
        is_return: True for return shipments
        return_of_id: Original shipment for a return
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    carrier: Mapped[str] = mapped_column(String(10), nullable=False)
    service_level: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ShipmentStatus.pending.value
    )

    # Label data
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    label_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    carrier_shipment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Package
    package_type: Mapped[str] = mapped_column(String(30), nullable=False, default="Package")
    signature: Mapped[str] = mapped_column(String(20), nullable=False, default="not_required")
    length: Mapped[float | None] = mapped_column(Float, nullable=True)
    width: Mapped[float | None] = mapped_column(Float, nullable=True)
    height: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str] = mapped_column(
        String(10), nullable=False, default=DimensionUnit.imperial.value
    )

    # Cost tracking (in cents to avoid float issues)
    cost_cents: Mapped[int | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Dates (ISO8601 strings)
    shipping_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    estimated_delivery_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actual_delivery_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    voided_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    refund_cents: Mapped[int | None] = mapped_column(nullable=True)

    damaged_reported: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )

    # Returns
    is_return: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    return_of_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("shipments.id"), nullable=True
    )
    return_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_authorized_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    return_authorized_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Timestamps
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    # Relationships
    events: Mapped[list["TrackingEvent"]] = relationship(
        "TrackingEvent",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by=lambda: [TrackingEvent.event_date, TrackingEvent.created_at],
    )
    notes: Mapped[list["ShipmentNote"]] = relationship(
        "ShipmentNote",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="ShipmentNote.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "(tracking_number IS NULL) = (label_url IS NULL)",
            name="ck_shipments_label_pair",
        ),
        Index("idx_shipments_order_id", "order_id"),
        Index("idx_shipments_status", "status"),
        Index("idx_shipments_created_at", "created_at"),
        Index(
            "uq_shipments_order_non_return",
            "order_id",
            unique=True,
            sqlite_where=text("is_return = 0 AND status != 'cancelled'"),
            postgresql_where=text("is_return = false AND status != 'cancelled'"),
        ),
    )

    @property
    def has_label(self) -> bool:
        """True once a label has been attached."""
        return self.tracking_number is not None and self.label_url is not None

    def __repr__(self) -> str:
        return (
            f"<Shipment(id={self.id!r}, order_id={self.order_id!r}, "
            f"carrier={self.carrier!r}, status={self.status!r})>"
        )


class TrackingEvent(Base):
    """One carrier scan or status update for a shipment.

    Rows are insert-only.

    Attributes:
        id: UUID primary key
        shipment_id: Foreign key to the shipment
        event_date: ISO8601 timestamp reported by the carrier
        location: Scan location, if reported
        description: Human-readable event text
        carrier_status: Raw carrier status code
        created_at: ISO8601 timestamp of ingestion
    """

    __tablename__ = "shipment_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    shipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    event_date: Mapped[str] = mapped_column(String(50), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    carrier_status: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="events")

    __table_args__ = (
        Index("idx_shipment_events_shipment_date", "shipment_id", "event_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrackingEvent(shipment_id={self.shipment_id!r}, "
            f"carrier_status={self.carrier_status!r}, event_date={self.event_date!r})>"
        )


class ShipmentNote(Base):
    """Append-only note on a shipment."""

    __tablename__ = "shipment_notes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    shipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    note_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NoteType.system.value
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="notes")

    __table_args__ = (
        Index("idx_shipment_notes_shipment_id", "shipment_id"),
    )

    def __repr__(self) -> str:
        return f"<ShipmentNote(shipment_id={self.shipment_id!r}, note_type={self.note_type!r})>"


class LabelIntent(Base):
    """Write-ahead record of a label purchase.

    Created before the carrier call so that a label the carrier sold can be
    recovered when the shipment row could not be written.

    Attributes:
        id: UUID primary key
        order_id: Order the label is being bought for
        carrier: Carrier code
        service_level: Carrier service name
        status: Intent status (pending, purchased, completed, failed)
        request_json: Package and address details of the request (JSON)
        tracking_number: Set once the carrier sold the label
        label_url: Set once the carrier sold the label
        shipment_id: Shipment created from this intent
        error_code: Error code if the purchase failed (E-XXXX format)
        error_message: Sanitized error message if the purchase failed
    """

    __tablename__ = "label_intents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    carrier: Mapped[str] = mapped_column(String(10), nullable=False)
    service_level: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IntentStatus.pending.value
    )
    request_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Label data copied from the carrier response
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    label_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    carrier_shipment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cost_cents: Mapped[int | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    estimated_delivery_date: Mapped[str | None] = mapped_column(String(50), nullable=True)

    shipment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("shipments.id"), nullable=True
    )

    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    __table_args__ = (
        Index("idx_label_intents_order_id", "order_id"),
        Index("idx_label_intents_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<LabelIntent(id={self.id!r}, order_id={self.order_id!r}, "
            f"status={self.status!r})>"
        )

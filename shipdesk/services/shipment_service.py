"""Shipment store implementing lifecycle operations with state validation.

This module is the only writer of shipments, tracking events, notes and
label intents. Every status change goes through shipment_state; every
public mutation either commits completely or leaves the database as it
was.
"""

import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shipdesk.db.models import (
    UNRESOLVED_INTENT_STATUSES,
    DimensionUnit,
    IntentStatus,
    LabelIntent,
    NoteType,
    Shipment,
    ShipmentNote,
    ShipmentStatus,
    TrackingEvent,
    utc_now_iso,
)
from shipdesk.errors import (
    ConflictError,
    DamageAlreadyReportedError,
    DuplicateShipmentError,
    NotFoundError,
    ShipmentNotShippedError,
    ValidationError,
)
from shipdesk.services.carrier_models import CarrierScan, LabelResponse
from shipdesk.services.carrier_services import parse_carrier
from shipdesk.services.shipment_state import (
    is_terminal,
    next_status_after_events,
    normalize_event_date,
    status_for_code,
    validate_transition,
)
from shipdesk.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

# Fields update() may change. Status and the return linkage are excluded.
UPDATABLE_FIELDS = frozenset({
    "service_level",
    "package_type",
    "signature",
    "length",
    "width",
    "height",
    "weight",
    "unit",
    "shipping_date",
    "estimated_delivery_date",
    "cost_cents",
    "currency",
    "tracking_number",
    "tracking_url",
    "label_url",
})

# Statuses in which nothing physical was handed to a carrier
_UNSHIPPED = frozenset({ShipmentStatus.pending.value, ShipmentStatus.cancelled.value})


def cost_to_cents(amount: str | float | None) -> int | None:
    """Convert a decimal amount string to cents using Decimal to avoid float drift.

    Args:
        amount: Amount such as "12.50", or None.

    Returns:
        Integer cents, or None for a missing or unparseable amount.
    """
    if amount is None or amount == "":
        return None
    try:
        return int(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100)
    except InvalidOperation:
        logger.warning("Unparseable cost %r, storing no cost", amount)
        return None


def _end_of_day(date_to: str) -> str:
    """Inclusive upper bound for a date-only filter value."""
    if len(date_to) == 10:
        return f"{date_to}T23:59:59.999999+00:00"
    return date_to


class ShipmentService:
    """Store for shipments, their events and notes, and label intents.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the store with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    def _commit(self) -> None:
        """Commit, rolling back on failure so the shared session stays usable."""
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # =========================================================================
    # Shipment CRUD
    # =========================================================================

    def create_shipment(
        self,
        order_id: str,
        carrier: str,
        service_level: str,
        package_type: str = "Package",
        signature: str = "not_required",
        length: float | None = None,
        width: float | None = None,
        height: float | None = None,
        weight: float | None = None,
        unit: str = DimensionUnit.imperial.value,
        estimated_delivery_date: str | None = None,
        cost_cents: int | None = None,
        is_return: bool = False,
        return_of_id: str | None = None,
        return_reason: str | None = None,
        return_authorized_by: str | None = None,
        commit: bool = True,
    ) -> Shipment:
        """Create a shipment in PENDING status.

        Args:
            order_id: Order the shipment fulfils.
            carrier: Carrier code (any case).
            service_level: Carrier service name.
            package_type: Packaging type.
            signature: Signature option.
            length: Package length.
            width: Package width.
            height: Package height.
            weight: Package weight.
            unit: "imperial" or "metric".
            estimated_delivery_date: ISO date, if known.
            cost_cents: Cost in cents, if known.
            is_return: True for a return shipment.
            return_of_id: Original shipment for a return.
            return_reason: Why the return was authorized.
            return_authorized_by: Who authorized the return.
            commit: Commit immediately (False when part of a larger transaction).

        Returns:
            The created Shipment.

        Raises:
            DuplicateShipmentError: Order already has a non-return shipment.
            ValidationError: Unknown carrier or unit.
        """
        try:
            carrier_code = parse_carrier(carrier).value
        except ValueError as e:
            raise ValidationError(str(e), code="E-2004") from None
        if unit not in {u.value for u in DimensionUnit}:
            raise ValidationError(f"Unknown unit '{unit}'. Use imperial or metric.")

        if not is_return and self.order_ids_with_shipments([order_id]):
            raise DuplicateShipmentError(order_id)

        now = utc_now_iso()
        shipment = Shipment(
            order_id=order_id,
            carrier=carrier_code,
            service_level=service_level,
            status=ShipmentStatus.pending.value,
            package_type=package_type,
            signature=signature,
            length=length,
            width=width,
            height=height,
            weight=weight,
            unit=unit,
            estimated_delivery_date=estimated_delivery_date,
            cost_cents=cost_cents,
            is_return=is_return,
            return_of_id=return_of_id,
            return_reason=return_reason,
            return_authorized_by=return_authorized_by,
            return_authorized_at=now if is_return else None,
            created_at=now,
            updated_at=now,
        )
        self.db.add(shipment)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            if not is_return and self.order_ids_with_shipments([order_id]):
                raise DuplicateShipmentError(order_id) from None
            raise
        except SQLAlchemyError:
            self.db.rollback()
            raise

        if commit:
            self._commit()
            self.db.refresh(shipment)
        logger.info("Created shipment %s for order %s (%s)", shipment.id, order_id, carrier_code)
        return shipment

    def get_by_id(self, shipment_id: str) -> Shipment:
        """Get a shipment by its ID.

        Raises:
            NotFoundError: No shipment with that ID.
        """
        shipment = self.db.get(Shipment, shipment_id)
        if shipment is None:
            raise NotFoundError("Shipment", shipment_id)
        return shipment

    def update(self, shipment_id: str, **fields: Any) -> Shipment:
        """Update editable shipment fields.

        Status cannot be edited here; it only moves through events, label
        attachment and the other lifecycle operations. Label fields may be
        corrected on a shipment that already has a label, but never left
        half-set.

        Args:
            shipment_id: Shipment to update.
            **fields: Field names from UPDATABLE_FIELDS and their new values.

        Returns:
            The updated Shipment.

        Raises:
            NotFoundError: Unknown shipment.
            ValidationError: Status edit, unknown field, or half-set label.
        """
        if "status" in fields:
            raise ValidationError(
                "Shipment status cannot be edited directly; ingest a tracking event instead",
                code="E-2006",
            )
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown shipment field(s): {', '.join(sorted(unknown))}")

        shipment = self.get_by_id(shipment_id)
        label_fields = {"tracking_number", "label_url"} & set(fields)
        if label_fields and not shipment.has_label:
            raise ValidationError(
                "Use attach_label to add a label to a pending shipment", code="E-2006",
            )

        tracking_number = fields.get("tracking_number", shipment.tracking_number)
        label_url = fields.get("label_url", shipment.label_url)
        if bool(tracking_number) != bool(label_url):
            raise ValidationError(
                "tracking_number and label_url must be set together", code="E-2006",
            )
        if "unit" in fields and fields["unit"] not in {u.value for u in DimensionUnit}:
            raise ValidationError(f"Unknown unit '{fields['unit']}'. Use imperial or metric.")

        for name, value in fields.items():
            setattr(shipment, name, value)
        shipment.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(shipment)
        return shipment

    def attach_label(
        self,
        shipment_id: str,
        tracking_number: str,
        label_url: str,
        tracking_url: str | None = None,
        carrier_shipment_id: str | None = None,
        cost_cents: int | None = None,
        estimated_delivery_date: str | None = None,
        commit: bool = True,
    ) -> Shipment:
        """Attach a purchased label, moving the shipment PENDING -> CREATED.

        Raises:
            NotFoundError: Unknown shipment.
            ValidationError: Tracking number or label URL missing.
            InvalidStateTransition: Shipment is not PENDING.
        """
        if not tracking_number or not label_url:
            raise ValidationError(
                "tracking_number and label_url must be set together", code="E-2006",
            )
        shipment = self.get_by_id(shipment_id)
        validate_transition(ShipmentStatus(shipment.status), ShipmentStatus.created)

        now = utc_now_iso()
        shipment.tracking_number = tracking_number
        shipment.label_url = label_url
        shipment.tracking_url = tracking_url
        shipment.carrier_shipment_id = carrier_shipment_id
        if cost_cents is not None:
            shipment.cost_cents = cost_cents
        if estimated_delivery_date:
            shipment.estimated_delivery_date = estimated_delivery_date
        shipment.shipping_date = shipment.shipping_date or now
        shipment.status = ShipmentStatus.created.value
        shipment.updated_at = now
        if commit:
            self._commit()
            self.db.refresh(shipment)
        return shipment

    def create_labeled_shipment(
        self,
        order_id: str,
        label: LabelResponse,
        intent_id: str | None = None,
        **shipment_fields: Any,
    ) -> Shipment:
        """Create a shipment and attach its label in one transaction.

        When ``intent_id`` is given the intent is completed in the same
        transaction.

        Args:
            order_id: Order the label was bought for.
            label: Label returned by the carrier gateway.
            intent_id: Write-ahead intent to complete.
            **shipment_fields: Package fields passed to create_shipment.

        Returns:
            The CREATED shipment.

        Raises:
            DuplicateShipmentError: Order already has a shipment.
            SQLAlchemyError: The write failed; nothing was committed.
        """
        try:
            shipment = self.create_shipment(
                order_id,
                label.carrier.value,
                label.service,
                cost_cents=cost_to_cents(label.cost),
                commit=False,
                **shipment_fields,
            )
            shipment.currency = label.currency
            self.attach_label(
                shipment.id,
                tracking_number=label.tracking_number,
                label_url=label.label_url,
                tracking_url=label.tracking_url,
                carrier_shipment_id=label.shipment_id,
                estimated_delivery_date=label.estimated_delivery,
                commit=False,
            )
            if intent_id is not None:
                intent = self._get_intent(intent_id)
                intent.status = IntentStatus.completed.value
                intent.shipment_id = shipment.id
                intent.updated_at = utc_now_iso()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(shipment)
        return shipment

    # =========================================================================
    # Events, notes, damage
    # =========================================================================

    def append_event(
        self,
        shipment_id: str,
        carrier_status: str,
        description: str,
        event_date: str | None = None,
        location: str | None = None,
    ) -> Shipment:
        """Ingest one tracking event and apply the status it implies.

        The event is always stored in date order. The status is derived from
        the latest-dated event with a known carrier code; terminal shipments
        keep their status, and unknown codes never change it.

        Args:
            shipment_id: Shipment the event belongs to.
            carrier_status: Raw carrier status code (e.g. "in_transit").
            description: Event text.
            event_date: ISO8601 timestamp (defaults to now).
            location: Scan location.

        Returns:
            The updated Shipment.

        Raises:
            NotFoundError: Unknown shipment.
            ValidationError: Empty status or unparseable date.
            InvalidStateTransition: The derived status is not a legal move;
                nothing is written.
        """
        shipment = self.get_by_id(shipment_id)
        self._apply_event(shipment, carrier_status, description, event_date, location)
        self._commit()
        self.db.refresh(shipment)
        return shipment

    def sync_tracking(self, shipment_id: str, scans: list[CarrierScan]) -> tuple[Shipment, int]:
        """Ingest a carrier's scan history, skipping scans already stored.

        Scans are applied oldest first in one transaction, so a history that
        walks CREATED -> IN_TRANSIT -> DELIVERED is accepted as a whole. A
        scan matches a stored event when date and status code are equal.

        Args:
            shipment_id: Shipment the history belongs to.
            scans: Scans from CarrierGateway.get_tracking().

        Returns:
            Tuple of (updated shipment, number of new events stored).

        Raises:
            NotFoundError: Unknown shipment.
            ValidationError: A scan has an unparseable date.
            InvalidStateTransition: The history implies an illegal move;
                nothing is written.
        """
        shipment = self.get_by_id(shipment_id)
        try:
            seen = {(e.event_date, e.carrier_status) for e in shipment.events}
            fresh = []
            for scan in scans:
                try:
                    key = (normalize_event_date(scan.timestamp), scan.status.strip().lower())
                except ValueError:
                    raise ValidationError(f"Unparseable event date '{scan.timestamp}'") from None
                if key not in seen:
                    seen.add(key)
                    fresh.append((key[0], scan))
            fresh.sort(key=lambda item: item[0])
            for event_date, scan in fresh:
                self._apply_event(shipment, scan.status, scan.description, event_date, scan.location)
            if fresh:
                self._commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(shipment)
        logger.info("Synced tracking for shipment %s: %d new event(s)", shipment_id, len(fresh))
        return shipment, len(fresh)

    def _apply_event(
        self,
        shipment: Shipment,
        carrier_status: str,
        description: str,
        event_date: str | None,
        location: str | None,
    ) -> None:
        """Add one event and move the status, without committing."""
        if not carrier_status or not carrier_status.strip():
            raise ValidationError("Tracking event needs a carrier status code")
        try:
            normalized_date = normalize_event_date(event_date or utc_now_iso())
        except ValueError:
            raise ValidationError(f"Unparseable event date '{event_date}'") from None

        current = ShipmentStatus(shipment.status)
        code = carrier_status.strip().lower()

        event = TrackingEvent(
            event_date=normalized_date,
            location=location,
            description=description or "",
            carrier_status=code,
            created_at=utc_now_iso(),
        )
        candidates = list(shipment.events) + [event]
        new_status = next_status_after_events(current, candidates)

        if status_for_code(code) is None:
            logger.warning(
                "Unknown carrier status '%s' on shipment %s; event recorded, status unchanged",
                code, shipment.id,
            )
        elif is_terminal(current):
            logger.info(
                "Shipment %s is %s; event '%s' recorded, status unchanged",
                shipment.id, current.value, code,
            )

        shipment.events.append(event)
        if new_status is not None:
            shipment.status = new_status.value
            if new_status == ShipmentStatus.delivered:
                shipment.actual_delivery_date = max(
                    e.event_date for e in candidates
                    if status_for_code(e.carrier_status) == ShipmentStatus.delivered
                )
            logger.info(
                "Shipment %s: %s -> %s", shipment.id, current.value, new_status.value,
            )
        shipment.updated_at = utc_now_iso()

    def append_note(
        self,
        shipment_id: str,
        text: str,
        note_type: str = NoteType.system.value,
        created_by: str | None = None,
    ) -> ShipmentNote:
        """Append a note. Notes never change status.

        Raises:
            NotFoundError: Unknown shipment.
            ValidationError: Empty text or unknown note type.
        """
        if not text or not text.strip():
            raise ValidationError("Note text cannot be empty")
        if note_type not in {t.value for t in NoteType}:
            raise ValidationError(
                f"Unknown note type '{note_type}'. Use customer, vendor or system."
            )
        shipment = self.get_by_id(shipment_id)
        note = ShipmentNote(
            note_type=note_type, text=text.strip(), created_by=created_by,
            created_at=utc_now_iso(),
        )
        shipment.notes.append(note)
        shipment.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(note)
        return note

    def report_damage(
        self,
        shipment_id: str,
        description: str,
        reported_by: str | None = None,
    ) -> Shipment:
        """Record the shipment's one damage report.

        Sets ``damaged_reported`` and adds a customer note. Status is not
        changed.

        Raises:
            NotFoundError: Unknown shipment.
            ShipmentNotShippedError: Shipment is PENDING or CANCELLED.
            DamageAlreadyReportedError: Damage was already reported.
        """
        shipment = self.get_by_id(shipment_id)
        if shipment.status in _UNSHIPPED:
            raise ShipmentNotShippedError(shipment_id, "report damage")
        if shipment.damaged_reported:
            raise DamageAlreadyReportedError(shipment_id)

        now = utc_now_iso()
        shipment.damaged_reported = True
        shipment.notes.append(ShipmentNote(
            note_type=NoteType.customer.value,
            text=f"Damage reported: {description}".strip(),
            created_by=reported_by,
            created_at=now,
        ))
        shipment.updated_at = now
        self._commit()
        self.db.refresh(shipment)
        logger.info("Damage reported for shipment %s", shipment_id)
        return shipment

    def void_shipment(
        self,
        shipment_id: str,
        refund_cents: int | None = None,
        reason: str | None = None,
        voided_by: str | None = None,
    ) -> Shipment:
        """Record that the carrier voided the shipment's label.

        Moves CREATED -> CANCELLED. The order no longer counts as shipped,
        so a new label can be bought for it.

        Raises:
            NotFoundError: Unknown shipment.
            InvalidStateTransition: Shipment is not CREATED (no label yet,
                or the carrier already has the package).
        """
        shipment = self.get_by_id(shipment_id)
        validate_transition(ShipmentStatus(shipment.status), ShipmentStatus.cancelled)

        now = utc_now_iso()
        shipment.status = ShipmentStatus.cancelled.value
        shipment.voided_at = now
        shipment.refund_cents = refund_cents
        text = f"Label {shipment.tracking_number} voided"
        if reason:
            text += f": {reason.strip()}"
        shipment.notes.append(ShipmentNote(
            note_type=NoteType.system.value,
            text=text,
            created_by=voided_by,
            created_at=now,
        ))
        shipment.updated_at = now
        self._commit()
        self.db.refresh(shipment)
        logger.info("Shipment %s voided (refund %s cents)", shipment_id, refund_cents)
        return shipment

    def create_return_shipment(
        self,
        shipment_id: str,
        reason: str,
        authorized_by: str | None = None,
        carrier: str | None = None,
        service_level: str | None = None,
    ) -> Shipment:
        """Create a PENDING return shipment linked to an original shipment.

        Carrier, service and package details default to the original's.

        Raises:
            NotFoundError: Unknown original shipment.
            ShipmentNotShippedError: Original is PENDING or CANCELLED.
            ValidationError: Empty reason.
        """
        if not reason or not reason.strip():
            raise ValidationError("A return needs a reason")
        original = self.get_by_id(shipment_id)
        if original.status in _UNSHIPPED:
            raise ShipmentNotShippedError(shipment_id, "create a return")

        try:
            return_shipment = self.create_shipment(
                original.order_id,
                carrier or original.carrier,
                service_level or original.service_level,
                package_type=original.package_type,
                signature=original.signature,
                length=original.length,
                width=original.width,
                height=original.height,
                weight=original.weight,
                unit=original.unit,
                is_return=True,
                return_of_id=original.id,
                return_reason=reason.strip(),
                return_authorized_by=authorized_by,
                commit=False,
            )
            original.notes.append(ShipmentNote(
                note_type=NoteType.system.value,
                text=f"Return shipment {return_shipment.id} created: {reason.strip()}",
                created_by=authorized_by,
                created_at=utc_now_iso(),
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(return_shipment)
        return return_shipment

    # =========================================================================
    # Queries
    # =========================================================================

    def list_by_filters(
        self,
        date_from: str | None = None,
        date_to: str | None = None,
        carrier: str | None = None,
        status: ShipmentStatus | str | None = None,
        order_id: str | None = None,
        is_return: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Shipment]:
        """List shipments with optional filtering and pagination.

        Args:
            date_from: Inclusive lower bound on created_at (ISO date or timestamp).
            date_to: Inclusive upper bound on created_at (ISO date or timestamp).
            carrier: Carrier code.
            status: Shipment status.
            order_id: Order ID.
            is_return: Only returns (True) or only outbound (False).
            limit: Maximum number of shipments to return.
            offset: Number of shipments to skip.

        Returns:
            Matching shipments ordered by created_at DESC.
        """
        stmt = select(Shipment)
        if date_from:
            stmt = stmt.where(Shipment.created_at >= date_from)
        if date_to:
            stmt = stmt.where(Shipment.created_at <= _end_of_day(date_to))
        if carrier:
            stmt = stmt.where(Shipment.carrier == carrier.upper())
        if status is not None:
            value = status.value if isinstance(status, ShipmentStatus) else status
            stmt = stmt.where(Shipment.status == value)
        if order_id:
            stmt = stmt.where(Shipment.order_id == order_id)
        if is_return is not None:
            stmt = stmt.where(Shipment.is_return == is_return)
        stmt = stmt.order_by(Shipment.created_at.desc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt))

    def order_ids_with_shipments(self, order_ids: list[str]) -> set[str]:
        """Subset of ``order_ids`` with an outbound shipment that is not cancelled."""
        if not order_ids:
            return set()
        stmt = select(Shipment.order_id).where(
            Shipment.order_id.in_(order_ids),
            Shipment.is_return.is_(False),
            Shipment.status != ShipmentStatus.cancelled.value,
        )
        return set(self.db.scalars(stmt))

    def order_ids_with_unresolved_intents(self, order_ids: list[str]) -> set[str]:
        """Subset of ``order_ids`` with a pending or purchased label intent."""
        if not order_ids:
            return set()
        stmt = select(LabelIntent.order_id).where(
            LabelIntent.order_id.in_(order_ids),
            LabelIntent.status.in_(UNRESOLVED_INTENT_STATUSES),
        )
        return set(self.db.scalars(stmt))

    # =========================================================================
    # Label intents
    # =========================================================================

    def begin_label_intent(
        self,
        order_id: str,
        carrier: str,
        service_level: str,
        request_data: dict[str, Any] | None = None,
    ) -> LabelIntent:
        """Record that a label is about to be bought for an order.

        Raises:
            DuplicateShipmentError: Order already has a shipment.
            ConflictError: Another purchase for the order is unresolved.
        """
        if self.order_ids_with_shipments([order_id]):
            raise DuplicateShipmentError(order_id)
        if self.order_ids_with_unresolved_intents([order_id]):
            raise ConflictError(
                f"Order '{order_id}' has an unresolved label purchase; reconcile it first"
            )
        now = utc_now_iso()
        intent = LabelIntent(
            order_id=order_id,
            carrier=carrier,
            service_level=service_level,
            status=IntentStatus.pending.value,
            request_json=json.dumps(request_data) if request_data is not None else None,
            created_at=now,
            updated_at=now,
        )
        self.db.add(intent)
        self._commit()
        self.db.refresh(intent)
        return intent

    def mark_intent_purchased(self, intent_id: str, label: LabelResponse) -> LabelIntent:
        """Copy the carrier's label data onto a pending intent."""
        intent = self._get_intent(intent_id)
        intent.status = IntentStatus.purchased.value
        intent.tracking_number = label.tracking_number
        intent.tracking_url = label.tracking_url
        intent.label_url = label.label_url
        intent.carrier_shipment_id = label.shipment_id
        intent.cost_cents = cost_to_cents(label.cost)
        intent.currency = label.currency
        intent.estimated_delivery_date = label.estimated_delivery
        intent.service_level = label.service
        intent.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(intent)
        return intent

    def mark_intent_failed(
        self,
        intent_id: str,
        error_code: str | None,
        error_message: str | None,
    ) -> LabelIntent:
        """Close a pending intent whose purchase did not happen."""
        intent = self._get_intent(intent_id)
        if intent.status != IntentStatus.pending.value:
            raise ConflictError(
                f"Label intent '{intent_id}' is {intent.status}; only pending intents can fail"
            )
        intent.status = IntentStatus.failed.value
        intent.error_code = error_code
        intent.error_message = sanitize_error_message(error_message)
        intent.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(intent)
        return intent

    def hold_intent(
        self,
        intent_id: str,
        error_code: str | None,
        error_message: str | None,
        tracking_number: str | None = None,
    ) -> LabelIntent:
        """Record an ambiguous purchase outcome on a pending intent.

        The intent stays pending, so the order stays out of new batches
        until an operator checks the carrier and discards the intent.

        Args:
            intent_id: Pending intent.
            error_code: ShipDesk code of the ambiguous failure.
            error_message: Failure text (sanitized before storing).
            tracking_number: Tracking number salvaged from the carrier reply.
        """
        intent = self._get_intent(intent_id)
        if intent.status != IntentStatus.pending.value:
            raise ConflictError(
                f"Label intent '{intent_id}' is {intent.status}; only pending intents can be held"
            )
        intent.error_code = error_code
        intent.error_message = sanitize_error_message(error_message)
        if tracking_number:
            intent.tracking_number = tracking_number
        intent.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(intent)
        return intent

    def complete_intent(self, intent_id: str, shipment_id: str) -> LabelIntent:
        """Link a purchased intent to the shipment recorded for it."""
        intent = self._get_intent(intent_id)
        intent.status = IntentStatus.completed.value
        intent.shipment_id = shipment_id
        intent.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(intent)
        return intent

    def list_intents(self, status: IntentStatus | None = None) -> list[LabelIntent]:
        """List label intents, newest first."""
        stmt = select(LabelIntent)
        if status is not None:
            stmt = stmt.where(LabelIntent.status == status.value)
        return list(self.db.scalars(stmt.order_by(LabelIntent.created_at.desc())))

    def list_unreconciled_intents(self) -> list[LabelIntent]:
        """Purchased labels with no shipment record."""
        return self.list_intents(IntentStatus.purchased)

    def reconcile_intent(self, intent_id: str) -> Shipment:
        """Create the missing shipment for a purchased label.

        Returns:
            The CREATED shipment (the existing one if it was already recorded).

        Raises:
            NotFoundError: Unknown intent.
            ConflictError: Intent is not in purchased status.
            DuplicateShipmentError: The order has a shipment with a different label.
        """
        intent = self._get_intent(intent_id)
        if intent.status != IntentStatus.purchased.value:
            raise ConflictError(
                f"Label intent '{intent_id}' is {intent.status}; only purchased intents can be reconciled"
            )

        existing = self.db.scalars(
            select(Shipment).where(
                Shipment.order_id == intent.order_id,
                Shipment.is_return.is_(False),
                Shipment.status != ShipmentStatus.cancelled.value,
            )
        ).first()
        if existing is not None:
            if existing.tracking_number != intent.tracking_number:
                raise DuplicateShipmentError(intent.order_id)
            return self._finish_reconcile(intent, existing)

        request_data = json.loads(intent.request_json) if intent.request_json else {}
        package_fields = {
            key: request_data[key]
            for key in ("package_type", "signature", "length", "width", "height", "weight", "unit")
            if key in request_data
        }
        try:
            shipment = self.create_shipment(
                intent.order_id,
                intent.carrier,
                intent.service_level,
                cost_cents=intent.cost_cents,
                commit=False,
                **package_fields,
            )
            shipment.currency = intent.currency or "USD"
            self.attach_label(
                shipment.id,
                tracking_number=intent.tracking_number,
                label_url=intent.label_url,
                tracking_url=intent.tracking_url,
                carrier_shipment_id=intent.carrier_shipment_id,
                estimated_delivery_date=intent.estimated_delivery_date,
                commit=False,
            )
        except Exception:
            self.db.rollback()
            raise
        return self._finish_reconcile(intent, shipment)

    def _finish_reconcile(self, intent: LabelIntent, shipment: Shipment) -> Shipment:
        intent.status = IntentStatus.completed.value
        intent.shipment_id = shipment.id
        intent.updated_at = utc_now_iso()
        self._commit()
        self.db.refresh(shipment)
        logger.info("Reconciled label intent %s into shipment %s", intent.id, shipment.id)
        return shipment

    def _get_intent(self, intent_id: str) -> LabelIntent:
        intent = self.db.get(LabelIntent, intent_id)
        if intent is None:
            raise NotFoundError("Label intent", intent_id)
        return intent

"""Tests for write-ahead label intents and their reconciliation."""

import json

import pytest

from shipdesk.db.models import IntentStatus, ShipmentStatus
from shipdesk.errors import ConflictError, DuplicateShipmentError, NotFoundError
from shipdesk.services.carrier_services import Carrier
from shipdesk.utils.redaction import REDACTED
from tests.helpers import make_label

PACKAGE = {"package_type": "Package", "weight": 3.0, "length": 12, "width": 8, "height": 4}


class TestBeginIntent:
    def test_starts_pending(self, store):
        """A new intent is pending and blocks the order."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground", request_data=PACKAGE)
        assert intent.status == IntentStatus.pending.value
        assert json.loads(intent.request_json) == PACKAGE
        assert store.order_ids_with_unresolved_intents(["1001", "1002"]) == {"1001"}

    def test_rejected_when_shipment_exists(self, store):
        """No intent is opened for an order that already shipped."""
        store.create_labeled_shipment("1001", make_label("1001"))
        with pytest.raises(DuplicateShipmentError):
            store.begin_label_intent("1001", "UPS", "UPS Ground")

    def test_rejected_while_another_is_unresolved(self, store):
        """Only one open purchase per order."""
        store.begin_label_intent("1001", "UPS", "UPS Ground")
        with pytest.raises(ConflictError):
            store.begin_label_intent("1001", "UPS", "UPS Ground")

    def test_failed_intent_does_not_block(self, store):
        first = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_failed(first.id, "E-3005", "Invalid address")
        second = store.begin_label_intent("1001", "UPS", "UPS Ground")
        assert second.id != first.id


class TestIntentOutcomes:
    def test_mark_purchased_copies_label(self, store):
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        intent = store.mark_intent_purchased(intent.id, make_label("1001", cost="9.99"))
        assert intent.status == IntentStatus.purchased.value
        assert intent.tracking_number == "TRK-1001"
        assert intent.cost_cents == 999
        assert [i.id for i in store.list_unreconciled_intents()] == [intent.id]

    def test_mark_failed_sanitizes_message(self, store):
        """Stored error text has tokens redacted."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        intent = store.mark_intent_failed(intent.id, "E-3001", "upstream said Bearer abc.def.ghi")
        assert intent.status == IntentStatus.failed.value
        assert intent.error_code == "E-3001"
        assert "abc.def.ghi" not in intent.error_message
        assert REDACTED in intent.error_message

    def test_only_pending_can_fail(self, store):
        """A purchased label cannot be discarded."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_purchased(intent.id, make_label("1001"))
        with pytest.raises(ConflictError):
            store.mark_intent_failed(intent.id, None, "Discarded")

    def test_unknown_intent(self, store):
        with pytest.raises(NotFoundError):
            store.mark_intent_failed("missing", None, "gone")

    def test_create_labeled_shipment_completes_intent(self, store):
        """Saving the shipment completes its intent."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_purchased(intent.id, make_label("1001"))
        shipment = store.create_labeled_shipment("1001", make_label("1001"), intent_id=intent.id)

        [completed] = store.list_intents(IntentStatus.completed)
        assert completed.shipment_id == shipment.id
        assert store.list_unreconciled_intents() == []
        assert store.order_ids_with_unresolved_intents(["1001"]) == set()


class TestReconcile:
    def test_creates_missing_shipment(self, store):
        """Reconcile records the shipment from the intent's label data."""
        intent = store.begin_label_intent("1001", "FEDEX", "FedEx Ground", request_data=PACKAGE)
        store.mark_intent_purchased(
            intent.id, make_label("1001", Carrier.FEDEX, "FedEx Ground", cost="20.00"),
        )

        shipment = store.reconcile_intent(intent.id)

        assert shipment.status == ShipmentStatus.created.value
        assert shipment.tracking_number == "TRK-1001"
        assert shipment.cost_cents == 2000
        assert shipment.weight == 3.0
        assert store.list_intents(IntentStatus.completed)[0].shipment_id == shipment.id

    def test_links_existing_shipment_with_same_label(self, store):
        """Reconcile reuses a shipment that already has this label."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_purchased(intent.id, make_label("1001"))
        existing = store.create_labeled_shipment("1001", make_label("1001"))

        shipment = store.reconcile_intent(intent.id)
        assert shipment.id == existing.id
        assert len(store.list_by_filters(order_id="1001")) == 1

    def test_conflicting_shipment(self, store):
        """A shipment with another label blocks reconciliation."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_purchased(intent.id, make_label("1001"))
        store.create_shipment("1001", "UPS", "UPS Ground")

        with pytest.raises(DuplicateShipmentError):
            store.reconcile_intent(intent.id)
        assert store.list_unreconciled_intents()[0].id == intent.id

    def test_pending_intent_cannot_be_reconciled(self, store):
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        with pytest.raises(ConflictError):
            store.reconcile_intent(intent.id)

"""Tests for CLI output formatters."""

import json

from shipdesk.cli.output import (
    format_batch_result,
    format_cost,
    format_intent_table,
    format_shipment_detail,
    format_shipment_table,
)
from shipdesk.services.batch_orchestrator import BatchJob, BatchResult, JobState
from tests.helpers import make_label


class TestFormatCost:
    def test_usd(self):
        assert format_cost(1250) == "$12.50"
        assert format_cost(123456) == "$1,234.56"

    def test_other_currency(self):
        assert format_cost(999, "CAD") == "9.99 CAD"

    def test_missing(self):
        assert format_cost(None) == "-"


class TestShipmentFormatters:
    def test_empty_tables(self):
        assert format_shipment_table([]) == "No shipments found."
        assert format_intent_table([]) == "No label intents found."
        assert json.loads(format_shipment_table([], as_json=True)) == []

    def test_table_shows_full_id(self, store):
        shipment = store.create_labeled_shipment("1001", make_label("1001"))
        output = format_shipment_table([shipment])
        assert shipment.id in output
        assert "$12.50" in output

    def test_detail_json_includes_history(self, store):
        shipment = store.create_labeled_shipment("1001", make_label("1001"))
        store.append_event(shipment.id, "picked_up", "Picked up", event_date="2026-03-02T09:00:00Z")
        data = json.loads(format_shipment_detail(store.get_by_id(shipment.id), as_json=True))
        assert data["status"] == "in_transit"
        assert data["events"][0]["carrier_status"] == "picked_up"
        assert data["notes"] == []


class TestBatchResult:
    def _result(self, make_order):
        ok = BatchJob(order=make_order("1001"), selected=True)
        ok.mark_processing()
        ok.mark_succeeded(make_label("1001"), "ship-1")
        bad = BatchJob(order=make_order("1002"), selected=True)
        bad.mark_processing()
        bad.mark_failed("UPS: [Invalid zip]", "E-3003")
        return BatchResult(
            succeeded=1, failed=1, label_urls=[ok.label_response.label_url], jobs=[ok, bad],
        )

    def test_json(self, make_order):
        data = json.loads(format_batch_result(self._result(make_order), as_json=True))
        assert data["succeeded"] == 1
        assert data["jobs"][0]["tracking_number"] == "TRK-1001"
        assert data["jobs"][1] == {
            "order_id": "1002",
            "state": JobState.FAILED.value,
            "carrier": "UPS",
            "service": "UPS Ground",
            "tracking_number": None,
            "label_url": None,
            "shipment_id": None,
            "error_code": "E-3003",
            "error": "UPS: [Invalid zip]",
        }

    def test_table_and_error_summary(self, make_order):
        output = format_batch_result(self._result(make_order))
        assert "1 succeeded" in output
        assert "E-3003" in output
        assert "SB-1002" in output

    def test_session_expired_notice(self, make_order):
        result = self._result(make_order)
        result.session_expired = True
        assert "Session expired." in format_batch_result(result)

    def test_error_summary_uses_registry_remediation(self, make_order):
        """Failed jobs are summarized with the registry's action and the job's text."""
        output = format_batch_result(self._result(make_order))
        assert "UPS: [Invalid zip]" in output
        assert "Verify the address is complete and correct." in output

    def test_unknown_code_falls_back(self, make_order):
        job = BatchJob(order=make_order("1003"), selected=True)
        job.mark_processing()
        job.mark_failed("", "E-9999")
        output = format_batch_result(BatchResult(failed=1, jobs=[job]))
        assert "Unknown error: E-9999" in output
        assert "Contact support." in output

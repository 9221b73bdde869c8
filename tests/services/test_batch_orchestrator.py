"""Tests for BatchOrchestrator.

Tests cover:
- Eligibility filtering (shipped orders, unresolved intents, status/date)
- Happy path: shipments, completed intents, label URLs, progress events
- Partial failure aggregation without aborting the batch
- Session expiry and cancellation stopping unstarted jobs
- Ambiguous carrier failures and persistence failures after purchase
- Real database failures leaving the shared session usable for sibling jobs
- Concurrency bound, selection locking, retry and printing
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from shipdesk.db.models import IntentStatus, ShipmentStatus
from shipdesk.services.api_client import ResilientApiClient
from shipdesk.services.batch_orchestrator import (
    BatchDefaults,
    BatchOrchestrator,
    JobState,
    resolve_concurrency,
)
from shipdesk.services.carrier_gateway import CarrierGateway
from shipdesk.services.carrier_services import Carrier
from shipdesk.services.errors import (
    ApiError,
    AuthExpiredError,
    TransientNetworkError,
    UnreadableLabelError,
)
from shipdesk.services.order_source import OrderFilters
from shipdesk.services.token_manager import TokenManager
from tests.helpers import FakeCarrierBackend, InMemoryOrderSource, RecordingPrinter


@pytest.fixture
def ups():
    return FakeCarrierBackend(Carrier.UPS)


@pytest.fixture
def fedex():
    return FakeCarrierBackend(Carrier.FEDEX)


@pytest.fixture
def gateway(ups, fedex):
    return CarrierGateway(backends={Carrier.UPS: ups, Carrier.FEDEX: fedex})


@pytest.fixture
def orders(make_order):
    return [make_order(str(1000 + i)) for i in range(1, 4)]


@pytest.fixture
def source(orders):
    return InMemoryOrderSource(orders)


@pytest.fixture
def orchestrator(source, gateway, store, ship_from):
    return BatchOrchestrator(source, gateway, store, ship_from, max_concurrent=2)


def _fail_intent_update(db_session, status, order_id):
    """Make the database abort one intent status change for one order."""
    db_session.execute(text(
        "CREATE TRIGGER fail_intent_update BEFORE UPDATE ON label_intents "
        f"WHEN NEW.status = '{status}' AND NEW.order_id = '{order_id}' "
        "BEGIN SELECT RAISE(ABORT, 'disk full'); END"
    ))
    db_session.commit()


async def _selected_jobs(orchestrator, filters=None):
    eligible = await orchestrator.load_eligible_orders(filters or OrderFilters())
    jobs = orchestrator.build_jobs(eligible)
    for job in jobs:
        job.select()
    return jobs


class TestResolveConcurrency:
    def test_default(self, monkeypatch):
        """Concurrency defaults to 5 with no argument or env var."""
        monkeypatch.delenv("SHIPDESK_BATCH_CONCURRENCY", raising=False)
        assert resolve_concurrency() == 5

    def test_env_and_argument(self, monkeypatch):
        """An explicit argument beats the env var; values floor at 1."""
        monkeypatch.setenv("SHIPDESK_BATCH_CONCURRENCY", "8")
        assert resolve_concurrency() == 8
        assert resolve_concurrency(2) == 2
        assert resolve_concurrency(0) == 1

    def test_invalid_env_falls_back(self, monkeypatch):
        """A non-numeric env value falls back to the default."""
        monkeypatch.setenv("SHIPDESK_BATCH_CONCURRENCY", "lots")
        assert resolve_concurrency() == 5


class TestEligibility:
    @pytest.mark.asyncio
    async def test_excludes_shipped_and_unresolved(self, orchestrator, store, source):
        """Orders with a shipment or an open intent are not offered."""
        store.create_shipment("1001", "UPS", "UPS Ground")
        store.begin_label_intent("1002", "UPS", "UPS Ground")

        eligible = await orchestrator.load_eligible_orders(OrderFilters(status="Processing"))

        assert [o.id for o in eligible] == ["1003"]
        assert source.calls[0].status == "Processing"

    @pytest.mark.asyncio
    async def test_failed_intent_stays_eligible(self, orchestrator, store):
        """A failed intent bought nothing, so the order can be retried."""
        intent = store.begin_label_intent("1001", "UPS", "UPS Ground")
        store.mark_intent_failed(intent.id, "E-3003", "bad zip")
        eligible = await orchestrator.load_eligible_orders()
        assert "1001" in [o.id for o in eligible]

    @pytest.mark.asyncio
    async def test_client_side_status_and_date_filter(self, gateway, store, ship_from, make_order):
        """Status and order date are re-checked locally."""
        source = InMemoryOrderSource([
            make_order("1", status="Processing"),
            make_order("2", status="Pending"),
            make_order("3", orderDate="2026-02-20T10:00:00Z"),
        ])
        orchestrator = BatchOrchestrator(source, gateway, store, ship_from)
        eligible = await orchestrator.load_eligible_orders(
            OrderFilters(status="processing", date_from="2026-03-01", date_to="2026-03-31"),
        )
        assert [o.id for o in eligible] == ["1"]

    @pytest.mark.asyncio
    async def test_build_jobs_uses_defaults_and_item_weight(self, orchestrator, make_order):
        """Jobs take the batch defaults and the order's item weight."""
        defaults = BatchDefaults(carrier=Carrier.FEDEX, service="FedEx Ground")
        [job] = orchestrator.build_jobs([make_order("9", items=[])], defaults)
        assert job.carrier == Carrier.FEDEX
        assert job.weight == defaults.fallback_weight
        assert not job.selected

        [job] = orchestrator.build_jobs([make_order("9")])
        assert job.weight == 3.0


class TestProcessSelected:
    @pytest.mark.asyncio
    async def test_all_succeed(self, orchestrator, store, ups):
        """Every selected order ends with a CREATED shipment and a completed intent."""
        jobs = await _selected_jobs(orchestrator)
        on_progress = AsyncMock()

        result = await orchestrator.process_selected(jobs, on_progress=on_progress)

        assert (result.succeeded, result.failed, result.cancelled) == (3, 0, 0)
        assert result.label_urls == [
            "https://labels.example.com/1001.pdf",
            "https://labels.example.com/1002.pdf",
            "https://labels.example.com/1003.pdf",
        ]
        assert all(job.state == JobState.SUCCEEDED for job in jobs)
        assert len(ups.calls) == 3

        for job in jobs:
            shipment = store.get_by_id(job.shipment_id)
            assert shipment.status == ShipmentStatus.created.value
            assert shipment.tracking_number == f"TRK-{job.order_id}"
            assert shipment.weight == 3.0
        assert len(store.list_intents(IntentStatus.completed)) == 3

        on_progress.assert_any_await("job_started", order_id="1001")
        on_progress.assert_any_await(
            "job_succeeded",
            order_id="1003",
            tracking_number="TRK-1003",
            label_url="https://labels.example.com/1003.pdf",
            shipment_id=jobs[2].shipment_id,
        )
        assert on_progress.await_count == 6
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_processed_order_excluded_on_next_load(self, orchestrator, source, make_order):
        """An order shipped by one batch is not offered to the next."""
        source.orders = [make_order("O1")]
        filters = OrderFilters(status="Processing")

        jobs = await _selected_jobs(orchestrator, filters)
        assert [job.order_id for job in jobs] == ["O1"]
        result = await orchestrator.process_selected(jobs)

        assert result.succeeded == 1
        assert await orchestrator.load_eligible_orders(filters) == []

    @pytest.mark.asyncio
    async def test_unselected_jobs_skipped(self, orchestrator, ups):
        """Deselected jobs are never dispatched."""
        jobs = await _selected_jobs(orchestrator)
        jobs[1].deselect()
        result = await orchestrator.process_selected(jobs)
        assert result.succeeded == 2
        assert jobs[1].state == JobState.NOT_STARTED
        assert [r.order_id for r in ups.calls] == ["1001", "1003"]

    @pytest.mark.asyncio
    async def test_failures_do_not_abort_batch(self, orchestrator, store, ups):
        """One carrier rejection fails one job; the rest succeed."""
        ups.failures["1002"] = ApiError(
            "Address not found", status_code=400, body={"message": "Address not found"},
        )
        jobs = await _selected_jobs(orchestrator)
        events = []

        async def on_progress(event, order_id, **details):
            events.append((event, order_id, details))

        result = await orchestrator.process_selected(jobs, on_progress=on_progress)

        assert (result.succeeded, result.failed) == (2, 1)
        [failed] = result.failed_jobs
        assert failed.order_id == "1002"
        assert failed.error_code == "E-3003"
        assert store.list_by_filters(order_id="1002") == []
        [intent] = store.list_intents(IntentStatus.failed)
        assert intent.order_id == "1002"
        assert ("job_failed", "1002", {"error_code": "E-3003", "error_message": failed.error}) in events

    @pytest.mark.asyncio
    async def test_invalid_service_never_reaches_carrier(self, orchestrator, store, ups):
        """A service the carrier does not offer fails without a network call."""
        jobs = await _selected_jobs(orchestrator)
        jobs[0].set_service("UPS Teleport")

        result = await orchestrator.process_selected(jobs)

        assert jobs[0].state == JobState.FAILED
        assert jobs[0].error_code == "E-2001"
        assert [r.order_id for r in ups.calls] == ["1002", "1003"]
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_order_shipped_after_jobs_built(self, orchestrator, store, ups):
        """The duplicate check runs again when the job starts."""
        jobs = await _selected_jobs(orchestrator)
        store.create_shipment("1001", "UPS", "UPS Ground")

        await orchestrator.process_selected(jobs)

        assert jobs[0].error_code == "E-4004"
        assert "1001" not in [r.order_id for r in ups.calls]

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, gateway, store, ship_from, make_order):
        """No more carrier calls run at once than the semaphore allows."""
        backend = FakeCarrierBackend(Carrier.UPS, delay=0.01)
        gateway = CarrierGateway(backends={Carrier.UPS: backend})
        source = InMemoryOrderSource([make_order(str(i)) for i in range(10)])
        orchestrator = BatchOrchestrator(source, gateway, store, ship_from, max_concurrent=3)

        result = await orchestrator.process_selected(await _selected_jobs(orchestrator))

        assert result.succeeded == 10
        assert backend.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self, orchestrator):
        """A broken progress callback does not fail jobs."""
        async def on_progress(event, order_id, **details):
            raise RuntimeError("UI went away")

        result = await orchestrator.process_selected(
            await _selected_jobs(orchestrator), on_progress=on_progress,
        )
        assert result.succeeded == 3


class TestStopping:
    @pytest.mark.asyncio
    async def test_session_expiry_cancels_unstarted_jobs(self, gateway, store, ship_from, source, ups):
        """An expired session fails its job and cancels the unstarted ones."""
        ups.failures["1001"] = AuthExpiredError()
        orchestrator = BatchOrchestrator(source, gateway, store, ship_from, max_concurrent=1)

        result = await orchestrator.process_selected(await _selected_jobs(orchestrator))

        assert result.session_expired
        assert (result.succeeded, result.failed, result.cancelled) == (0, 1, 2)
        assert result.failed_jobs[0].error_code == "E-5002"
        assert [r.order_id for r in ups.calls] == ["1001"]

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_job_finish(self, gateway, store, ship_from, source, ups):
        """cancel() stops new jobs but the running carrier call completes."""
        orchestrator = BatchOrchestrator(source, gateway, store, ship_from, max_concurrent=1)

        async def cancel_during_call(request):
            orchestrator.cancel()

        ups.before_return = cancel_during_call
        jobs = await _selected_jobs(orchestrator)
        result = await orchestrator.process_selected(jobs)

        assert (result.succeeded, result.cancelled) == (1, 2)
        assert jobs[0].state == JobState.SUCCEEDED
        assert jobs[1].state == JobState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_second_concurrent_batch_rejected(self, orchestrator, ups):
        """Only one batch may run on an orchestrator at a time."""
        jobs = await _selected_jobs(orchestrator)
        started = asyncio.Event()
        release = asyncio.Event()

        async def hold(request):
            started.set()
            await release.wait()

        ups.before_return = hold
        task = asyncio.create_task(orchestrator.process_selected(jobs))
        await started.wait()
        with pytest.raises(RuntimeError):
            await orchestrator.process_selected(jobs)
        release.set()
        result = await task
        assert result.succeeded == 3


class TestAfterPurchaseFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_leaves_intent_pending(self, orchestrator, store, ups):
        """A timeout may have bought a label, so the intent stays open."""
        ups.failures["1001"] = TransientNetworkError("Read timed out")
        jobs = await _selected_jobs(orchestrator)

        await orchestrator.process_selected(jobs)

        assert jobs[0].error_code == "E-3001"
        [intent] = store.list_intents(IntentStatus.pending)
        assert intent.order_id == "1001"
        assert intent.error_code == "E-3001"
        assert "Read timed out" in intent.error_message
        eligible = await orchestrator.load_eligible_orders()
        assert "1001" not in [o.id for o in eligible]

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_label_for_reconcile(self, orchestrator, store, ups):
        """A bought label that was not saved can be reconciled without rebuying."""
        jobs = await _selected_jobs(orchestrator)
        jobs[1].deselect()
        jobs[2].deselect()

        with patch.object(
            store, "create_labeled_shipment", side_effect=RuntimeError("disk I/O error"),
        ) as save:
            result = await orchestrator.process_selected(jobs)

        save.assert_called_once()
        assert result.failed == 1
        assert jobs[0].error_code == "E-4005"
        assert "TRK-1001" in jobs[0].error
        [intent] = store.list_unreconciled_intents()
        assert intent.tracking_number == "TRK-1001"

        shipment = store.reconcile_intent(intent.id)
        assert shipment.tracking_number == "TRK-1001"
        assert len(ups.calls) == 1

    @pytest.mark.asyncio
    async def test_unreadable_label_response_leaves_intent_pending(self, orchestrator, store, ups):
        """A 2xx that could not be read keeps the intent open with its tracking number."""
        ups.failures["1001"] = UnreadableLabelError(
            "UPS label response could not be read: missing 'label URL'.",
            "UPS",
            tracking_number="1Z-BOUGHT",
        )
        jobs = await _selected_jobs(orchestrator)

        result = await orchestrator.process_selected(jobs)

        assert (result.succeeded, result.failed) == (2, 1)
        assert jobs[0].error_code == "E-3006"
        assert store.list_intents(IntentStatus.failed) == []
        [intent] = store.list_intents(IntentStatus.pending)
        assert intent.order_id == "1001"
        assert intent.tracking_number == "1Z-BOUGHT"
        assert intent.error_code == "E-3006"
        eligible = await orchestrator.load_eligible_orders()
        assert "1001" not in [o.id for o in eligible]

    @pytest.mark.asyncio
    async def test_tracking_only_response_over_api_is_not_rebought(self, store, ship_from, make_order):
        """A real UPS reply without a label URL is held, not failed."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "ShipmentResponse": {"ShipmentResults": {
                    "PackageResults": [{"TrackingNumber": "1Z-BOUGHT"}],
                }},
            })

        source = InMemoryOrderSource([make_order("1001")])
        async with ResilientApiClient(
            "https://api.test", TokenManager("good"),
            base_delay=0, transport=httpx.MockTransport(handler),
        ) as api:
            orchestrator = BatchOrchestrator(source, CarrierGateway(api), store, ship_from)
            jobs = await _selected_jobs(orchestrator)
            await orchestrator.process_selected(jobs)
            assert await orchestrator.load_eligible_orders() == []

        assert jobs[0].error_code == "E-3006"
        [intent] = store.list_intents(IntentStatus.pending)
        assert intent.tracking_number == "1Z-BOUGHT"

    @pytest.mark.asyncio
    async def test_completion_write_failure_spares_sibling_jobs(
        self, orchestrator, store, db_session, ups,
    ):
        """A database error completing one intent fails only that job."""
        _fail_intent_update(db_session, "completed", "1001")
        jobs = await _selected_jobs(orchestrator)

        result = await orchestrator.process_selected(jobs)

        assert (result.succeeded, result.failed) == (2, 1)
        assert jobs[0].error_code == "E-4005"
        assert "TRK-1001" in jobs[0].error
        assert [job.state for job in jobs[1:]] == [JobState.SUCCEEDED, JobState.SUCCEEDED]
        assert store.list_by_filters(order_id="1001") == []
        [intent] = store.list_unreconciled_intents()
        assert intent.order_id == "1001"
        assert intent.tracking_number == "TRK-1001"

        db_session.execute(text("DROP TRIGGER fail_intent_update"))
        db_session.commit()
        shipment = store.reconcile_intent(intent.id)
        assert shipment.tracking_number == "TRK-1001"
        assert len(ups.calls) == 3

    @pytest.mark.asyncio
    async def test_purchase_write_failure_reports_label(self, orchestrator, store, db_session):
        """If even the purchased write fails, the job reports the bought label."""
        _fail_intent_update(db_session, "purchased", "1002")
        jobs = await _selected_jobs(orchestrator)

        result = await orchestrator.process_selected(jobs)

        assert (result.succeeded, result.failed) == (2, 1)
        assert jobs[1].error_code == "E-4005"
        assert "TRK-1002" in jobs[1].error
        [intent] = store.list_intents(IntentStatus.pending)
        assert intent.order_id == "1002"
        eligible = await orchestrator.load_eligible_orders()
        assert "1002" not in [o.id for o in eligible]

    @pytest.mark.asyncio
    async def test_database_error_gets_generic_code(self, orchestrator, store, ups):
        """Library exceptions with their own code attribute map to E-4001."""
        jobs = await _selected_jobs(orchestrator)
        jobs[1].deselect()
        jobs[2].deselect()
        error = OperationalError("INSERT INTO label_intents", {}, Exception("database is locked"))

        with patch.object(store, "begin_label_intent", side_effect=error):
            result = await orchestrator.process_selected(jobs)

        assert result.failed == 1
        assert jobs[0].error_code == "E-4001"
        assert ups.calls == []


class TestJobSelection:
    @pytest.mark.asyncio
    async def test_selection_locked_once_started(self, orchestrator):
        """Selection edits are rejected after a job has run."""
        jobs = await _selected_jobs(orchestrator)
        await orchestrator.process_selected(jobs)
        with pytest.raises(ValueError):
            jobs[0].set_carrier("FEDEX")
        with pytest.raises(ValueError):
            jobs[0].deselect()

    @pytest.mark.asyncio
    async def test_set_carrier_falls_back_to_first_service(self, orchestrator, fedex):
        """Switching carrier picks a service that carrier offers."""
        jobs = await _selected_jobs(orchestrator)
        jobs[0].set_carrier("fedex")
        assert jobs[0].service.startswith("FedEx")

        await orchestrator.process_selected(jobs[:1])
        assert [r.order_id for r in fedex.calls] == ["1001"]

    @pytest.mark.asyncio
    async def test_set_dimensions_rejects_non_positive(self, orchestrator):
        """Zero dimensions and unknown package types are rejected."""
        [job] = orchestrator.build_jobs((await orchestrator.load_eligible_orders())[:1])
        with pytest.raises(ValueError):
            job.set_dimensions(10, 10, 0, 2)
        with pytest.raises(ValueError):
            job.set_package_type("Crate")

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, orchestrator, ups):
        """retry() returns a fresh selected job that can succeed."""
        ups.failures["1001"] = ApiError("Address not found", status_code=400)
        jobs = await _selected_jobs(orchestrator)
        await orchestrator.process_selected(jobs)
        assert jobs[0].state == JobState.FAILED

        del ups.failures["1001"]
        retry = jobs[0].retry()
        assert retry.selected and retry.state == JobState.NOT_STARTED
        result = await orchestrator.process_selected([retry])
        assert result.succeeded == 1


class TestPrintLabels:
    @pytest.mark.asyncio
    async def test_prints_succeeded_labels(self, orchestrator, ups):
        """Only labels of succeeded jobs are handed to the printer."""
        ups.failures["1003"] = ApiError("Address not found", status_code=400)
        jobs = await _selected_jobs(orchestrator)
        await orchestrator.process_selected(jobs)
        printer = RecordingPrinter()

        assert orchestrator.print_labels(jobs, printer) == 2
        assert printer.printed == [[
            "https://labels.example.com/1001.pdf",
            "https://labels.example.com/1002.pdf",
        ]]

    def test_nothing_to_print(self, orchestrator):
        """Printing with no labels raises ValueError."""
        with pytest.raises(ValueError):
            orchestrator.print_labels([], RecordingPrinter())


class TestSharedSession:
    """A batch over the real API client refreshes an expired token once."""

    @pytest.mark.asyncio
    async def test_one_refresh_for_concurrent_batch(self, source, store, ship_from):
        """Concurrent jobs hitting 401 share one token refresh."""
        refresh_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/refresh":
                refresh_calls.append(request)
                return httpx.Response(200, json={"token": "fresh", "refreshToken": "rt-2"})
            if request.headers.get("Authorization") != "Bearer fresh":
                return httpx.Response(401, json={"message": "Unauthorized"})
            body = json.loads(request.content)
            reference = body["ShipmentRequest"]["Shipment"]["ReferenceNumber"]["Value"]
            return httpx.Response(200, json={
                "ShipmentResponse": {"ShipmentResults": {
                    "ShipmentIdentificationNumber": f"SHP-{reference}",
                    "PackageResults": [{
                        "TrackingNumber": f"1Z-{reference}",
                        "ShippingLabel": {"LabelURL": f"https://labels.test/{reference}.pdf"},
                    }],
                    "ShipmentCharges": {"TotalCharges": {"MonetaryValue": "11.00", "CurrencyCode": "USD"}},
                }},
            })

        tokens = TokenManager("stale", "rt-1")
        async with ResilientApiClient(
            "https://api.test", tokens, base_delay=0, transport=httpx.MockTransport(handler),
        ) as api:
            orchestrator = BatchOrchestrator(
                source, CarrierGateway(api), store, ship_from, max_concurrent=3,
            )
            result = await orchestrator.process_selected(await _selected_jobs(orchestrator))

        assert result.succeeded == 3
        assert len(refresh_calls) == 1
        assert store.get_by_id(result.jobs[0].shipment_id).tracking_number == "1Z-SB-1001"

    @pytest.mark.asyncio
    async def test_auth_failure_after_refresh_fails_only_that_job(self, source, store, ship_from):
        """J2 is rejected again after one refresh; J1's label is kept."""
        refresh_calls = []
        label_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/refresh":
                refresh_calls.append(request)
                return httpx.Response(200, json={"token": "fresh", "refreshToken": "rt-2"})
            reference = json.loads(request.content)["ShipmentRequest"]["Shipment"]["ReferenceNumber"]["Value"]
            label_calls.append(reference)
            if reference == "SB-1002":
                return httpx.Response(401, json={"message": "Unauthorized"})
            return httpx.Response(200, json={
                "ShipmentResponse": {"ShipmentResults": {"PackageResults": [{
                    "TrackingNumber": f"1Z-{reference}",
                    "ShippingLabel": {"LabelURL": f"https://labels.test/{reference}.pdf"},
                }]}},
            })

        async with ResilientApiClient(
            "https://api.test", TokenManager("good", "rt-1"),
            base_delay=0, transport=httpx.MockTransport(handler),
        ) as api:
            orchestrator = BatchOrchestrator(
                source, CarrierGateway(api), store, ship_from, max_concurrent=1,
            )
            jobs = await _selected_jobs(orchestrator)
            result = await orchestrator.process_selected(jobs)

        assert len(refresh_calls) == 1
        assert label_calls == ["SB-1001", "SB-1002", "SB-1002"]
        assert jobs[0].state == JobState.SUCCEEDED
        assert jobs[1].error_code == "E-5002"
        assert result.session_expired
        assert (result.succeeded, result.failed, result.cancelled) == (1, 1, 1)
        assert store.get_by_id(jobs[0].shipment_id).tracking_number == "1Z-SB-1001"

"""Batch label orchestrator.

Buys carrier labels for many orders concurrently. Each selected job runs
under a shared semaphore; store writes are serialized through one
asyncio.Lock because the SQLAlchemy session is not safe for concurrent
use.

Per job the sequence is:

    duplicate check -> write-ahead intent (pending)
    -> carrier call
    -> intent purchased -> shipment CREATED with label -> intent completed

A carrier rejection closes the intent as failed. A timeout or an
unreadable 2xx leaves it pending, since the carrier may have sold the
label. A failure after a successful purchase rolls the session back and
raises LabelPersistenceError with the intent left purchased (or pending
if even that write failed), so the label is never bought twice.

Example:
    orchestrator = BatchOrchestrator(orders, gateway, store, ship_from)
    eligible = await orchestrator.load_eligible_orders(OrderFilters(status="Processing"))
    jobs = orchestrator.build_jobs(eligible)
    for job in jobs:
        job.select()
    result = await orchestrator.process_selected(jobs, on_progress=report)
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from shipdesk.errors import DomainError, DuplicateShipmentError
from shipdesk.services.carrier_gateway import CarrierGateway
from shipdesk.services.carrier_models import (
    PACKAGE_TYPES,
    Address,
    DimensionUnit,
    LabelRequest,
    LabelResponse,
    Package,
    ShipToAddress,
    SignatureOption,
)
from shipdesk.services.carrier_services import (
    DEFAULT_CARRIER,
    DEFAULT_SERVICE,
    Carrier,
    list_services,
    parse_carrier,
    resolve_service,
)
from shipdesk.services.errors import (
    ApiError,
    AuthExpiredError,
    CarrierServiceError,
    LabelPersistenceError,
    TransientNetworkError,
    UnreadableLabelError,
)
from shipdesk.services.label_printer import LabelPrinter
from shipdesk.services.order_source import Order, OrderFilters, OrderSource
from shipdesk.services.shipment_service import ShipmentService

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
DEFAULT_BOX_SIZE = 12.0
FALLBACK_WEIGHT = 2.0

# Callback type for progress reporting
ProgressCallback = Callable[..., Awaitable[None]]

# Errors that carry their own E-XXXX code
_CODED_ERRORS = (
    ApiError,
    CarrierServiceError,
    DomainError,
    LabelPersistenceError,
    UnreadableLabelError,
)


class JobState(str, Enum):
    """Execution state of one batch job.

    Lifecycle: not_started -> processing -> succeeded/failed
    """

    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BatchDefaults:
    """Selection applied to every new job."""

    carrier: Carrier = DEFAULT_CARRIER
    service: str = DEFAULT_SERVICE
    package_type: str = "Package"
    signature: SignatureOption = SignatureOption.NOT_REQUIRED
    length: float = DEFAULT_BOX_SIZE
    width: float = DEFAULT_BOX_SIZE
    height: float = DEFAULT_BOX_SIZE
    fallback_weight: float = FALLBACK_WEIGHT
    unit: DimensionUnit = DimensionUnit.imperial


@dataclass
class BatchJob:
    """One order's label purchase within a batch.

    Selection fields are editable only while the job has not started.
    A failed job is never re-run; ``retry()`` returns a fresh job.
    """

    order: Order
    carrier: Carrier = DEFAULT_CARRIER
    service: str = DEFAULT_SERVICE
    package_type: str = "Package"
    length: float = DEFAULT_BOX_SIZE
    width: float = DEFAULT_BOX_SIZE
    height: float = DEFAULT_BOX_SIZE
    weight: float = FALLBACK_WEIGHT
    unit: DimensionUnit = DimensionUnit.imperial
    signature: SignatureOption = SignatureOption.NOT_REQUIRED
    selected: bool = False
    state: JobState = JobState.NOT_STARTED
    label_response: LabelResponse | None = None
    shipment_id: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def order_id(self) -> str:
        return self.order.id

    @property
    def is_processing(self) -> bool:
        return self.state == JobState.PROCESSING

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED)

    # -- selection -----------------------------------------------------------

    def _ensure_editable(self) -> None:
        if self.state != JobState.NOT_STARTED:
            raise ValueError(
                f"Job for order {self.order_id} is {self.state.value} and can no longer be edited"
            )

    def set_carrier(self, carrier: str | Carrier) -> None:
        """Change carrier; the service falls back to the carrier's first one if needed."""
        self._ensure_editable()
        self.carrier = parse_carrier(carrier)
        if resolve_service(self.carrier, self.service) is None:
            self.service = list_services(self.carrier)[0]

    def set_service(self, service: str) -> None:
        """Set the service level. Checked against the carrier when the job runs."""
        self._ensure_editable()
        if not service or not service.strip():
            raise ValueError("Service level cannot be empty")
        self.service = service.strip()

    def set_dimensions(
        self,
        length: float,
        width: float,
        height: float,
        weight: float,
        unit: DimensionUnit | str | None = None,
    ) -> None:
        """Set package dimensions and weight (all must be positive)."""
        self._ensure_editable()
        values = {"length": length, "width": width, "height": height, "weight": weight}
        for name, value in values.items():
            if value is None or value <= 0:
                raise ValueError(f"{name} must be greater than 0")
        self.length, self.width, self.height, self.weight = length, width, height, weight
        if unit is not None:
            self.unit = DimensionUnit(unit)

    def set_signature(self, signature: SignatureOption | str) -> None:
        self._ensure_editable()
        self.signature = SignatureOption(signature)

    def set_package_type(self, package_type: str) -> None:
        self._ensure_editable()
        if package_type not in PACKAGE_TYPES:
            raise ValueError(
                f"Unknown package type '{package_type}'. Use one of: {', '.join(PACKAGE_TYPES)}"
            )
        self.package_type = package_type

    def select(self) -> None:
        self._ensure_editable()
        self.selected = True

    def deselect(self) -> None:
        self._ensure_editable()
        self.selected = False

    # -- execution state -----------------------------------------------------

    def mark_processing(self) -> None:
        if self.state != JobState.NOT_STARTED:
            raise ValueError(f"Job for order {self.order_id} already {self.state.value}")
        self.state = JobState.PROCESSING

    def mark_succeeded(self, label: LabelResponse, shipment_id: str) -> None:
        if self.state != JobState.PROCESSING:
            raise ValueError(f"Job for order {self.order_id} is not processing")
        self.state = JobState.SUCCEEDED
        self.label_response = label
        self.shipment_id = shipment_id

    def mark_failed(self, error: str, error_code: str | None) -> None:
        if self.state != JobState.PROCESSING:
            raise ValueError(f"Job for order {self.order_id} is not processing")
        self.state = JobState.FAILED
        self.error = error
        self.error_code = error_code

    def retry(self) -> "BatchJob":
        """Fresh, selected job for the same order with the same selection."""
        return BatchJob(
            order=self.order,
            carrier=self.carrier,
            service=self.service,
            package_type=self.package_type,
            length=self.length,
            width=self.width,
            height=self.height,
            weight=self.weight,
            unit=self.unit,
            signature=self.signature,
            selected=True,
        )

    # -- request building ----------------------------------------------------

    def package_data(self) -> dict[str, Any]:
        """Package fields as stored on the shipment and the intent."""
        return {
            "package_type": self.package_type,
            "signature": self.signature.value,
            "length": self.length,
            "width": self.width,
            "height": self.height,
            "weight": self.weight,
            "unit": self.unit.value,
        }

    def to_label_request(self, ship_from: Address) -> LabelRequest:
        """Build the gateway request for this job."""
        contents = ", ".join(i.product_name for i in self.order.items if i.product_name)
        return LabelRequest(
            order_id=self.order_id,
            carrier=self.carrier,
            service=self.service,
            ship_from=ship_from,
            ship_to=ShipToAddress(**self.order.shipping_address.model_dump()),
            packages=[
                Package(
                    length=self.length,
                    width=self.width,
                    height=self.height,
                    weight=self.weight,
                    unit=self.unit,
                    description=contents[:100] or None,
                ),
            ],
            package_type=self.package_type,
            signature=self.signature,
            reference=self.order.order_number or self.order_id,
        )


@dataclass
class BatchResult:
    """Outcome of one process_selected() call."""

    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    session_expired: bool = False
    label_urls: list[str] = field(default_factory=list)
    jobs: list[BatchJob] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.cancelled

    @property
    def failed_jobs(self) -> list[BatchJob]:
        return [job for job in self.jobs if job.state == JobState.FAILED]


def resolve_concurrency(configured: int | None = None) -> int:
    """Resolve batch concurrency from argument, env, then default."""
    if configured is not None:
        return max(1, configured)
    raw = os.environ.get("SHIPDESK_BATCH_CONCURRENCY", str(DEFAULT_CONCURRENCY))
    try:
        value = int(raw)
    except ValueError:
        logger.warning(
            "Invalid SHIPDESK_BATCH_CONCURRENCY=%r, defaulting to %d", raw, DEFAULT_CONCURRENCY,
        )
        return DEFAULT_CONCURRENCY
    return max(1, value)


class BatchOrchestrator:
    """Loads eligible orders and buys their labels concurrently.

    Attributes:
        _orders: Order source collaborator.
        _gateway: Carrier gateway for label purchases.
        _store: Shipment store (sync session, guarded by _db_lock).
        _ship_from: Origin address for every label.
    """

    def __init__(
        self,
        order_source: OrderSource,
        gateway: CarrierGateway,
        store: ShipmentService,
        ship_from: Address,
        max_concurrent: int | None = None,
        defaults: BatchDefaults | None = None,
    ) -> None:
        self._orders = order_source
        self._gateway = gateway
        self._store = store
        self._ship_from = ship_from
        self._max_concurrent = resolve_concurrency(max_concurrent)
        self._defaults = defaults or BatchDefaults()
        self._db_lock = asyncio.Lock()
        self._cancel_requested = False
        self._running = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def is_running(self) -> bool:
        return self._running

    async def load_eligible_orders(self, filters: OrderFilters | None = None) -> list[Order]:
        """Orders matching the filter that still need a label.

        Excludes orders that already have a shipment and orders with an
        unresolved (pending or purchased) label intent.

        Args:
            filters: Status and date filter.

        Returns:
            Eligible orders, in source order.
        """
        filters = filters or OrderFilters()
        orders = await self._orders.fetch_orders(filters)
        orders = [o for o in orders if _matches(o, filters)]
        order_ids = [o.id for o in orders]
        async with self._db_lock:
            shipped = self._store.order_ids_with_shipments(order_ids)
            unresolved = self._store.order_ids_with_unresolved_intents(order_ids)
        eligible = [o for o in orders if o.id not in shipped and o.id not in unresolved]
        logger.info(
            "Eligible orders: %d of %d (%d shipped, %d with unresolved labels)",
            len(eligible), len(orders), len(shipped), len(unresolved),
        )
        return eligible

    def build_jobs(
        self,
        orders: list[Order],
        defaults: BatchDefaults | None = None,
    ) -> list[BatchJob]:
        """One unselected job per order with the default selection."""
        d = defaults or self._defaults
        return [
            BatchJob(
                order=order,
                carrier=d.carrier,
                service=d.service,
                package_type=d.package_type,
                length=d.length,
                width=d.width,
                height=d.height,
                weight=order.total_weight() or d.fallback_weight,
                unit=d.unit,
                signature=d.signature,
            )
            for order in orders
        ]

    def cancel(self) -> None:
        """Stop starting new jobs; in-flight carrier calls finish."""
        if self._running:
            logger.info("Batch cancellation requested")
        self._cancel_requested = True

    async def process_selected(
        self,
        jobs: list[BatchJob],
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Buy labels for every selected, not-started job.

        Jobs run concurrently up to the concurrency bound. One job's failure
        never aborts the others, except that an expired session stops any
        job that has not started yet. Returns when every dispatched job is
        terminal or was never started.

        Args:
            jobs: Jobs from build_jobs(); unselected jobs are skipped.
            on_progress: Optional async callback receiving
                ``(event, order_id=..., **details)`` for job_started,
                job_succeeded and job_failed.

        Returns:
            BatchResult with counters and the label URLs of succeeded jobs.

        Raises:
            RuntimeError: A batch is already running on this orchestrator.
        """
        if self._running:
            raise RuntimeError("A batch is already running")
        self._running = True
        self._cancel_requested = False

        selected = [j for j in jobs if j.selected and j.state == JobState.NOT_STARTED]
        semaphore = asyncio.Semaphore(self._max_concurrent)
        result = BatchResult(jobs=selected)

        async def _emit(event: str, job: BatchJob, **details: Any) -> None:
            if on_progress is None:
                return
            try:
                await on_progress(event, order_id=job.order_id, **details)
            except Exception:
                logger.exception("Progress callback failed for %s (order %s)", event, job.order_id)

        async def _run_job(job: BatchJob) -> None:
            async with semaphore:
                if self._cancel_requested:
                    result.cancelled += 1
                    return

                job.mark_processing()
                await _emit("job_started", job)
                try:
                    await self._process_job(job)
                except AuthExpiredError as e:
                    if not result.session_expired:
                        logger.warning(
                            "Session expired during order %s; stopping unstarted jobs",
                            job.order_id,
                        )
                    result.session_expired = True
                    self._cancel_requested = True
                    job.mark_failed(e.message, e.code)
                except Exception as e:
                    code = _error_code(e)
                    job.mark_failed(_error_text(e), code)
                    logger.error("Order %s failed: [%s] %s", job.order_id, code, job.error)
                else:
                    result.succeeded += 1
                    await _emit(
                        "job_succeeded",
                        job,
                        tracking_number=job.label_response.tracking_number,
                        label_url=job.label_response.label_url,
                        shipment_id=job.shipment_id,
                    )
                    return

                result.failed += 1
                await _emit("job_failed", job, error_code=job.error_code, error_message=job.error)

        try:
            await asyncio.gather(*[_run_job(job) for job in selected])
        finally:
            self._running = False

        result.label_urls = [
            job.label_response.label_url
            for job in selected
            if job.state == JobState.SUCCEEDED and job.label_response is not None
        ]
        logger.info(
            "Batch finished: %d succeeded, %d failed, %d cancelled%s",
            result.succeeded, result.failed, result.cancelled,
            " (session expired)" if result.session_expired else "",
        )
        return result

    async def _process_job(self, job: BatchJob) -> None:
        """Run one job through intent, carrier call and persistence."""
        request = job.to_label_request(self._ship_from)

        async with self._db_lock:
            if self._store.order_ids_with_shipments([job.order_id]):
                raise DuplicateShipmentError(job.order_id)
            intent = self._store.begin_label_intent(
                job.order_id, job.carrier.value, job.service, request_data=job.package_data(),
            )
            intent_id = intent.id

        # --- CARRIER CALL BOUNDARY ---
        # Before: nothing was bought, the intent can be closed as failed.
        # After: a label exists and must be recorded, never re-bought.
        try:
            label = await self._gateway.generate_label(request)
        except (TransientNetworkError, UnreadableLabelError) as e:
            # The carrier may have sold the label; the intent stays pending for review.
            await self._hold_intent(job, intent_id, e)
            raise
        except Exception as e:
            async with self._db_lock:
                self._store.mark_intent_failed(intent_id, _error_code(e), _error_text(e))
            raise

        try:
            async with self._db_lock:
                self._store.mark_intent_purchased(intent_id, label)
                shipment = self._store.create_labeled_shipment(
                    job.order_id, label, intent_id=intent_id, **job.package_data(),
                )
        except Exception as e:
            async with self._db_lock:
                self._store.db.rollback()
            logger.error(
                "Label %s bought for order %s but not recorded (intent %s): %s",
                label.tracking_number, job.order_id, intent_id, e,
            )
            raise LabelPersistenceError(
                order_id=job.order_id,
                tracking_number=label.tracking_number,
                label_url=label.label_url,
                intent_id=intent_id,
                reason=_error_text(e),
            ) from e

        job.mark_succeeded(label, shipment.id)
        logger.info(
            "Order %s shipped: tracking=%s shipment=%s",
            job.order_id, label.tracking_number, shipment.id,
        )

    async def _hold_intent(
        self,
        job: BatchJob,
        intent_id: str,
        error: TransientNetworkError | UnreadableLabelError,
    ) -> None:
        """Keep an ambiguous purchase's intent pending with what is known."""
        tracking_number = getattr(error, "tracking_number", None)
        logger.error(
            "Ambiguous carrier outcome for order %s (intent %s left pending, tracking=%s): %s",
            job.order_id, intent_id, tracking_number, error.message,
        )
        try:
            async with self._db_lock:
                self._store.hold_intent(
                    intent_id, error.code, _error_text(error), tracking_number=tracking_number,
                )
        except Exception:
            # The intent is still pending; only the details are lost.
            logger.exception("Could not record carrier outcome on intent %s", intent_id)

    def print_labels(self, jobs: list[BatchJob], printer: LabelPrinter) -> int:
        """Hand the label URLs of succeeded jobs to a printer.

        Returns:
            Number of labels handed over.

        Raises:
            ValueError: No job has a label.
        """
        urls = [
            job.label_response.label_url
            for job in jobs
            if job.state == JobState.SUCCEEDED and job.label_response is not None
        ]
        if not urls:
            raise ValueError("No labels available to print")
        printer.print_labels(urls)
        return len(urls)


def _matches(order: Order, filters: OrderFilters) -> bool:
    """Client-side check of the status and date filter."""
    if filters.status and order.status.lower() != filters.status.lower():
        return False
    if order.order_date:
        day = order.order_date[:10]
        if filters.date_from and day < filters.date_from[:10]:
            return False
        if filters.date_to and day > filters.date_to[:10]:
            return False
    return True


def _error_text(error: Exception) -> str:
    """Operator-facing text of a job error."""
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error)


def _error_code(error: Exception) -> str:
    """ShipDesk code of a job error; E-4001 for anything not raised by ShipDesk."""
    if isinstance(error, _CODED_ERRORS):
        return error.code
    return "E-4001"

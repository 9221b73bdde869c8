"""Carrier gateway: validate, route and translate carrier calls.

The gateway is the single entry point for carrier work. Label purchases
are checked against the static carrier service table, the required
address fields and the carrier's package limits before any network call,
then routed to the carrier's backend. Carrier rejection bodies become
CarrierServiceError with a ShipDesk E-3xxx code.

Session-level failures (AuthExpiredError), exhausted transient failures
(TransientNetworkError) and unreadable 2xx label responses
(UnreadableLabelError) pass through untouched.
"""

import logging

from shipdesk.errors import (
    ValidationError,
    extract_carrier_error,
    get_error,
    translate_carrier_error,
)
from shipdesk.services.api_client import ResilientApiClient
from shipdesk.services.carrier_backends import CarrierBackend, build_backends
from shipdesk.services.carrier_models import (
    LabelRequest,
    LabelResponse,
    TrackingInfo,
    VoidResult,
)
from shipdesk.services.carrier_services import (
    Carrier,
    build_tracking_url,
    list_services,
    parse_carrier,
    resolve_service,
)
from shipdesk.services.errors import (
    ApiError,
    AuthExpiredError,
    CarrierServiceError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


def _validation_error(code: str, **context: str) -> ValidationError:
    error = get_error(code)
    return ValidationError(error.message_template.format(**context), code=code)


class CarrierGateway:
    """Routes carrier calls to per-carrier backends.

    Attributes:
        _backends: Backend per carrier.
    """

    def __init__(
        self,
        api: ResilientApiClient | None = None,
        backends: dict[Carrier, CarrierBackend] | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            api: Shared API client used to build the default backends.
            backends: Explicit backend mapping (overrides ``api``).

        Raises:
            ValueError: Neither ``api`` nor ``backends`` was given.
        """
        if backends is None:
            if api is None:
                raise ValueError("CarrierGateway needs an API client or explicit backends")
            backends = build_backends(api)
        self._backends = backends

    def validate(self, request: LabelRequest) -> LabelRequest:
        """Check a label request without touching the network.

        Args:
            request: Label request to check.

        Returns:
            The request with its service alias resolved to the canonical name.

        Raises:
            ValidationError: Unknown service for the carrier (E-2001),
                missing address fields (E-2002), or bad packages (E-2003).
        """
        backend = self._backend(request.carrier)

        service = resolve_service(request.carrier, request.service)
        if service is None:
            raise _validation_error(
                "E-2001", service=request.service, carrier=request.carrier.value,
            )

        for block, address in (("Ship-from", request.ship_from), ("Ship-to", request.ship_to)):
            missing = address.missing_fields()
            if missing:
                raise _validation_error("E-2002", block=block, fields=", ".join(missing))

        if not request.packages:
            raise _validation_error("E-2003", index="1", reason="no packages in request")
        for index, package in enumerate(request.packages, start=1):
            for name in ("length", "width", "height", "weight"):
                if getattr(package, name) <= 0:
                    raise _validation_error(
                        "E-2003", index=str(index), reason=f"{name} must be greater than 0",
                    )
        if backend.max_packages is not None and len(request.packages) > backend.max_packages:
            raise _validation_error(
                "E-2003",
                index=str(backend.max_packages + 1),
                reason=(
                    f"{request.carrier.value} labels carry at most "
                    f"{backend.max_packages} package(s); buy one label per package"
                ),
            )
        if backend.single_unit_system:
            first_unit = request.packages[0].unit
            for index, package in enumerate(request.packages, start=1):
                if package.unit != first_unit:
                    raise _validation_error(
                        "E-2003",
                        index=str(index),
                        reason=(
                            f"{request.carrier.value} needs one unit system per shipment "
                            f"(package 1 is {first_unit.value}, this one is {package.unit.value})"
                        ),
                    )

        if service != request.service:
            request = request.model_copy(update={"service": service})
        return request

    async def generate_label(self, request: LabelRequest) -> LabelResponse:
        """Buy one label from the request's carrier.

        Args:
            request: Label request.

        Returns:
            Normalized LabelResponse.

        Raises:
            ValidationError: Request failed local validation (no call made).
            CarrierServiceError: The carrier rejected the request.
            UnreadableLabelError: The carrier answered 2xx without a readable label.
            AuthExpiredError: Session ended during the call.
            TransientNetworkError: Carrier unreachable after retries.
        """
        request = self.validate(request)
        backend = self._backends[request.carrier]
        try:
            return await backend.create_label(request)
        except (AuthExpiredError, TransientNetworkError):
            raise
        except ApiError as e:
            raise self._translate(
                request.carrier, e, {"service": request.service, "order": request.order_id},
            ) from e

    async def get_tracking(self, carrier: str | Carrier, tracking_number: str) -> TrackingInfo:
        """Fetch the carrier's scan history for a tracking number.

        Raises:
            ValidationError: Unknown carrier (E-2004) or empty tracking number.
            CarrierServiceError: The carrier rejected the lookup.
            AuthExpiredError: Session ended during the call.
            TransientNetworkError: Carrier unreachable after retries.
        """
        resolved = self.resolve_carrier(carrier) if isinstance(carrier, str) else carrier
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("A tracking number is required", code="E-2006")
        backend = self._backend(resolved)
        try:
            return await backend.get_tracking(tracking_number.strip())
        except (AuthExpiredError, TransientNetworkError):
            raise
        except ApiError as e:
            raise self._translate(resolved, e, {"tracking_number": tracking_number}) from e

    async def void_label(self, carrier: str | Carrier, carrier_shipment_id: str) -> VoidResult:
        """Ask the carrier to void a purchased label.

        Raises:
            ValidationError: Unknown carrier (E-2004) or no carrier shipment ID.
            CarrierServiceError: The carrier refused the void.
            AuthExpiredError: Session ended during the call.
            TransientNetworkError: Carrier unreachable after retries.
        """
        resolved = self.resolve_carrier(carrier) if isinstance(carrier, str) else carrier
        if not carrier_shipment_id:
            raise ValidationError(
                "The shipment has no carrier shipment ID to void", code="E-2006",
            )
        backend = self._backend(resolved)
        try:
            return await backend.void_label(carrier_shipment_id)
        except (AuthExpiredError, TransientNetworkError):
            raise
        except ApiError as e:
            raise self._translate(resolved, e, {"shipment": carrier_shipment_id}) from e

    def list_services(self, carrier: str | Carrier) -> list[str]:
        """Service levels offered by a carrier."""
        return list_services(carrier)

    def tracking_url(self, carrier: str | Carrier, tracking_number: str) -> str:
        """Public tracking page for a tracking number."""
        return build_tracking_url(carrier, tracking_number)

    def resolve_carrier(self, value: str) -> Carrier:
        """Parse a carrier name, raising E-2004 for unknown carriers."""
        try:
            return parse_carrier(value)
        except ValueError:
            raise _validation_error("E-2004", carrier=value) from None

    def _backend(self, carrier: Carrier) -> CarrierBackend:
        backend = self._backends.get(carrier)
        if backend is None:
            raise _validation_error("E-2004", carrier=carrier.value)
        return backend

    @staticmethod
    def _translate(carrier: Carrier, error: ApiError, context: dict[str, str]) -> CarrierServiceError:
        """Map an API error body from a carrier onto a CarrierServiceError."""
        body = error.body if isinstance(error.body, dict) else {}
        carrier_code, carrier_message = extract_carrier_error(body)
        if carrier_message is None:
            carrier_message = error.message
        code, message, remediation = translate_carrier_error(
            carrier.value, carrier_code, carrier_message, context=context,
        )
        logger.warning(
            "%s rejected %s: %s (carrier code %s, HTTP %d)",
            carrier.value, context, code, carrier_code, error.status_code,
        )
        return CarrierServiceError(
            code=code,
            message=message,
            carrier=carrier.value,
            remediation=remediation,
            details={
                "status_code": error.status_code,
                "carrier_code": carrier_code,
                "carrier_message": carrier_message,
            },
        )

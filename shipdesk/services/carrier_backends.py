"""Per-carrier label backends.

Each backend knows how to turn a LabelRequest into its carrier's payload
and how to read the carrier's (differently shaped) response back into a
LabelResponse. All backends call through the shared ResilientApiClient:

    POST   /carriers/<carrier>/labels
    GET    /carriers/<carrier>/tracking/<tracking_number>
    DELETE /carriers/<carrier>/shipments/<carrier_shipment_id>

Backends never retry. A 2xx label response that cannot be read raises
UnreadableLabelError, since the carrier may already have billed the label.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from shipdesk.errors import get_error
from shipdesk.services.api_client import ResilientApiClient
from shipdesk.services.carrier_models import (
    Address,
    CarrierScan,
    DimensionUnit,
    LabelRequest,
    LabelResponse,
    Package,
    TrackingInfo,
    VoidResult,
)
from shipdesk.services.carrier_services import Carrier, build_tracking_url
from shipdesk.services.errors import UnreadableLabelError

logger = logging.getLogger(__name__)


def _weight_unit(unit: DimensionUnit) -> str:
    return "LB" if unit == DimensionUnit.imperial else "KG"


def _length_unit(unit: DimensionUnit) -> str:
    return "IN" if unit == DimensionUnit.imperial else "CM"


def _first(items: Any) -> dict:
    """First element of a list, or the value itself when it is a dict."""
    if isinstance(items, list):
        return items[0] if items and isinstance(items[0], dict) else {}
    if isinstance(items, dict):
        return items
    return {}


def find_tracking_number(raw: Any) -> str | None:
    """Search a raw response for any key ending in "trackingnumber".

    Used to salvage the tracking number of a label whose response could not
    be normalized.
    """
    if isinstance(raw, dict):
        for key, value in raw.items():
            if key.lower().endswith("trackingnumber") and isinstance(value, (str, int)) and value:
                return str(value)
        children = list(raw.values())
    elif isinstance(raw, list):
        children = raw
    else:
        return None
    for child in children:
        found = find_tracking_number(child)
        if found:
            return found
    return None


class CarrierBackend(ABC):
    """Base class for one carrier's API endpoints.

    Attributes:
        carrier: Carrier served by this backend.
        max_packages: Packages one label request may carry (None for any).
        single_unit_system: All packages of a request must share a unit.
    """

    carrier: Carrier
    max_packages: int | None = None
    single_unit_system: bool = False

    def __init__(self, api: ResilientApiClient) -> None:
        self._api = api

    @property
    def endpoint(self) -> str:
        """Label purchase endpoint for this carrier."""
        return f"/carriers/{self.carrier.value.lower()}/labels"

    async def create_label(self, request: LabelRequest) -> LabelResponse:
        """Buy one label.

        Args:
            request: Validated label request.

        Returns:
            Normalized LabelResponse.

        Raises:
            ApiError: Any failure surfaced by the API client.
            UnreadableLabelError: 2xx response without a readable label.
        """
        payload = self.build_payload(request)
        raw = await self._api.request(self.endpoint, method="POST", body=payload)
        try:
            response = self.normalize(raw if isinstance(raw, dict) else {}, request)
        except UnreadableLabelError:
            raise
        except Exception as e:
            raise self._unreadable(
                f"unexpected response shape ({type(e).__name__}: {e})", raw,
            ) from e
        logger.info(
            "%s label purchased for order %s: tracking=%s",
            self.carrier.value, request.order_id, response.tracking_number,
        )
        return response

    async def get_tracking(self, tracking_number: str) -> TrackingInfo:
        """Fetch the scan history of a tracking number.

        Raises:
            ApiError: Any failure surfaced by the API client.
        """
        endpoint = f"/carriers/{self.carrier.value.lower()}/tracking/{tracking_number}"
        raw = await self._api.request(endpoint)
        return self.normalize_tracking(raw if isinstance(raw, dict) else {}, tracking_number)

    async def void_label(self, carrier_shipment_id: str) -> VoidResult:
        """Ask the carrier to void a purchased label.

        Raises:
            ApiError: Any failure surfaced by the API client.
        """
        endpoint = f"/carriers/{self.carrier.value.lower()}/shipments/{carrier_shipment_id}"
        raw = await self._api.request(endpoint, method="DELETE")
        return self.normalize_void(raw if isinstance(raw, dict) else {})

    @abstractmethod
    def build_payload(self, request: LabelRequest) -> dict[str, Any]:
        """Build the carrier-specific request body."""

    @abstractmethod
    def normalize(self, raw: dict[str, Any], request: LabelRequest) -> LabelResponse:
        """Convert the carrier's raw response into a LabelResponse."""

    def normalize_tracking(self, raw: dict[str, Any], tracking_number: str) -> TrackingInfo:
        """Read ``{status, estimatedDelivery, events: [...]}`` into TrackingInfo."""
        events = [
            CarrierScan(
                timestamp=str(e["timestamp"]),
                status=str(e["status"]),
                description=e.get("description") or "",
                location=e.get("location"),
            )
            for e in raw.get("events") or []
            if isinstance(e, dict) and e.get("timestamp") and e.get("status")
        ]
        return TrackingInfo(
            tracking_number=str(raw.get("trackingNumber") or tracking_number),
            carrier=self.carrier,
            status=raw.get("status"),
            estimated_delivery=raw.get("estimatedDelivery"),
            events=events,
        )

    def normalize_void(self, raw: dict[str, Any]) -> VoidResult:
        """Read ``{cancelled, message, refundAmount, refundCurrency}`` into VoidResult."""
        refund = raw.get("refundAmount")
        return VoidResult(
            voided=bool(raw.get("cancelled", raw.get("voided", False))),
            message=raw.get("message") or "",
            refund_amount=str(refund) if refund is not None and refund != "" else None,
            refund_currency=raw.get("refundCurrency") or "USD",
        )

    def _finish(
        self,
        request: LabelRequest,
        tracking_number: str | None,
        label_url: str | None,
        tracking_url: str | None = None,
        shipment_id: str | None = None,
        cost: Any = None,
        currency: str | None = None,
        estimated_delivery: str | None = None,
    ) -> LabelResponse:
        """Validate extracted fields and build the LabelResponse."""
        if not tracking_number:
            raise self._unreadable("missing 'tracking number'", None)
        if not label_url:
            raise self._unreadable("missing 'label URL'", None, str(tracking_number))
        return LabelResponse(
            tracking_number=str(tracking_number),
            tracking_url=tracking_url or build_tracking_url(self.carrier, str(tracking_number)),
            label_url=label_url,
            shipment_id=str(shipment_id) if shipment_id else None,
            cost=str(cost) if cost is not None and cost != "" else None,
            currency=currency or "USD",
            carrier=self.carrier,
            service=request.service,
            estimated_delivery=estimated_delivery,
        )

    def _unreadable(
        self, detail: str, raw: Any, tracking_number: str | None = None,
    ) -> UnreadableLabelError:
        error = get_error("E-3006")
        message = error.message_template.format(carrier=self.carrier.value, detail=detail)
        return UnreadableLabelError(
            message,
            carrier=self.carrier.value,
            tracking_number=tracking_number or find_tracking_number(raw),
        )


class UPSBackend(CarrierBackend):
    """UPS: ShipmentRequest / ShipmentResponse envelopes."""

    carrier = Carrier.UPS

    @staticmethod
    def _party(address: Address) -> dict[str, Any]:
        lines = [address.street1] + ([address.street2] if address.street2 else [])
        return {
            "Name": address.company or address.name,
            "AttentionName": address.name,
            "Phone": {"Number": address.phone or ""},
            "Address": {
                "AddressLine": lines,
                "City": address.city,
                "StateProvinceCode": address.state_code,
                "PostalCode": address.postal_code,
                "CountryCode": address.country_code,
            },
        }

    @staticmethod
    def _package(package: Package, package_type: str) -> dict[str, Any]:
        return {
            "Packaging": {"Description": package_type},
            "Description": package.description or "",
            "Dimensions": {
                "UnitOfMeasurement": {"Code": _length_unit(package.unit)},
                "Length": str(package.length),
                "Width": str(package.width),
                "Height": str(package.height),
            },
            "PackageWeight": {
                "UnitOfMeasurement": {"Code": "LBS" if package.unit == DimensionUnit.imperial else "KGS"},
                "Weight": str(package.weight),
            },
        }

    def build_payload(self, request: LabelRequest) -> dict[str, Any]:
        ship_to = self._party(request.ship_to)
        if request.ship_to.is_residential:
            ship_to["Address"]["ResidentialAddressIndicator"] = ""
        shipment: dict[str, Any] = {
            "Shipper": self._party(request.ship_from),
            "ShipTo": ship_to,
            "Service": {"Description": request.service},
            "Package": [self._package(p, request.package_type) for p in request.packages],
            "ReferenceNumber": {"Value": request.reference or request.order_id},
        }
        if request.signature.value != "not_required":
            shipment["ShipmentServiceOptions"] = {
                "DeliveryConfirmation": {
                    "DCISType": "3" if request.signature.value == "adult" else "2",
                },
            }
        return {"ShipmentRequest": {"Shipment": shipment}}

    def normalize(self, raw: dict[str, Any], request: LabelRequest) -> LabelResponse:
        results = raw.get("ShipmentResponse", {}).get("ShipmentResults", {})
        package = _first(results.get("PackageResults"))
        charges = results.get("ShipmentCharges", {}).get("TotalCharges", {})
        return self._finish(
            request,
            tracking_number=package.get("TrackingNumber"),
            label_url=package.get("ShippingLabel", {}).get("LabelURL"),
            shipment_id=results.get("ShipmentIdentificationNumber"),
            cost=charges.get("MonetaryValue"),
            currency=charges.get("CurrencyCode"),
            estimated_delivery=results.get("EstimatedDeliveryDate"),
        )


class FedExBackend(CarrierBackend):
    """FedEx: requestedShipment / output.transactionShipments."""

    carrier = Carrier.FEDEX

    _SIGNATURE_TYPES = {
        "required": "DIRECT",
        "not_required": "NO_SIGNATURE_REQUIRED",
        "adult": "ADULT",
    }

    @staticmethod
    def _party(address: Address) -> dict[str, Any]:
        return {
            "contact": {
                "personName": address.name,
                "companyName": address.company or "",
                "phoneNumber": address.phone or "",
            },
            "address": {
                "streetLines": [line for line in (address.street1, address.street2) if line],
                "city": address.city,
                "stateOrProvinceCode": address.state_code,
                "postalCode": address.postal_code,
                "countryCode": address.country_code,
            },
        }

    def build_payload(self, request: LabelRequest) -> dict[str, Any]:
        recipient = self._party(request.ship_to)
        recipient["address"]["residential"] = request.ship_to.is_residential
        return {
            "requestedShipment": {
                "shipper": self._party(request.ship_from),
                "recipients": [recipient],
                "serviceType": request.service,
                "packagingType": request.package_type,
                "signatureOptionType": self._SIGNATURE_TYPES[request.signature.value],
                "customerReference": request.reference or request.order_id,
                "requestedPackageLineItems": [
                    {
                        "weight": {"units": _weight_unit(p.unit), "value": p.weight},
                        "dimensions": {
                            "length": p.length,
                            "width": p.width,
                            "height": p.height,
                            "units": _length_unit(p.unit),
                        },
                        "itemDescription": p.description or "",
                    }
                    for p in request.packages
                ],
            },
        }

    def normalize(self, raw: dict[str, Any], request: LabelRequest) -> LabelResponse:
        shipment = _first(raw.get("output", {}).get("transactionShipments"))
        piece = _first(shipment.get("pieceResponses"))
        document = _first(piece.get("packageDocuments"))
        rating = _first(
            shipment.get("completedShipmentDetail", {})
            .get("shipmentRating", {})
            .get("shipmentRateDetails")
        )
        return self._finish(
            request,
            tracking_number=piece.get("trackingNumber") or shipment.get("masterTrackingNumber"),
            label_url=document.get("url"),
            tracking_url=shipment.get("trackingUrl"),
            shipment_id=shipment.get("masterTrackingNumber"),
            cost=rating.get("totalNetCharge"),
            currency=rating.get("currency"),
            estimated_delivery=shipment.get("deliveryDatestamp"),
        )


class USPSBackend(CarrierBackend):
    """USPS: one package per label, flat payload and response."""

    carrier = Carrier.USPS
    max_packages = 1

    @staticmethod
    def _party(address: Address) -> dict[str, Any]:
        return {
            "fullName": address.name,
            "firm": address.company or "",
            "streetAddress": address.street1,
            "secondaryAddress": address.street2 or "",
            "city": address.city,
            "state": address.state_code,
            "ZIPCode": address.postal_code,
            "country": address.country_code,
            "phone": address.phone or "",
        }

    def build_payload(self, request: LabelRequest) -> dict[str, Any]:
        package = request.packages[0]
        extra_services = []
        if request.signature.value == "required":
            extra_services.append("SIGNATURE_CONFIRMATION")
        elif request.signature.value == "adult":
            extra_services.append("ADULT_SIGNATURE_REQUIRED")
        return {
            "fromAddress": self._party(request.ship_from),
            "toAddress": self._party(request.ship_to),
            "mailClass": request.service,
            "rateIndicator": request.package_type,
            "packageDescription": {
                "weight": package.weight,
                "length": package.length,
                "width": package.width,
                "height": package.height,
                "weightUOM": "lb" if package.unit == DimensionUnit.imperial else "kg",
                "dimensionsUOM": "in" if package.unit == DimensionUnit.imperial else "cm",
            },
            "extraServices": extra_services,
            "customerReference": request.reference or request.order_id,
        }

    def normalize(self, raw: dict[str, Any], request: LabelRequest) -> LabelResponse:
        metadata = raw.get("labelMetadata", {})
        return self._finish(
            request,
            tracking_number=raw.get("trackingNumber"),
            label_url=raw.get("labelImageUrl"),
            shipment_id=metadata.get("labelId"),
            cost=raw.get("postage"),
            currency="USD",
            estimated_delivery=metadata.get("expectedDeliveryDate"),
        )


class DHLBackend(CarrierBackend):
    """DHL Express: one unit system per shipment, documents[] response."""

    carrier = Carrier.DHL
    single_unit_system = True

    @staticmethod
    def _party(address: Address) -> dict[str, Any]:
        return {
            "postalAddress": {
                "addressLine1": address.street1,
                "addressLine2": address.street2 or "",
                "cityName": address.city,
                "provinceCode": address.state_code,
                "postalCode": address.postal_code,
                "countryCode": address.country_code,
            },
            "contactInformation": {
                "fullName": address.name,
                "companyName": address.company or address.name,
                "phone": address.phone or "",
            },
        }

    def build_payload(self, request: LabelRequest) -> dict[str, Any]:
        metric = request.packages[0].unit == DimensionUnit.metric
        return {
            "productCode": request.service,
            "customerReferences": [{"value": request.reference or request.order_id}],
            "customerDetails": {
                "shipperDetails": self._party(request.ship_from),
                "receiverDetails": self._party(request.ship_to),
            },
            "valueAddedServices": (
                [{"serviceCode": "SF"}] if request.signature.value != "not_required" else []
            ),
            "content": {
                "unitOfMeasurement": "metric" if metric else "imperial",
                "packages": [
                    {
                        "weight": p.weight,
                        "dimensions": {"length": p.length, "width": p.width, "height": p.height},
                        "description": p.description or "",
                    }
                    for p in request.packages
                ],
            },
        }

    def normalize(self, raw: dict[str, Any], request: LabelRequest) -> LabelResponse:
        label_doc = next(
            (
                d for d in raw.get("documents", [])
                if isinstance(d, dict) and d.get("typeCode") == "label"
            ),
            {},
        )
        charge = _first(raw.get("shipmentCharges"))
        estimated = raw.get("estimatedDeliveryDate", {})
        return self._finish(
            request,
            tracking_number=raw.get("shipmentTrackingNumber"),
            label_url=label_doc.get("url"),
            tracking_url=raw.get("trackingUrl"),
            shipment_id=raw.get("dispatchConfirmationNumber"),
            cost=charge.get("price"),
            currency=charge.get("currencyType"),
            estimated_delivery=(
                estimated.get("estimatedDeliveryDate") if isinstance(estimated, dict) else None
            ),
        )


BACKEND_CLASSES: dict[Carrier, type[CarrierBackend]] = {
    Carrier.UPS: UPSBackend,
    Carrier.FEDEX: FedExBackend,
    Carrier.USPS: USPSBackend,
    Carrier.DHL: DHLBackend,
}


def build_backends(api: ResilientApiClient) -> dict[Carrier, CarrierBackend]:
    """Instantiate one backend per carrier over a shared API client."""
    return {carrier: cls(api) for carrier, cls in BACKEND_CLASSES.items()}

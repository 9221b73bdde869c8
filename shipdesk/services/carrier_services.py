"""Canonical carrier and service-level definitions.

Single source of truth for the carrier enum, the static carrier → service
table, friendly aliases and tracking URL templates. The carrier gateway
validates every label request against this table before any network call.
"""

from enum import Enum


class Carrier(str, Enum):
    """Carriers ShipDesk can buy labels from."""

    UPS = "UPS"
    FEDEX = "FEDEX"
    USPS = "USPS"
    DHL = "DHL"


CARRIER_SERVICES: dict[Carrier, tuple[str, ...]] = {
    Carrier.UPS: (
        "UPS Ground",
        "UPS 3 Day Select",
        "UPS 2nd Day Air",
        "UPS 2nd Day Air A.M.",
        "UPS Next Day Air",
        "UPS Next Day Air Saver",
        "UPS Next Day Air Early",
        "UPS Worldwide Express",
        "UPS Standard",
    ),
    Carrier.FEDEX: (
        "FedEx Ground",
        "FedEx Home Delivery",
        "FedEx Express",
        "FedEx 2Day",
        "FedEx 2Day AM",
        "FedEx Standard Overnight",
        "FedEx Priority Overnight",
        "FedEx First Overnight",
        "FedEx International Economy",
        "FedEx International Priority",
    ),
    Carrier.USPS: (
        "USPS First Class",
        "USPS Priority Mail",
        "USPS Priority Mail Express",
        "USPS Media Mail",
        "USPS Parcel Select",
        "USPS First Class International",
        "USPS Priority Mail International",
        "USPS Priority Mail Express International",
    ),
    Carrier.DHL: (
        "DHL Express Worldwide",
        "DHL Express 12:00",
        "DHL Express 9:00",
        "DHL Economy Select",
        "DHL Express Envelope",
        "DHL Freight",
    ),
}

# Friendly terms per carrier, matched lowercase
SERVICE_ALIASES: dict[Carrier, dict[str, str]] = {
    Carrier.UPS: {
        "ground": "UPS Ground",
        "3 day": "UPS 3 Day Select",
        "3 day select": "UPS 3 Day Select",
        "2 day": "UPS 2nd Day Air",
        "2nd day air": "UPS 2nd Day Air",
        "2nd day air am": "UPS 2nd Day Air A.M.",
        "next day": "UPS Next Day Air",
        "overnight": "UPS Next Day Air",
        "next day air": "UPS Next Day Air",
        "saver": "UPS Next Day Air Saver",
        "early am": "UPS Next Day Air Early",
        "worldwide express": "UPS Worldwide Express",
        "ups standard": "UPS Standard",
    },
    Carrier.FEDEX: {
        "ground": "FedEx Ground",
        "home delivery": "FedEx Home Delivery",
        "express": "FedEx Express",
        "2 day": "FedEx 2Day",
        "2day": "FedEx 2Day",
        "2 day am": "FedEx 2Day AM",
        "overnight": "FedEx Standard Overnight",
        "standard overnight": "FedEx Standard Overnight",
        "priority overnight": "FedEx Priority Overnight",
        "first overnight": "FedEx First Overnight",
        "international economy": "FedEx International Economy",
        "international priority": "FedEx International Priority",
    },
    Carrier.USPS: {
        "ground": "USPS Parcel Select",
        "first class": "USPS First Class",
        "first class mail": "USPS First Class",
        "priority": "USPS Priority Mail",
        "priority mail": "USPS Priority Mail",
        "express": "USPS Priority Mail Express",
        "overnight": "USPS Priority Mail Express",
        "priority mail express": "USPS Priority Mail Express",
        "media mail": "USPS Media Mail",
        "parcel select": "USPS Parcel Select",
    },
    Carrier.DHL: {
        "ground": "DHL Economy Select",
        "economy": "DHL Economy Select",
        "express": "DHL Express Worldwide",
        "worldwide": "DHL Express Worldwide",
        "express 12": "DHL Express 12:00",
        "express 9": "DHL Express 9:00",
        "envelope": "DHL Express Envelope",
        "freight": "DHL Freight",
    },
}

TRACKING_URL_TEMPLATES: dict[Carrier, str] = {
    Carrier.UPS: "https://www.ups.com/track?tracknum={tracking_number}",
    Carrier.FEDEX: "https://www.fedex.com/apps/fedextrack/?tracknumbers={tracking_number}",
    Carrier.USPS: "https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1={tracking_number}",
    Carrier.DHL: (
        "https://www.dhl.com/us-en/home/tracking/tracking-express.html"
        "?submit=1&tracking-id={tracking_number}"
    ),
}

DEFAULT_CARRIER = Carrier.UPS
DEFAULT_SERVICE = "UPS Ground"


def parse_carrier(value: "str | Carrier") -> Carrier:
    """Coerce a carrier name to the Carrier enum.

    Accepts any case and the spelled-out "FedEx".

    Raises:
        ValueError: Unknown carrier.
    """
    if isinstance(value, Carrier):
        return value
    normalized = str(value).strip().upper()
    try:
        return Carrier(normalized)
    except ValueError:
        supported = ", ".join(c.value for c in Carrier)
        raise ValueError(
            f"Unsupported carrier '{value}'. Supported carriers: {supported}"
        ) from None


def list_services(carrier: "str | Carrier") -> list[str]:
    """Return the service levels offered by a carrier, in table order."""
    return list(CARRIER_SERVICES[parse_carrier(carrier)])


def is_valid_service(carrier: "str | Carrier", service: str) -> bool:
    """True when ``service`` is an exact service name of ``carrier``."""
    return service in CARRIER_SERVICES[parse_carrier(carrier)]


def resolve_service(carrier: "str | Carrier", raw_value: str | None) -> str | None:
    """Resolve a service name or alias to the carrier's canonical name.

    Exact names win, then case-insensitive names, then aliases. Names of
    another carrier's services never resolve.

    Args:
        carrier: Carrier the service must belong to.
        raw_value: Service name or alias (e.g. "ground", "ups ground").

    Returns:
        Canonical service name, or None if it does not belong to the carrier.
    """
    if not raw_value:
        return None
    carrier_enum = parse_carrier(carrier)
    services = CARRIER_SERVICES[carrier_enum]
    stripped = raw_value.strip()
    if stripped in services:
        return stripped

    lowered = stripped.lower()
    for name in services:
        if name.lower() == lowered:
            return name
    return SERVICE_ALIASES[carrier_enum].get(lowered)


def build_tracking_url(carrier: "str | Carrier", tracking_number: str) -> str:
    """Build the public tracking page URL for a tracking number."""
    template = TRACKING_URL_TEMPLATES[parse_carrier(carrier)]
    return template.format(tracking_number=tracking_number)

"""Request and response models for carrier label purchases.

Address fields default to empty strings so that an incomplete order can
still be turned into a LabelRequest; the gateway reports missing fields
as ShipDesk validation errors before any network call.
"""

from enum import Enum

from pydantic import BaseModel, Field

from shipdesk.db.models import DimensionUnit
from shipdesk.services.carrier_services import Carrier


class SignatureOption(str, Enum):
    """Delivery signature requirement."""

    REQUIRED = "required"
    NOT_REQUIRED = "not_required"
    ADULT = "adult"


PACKAGE_TYPES = ("Package", "Envelope", "Pak", "Tube", "Box")

REQUIRED_ADDRESS_FIELDS = (
    "name", "street1", "city", "state_code", "postal_code", "country_code",
)


class Address(BaseModel):
    """Ship-from address block."""

    name: str = Field(default="", description="Contact or company name")
    company: str | None = Field(None, description="Company name")
    street1: str = Field(default="", description="Address line 1")
    street2: str | None = Field(None, description="Address line 2")
    city: str = Field(default="", description="City")
    state_code: str = Field(default="", description="State/province code")
    postal_code: str = Field(default="", description="Postal code")
    country_code: str = Field(default="US", description="ISO country code")
    phone: str | None = Field(None, description="Phone number")

    def missing_fields(self) -> list[str]:
        """Required fields that are empty or whitespace."""
        return [
            name for name in REQUIRED_ADDRESS_FIELDS
            if not (getattr(self, name) or "").strip()
        ]


class ShipToAddress(Address):
    """Ship-to address block."""

    is_residential: bool = Field(default=True, description="Residential delivery")


class Package(BaseModel):
    """One physical package in a label request."""

    length: float = Field(..., description="Length")
    width: float = Field(..., description="Width")
    height: float = Field(..., description="Height")
    weight: float = Field(..., description="Weight")
    unit: DimensionUnit = Field(default=DimensionUnit.imperial, description="Unit system")
    description: str | None = Field(None, description="Contents description")


class LabelRequest(BaseModel):
    """Everything a carrier backend needs to sell one label."""

    order_id: str = Field(..., description="Order the label is bought for")
    carrier: Carrier = Field(..., description="Carrier to buy from")
    service: str = Field(..., description="Carrier service level name")
    ship_from: Address = Field(..., description="Origin address")
    ship_to: ShipToAddress = Field(..., description="Destination address")
    packages: list[Package] = Field(default_factory=list, description="At least one package")
    package_type: str = Field(default="Package", description="Packaging type")
    signature: SignatureOption = Field(
        default=SignatureOption.NOT_REQUIRED, description="Signature requirement",
    )
    reference: str | None = Field(None, description="Reference printed on the label")


class LabelResponse(BaseModel):
    """Normalized result of a successful label purchase."""

    tracking_number: str = Field(..., description="Carrier tracking number")
    tracking_url: str = Field(..., description="Public tracking page")
    label_url: str = Field(..., description="URL of the printable label")
    shipment_id: str | None = Field(None, description="Carrier-side shipment identifier")
    cost: str | None = Field(None, description="Label cost as decimal string")
    currency: str = Field(default="USD", description="ISO currency code")
    carrier: Carrier = Field(..., description="Carrier that sold the label")
    service: str = Field(..., description="Service level purchased")
    estimated_delivery: str | None = Field(None, description="Estimated delivery date (ISO)")


class CarrierScan(BaseModel):
    """One scan reported by a carrier's tracking endpoint."""

    timestamp: str = Field(..., description="ISO8601 time of the scan")
    status: str = Field(..., description="Raw carrier status code")
    description: str = Field(default="", description="Scan text")
    location: str | None = Field(None, description="Scan location")


class TrackingInfo(BaseModel):
    """Normalized tracking history for one tracking number."""

    tracking_number: str = Field(..., description="Carrier tracking number")
    carrier: Carrier = Field(..., description="Carrier that reported the history")
    status: str | None = Field(None, description="Carrier's summary status code")
    estimated_delivery: str | None = Field(None, description="Estimated delivery date (ISO)")
    events: list[CarrierScan] = Field(default_factory=list, description="Scans, any order")


class VoidResult(BaseModel):
    """Outcome of voiding a purchased label."""

    voided: bool = Field(..., description="Carrier accepted the void")
    message: str = Field(default="", description="Carrier message")
    refund_amount: str | None = Field(None, description="Refund as decimal string")
    refund_currency: str = Field(default="USD", description="ISO currency code")

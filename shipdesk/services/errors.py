"""Shared service-layer error types.

Provides error types used across service modules (API client, carrier
gateway, batch orchestrator). Centralised here to avoid circular imports
between service modules.
"""

from dataclasses import dataclass
from typing import Any


class ApiError(Exception):
    """Outbound API call failed.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status, or 0 when no response was received.
        body: Parsed response body when available.
        code: ShipDesk error code (E-XXXX format).
    """

    code = "E-4002"

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        body: Any = None,
    ) -> None:
        """Initialize with message, status and body.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code (0 for transport failures).
            body: Parsed JSON body or raw text of the response.
        """
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


class ApiValidationError(ApiError):
    """The API rejected the request as invalid (400/422). Not retried."""

    code = "E-2005"


class TransientNetworkError(ApiError):
    """Timeout, connection failure, 429 or 5xx. Retried with backoff."""

    code = "E-3001"


class AuthExpiredError(ApiError):
    """Token refresh exhausted. Fatal to the whole session."""

    code = "E-5002"

    def __init__(self, message: str = "Your session has expired. Please log in again.") -> None:
        super().__init__(message, status_code=401)


class TokenRefreshError(ApiError):
    """The refresh endpoint did not return a new access token."""

    code = "E-5003"


@dataclass
class CarrierServiceError(Exception):
    """Carrier backend rejected the label request.

    Attributes:
        code: ShipDesk error code (E-XXXX format)
        message: Human-readable error message
        carrier: Carrier that rejected the request
        remediation: Suggested fix
        details: Raw error details
    """

    code: str
    message: str
    carrier: str = ""
    remediation: str = ""
    details: dict | None = None

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


class UnreadableLabelError(Exception):
    """Carrier answered 2xx but the label could not be read from the body.

    The carrier may have billed a label, so the purchase is ambiguous and
    never treated as a rejection.

    Attributes:
        carrier: Carrier that answered.
        tracking_number: Tracking number found in the raw body, if any.
    """

    code = "E-3006"

    def __init__(self, message: str, carrier: str, tracking_number: str | None = None) -> None:
        self.message = message
        self.carrier = carrier
        self.tracking_number = tracking_number
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


class LabelPersistenceError(Exception):
    """Carrier sold a label but the shipment record could not be written.

    The label is billable and must not be bought again; the pending intent
    record keeps the label details for reconciliation.

    Attributes:
        order_id: Order the label was bought for.
        tracking_number: Carrier tracking number of the purchased label.
        label_url: URL of the purchased label.
        intent_id: Write-ahead intent record holding the label details.
    """

    code = "E-4005"

    def __init__(
        self,
        order_id: str,
        tracking_number: str,
        label_url: str,
        intent_id: str | None,
        reason: str,
    ) -> None:
        self.order_id = order_id
        self.tracking_number = tracking_number
        self.label_url = label_url
        self.intent_id = intent_id
        self.reason = reason
        self.message = (
            f"Label {tracking_number} purchased for order {order_id} "
            f"but shipment record not saved: {reason}"
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"

"""Error code registry with E-XXXX format codes.

This module defines the error code system for ShipDesk, organizing errors
into categories:
- E-1xxx: Order data errors
- E-2xxx: Validation errors
- E-3xxx: Carrier API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Order data errors
    VALIDATION = "validation"  # E-2xxx: Validation errors
    CARRIER_API = "carrier_api"  # E-3xxx: Carrier API errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the operator should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Missing Required Field",
        message_template="Required field '{field}' is missing for order {order}.",
        remediation="Complete the order's shipping address and re-run the batch.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DATA,
        title="No Eligible Orders",
        message_template="No orders without shipments match the selected filters.",
        remediation="Check the status and date filters, or confirm the orders were not already shipped.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Service Level",
        message_template="Service '{service}' is not offered by {carrier}.",
        remediation="Pick one of the carrier's listed service levels and retry.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Address",
        message_template="{block} address is missing required field(s): {fields}.",
        remediation="Fill in the missing address fields and retry.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Package",
        message_template="Package {index} is invalid: {reason}.",
        remediation="Weight and dimensions must be positive numbers.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Unsupported Carrier",
        message_template="Carrier '{carrier}' is not supported.",
        remediation="Use one of UPS, FEDEX, USPS or DHL.",
    ),
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.VALIDATION,
        title="Request Rejected",
        message_template="The API rejected the request: {details}",
        remediation="Correct the highlighted fields and retry.",
    ),
    "E-2006": ErrorCode(
        code="E-2006",
        category=ErrorCategory.VALIDATION,
        title="Invalid Shipment State",
        message_template="{details}",
        remediation="Check the shipment's current status before changing it.",
    ),
    # Carrier API errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.CARRIER_API,
        title="Carrier Service Unavailable",
        message_template="{carrier} API is not responding.",
        remediation="Wait a few minutes and re-run the failed orders.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.CARRIER_API,
        title="Carrier Rate Limit Exceeded",
        message_template="Too many requests to the {carrier} API.",
        remediation="Wait 60 seconds and retry. Consider lowering batch concurrency.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.CARRIER_API,
        title="Carrier Address Rejected",
        message_template="{carrier} could not validate the destination address.",
        remediation="Verify the address is complete and correct. Check for typos.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.CARRIER_API,
        title="Carrier Service Not Available",
        message_template="{carrier} {service} is not available for this shipment.",
        remediation="Try a different service level or verify the destination is serviceable.",
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.CARRIER_API,
        title="Carrier Unknown Error",
        message_template="{carrier} returned an unexpected error: {carrier_message}",
        remediation="Contact support with error code E-3005 and the carrier message.",
    ),
    "E-3006": ErrorCode(
        code="E-3006",
        category=ErrorCategory.CARRIER_API,
        title="Malformed Carrier Response",
        message_template="{carrier} label response could not be read: {detail}.",
        remediation="The label may have been purchased. Check the carrier account before retrying.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {details}",
        remediation="This is a system error. Retry the operation. Contact support if issue persists.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Network Error",
        message_template="Could not reach {endpoint}: {details}",
        remediation="Check network connectivity and the API base URL.",
        is_retryable=True,
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Resource Not Found",
        message_template="{resource} '{identifier}' not found.",
        remediation="Check the identifier and retry.",
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.SYSTEM,
        title="Duplicate Shipment",
        message_template="Order {order} already has a shipment.",
        remediation="No action needed. Reload eligible orders to see what still needs a label.",
    ),
    "E-4005": ErrorCode(
        code="E-4005",
        category=ErrorCategory.SYSTEM,
        title="Label Purchased But Not Recorded",
        message_template="Label {tracking_number} was purchased for order {order} but the shipment record could not be saved.",
        remediation="Do NOT re-run this order. Run 'shipdesk intents reconcile' to record the shipment.",
    ),
    "E-4006": ErrorCode(
        code="E-4006",
        category=ErrorCategory.SYSTEM,
        title="Batch Interrupted",
        message_template="Job was not started because the batch was interrupted.",
        remediation="Re-run the batch once the interruption is resolved.",
    ),
    # Auth errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Authentication Failed",
        message_template="Failed to authenticate with the shipping API.",
        remediation="Check the configured access token and refresh token.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Session Expired",
        message_template="Your session has expired. Please sign in again.",
        remediation="Sign in again, then re-run the batch. Completed labels are kept.",
    ),
    "E-5003": ErrorCode(
        code="E-5003",
        category=ErrorCategory.AUTH,
        title="Token Refresh Failed",
        message_template="Access token could not be refreshed: {details}",
        remediation="Sign in again to obtain a new refresh token.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]

"""Error handling framework for ShipDesk.

This package provides:
- Error code registry with E-XXXX format codes
- Carrier error translation to friendly messages
- Error formatting and grouping utilities
- Typed domain exceptions for shipment lifecycle rules

Error categories:
- E-1xxx: Order data errors
- E-2xxx: Validation errors
- E-3xxx: Carrier API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors
"""

from shipdesk.errors.carrier_translation import (
    CARRIER_ERROR_MAP,
    extract_carrier_error,
    translate_carrier_error,
)
from shipdesk.errors.domain import (
    ConflictError,
    DamageAlreadyReportedError,
    DomainError,
    DuplicateShipmentError,
    InvalidStateTransition,
    NotFoundError,
    ShipmentNotShippedError,
    ValidationError,
)
from shipdesk.errors.formatter import (
    ShipDeskError,
    format_error,
    format_error_summary,
    group_errors,
)
from shipdesk.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Carrier translation
    "translate_carrier_error",
    "extract_carrier_error",
    "CARRIER_ERROR_MAP",
    # Formatter
    "ShipDeskError",
    "format_error",
    "group_errors",
    "format_error_summary",
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "DuplicateShipmentError",
    "InvalidStateTransition",
    "DamageAlreadyReportedError",
    "ShipmentNotShippedError",
]

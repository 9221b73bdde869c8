"""Carrier error translation to ShipDesk friendly messages.

Each carrier backend reports rejections in its own body shape. This module
extracts the carrier's code and message and maps them onto ShipDesk's
error code system with actionable remediation steps.
"""

from shipdesk.errors.registry import get_error


# Map of carrier error codes to ShipDesk error codes, keyed per carrier
CARRIER_ERROR_MAP: dict[str, dict[str, str]] = {
    "UPS": {
        "120100": "E-3003",  # Address validation failed
        "120101": "E-3003",  # Invalid postal code
        "120102": "E-3003",  # Invalid city/state combination
        "111030": "E-3004",  # Service not available
        "111050": "E-3004",  # Delivery not available to postal code
        "120500": "E-2003",  # Invalid weight
        "190001": "E-3001",  # System unavailable
        "190100": "E-3002",  # Rate limit exceeded
    },
    "FEDEX": {
        "ADDRESS.VALIDATION.FAILED": "E-3003",
        "POSTALCODE.INVALID": "E-3003",
        "SERVICE.UNAVAILABLE.ERROR": "E-3004",
        "PACKAGE.WEIGHT.INVALID": "E-2003",
        "SYSTEM.UNAVAILABLE.EXCEPTION": "E-3001",
        "TOO.MANY.REQUESTS": "E-3002",
    },
    "USPS": {
        "ADDRESS_NOT_FOUND": "E-3003",
        "INVALID_ZIP": "E-3003",
        "MAIL_CLASS_NOT_AVAILABLE": "E-3004",
        "WEIGHT_EXCEEDS_LIMIT": "E-2003",
    },
    "DHL": {
        "1001": "E-3003",  # Receiver address invalid
        "1002": "E-3004",  # Product not available
        "1003": "E-2003",  # Piece weight invalid
        "9999": "E-3001",  # Backend unavailable
    },
}

# Carrier messages that require pattern matching
CARRIER_MESSAGE_PATTERNS: dict[str, str] = {
    "invalid zip": "E-3003",
    "invalid postal": "E-3003",
    "address not found": "E-3003",
    "not available": "E-3004",
    "service unavailable": "E-3001",
    "rate limit": "E-3002",
    "too many requests": "E-3002",
}


def translate_carrier_error(
    carrier: str,
    carrier_code: str | None,
    carrier_message: str | None,
    context: dict | None = None,
) -> tuple[str, str, str]:
    """Translate a carrier error to a ShipDesk error.

    Args:
        carrier: Carrier name (UPS, FEDEX, USPS, DHL).
        carrier_code: Carrier-specific error code (e.g., "120100").
        carrier_message: Carrier error message text.
        context: Additional context (service, order, etc.).

    Returns:
        Tuple of (error_code, formatted_message, remediation).
    """
    context = {"carrier": carrier, **(context or {})}

    code_map = CARRIER_ERROR_MAP.get(carrier, {})
    if carrier_code and carrier_code in code_map:
        error = get_error(code_map[carrier_code])
        if error:
            message = _format_message(
                error.message_template,
                carrier_message=carrier_message or "Unknown error",
                **context,
            )
            return (error.code, message, error.remediation)

    if carrier_message:
        lowered = carrier_message.lower()
        for pattern, sd_code in CARRIER_MESSAGE_PATTERNS.items():
            if pattern in lowered:
                error = get_error(sd_code)
                if error:
                    message = _format_message(
                        error.message_template,
                        carrier_message=carrier_message,
                        **context,
                    )
                    return (error.code, message, error.remediation)

    error = get_error("E-3005")
    if error:
        message = _format_message(
            error.message_template,
            carrier_message=carrier_message or f"Code: {carrier_code}",
            **context,
        )
        return (error.code, message, error.remediation)

    return (
        "E-3005",
        f"{carrier} error: {carrier_message or carrier_code or 'Unknown'}",
        "Contact support with this error message for assistance.",
    )


def _format_message(template: str, **kwargs: object) -> str:
    """Format a message template with context, ignoring missing keys.

    Args:
        template: Message template with {placeholder} syntax.
        **kwargs: Values to substitute into the template.

    Returns:
        Formatted message string.
    """
    try:
        return template.format(**kwargs)
    except KeyError:
        return template


def extract_carrier_error(body: dict) -> tuple[str | None, str | None]:
    """Extract error code and message from a carrier API error body.

    Carrier bodies vary in structure. This handles the shapes the four
    backends return.

    Args:
        body: Carrier API error body.

    Returns:
        Tuple of (error_code, error_message), either may be None.
    """
    # UPS / generic: {"errors": [{"code", "message"}]}
    if body.get("errors"):
        err = body["errors"][0]
        if isinstance(err, dict):
            return (_as_str(err.get("code")), err.get("message"))

    # UPS wrapped: {"response": {"errors": [...]}}
    inner = body.get("response")
    if isinstance(inner, dict) and inner.get("errors"):
        err = inner["errors"][0]
        return (_as_str(err.get("code")), err.get("message"))

    # DHL problem+json: {"status", "title", "detail", "errorCode"}
    if "detail" in body and "title" in body:
        return (
            _as_str(body.get("errorCode") or body.get("status")),
            body.get("detail"),
        )

    # USPS: {"error": {"code", "message"}}
    err = body.get("error")
    if isinstance(err, dict):
        return (_as_str(err.get("code")), err.get("message"))

    if "message" in body:
        return (_as_str(body.get("code")), body.get("message"))

    return (None, None)


def _as_str(value: object) -> str | None:
    """Normalize numeric carrier codes to strings."""
    if value is None:
        return None
    return str(value)

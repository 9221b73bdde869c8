"""Error formatting and grouping utilities.

This module provides:
- ShipDeskError exception class for application errors
- Error formatting for operator display
- Error grouping to combine duplicates across batch orders
"""

from dataclasses import dataclass, field

from shipdesk.errors.registry import get_error


@dataclass
class ShipDeskError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action the operator should take to resolve.
        orders: Order numbers affected by this error.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    orders: list[str] = field(default_factory=list)
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "ShipDeskError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                Special keys 'orders' and 'details' are used for
                ShipDeskError fields rather than message substitution.

        Returns:
            ShipDeskError instance with formatted message.
        """
        orders = kwargs.get("orders", [])
        if not isinstance(orders, list):
            orders = []
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                orders=orders,
                details=details,
            )

        message = error_def.message_template
        try:
            template_kwargs = {
                k: v for k, v in kwargs.items() if k not in ("orders", "details")
            }
            message = message.format(**template_kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            pass

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            orders=orders,
            details=details,
        )


def format_error(error: ShipDeskError, include_remediation: bool = True) -> str:
    """Format error for display to the operator.

    Args:
        error: The ShipDeskError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for display.
    """
    lines = [f"{error.code}: {error.message}"]

    if error.orders:
        if len(error.orders) == 1:
            lines.append(f"  Order: {error.orders[0]}")
        else:
            orders_str = ", ".join(error.orders[:10])
            if len(error.orders) > 10:
                orders_str += f" (and {len(error.orders) - 10} more)"
            lines.append(f"  Affected orders: {orders_str}")

    if include_remediation:
        lines.append(f"  Action: {error.remediation}")

    return "\n".join(lines)


def group_errors(errors: list[ShipDeskError]) -> list[ShipDeskError]:
    """Group errors by code and message, combining order numbers.

    Example:
        5 identical "Carrier Service Unavailable" errors on five orders
        -> 1 error with orders=[...five order numbers...]

    Args:
        errors: List of ShipDeskError objects to group.

    Returns:
        List of grouped ShipDeskError objects with combined orders.
    """
    groups: dict[str, ShipDeskError] = {}

    for error in errors:
        key = f"{error.code}|{error.message}"

        if key in groups:
            groups[key].orders.extend(error.orders)
        else:
            groups[key] = ShipDeskError(
                code=error.code,
                message=error.message,
                remediation=error.remediation,
                orders=list(error.orders),
                is_retryable=error.is_retryable,
                details=error.details.copy(),
            )

    result = list(groups.values())
    for error in result:
        error.orders = sorted(set(error.orders))

    return result


def format_error_summary(errors: list[ShipDeskError]) -> str:
    """Format a list of errors for display, grouping duplicates.

    Args:
        errors: List of ShipDeskError objects.

    Returns:
        Operator-friendly summary.
    """
    if not errors:
        return "No errors."

    grouped = group_errors(errors)

    if len(grouped) == 1:
        return format_error(grouped[0])

    lines = [f"{len(grouped)} error type(s) found:\n"]
    for i, error in enumerate(grouped, 1):
        lines.append(f"{i}. {format_error(error)}")
        lines.append("")

    return "\n".join(lines)

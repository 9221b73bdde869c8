"""Typed domain exceptions for shipment lifecycle rules.

These exceptions provide stronger contract guarantees than string-based
error message matching. The CLI catches specific exception types to pick
an exit code and an operator message.

Usage:
    # In service layer
    raise NotFoundError("Shipment", shipment_id)

    # In CLI command
    try:
        shipment = service.get_by_id(shipment_id)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-4001"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found."""

    code = "E-4003"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., duplicate)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Never retried."""

    code = "E-2005"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class DuplicateShipmentError(ConflictError):
    """Order already has a shipment; nothing was written."""

    code = "E-4004"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order '{order_id}' already has a shipment")
        self.order_id = order_id


class InvalidStateTransition(DomainError):
    """Raised when attempting an invalid shipment status transition.

    Attributes:
        current_state: The current status of the shipment.
        attempted_state: The status that was attempted.
        allowed_transitions: Valid transition targets from the current status.
    """

    code = "E-2006"

    def __init__(
        self,
        current_state: str,
        attempted_state: str,
        allowed_transitions: list[str],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state}' to '{attempted_state}'. "
            f"Allowed transitions: {allowed_str}"
        )


class DamageAlreadyReportedError(ConflictError):
    """A damage report is already open for this shipment."""

    code = "E-2006"

    def __init__(self, shipment_id: str) -> None:
        super().__init__(f"Damage already reported for shipment '{shipment_id}'")
        self.shipment_id = shipment_id


class ShipmentNotShippedError(DomainError):
    """Operation requires a shipment that has left PENDING."""

    code = "E-2006"

    def __init__(self, shipment_id: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} for shipment '{shipment_id}': nothing has shipped yet"
        )
        self.shipment_id = shipment_id
        self.action = action

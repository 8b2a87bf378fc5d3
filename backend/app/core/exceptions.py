"""Domain exceptions raised by the service layer.

Services raise these; ``app.main`` maps them onto HTTP responses.
"""

from typing import List, Optional


class OrderDeskError(Exception):
    """Base class for all domain errors."""

    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.details:
            body.update(self.details)
        return body


class ValidationError(OrderDeskError):
    """Input failed validation. ``errors`` lists every violation found."""

    status_code = 400

    def __init__(self, errors: List[str], message: str = "Validation failed"):
        super().__init__(message, {"errors": list(errors)})
        self.errors = list(errors)


class NotFound(OrderDeskError):
    status_code = 404


class Forbidden(OrderDeskError):
    status_code = 403


class InvalidTransition(OrderDeskError):
    """Order status change not allowed from the current status."""

    status_code = 400

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            f"Cannot change order status from {current_status} to {new_status}",
            {"current_status": current_status, "requested_status": new_status},
        )
        self.current_status = current_status
        self.new_status = new_status


class InvalidState(OrderDeskError):
    """Operation not allowed in the entity's current state."""

    status_code = 400


class Conflict(OrderDeskError):
    status_code = 409


class TransportError(OrderDeskError):
    """A printer could not be reached or did not accept the payload."""

    status_code = 502

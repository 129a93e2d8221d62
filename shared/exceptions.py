"""
shared/exceptions.py
Domain error taxonomy. Raised where a rule is violated and translated to
an HTTP response by the handlers registered in main.py.
"""

from typing import Any, Optional


class DomainError(Exception):
    """Base class for every user-facing business rule violation."""

    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(DomainError):
    status_code = 404
    default_message = "Resource not found"


class Forbidden(DomainError):
    status_code = 403
    default_message = "You are not allowed to perform this action"


class InvalidTransition(DomainError):
    status_code = 400
    default_message = "Invalid booking status transition"


class TerminalStateViolation(InvalidTransition):
    default_message = "Booking is in a terminal state"


class InvalidOperation(DomainError):
    status_code = 400
    default_message = "Operation not allowed"


class AlreadyExists(DomainError):
    status_code = 409
    default_message = "Resource already exists"


class AlreadyProcessed(DomainError):
    """Replay of a payment callback whose payment already reached a terminal status."""

    status_code = 409
    default_message = "Payment already processed"

    def __init__(self, message: Optional[str] = None, status: Any = None):
        super().__init__(message)
        self.status = status


class GatewayError(DomainError):
    status_code = 502
    default_message = "Payment gateway error"

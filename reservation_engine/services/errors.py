"""
Typed errors raised by the reservation lifecycle services.

Each carries a stable ``code`` for API consumers and a human-readable message.
Routes translate them into HTTP responses; the scheduler counts them.
"""
from typing import Any, Dict, Optional


class ReservationEngineError(Exception):
    """Base class for every refusal the core can produce."""
    code = "RESERVATION_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class NotFoundError(ReservationEngineError):
    code = "NOT_FOUND"


class ForbiddenError(ReservationEngineError):
    """Property-scope or role violation."""
    code = "FORBIDDEN"


class InvalidTransitionError(ReservationEngineError):
    """Illegal edge in the reservation state machine."""
    code = "INVALID_TRANSITION"


class InvalidStateError(ReservationEngineError):
    """The approval request has already been decided."""
    code = "INVALID_STATE"


class ConcurrentModificationError(ReservationEngineError):
    """
    Lost an optimistic race: the row changed between read and write.

    Interactive callers must retry explicitly; only the scheduler retries on its own.
    """
    code = "CONCURRENT_MODIFICATION"


class ValidationError(ReservationEngineError):
    code = "VALIDATION_ERROR"

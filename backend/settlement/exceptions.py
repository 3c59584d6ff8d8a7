"""
Settlement error hierarchy.

Services raise these; only the HTTP layer translates them into status codes.
Every error is raised before or inside the atomic write, so a caller never
observes a partially applied ledger operation.
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class for all settlement errors"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(SettlementError):
    """Malformed or missing input (raised before any write)"""
    pass


class NotFoundError(SettlementError):
    """A referenced record does not exist"""
    pass


class ConflictError(SettlementError):
    """The request conflicts with the current stored state"""
    pass


class StateError(SettlementError):
    """The target record is in a state that forbids the operation"""
    pass


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: Any):
        self.booking_id = str(booking_id)
        super().__init__(
            f"No booking found with ID {booking_id}",
            details={"booking_id": str(booking_id)}
        )


class InvalidLocationError(NotFoundError):
    """Cash location / bank is missing or not active"""
    def __init__(self, location_type: str, location_id: Any):
        self.location_type = location_type
        self.location_id = str(location_id)
        super().__init__(
            f"Invalid {location_type} selected: {location_id}",
            details={"location_type": location_type, "location_id": str(location_id)}
        )


class AmountExceedsBalanceError(ConflictError):
    """Credit would take receivedAmount past discountedAmount"""
    def __init__(self, amount: float, remaining: float):
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"Amount exceeds balance. Maximum allowed: {remaining}",
            details={"amount": amount, "remaining": remaining}
        )


class DuplicateReferenceError(ConflictError):
    def __init__(self, reference: str, existing_id: Optional[str] = None):
        self.reference = reference
        self.existing_id = existing_id
        super().__init__(
            f"Duplicate disbursement reference: {reference}",
            details={"reference": reference, "existing_id": existing_id}
        )


class ConcurrentModificationError(ConflictError):
    """Optimistic version check on the booking balance was lost"""
    def __init__(self, booking_id: Any, expected_version: Optional[int]):
        self.booking_id = str(booking_id)
        self.expected_version = expected_version
        super().__init__(
            "Concurrent modification detected. Please retry.",
            details={"booking_id": str(booking_id), "expected_version": expected_version}
        )


class TransientConflictError(ConflictError):
    """The database aborted the transaction on a write conflict; the request can be retried"""
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            "The operation conflicted with a concurrent write. Please retry.",
            details={"operation": operation}
        )


class InvariantViolationError(SettlementError):
    """Raised when a booking invariant would be violated by a write"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        super().__init__(message, details)



class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking engine.

    Subclasses carry the HTTP status the API layer answers with and
    whether the caller may retry the same request later.
    """

    status_code = 400
    retryable = False
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class ConfigurationError(BookingEngineError):
    """Raised at startup when required configuration is missing."""

    status_code = 500


class ValidationError(BookingEngineError):
    """Missing or malformed input."""

    status_code = 400
    default_message = "Invalid request"


class InvalidDepartureError(ValidationError):
    default_message = "Cannot book tickets for past departure"


class NotFoundError(BookingEngineError):
    status_code = 404
    default_message = "Resource not found"


class VendorNotFoundError(NotFoundError):
    default_message = "Vendor not found"


class AuthenticationRequiredError(BookingEngineError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(BookingEngineError):
    """Caller is not the owner of the resource or lacks the role."""

    status_code = 403
    default_message = "Not authorized"


class ConflictError(BookingEngineError):
    status_code = 409
    default_message = "Request conflicts with the current state"


class InsufficientInventoryError(ConflictError):
    """Raised when the route cannot cover the requested quantity."""

    status_code = 400
    default_message = "Insufficient tickets available"


class AlreadyProcessedError(ConflictError):
    status_code = 400
    default_message = "Booking has already been processed"


class AlreadyPaidError(ConflictError):
    status_code = 400
    default_message = "Booking is already paid"


class AlreadyRefundedError(ConflictError):
    status_code = 400
    default_message = "Payment has already been refunded"


class NotRefundableError(ConflictError):
    status_code = 400
    default_message = "Only completed payments can be refunded"


class PaymentNotCompletedError(ConflictError):
    default_message = "Payment not completed"


class ChargeRefundedError(ConflictError):
    """A captured charge arrived for a booking that cannot take it and was refunded."""

    default_message = "Booking can no longer be paid, the charge has been refunded"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class UpstreamGatewayError(BookingEngineError):
    """Payment gateway call failed or returned an unexpected state."""

    status_code = 502
    retryable = True
    default_message = "Payment provider is unavailable, please retry later"


class InvariantViolation(BookingEngineError):
    """A transition would break a data invariant. Never clamped silently."""

    status_code = 500
    default_message = "Internal consistency check failed"


class SessionMismatchError(InvariantViolation):
    status_code = 400
    default_message = "Session does not belong to this booking"

# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set, Tuple, Type

from src.domain.exceptions import InvalidStateTransitionError, InvariantViolation


class BookingDecision(str, Enum):
    """Vendor-facing decision (``bookingStatus``)."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingPaymentStatus(str, Enum):
    """Payment-facing outcome on the booking (``paymentStatus``)."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class BookingStatus(str, Enum):
    """Lifecycle projection (``status``) derived from the two fields above."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Gateway dispute states that still block a refund.
OPEN_DISPUTE_STATES = frozenset({"open", "under_review"})


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransitionTable:
    """
    Legal transitions for one status enumeration.
    Subclasses set ``status_type`` and ``_ALLOWED_TRANSITIONS``.
    """

    status_type: Type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class BookingStateMachine(TransitionTable):
    """
    Central lifecycle controller for booking transitions.

    The vendor decision and the payment outcome move independently; this
    class owns both transition tables, the set of legal combinations and the
    derived ``status`` value stored next to them.
    """

    status_type = BookingDecision

    _ALLOWED_TRANSITIONS: Dict[BookingDecision, Set[BookingDecision]] = {
        BookingDecision.PENDING: {
            BookingDecision.ACCEPTED,
            BookingDecision.REJECTED,
            BookingDecision.CANCELLED,
        },
        BookingDecision.ACCEPTED: {
            BookingDecision.CANCELLED,
            BookingDecision.COMPLETED,
        },
        BookingDecision.REJECTED: set(),
        BookingDecision.CANCELLED: set(),
        BookingDecision.COMPLETED: set(),
    }

    _VALID_COMBINATIONS: Set[Tuple[BookingDecision, BookingPaymentStatus]] = {
        (BookingDecision.PENDING, BookingPaymentStatus.PENDING),
        (BookingDecision.ACCEPTED, BookingPaymentStatus.PENDING),
        (BookingDecision.ACCEPTED, BookingPaymentStatus.FAILED),
        (BookingDecision.ACCEPTED, BookingPaymentStatus.PAID),
        (BookingDecision.ACCEPTED, BookingPaymentStatus.REFUNDED),
        (BookingDecision.REJECTED, BookingPaymentStatus.PENDING),
        (BookingDecision.CANCELLED, BookingPaymentStatus.PENDING),
        (BookingDecision.CANCELLED, BookingPaymentStatus.FAILED),
        (BookingDecision.CANCELLED, BookingPaymentStatus.REFUNDED),
        (BookingDecision.COMPLETED, BookingPaymentStatus.PAID),
    }

    @classmethod
    def validate_combination(
        cls,
        decision: BookingDecision,
        payment_status: BookingPaymentStatus,
    ) -> None:
        if (decision, payment_status) not in cls._VALID_COMBINATIONS:
            raise InvariantViolation(
                f"Booking cannot be {decision.value} with payment {payment_status.value}"
            )

    @staticmethod
    def derive_status(
        decision: BookingDecision,
        payment_status: BookingPaymentStatus,
    ) -> BookingStatus:
        if payment_status == BookingPaymentStatus.REFUNDED:
            return BookingStatus.REFUNDED
        if decision in (BookingDecision.REJECTED, BookingDecision.CANCELLED):
            return BookingStatus.CANCELLED
        if decision == BookingDecision.COMPLETED:
            return BookingStatus.COMPLETED
        if payment_status == BookingPaymentStatus.PAID:
            return BookingStatus.CONFIRMED
        return BookingStatus.PENDING

    @classmethod
    def holds_reservation(
        cls,
        decision: BookingDecision,
        payment_status: BookingPaymentStatus,
    ) -> bool:
        """True while the booking's quantity is withheld from the route."""
        return (
            decision == BookingDecision.ACCEPTED
            and payment_status != BookingPaymentStatus.REFUNDED
        )


class BookingPaymentStateMachine(TransitionTable):
    status_type = BookingPaymentStatus

    _ALLOWED_TRANSITIONS: Dict[BookingPaymentStatus, Set[BookingPaymentStatus]] = {
        BookingPaymentStatus.PENDING: {
            BookingPaymentStatus.PAID,
            BookingPaymentStatus.FAILED,
        },
        BookingPaymentStatus.FAILED: {
            BookingPaymentStatus.PENDING,
            BookingPaymentStatus.PAID,
        },
        BookingPaymentStatus.PAID: {
            BookingPaymentStatus.REFUNDED,
        },
        BookingPaymentStatus.REFUNDED: set(),
    }


class PaymentStateMachine(TransitionTable):
    """Transitions of a single Payment record."""

    status_type = PaymentStatus

    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.PROCESSING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.REFUNDED,
            PaymentStatus.DISPUTED,
        },
        # only dispute resolution moves a disputed payment
        PaymentStatus.DISPUTED: {
            PaymentStatus.COMPLETED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.CANCELLED: set(),
        PaymentStatus.REFUNDED: set(),
    }

from typing import Any

from src.domain.state_machine import (
    BookingDecision,
    BookingPaymentStateMachine,
    BookingPaymentStatus,
    BookingStateMachine,
)
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository


def transition_booking(
    repository: BookingRepository,
    booking: Booking,
    decision: BookingDecision | None = None,
    payment_status: BookingPaymentStatus | None = None,
    values: dict[str, Any] | None = None,
) -> bool:
    """
    Validates the move against both transition tables and the allowed
    combinations, then applies it as a compare-and-set on the state the
    caller observed. Returns False when a concurrent request moved the
    booking first.
    """
    current_decision = booking.booking_status
    current_payment = booking.payment_status

    next_decision = decision or current_decision
    next_payment = payment_status or current_payment

    if decision is not None:
        BookingStateMachine.validate_transition(current_decision, decision)
    if payment_status is not None:
        BookingPaymentStateMachine.validate_transition(current_payment, payment_status)
    BookingStateMachine.validate_combination(next_decision, next_payment)

    updates = dict(values or {})
    updates.update(
        booking_status=next_decision,
        payment_status=next_payment,
        status=BookingStateMachine.derive_status(next_decision, next_payment),
    )
    return repository.compare_and_set(
        booking.id,
        expected={
            "booking_status": current_decision,
            "payment_status": current_payment,
        },
        values=updates,
    )

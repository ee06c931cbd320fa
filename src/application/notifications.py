from sqlalchemy.orm import Session

from src.infrastructure.db.models import Booking, Payment
from src.infrastructure.repositories.outbox_repository import OutboxRepository


class NotificationEmitter:
    """
    Writes lifecycle events for the realtime fan-out. Delivery is not handled
    here; every event carries a dedupe key so one transition yields at most
    one event even if the transition code runs twice.
    """

    def __init__(self, db: Session):
        self.outbox = OutboxRepository(db)

    def booking_decided(self, booking: Booking) -> None:
        decision = booking.booking_status.value
        self.outbox.add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            topic=f"booking-{booking.id}",
            event_type=f"booking-{decision}",
            payload={
                "bookingId": booking.id,
                "bookingReference": booking.booking_reference,
                "bookingStatus": decision,
                "vendorResponseNotes": booking.vendor_response_notes,
            },
            dedupe_key=f"booking:{booking.id}:{decision}",
        )

    def booking_cancelled(self, booking: Booking) -> None:
        for topic in (f"booking-{booking.id}", f"vendor-{booking.vendor_id}"):
            self.outbox.add_event(
                aggregate_type="booking",
                aggregate_id=booking.id,
                topic=topic,
                event_type="booking-cancelled",
                payload={
                    "bookingId": booking.id,
                    "bookingReference": booking.booking_reference,
                    "bookingStatus": booking.booking_status.value,
                    "reason": booking.cancellation_reason,
                },
                dedupe_key=f"booking:{booking.id}:cancelled:{topic}",
            )

    def payment_confirmed(self, booking: Booking) -> None:
        self.outbox.add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            topic=f"booking-{booking.id}",
            event_type="payment-confirmed",
            payload={
                "bookingId": booking.id,
                "paymentStatus": booking.payment_status.value,
                "bookingStatus": booking.status.value,
            },
            dedupe_key=f"booking:{booking.id}:payment-confirmed",
        )
        self.outbox.add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            topic=f"vendor-{booking.vendor_id}",
            event_type="payment-received",
            payload={
                "bookingId": booking.id,
                "bookingReference": booking.booking_reference,
                "amount": booking.total_amount,
            },
            dedupe_key=f"booking:{booking.id}:payment-received",
        )

    def payment_refunded(self, booking: Booking, payment: Payment) -> None:
        self.outbox.add_event(
            aggregate_type="payment",
            aggregate_id=payment.id,
            topic=f"booking-{booking.id}",
            event_type="payment-refunded",
            payload={
                "bookingId": booking.id,
                "paymentId": payment.id,
                "amount": payment.refund_amount,
                "paymentStatus": booking.payment_status.value,
            },
            dedupe_key=f"payment:{payment.id}:refunded",
        )

from contextlib import contextmanager
from datetime import datetime, time, timezone
from decimal import Decimal
import logging
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from src.application.inventory_ledger import InventoryLedger
from src.application.notifications import NotificationEmitter
from src.application.transitions import transition_booking
from src.config import schedule_timezone_name
from src.domain.exceptions import (
    AlreadyProcessedError,
    AuthorizationError,
    ConflictError,
    InsufficientInventoryError,
    InvalidDepartureError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
    VendorNotFoundError,
)
from src.domain.identifiers import generate_booking_reference, generate_ticket_number
from src.domain.state_machine import (
    BookingDecision,
    BookingPaymentStatus,
    BookingStateMachine,
    VerificationStatus,
)
from src.infrastructure.db.models import Booking, Passenger, Route, User, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.route_repository import RouteRepository

logger = logging.getLogger(__name__)

DEFAULT_BASE_FARE = Decimal("500")
REFERENCE_ATTEMPTS = 5


def resolve_base_fare(route: Route) -> Decimal:
    """First positive of price, base fare, then the platform default."""
    for candidate in (route.price, route.base_fare):
        if candidate is not None and Decimal(candidate) > 0:
            return Decimal(candidate)
    return DEFAULT_BASE_FARE


def parse_time_of_day(value: str | None) -> time | None:
    if not value or ":" not in value or len(value) > 5:
        return None
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError:
        return None


class BookingService:
    """Application service coordinating booking workflow."""

    def __init__(
        self,
        db: Session,
        payment_service=None,
        now: Callable[[], datetime] = utc_now,
        timezone_name: str | None = None,
    ):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.route_repository = RouteRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.ledger = InventoryLedger(db)
        self.notifications = NotificationEmitter(db)
        self.payment_service = payment_service
        self.now = now
        self.schedule_zone = ZoneInfo(timezone_name or schedule_timezone_name())

    def create_booking(
        self,
        route_id: str,
        user_id: str,
        quantity: int,
        departure: str | None = None,
        passengers: list[dict] | None = None,
    ) -> Booking:
        if not route_id or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Route ID and valid quantity are required")

        route = self.route_repository.get_by_id(route_id)
        if route is None:
            raise NotFoundError("Route not found")
        if not route.is_active or route.verification_status == VerificationStatus.REJECTED:
            raise ConflictError("Route is not open for booking")

        # Accepted reservations may drain the route; acceptance re-checks the balance.
        if quantity > route.total_quantity:
            raise InsufficientInventoryError(
                f"Only {route.total_quantity} tickets on this route"
            )

        departure_date = self._resolve_departure(route, departure)

        vendor = self.route_repository.resolve_vendor(
            self.route_repository.vendor_ref(route)
        )
        if vendor is None:
            raise VendorNotFoundError()

        if passengers and len(passengers) != quantity:
            raise ValidationError("Passenger details must match the booking quantity")

        base_fare = resolve_base_fare(route)
        if base_fare == DEFAULT_BASE_FARE and not (route.price or route.base_fare):
            logger.warning("Route %s has no fare, booking at default %s", route.id, base_fare)
        user = self.db.get(User, user_id)

        booking = Booking(
            booking_reference=self._new_reference(),
            user_id=user_id,
            route_id=route.id,
            vendor_id=vendor.id,
            booking_status=BookingDecision.PENDING,
            payment_status=BookingPaymentStatus.PENDING,
            status=BookingStateMachine.derive_status(
                BookingDecision.PENDING,
                BookingPaymentStatus.PENDING,
            ),
            booking_quantity=quantity,
            departure_date=departure_date,
            base_fare=base_fare,
            total_amount=base_fare * quantity,
            currency=route.currency,
            contact_email=user.email if user else None,
            contact_phone=user.phone if user else None,
        )
        for index in range(quantity):
            details = passengers[index] if passengers else {}
            booking.passengers.append(
                Passenger(
                    position=index,
                    name=details.get("name") or f"Passenger {index + 1}",
                    age=details.get("age"),
                    gender=details.get("gender"),
                    seat_number=details.get("seat_number") or f"A{index + 1}",
                    ticket_number=generate_ticket_number(route.id, index + 1),
                )
            )

        self.booking_repository.add(booking)
        self.db.flush()

        logger.info(
            "Created booking %s (%s) route=%s quantity=%s",
            booking.id,
            booking.booking_reference,
            route.id,
            quantity,
        )
        return booking

    def accept_booking(
        self,
        booking_id: str,
        vendor_id: str,
        notes: str | None = None,
    ) -> Booking:
        booking = self._get_for_vendor(booking_id, vendor_id)
        if booking.booking_status != BookingDecision.PENDING:
            raise AlreadyProcessedError()

        # Decision and reservation commit together or not at all.
        with self._atomic(booking):
            moved = transition_booking(
                self.booking_repository,
                booking,
                decision=BookingDecision.ACCEPTED,
                values={
                    "vendor_response_at": self.now(),
                    "vendor_response_notes": notes or "",
                },
            )
            if not moved:
                raise AlreadyProcessedError()
            self.ledger.reserve(booking.route_id, booking.booking_quantity)

        self.notifications.booking_decided(booking)
        logger.info("Vendor %s accepted booking %s", vendor_id, booking.id)
        return booking

    def reject_booking(
        self,
        booking_id: str,
        vendor_id: str,
        notes: str | None = None,
    ) -> Booking:
        booking = self._get_for_vendor(booking_id, vendor_id)
        if booking.booking_status != BookingDecision.PENDING:
            raise AlreadyProcessedError()

        moved = transition_booking(
            self.booking_repository,
            booking,
            decision=BookingDecision.REJECTED,
            values={
                "vendor_response_at": self.now(),
                "vendor_response_notes": notes or "",
            },
        )
        if not moved:
            raise AlreadyProcessedError()

        self.notifications.booking_decided(booking)
        logger.info("Vendor %s rejected booking %s", vendor_id, booking.id)
        return booking

    def complete_booking(self, booking_id: str, vendor_id: str) -> Booking:
        """
        Closes out a paid trip once it has departed. The reserved seats stay
        consumed and the payment can no longer be refunded.
        """
        booking = self._get_for_vendor(booking_id, vendor_id)
        if (
            booking.booking_status != BookingDecision.ACCEPTED
            or booking.payment_status != BookingPaymentStatus.PAID
        ):
            raise AlreadyProcessedError("Only accepted, paid bookings can be completed")

        departure = booking.departure_date
        if departure.tzinfo is None:
            departure = departure.replace(tzinfo=timezone.utc)
        if departure > self.now():
            raise ConflictError("Trip has not departed yet")

        moved = transition_booking(
            self.booking_repository,
            booking,
            decision=BookingDecision.COMPLETED,
        )
        if not moved:
            raise AlreadyProcessedError()

        self.notifications.booking_decided(booking)
        logger.info("Vendor %s completed booking %s", vendor_id, booking.id)
        return booking

    def cancel_booking(
        self,
        booking_id: str,
        user_id: str,
        role: str,
        reason: str | None = None,
    ) -> Booking:
        """
        Cancels an unpaid booking, or refunds a paid one. Releases the
        reservation when the vendor had already accepted.
        """
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if role != "admin" and booking.user_id != user_id:
            raise AuthorizationError("Not authorized to cancel this booking")

        if booking.payment_status == BookingPaymentStatus.PAID:
            return self._refund_paid_booking(booking, user_id, role, reason)

        values = {
            "cancellation_reason": reason or "Cancelled by user",
            "cancelled_at": self.now(),
            "cancelled_by": user_id,
        }

        cancelled = []
        if BookingStateMachine.holds_reservation(booking.booking_status, booking.payment_status):
            with self._atomic(booking):
                moved = transition_booking(
                    self.booking_repository,
                    booking,
                    decision=BookingDecision.CANCELLED,
                    values=values,
                )
                if not moved:
                    raise AlreadyProcessedError()
                self.ledger.release(booking.route_id, booking.booking_quantity)
                cancelled = self.payment_repository.cancel_pending_for_booking(booking.id)
        elif booking.booking_status == BookingDecision.PENDING:
            moved = transition_booking(
                self.booking_repository,
                booking,
                decision=BookingDecision.CANCELLED,
                values=values,
            )
            if not moved:
                raise AlreadyProcessedError()
        else:
            raise AlreadyProcessedError()

        self.notifications.booking_cancelled(booking)
        logger.info("Booking %s cancelled by %s", booking.id, user_id)

        if self.payment_service is not None:
            self.payment_service.cancel_checkout_links(cancelled)
        elif any(p.gateway_session_id for p in cancelled):
            logger.warning("Booking %s cancelled with checkout links still open at the gateway", booking.id)
        return booking

    def get_booking(self, booking_id: str, user_id: str, role: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if role != "admin" and booking.user_id != user_id:
            raise AuthorizationError("Not authorized to view this booking")
        return booking

    def list_user_bookings(self, user_id: str) -> list[Booking]:
        return self.booking_repository.list_for_user(user_id)

    def list_vendor_bookings(
        self,
        vendor_id: str,
        decision: BookingDecision | None = None,
    ) -> list[Booking]:
        return self.booking_repository.list_for_vendor(vendor_id, decision)

    def _refund_paid_booking(
        self,
        booking: Booking,
        user_id: str,
        role: str,
        reason: str | None,
    ) -> Booking:
        if self.payment_service is None:
            raise ConflictError("Paid bookings must be cancelled through a refund")

        payment = self.payment_repository.get_completed_for_booking(booking.id)
        if payment is None:
            raise InvariantViolation(f"Paid booking {booking.id} has no completed payment")

        self.payment_service.request_refund(
            payment.id,
            booking.user_id,
            reason or "Booking cancelled",
        )
        logger.info("Paid booking %s refunded on cancellation by %s (%s)", booking.id, user_id, role)
        return self.booking_repository.refresh(booking)

    @contextmanager
    def _atomic(self, booking: Booking):
        # Bulk-synchronized attributes survive a savepoint rollback; drop them.
        try:
            with self.db.begin_nested():
                yield
        except Exception:
            self.db.expire(booking)
            raise

    def _get_for_vendor(self, booking_id: str, vendor_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.vendor_id != vendor_id:
            raise AuthorizationError("Not authorized to manage this booking")
        return booking

    def _new_reference(self) -> str:
        for _ in range(REFERENCE_ATTEMPTS):
            reference = generate_booking_reference(self.now())
            if self.booking_repository.get_by_reference(reference) is None:
                return reference
            logger.warning("Booking reference %s already taken, regenerating", reference)
        # The unique constraint still guards a concurrent insert of the same value.
        raise InvariantViolation("Could not allocate a unique booking reference")

    def _resolve_departure(self, route: Route, departure: str | None) -> datetime:
        now = self.now()

        if departure:
            try:
                moment = datetime.fromisoformat(departure)
            except ValueError as exc:
                raise InvalidDepartureError("Invalid departure time format") from exc
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=self.schedule_zone)
        else:
            first = route.schedules[0] if route.schedules else None
            time_of_day = parse_time_of_day(first.departure_time if first else None)
            if time_of_day is None:
                raise InvalidDepartureError("Invalid departure time format")
            today = now.astimezone(self.schedule_zone).date()
            moment = datetime.combine(today, time_of_day, tzinfo=self.schedule_zone)

        moment = moment.astimezone(timezone.utc)
        if moment <= now:
            raise InvalidDepartureError()
        return moment

import csv
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import io
import json
import logging
from typing import Callable

from sqlalchemy.orm import Session

from src.application.inventory_ledger import InventoryLedger
from src.application.notifications import NotificationEmitter
from src.application.transitions import transition_booking
from src.config import PaymentSettings
from src.domain.exceptions import (
    AlreadyPaidError,
    AlreadyRefundedError,
    AuthorizationError,
    ChargeRefundedError,
    ConflictError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    InvariantViolation,
    NotFoundError,
    NotRefundableError,
    PaymentNotCompletedError,
    SessionMismatchError,
    UpstreamGatewayError,
    ValidationError,
)
from src.domain.state_machine import (
    OPEN_DISPUTE_STATES,
    BookingDecision,
    BookingPaymentStatus,
    BookingStateMachine,
    PaymentStateMachine,
    PaymentStatus,
    RefundStatus,
)
from src.infrastructure.db.models import Booking, Payment, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import WebhookEventRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.route_repository import RouteRepository

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Transaction ID",
    "Booking Reference",
    "Amount",
    "Currency",
    "Status",
    "Ticket Title",
    "Route",
    "Payment Date",
]

DEFAULT_REFUND_REASON = "Customer requested refund"
ORPHAN_REFUND_REASON = "Booking can no longer be paid"


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    session_url: str
    booking_id: str
    payment_id: str


@dataclass(frozen=True)
class ConfirmationResult:
    booking: Booking
    payment: Payment | None
    already_paid: bool = False


@dataclass(frozen=True)
class RefundOutcome:
    refund_id: str
    amount: Decimal
    status: str
    payment: Payment


class PaymentService:
    """
    Reconciles hosted-checkout outcomes with local payment and booking
    state. The gateway is only ever called outside of a held row lock: the
    pending payment or refund claim is committed first, then the gateway is
    called, then the outcome is written.
    """

    def __init__(
        self,
        db: Session,
        gateway,
        settings: PaymentSettings | None = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or PaymentSettings()
        self.now = now
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.route_repository = RouteRepository(db)
        self.webhook_repository = WebhookEventRepository(db)
        self.ledger = InventoryLedger(db)
        self.notifications = NotificationEmitter(db)

    # -------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------

    def initiate_checkout(
        self,
        booking_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        if not booking_id or not success_url or not cancel_url:
            raise ValidationError("Booking ID, success URL and cancel URL are required")

        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")

        if booking.payment_status == BookingPaymentStatus.PAID:
            raise AlreadyPaidError()

        if booking.booking_status == BookingDecision.PENDING:
            available = self.route_repository.get_available_quantity(booking.route_id)
            if available is None or available < booking.booking_quantity:
                raise InsufficientInventoryError("Not enough available tickets for this route")
            raise ConflictError("Booking is awaiting vendor acceptance")

        if not BookingStateMachine.holds_reservation(booking.booking_status, booking.payment_status):
            raise ConflictError(f"Booking is {booking.status.value} and cannot be paid")

        if booking.payment_status == BookingPaymentStatus.FAILED:
            transition_booking(
                self.booking_repository,
                booking,
                payment_status=BookingPaymentStatus.PENDING,
            )

        payment = self.payment_repository.get_pending_for_booking(booking.id)
        if payment is None:
            payment, created = self.payment_repository.add_pending_or_get_existing(
                Payment(
                    booking_id=booking.id,
                    user_id=booking.user_id,
                    amount=booking.total_amount,
                    currency=booking.currency,
                    gateway_name=self.gateway.name,
                    status=PaymentStatus.PENDING,
                )
            )
            if created:
                logger.info("Opened pending payment %s for booking %s", payment.id, booking.id)

        # The pending row must be durable before any money can move.
        self.db.commit()

        if payment.gateway_session_id:
            # At most one payable link per booking.
            existing = self.gateway.retrieve_session(payment.gateway_session_id)
            if existing.paid:
                self.confirm_payment(booking.id, existing.id)
                self.db.commit()
                raise AlreadyPaidError()
            if not existing.closed:
                logger.info("Reusing open checkout session %s for booking %s", existing.id, booking.id)
                return CheckoutResult(
                    session_id=existing.id,
                    session_url=existing.url,
                    booking_id=booking.id,
                    payment_id=payment.id,
                )
            self.payment_repository.add_attempt(
                payment,
                status=existing.status,
                error_code="checkout_closed",
            )

        try:
            session = self.gateway.create_checkout_session(
                booking_id=booking.id,
                user_id=booking.user_id,
                amount=booking.total_amount,
                currency=booking.currency,
                description=self._describe(booking),
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=booking.contact_email,
            )
        except UpstreamGatewayError as exc:
            self.payment_repository.add_attempt(
                payment,
                status="failed",
                error_code="checkout_session",
                error_message=str(exc),
            )
            self.db.commit()
            raise

        payment.gateway_session_id = session.id
        payment.gateway_name = self.gateway.name
        payment.gateway_response = {"sessionId": session.id, "status": session.status}
        self.payment_repository.add_attempt(payment, status="session_created")
        self.db.flush()

        logger.info("Checkout session %s created for booking %s", session.id, booking.id)
        return CheckoutResult(
            session_id=session.id,
            session_url=session.url,
            booking_id=booking.id,
            payment_id=payment.id,
        )

    # -------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------

    def confirm_payment(
        self,
        booking_id: str,
        session_id: str | None = None,
    ) -> ConfirmationResult:
        """
        Idempotent: a booking that is already paid returns immediately and
        nothing is written. Inventory is untouched here; the reservation was
        taken when the vendor accepted.
        """
        if not booking_id:
            raise ValidationError("Booking ID is required")

        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")

        if booking.payment_status == BookingPaymentStatus.PAID:
            completed = self.payment_repository.get_completed_for_booking(booking.id)
            if session_id and completed is not None and completed.gateway_session_id != session_id:
                self._refund_if_charged_twice(booking, session_id)
            logger.info("Booking %s already paid, confirmation skipped", booking.id)
            return ConfirmationResult(
                booking=booking,
                payment=completed,
                already_paid=True,
            )

        if session_id:
            payment = self.payment_repository.get_by_session(booking.id, session_id)
        else:
            payment = self.payment_repository.get_pending_for_booking(booking.id)
            if payment is None or not payment.gateway_session_id:
                raise PaymentNotCompletedError("No checkout in progress for this booking")
            session_id = payment.gateway_session_id

        session = self.gateway.retrieve_session(session_id)
        if session.metadata.get("booking_id") != booking.id:
            logger.warning(
                "Session %s does not belong to booking %s",
                session_id,
                booking.id,
            )
            raise SessionMismatchError()

        if not session.paid:
            if session.closed:
                self._close_abandoned_checkout(booking, payment, session.status)
            raise PaymentNotCompletedError("Payment not completed with the payment provider")

        try:
            moved = transition_booking(
                self.booking_repository,
                booking,
                payment_status=BookingPaymentStatus.PAID,
                values={
                    "payment_method": "card",
                    "transaction_id": session_id,
                    "paid_at": self.now(),
                },
            )
        except (InvalidStateTransitionError, InvariantViolation):
            logger.error(
                "Gateway reports booking %s paid but booking is %s/%s; refunding the charge",
                booking.id,
                booking.booking_status.value,
                booking.payment_status.value,
            )
            self._refund_orphan_charge(booking, payment, session)

        if not moved:
            # A concurrent request moved the booking first; judge again from its new state.
            self.booking_repository.refresh(booking)
            return self.confirm_payment(booking.id, session_id)

        if payment is None:
            payment = self.payment_repository.get_pending_for_booking(booking.id, for_update=True)
        if payment is None:
            payment = Payment(
                booking_id=booking.id,
                user_id=booking.user_id,
                amount=booking.total_amount,
                currency=booking.currency,
                gateway_name=self.gateway.name,
                status=PaymentStatus.PENDING,
            )
            self.db.add(payment)

        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.COMPLETED)
        payment.status = PaymentStatus.COMPLETED
        payment.gateway_session_id = session_id
        payment.gateway_payment_id = session.payment_id
        payment.gateway_fee = session.gateway_fee
        payment.platform_fee = self._platform_fee(payment.amount)
        payment.gateway_response = session.raw
        self.payment_repository.add_attempt(payment, status="completed")

        self.notifications.payment_confirmed(booking)
        self.db.flush()

        logger.info("Payment %s completed for booking %s", payment.id, booking.id)
        return ConfirmationResult(booking=booking, payment=payment)

    def _close_abandoned_checkout(
        self,
        booking: Booking,
        payment: Payment | None,
        gateway_status: str,
    ) -> None:
        if payment is not None and payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.CANCELLED
            self.payment_repository.add_attempt(
                payment,
                status=gateway_status,
                error_code="checkout_closed",
            )
        if booking.payment_status == BookingPaymentStatus.PENDING:
            transition_booking(
                self.booking_repository,
                booking,
                payment_status=BookingPaymentStatus.FAILED,
            )
        self.db.commit()
        logger.info("Checkout for booking %s closed by gateway (%s)", booking.id, gateway_status)

    def cancel_checkout_links(self, payments: list[Payment]) -> None:
        """
        Cancels the hosted links of payments that were just cancelled
        locally. A link the gateway refuses to cancel is left to
        confirmation, which refunds a charge on a booking that cannot take it.
        """
        session_ids = [p.gateway_session_id for p in payments if p.gateway_session_id]
        if not session_ids:
            return
        self.db.commit()
        for session_id in session_ids:
            try:
                self.gateway.cancel_session(session_id)
            except UpstreamGatewayError:
                logger.exception("Could not cancel checkout session %s", session_id)

    def _refund_if_charged_twice(self, booking: Booking, session_id: str) -> None:
        session = self.gateway.retrieve_session(session_id)
        if not session.paid or session.metadata.get("booking_id") != booking.id:
            return
        logger.error("Booking %s is already paid but checkout %s was charged too", booking.id, session_id)
        self._refund_orphan_charge(
            booking,
            self.payment_repository.get_by_session(booking.id, session_id),
            session,
        )

    def _refund_orphan_charge(self, booking: Booking, payment: Payment | None, session) -> None:
        """
        Refunds a charge captured for a booking that cannot take it and
        records it on a cancelled payment row. Always raises
        ChargeRefundedError once the refund is on record.
        """
        if not session.payment_id:
            raise InvariantViolation(f"Checkout {session.id} reports paid without a captured charge")

        if payment is None or payment.status not in (PaymentStatus.PENDING, PaymentStatus.CANCELLED):
            payment = Payment(
                booking_id=booking.id,
                user_id=booking.user_id,
                amount=booking.total_amount,
                currency=booking.currency,
                gateway_name=self.gateway.name,
                gateway_session_id=session.id,
                status=PaymentStatus.CANCELLED,
            )
            self.db.add(payment)
            self.db.flush()
        elif payment.status == PaymentStatus.PENDING:
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.CANCELLED)
            payment.status = PaymentStatus.CANCELLED

        if payment.refund_status != RefundStatus.COMPLETED:
            refund = self.gateway.find_refund(session.payment_id)
            if refund is None:
                refund = self.gateway.refund(
                    session.payment_id,
                    payment.amount,
                    ORPHAN_REFUND_REASON,
                    notes={"booking_id": booking.id, "payment_id": payment.id},
                )
            payment.gateway_payment_id = session.payment_id
            payment.gateway_response = session.raw
            payment.refund_amount = payment.amount
            payment.refund_reason = ORPHAN_REFUND_REASON
            payment.refund_date = self.now()
            payment.refund_reference = refund.id
            payment.refund_status = RefundStatus.COMPLETED
            self.payment_repository.add_attempt(payment, status="refunded", error_code="booking_not_payable")
            self.db.commit()
            logger.warning("Refunded charge %s on booking %s (%s)", session.payment_id, booking.id, refund.id)

        raise ChargeRefundedError()

    # -------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------

    def request_refund(
        self,
        payment_id: str,
        user_id: str,
        reason: str | None = None,
    ) -> RefundOutcome:
        if not payment_id:
            raise ValidationError("Payment ID is required")
        reason = reason or DEFAULT_REFUND_REASON

        payment = self.payment_repository.get_for_user(payment_id, user_id)
        if payment is None:
            raise NotFoundError("Payment not found")

        if payment.status == PaymentStatus.REFUNDED or payment.refund_status == RefundStatus.COMPLETED:
            raise AlreadyRefundedError()
        if payment.status == PaymentStatus.DISPUTED or payment.dispute_status in OPEN_DISPUTE_STATES:
            raise AlreadyRefundedError("Payment is under dispute")
        if payment.status != PaymentStatus.COMPLETED:
            raise NotRefundableError()
        if payment.booking.booking_status == BookingDecision.COMPLETED:
            raise NotRefundableError("Completed trips cannot be refunded")
        if not payment.gateway_payment_id:
            raise NotRefundableError("Payment has no captured charge to refund")

        if not self.payment_repository.claim_refund(payment.id):
            self.db.refresh(payment)
            if payment.refund_status == RefundStatus.PROCESSING:
                # An earlier attempt may have refunded at the gateway but
                # failed before writing the outcome.
                existing = self.gateway.find_refund(payment.gateway_payment_id)
                if existing is not None:
                    return self._finalize_refund(payment, existing, reason)
                raise AlreadyRefundedError("A refund for this payment is already in progress")
            raise AlreadyRefundedError()

        self.db.commit()

        try:
            refund = self.gateway.refund(
                payment.gateway_payment_id,
                payment.amount,
                reason,
                notes={"booking_id": payment.booking_id, "payment_id": payment.id},
            )
        except UpstreamGatewayError:
            payment.refund_status = RefundStatus.FAILED
            self.db.commit()
            raise

        return self._finalize_refund(payment, refund, reason)

    def _finalize_refund(self, payment: Payment, refund, reason: str) -> RefundOutcome:
        self.db.refresh(payment, with_for_update=True)
        if payment.status == PaymentStatus.REFUNDED:
            return RefundOutcome(
                refund_id=payment.refund_reference or refund.id,
                amount=payment.refund_amount,
                status=PaymentStatus.REFUNDED.value,
                payment=payment,
            )

        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.REFUNDED)
        payment.status = PaymentStatus.REFUNDED
        payment.refund_amount = payment.amount
        payment.refund_reason = reason
        payment.refund_date = self.now()
        payment.refund_reference = refund.id
        payment.refund_status = RefundStatus.COMPLETED
        self.payment_repository.add_attempt(payment, status="refunded")

        booking = self.booking_repository.get_by_id(payment.booking_id)
        if booking.payment_status == BookingPaymentStatus.PAID:
            held = BookingStateMachine.holds_reservation(
                booking.booking_status,
                booking.payment_status,
            )
            moved = transition_booking(
                self.booking_repository,
                booking,
                payment_status=BookingPaymentStatus.REFUNDED,
                values={
                    "refund_amount": payment.amount,
                    "refund_reason": reason,
                },
            )
            if moved:
                if held:
                    self.ledger.release(booking.route_id, booking.booking_quantity)
                self.notifications.payment_refunded(booking, payment)

        self.db.flush()
        logger.info("Payment %s refunded (%s)", payment.id, refund.id)
        return RefundOutcome(
            refund_id=refund.id,
            amount=payment.refund_amount,
            status=PaymentStatus.REFUNDED.value,
            payment=payment,
        )

    # -------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------

    def handle_webhook(
        self,
        body: bytes,
        signature: str | None,
        event_id: str | None = None,
    ) -> str:
        if not signature or not self.gateway.verify_webhook(body, signature):
            raise AuthorizationError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        event_type = event.get("event", "")
        event_id = event_id or WebhookEventRepository.hash_payload(body)
        entities = event.get("payload") or {}
        link = (entities.get("payment_link") or {}).get("entity") or {}
        booking_id = (link.get("notes") or {}).get("booking_id")

        if not self.webhook_repository.record(
            provider=self.gateway.name,
            event_id=event_id,
            event_type=event_type,
            body=body,
            booking_id=booking_id,
        ):
            logger.info("Duplicate webhook %s ignored", event_id)
            return "duplicate"

        if event_type == "payment_link.paid":
            if not booking_id:
                logger.warning("Webhook %s has no booking reference", event_id)
                return "ignored"
            try:
                self.confirm_payment(booking_id, link.get("id"))
            except ChargeRefundedError:
                return "refunded"
            return "processed"

        if event_type.startswith("payment.dispute."):
            dispute = (entities.get("dispute") or {}).get("entity") or {}
            gateway_payment = (entities.get("payment") or {}).get("entity") or {}
            return self._apply_dispute(
                event_type.rsplit(".", 1)[-1],
                dispute,
                gateway_payment.get("id") or dispute.get("payment_id"),
            )

        logger.info("Webhook %s of type %s ignored", event_id, event_type)
        return "ignored"

    def _apply_dispute(self, action: str, dispute: dict, gateway_payment_id: str | None) -> str:
        payment = (
            self.payment_repository.get_by_gateway_payment_id(gateway_payment_id)
            if gateway_payment_id
            else None
        )
        if payment is None:
            logger.warning("Dispute for unknown payment %s", gateway_payment_id)
            return "ignored"

        if action == "created":
            payment.dispute_id = dispute.get("id")
            payment.dispute_reason = dispute.get("reason_code")
            payment.dispute_status = dispute.get("status") or "open"
            if dispute.get("amount") is not None:
                payment.dispute_amount = (Decimal(dispute["amount"]) / 100).quantize(Decimal("0.01"))
            payment.dispute_created_at = self.now()
            if PaymentStateMachine.can_transition(payment.status, PaymentStatus.DISPUTED):
                payment.status = PaymentStatus.DISPUTED
        elif action == "won":
            payment.dispute_status = "won"
            if payment.status == PaymentStatus.DISPUTED:
                payment.status = PaymentStatus.COMPLETED
        elif action in ("lost", "closed"):
            payment.dispute_status = dispute.get("status") or action
        else:
            return "ignored"

        self.db.flush()
        logger.info("Dispute %s on payment %s: %s", dispute.get("id"), payment.id, action)
        return "processed"

    # -------------------------------------------------------------
    # Read projections
    # -------------------------------------------------------------

    def get_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: PaymentStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> tuple[list[Payment], int]:
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive")
        return self.payment_repository.list_for_user(
            user_id,
            page=page,
            limit=limit,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )

    def get_status(self, payment_id: str, user_id: str) -> Payment:
        payment = self.payment_repository.get_for_user(payment_id, user_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def export_csv(
        self,
        user_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> str:
        payments = self.payment_repository.export_for_user(user_id, start_date, end_date)

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for payment in payments:
            booking = payment.booking
            route = booking.route if booking else None
            writer.writerow(
                [
                    payment.gateway_payment_id or payment.id,
                    booking.booking_reference if booking else "",
                    f"{payment.amount:.2f}",
                    payment.currency,
                    payment.status.value,
                    route.title if route else "",
                    f"{route.from_city} to {route.to_city}" if route else "",
                    payment.created_at.date().isoformat() if payment.created_at else "",
                ]
            )
        return buffer.getvalue()

    def _platform_fee(self, amount: Decimal) -> Decimal:
        return (amount * self.settings.platform_fee_percent / 100).quantize(Decimal("0.01"))

    @staticmethod
    def _describe(booking: Booking) -> str:
        route = booking.route
        if route is None:
            return f"Booking {booking.booking_reference}"
        return (
            f"{route.title} ({route.from_city} to {route.to_city}) x"
            f"{booking.booking_quantity}, ref {booking.booking_reference}"
        )

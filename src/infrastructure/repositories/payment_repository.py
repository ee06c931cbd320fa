# src/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from src.infrastructure.db.models import Booking, Payment, PaymentAttempt
from src.domain.state_machine import OPEN_DISPUTE_STATES, PaymentStatus, RefundStatus


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_for_user(self, payment_id: str, user_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.user_id == user_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_pending_for_booking(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status == PaymentStatus.PENDING)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_session(self, booking_id: str, session_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.gateway_session_id == session_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.gateway_payment_id == gateway_payment_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalars().first()

    def get_completed_for_booking(self, booking_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status == PaymentStatus.COMPLETED)
            .order_by(Payment.created_at.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def add_pending_or_get_existing(self, payment: Payment) -> tuple[Payment, bool]:
        """
        Inserts ``payment`` as the booking's pending payment. When another
        request already holds the pending slot the partial unique index
        rejects the insert and that row is returned instead.
        """
        try:
            with self.db.begin_nested():
                self.db.add(payment)
                self.db.flush()
        except IntegrityError:
            existing = self.get_pending_for_booking(payment.booking_id)
            if existing is None:
                raise
            return existing, False
        return payment, True

    def add_attempt(
        self,
        payment: Payment,
        status: str,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            status=status,
            error_code=error_code,
            error_message=error_message,
        )
        payment.attempts.append(attempt)
        return attempt

    def cancel_pending_for_booking(self, booking_id: str) -> list[Payment]:
        pending = self.db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status == PaymentStatus.PENDING)
            .with_for_update()
        ).scalars().all()
        for payment in pending:
            payment.status = PaymentStatus.CANCELLED
        return list(pending)

    def claim_refund(self, payment_id: str) -> bool:
        """
        Moves the refund sub-record to ``processing`` if no refund is in
        flight or done. Only one caller wins the claim.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status == PaymentStatus.COMPLETED)
            .where(
                or_(
                    Payment.dispute_status.is_(None),
                    Payment.dispute_status.not_in(sorted(OPEN_DISPUTE_STATES)),
                )
            )
            .where(
                or_(
                    Payment.refund_status.is_(None),
                    Payment.refund_status == RefundStatus.FAILED,
                )
            )
            .values(refund_status=RefundStatus.PROCESSING)
            .returning(Payment.id)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).scalar_one_or_none() is not None

    def _user_query(
        self,
        user_id: str,
        status: PaymentStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ):
        stmt = select(Payment).where(Payment.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        if start_date is not None:
            stmt = stmt.where(Payment.created_at >= start_date)
        if end_date is not None:
            stmt = stmt.where(Payment.created_at <= end_date)
        return stmt

    def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: PaymentStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> tuple[list[Payment], int]:
        base = self._user_query(user_id, status, start_date, end_date)

        total = self.db.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()

        stmt = (
            base.options(selectinload(Payment.booking).selectinload(Booking.route))
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all()), total

    def export_for_user(
        self,
        user_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[Payment]:
        stmt = (
            self._user_query(user_id, None, start_date, end_date)
            .options(selectinload(Payment.booking).selectinload(Booking.route))
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

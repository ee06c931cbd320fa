# src/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    Integer,
    Numeric,
    DateTime,
    Enum,
    Index,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    event,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.state_machine import (
    OPEN_DISPUTE_STATES,
    BookingDecision,
    BookingPaymentStatus,
    BookingStatus,
    PaymentStatus,
    RefundStatus,
    VerificationStatus,
)


def _enum_column_type(enum_cls, name: str) -> Enum:
    # Persist the lowercase values, not the member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def _new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Minimal identity record. Authentication lives upstream; the core only
    reads users to resolve vendors and booking contact details.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    vendor_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=True,
    )
    # Operator is either a foreign key to a vendor user or an embedded record.
    operator_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=True,
    )
    operator_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    operator_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    operator_contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operator_contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    title: Mapped[str] = mapped_column(String(128), nullable=False)
    from_city: Mapped[str] = mapped_column(String(64), nullable=False)
    to_city: Mapped[str] = mapped_column(String(64), nullable=False)
    transport_type: Mapped[str] = mapped_column(String(16), nullable=False)
    travel_class: Mapped[str | None] = mapped_column(String(32), nullable=True)

    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    base_fare: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="BDT")

    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    verification_status: Mapped[VerificationStatus] = mapped_column(
        _enum_column_type(VerificationStatus, "route_verification_status"),
        nullable=False,
        default=VerificationStatus.PENDING,
    )
    admin_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    admin_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_advertised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    advertisement_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    schedules: Mapped[list["RouteSchedule"]] = relationship(
        back_populates="route",
        cascade="all, delete-orphan",
        order_by="RouteSchedule.position",
    )

    __table_args__ = (
        CheckConstraint("total_quantity >= 0", name="ck_route_total_nonnegative"),
        CheckConstraint("available_quantity >= 0", name="ck_route_available_nonnegative"),
        CheckConstraint(
            "available_quantity <= total_quantity",
            name="ck_route_available_lte_total",
        ),
        CheckConstraint(
            "advertisement_priority >= 0 AND advertisement_priority <= 100",
            name="ck_route_ad_priority_range",
        ),
    )


class RouteSchedule(Base):
    __tablename__ = "route_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    route_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("routes.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    departure_time: Mapped[str] = mapped_column(String(16), nullable=False)
    arrival_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    duration: Mapped[str | None] = mapped_column(String(32), nullable=True)
    days: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)

    route: Mapped[Route] = relationship(back_populates="schedules")


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_reference: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    route_id: Mapped[str] = mapped_column(String(36), ForeignKey("routes.id"), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)

    booking_status: Mapped[BookingDecision] = mapped_column(
        _enum_column_type(BookingDecision, "booking_decision"),
        nullable=False,
        default=BookingDecision.PENDING,
    )
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column_type(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[BookingPaymentStatus] = mapped_column(
        _enum_column_type(BookingPaymentStatus, "booking_payment_status"),
        nullable=False,
        default=BookingPaymentStatus.PENDING,
    )
    vendor_response_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    vendor_response_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    booking_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    departure_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    base_fare: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="BDT")
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    route: Mapped[Route] = relationship()
    passengers: Mapped[list["Passenger"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="Passenger.position",
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_reference",
            name="uq_booking_reference",
        ),
        CheckConstraint(
            "booking_quantity > 0",
            name="ck_booking_quantity_positive",
        ),
        Index("ix_bookings_user_created", "user_id", "created_at"),
        Index("ix_bookings_vendor_created", "vendor_id", "created_at"),
    )


class Passenger(Base):
    __tablename__ = "booking_passengers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    seat_number: Mapped[str] = mapped_column(String(16), nullable=False)
    ticket_number: Mapped[str] = mapped_column(String(32), nullable=False)

    booking: Mapped[Booking] = relationship(back_populates="passengers")

    __table_args__ = (
        UniqueConstraint("ticket_number", name="uq_passenger_ticket_number"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="BDT")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="card")

    gateway_name: Mapped[str] = mapped_column(String(32), nullable=False, default="razorpay")
    gateway_session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    processing_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    gateway_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    vendor_payout_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    refund_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_status: Mapped[RefundStatus | None] = mapped_column(
        _enum_column_type(RefundStatus, "refund_status"),
        nullable=True,
    )

    dispute_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dispute_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    dispute_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    dispute_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    booking: Mapped[Booking] = relationship()
    attempts: Mapped[list["PaymentAttempt"]] = relationship(
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAttempt.attempted_at",
    )

    __table_args__ = (
        # At most one open checkout per booking.
        Index(
            "uq_payment_booking_pending",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_gateway_session", "gateway_session_id"),
        CheckConstraint("amount >= 0", name="ck_payment_amount_nonnegative"),
    )

    @property
    def net_amount(self) -> Decimal:
        return self.amount - (self.total_fees or Decimal("0"))

    @property
    def is_refundable(self) -> bool:
        return (
            self.status == PaymentStatus.COMPLETED
            and self.refund_status is None
            and self.dispute_status not in OPEN_DISPUTE_STATES
            and (self.booking is None or self.booking.booking_status != BookingDecision.COMPLETED)
        )


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
    )
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment: Mapped[Payment] = relationship(back_populates="attempts")


@event.listens_for(Payment, "before_insert")
@event.listens_for(Payment, "before_update")
def _apply_payment_invariants(mapper, connection, target: Payment) -> None:
    target.total_fees = (
        (target.processing_fee or Decimal("0"))
        + (target.gateway_fee or Decimal("0"))
        + (target.platform_fee or Decimal("0"))
    )
    if target.status == PaymentStatus.COMPLETED:
        if target.vendor_payout_amount is None:
            target.vendor_payout_amount = target.amount - target.total_fees
        if target.completed_at is None:
            target.completed_at = utc_now()
    elif target.status == PaymentStatus.FAILED and target.failed_at is None:
        target.failed_at = utc_now()


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PROCESSED")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event_id"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )

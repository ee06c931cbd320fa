from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from src.domain.state_machine import (
    BookingDecision,
    BookingPaymentStatus,
    BookingStatus,
    PaymentStatus,
    RefundStatus,
    VerificationStatus,
)

# Amounts stay Decimal internally and go out as JSON numbers.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T | None = None


# ---------------------------------------------------------------
# Requests
# ---------------------------------------------------------------


class PassengerRequest(CamelModel):
    name: str = Field(min_length=1, max_length=128)
    age: int | None = Field(default=None, ge=0, le=150)
    gender: str | None = None


class BookingRequest(CamelModel):
    route_id: str
    quantity: int = Field(gt=0)
    booking_date: str | None = None
    passengers: list[PassengerRequest] | None = None


class VendorDecisionRequest(CamelModel):
    notes: str | None = Field(default=None, max_length=500)


class CancelBookingRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class RouteScheduleRequest(CamelModel):
    departure_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    arrival_time: str | None = None
    duration: str | None = None
    days: list[str] = Field(default_factory=list)
    frequency: Literal["daily", "weekly", "custom"] | None = None


class RouteCreateRequest(CamelModel):
    title: str = Field(min_length=1, max_length=128)
    from_city: str
    to_city: str
    transport_type: Literal["bus", "train", "flight", "launch", "ferry"]
    travel_class: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    base_fare: Decimal | None = Field(default=None, ge=0)
    currency: str = "BDT"
    total_quantity: int = Field(ge=0)
    operator_name: str | None = None
    operator_code: str | None = None
    operator_contact_email: str | None = None
    operator_contact_phone: str | None = None
    description: str | None = Field(default=None, max_length=1000)
    schedules: list[RouteScheduleRequest] = Field(default_factory=list)


class RouteVerificationRequest(CamelModel):
    verification_status: Literal["approved", "rejected"]
    admin_notes: str | None = Field(default=None, max_length=500)


class CheckoutSessionRequest(CamelModel):
    booking_id: str
    success_url: str
    cancel_url: str


class PaymentStatusUpdateRequest(CamelModel):
    booking_id: str
    session_id: str | None = None


class RefundRequest(CamelModel):
    payment_id: str
    reason: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------
# Responses
# ---------------------------------------------------------------


class PassengerResponse(CamelModel):
    name: str
    age: int | None = None
    gender: str | None = None
    seat_number: str
    ticket_number: str


class BookingResponse(CamelModel):
    id: str
    booking_reference: str
    user_id: str
    route_id: str
    vendor_id: str
    booking_status: BookingDecision
    status: BookingStatus
    payment_status: BookingPaymentStatus
    booking_quantity: int
    departure_date: datetime
    base_fare: Money
    total_amount: Money
    currency: str
    contact_email: str | None = None
    contact_phone: str | None = None
    vendor_response_at: datetime | None = None
    vendor_response_notes: str | None = None
    payment_method: str | None = None
    transaction_id: str | None = None
    paid_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    refund_amount: Money = Decimal("0")
    refund_reason: str | None = None
    created_at: datetime | None = None
    passengers: list[PassengerResponse] = Field(default_factory=list)


class RouteScheduleResponse(CamelModel):
    departure_time: str
    arrival_time: str | None = None
    duration: str | None = None
    days: list[str] = Field(default_factory=list)
    frequency: str | None = None


class RouteResponse(CamelModel):
    id: str
    vendor_id: str | None = None
    operator_id: str | None = None
    operator_name: str | None = None
    title: str
    from_city: str
    to_city: str
    transport_type: str
    travel_class: str | None = None
    price: Money | None = None
    base_fare: Money | None = None
    currency: str
    total_quantity: int
    available_quantity: int
    verification_status: VerificationStatus
    admin_notes: str | None = None
    is_active: bool
    schedules: list[RouteScheduleResponse] = Field(default_factory=list)


class CheckoutSessionResponse(CamelModel):
    session_id: str
    session_url: str
    booking_id: str


class PaymentConfirmationResponse(CamelModel):
    booking_id: str
    payment_id: str | None = None
    payment_status: BookingPaymentStatus
    booking_status: BookingStatus
    already_paid: bool = False


class RefundResponse(CamelModel):
    refund_id: str
    amount: Money
    status: str


class PaymentResponse(CamelModel):
    id: str
    booking_id: str
    amount: Money
    currency: str
    status: PaymentStatus
    payment_method: str
    gateway_name: str
    gateway_payment_id: str | None = None
    processing_fee: Money
    gateway_fee: Money
    platform_fee: Money
    total_fees: Money
    net_amount: Money
    vendor_payout_amount: Money | None = None
    refund_amount: Money = Decimal("0")
    refund_status: RefundStatus | None = None
    dispute_status: str | None = None
    is_refundable: bool
    created_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentHistoryResponse(CamelModel):
    payments: list[PaymentResponse]
    pagination: Pagination


class WebhookResponse(CamelModel):
    result: str


class OutboxEventResponse(CamelModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    topic: str
    event_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    created_at: str

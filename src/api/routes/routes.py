from datetime import datetime
import json
import logging
import math

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from sqlalchemy.orm import Session

from src.api.dependencies import (
    Principal,
    get_booking_service,
    get_db,
    get_payment_service,
    get_payment_settings,
    get_principal,
    require_role,
)
from src.api.schemas.schemas import (
    BookingRequest,
    BookingResponse,
    CancelBookingRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    Envelope,
    OutboxEventResponse,
    Pagination,
    PaymentConfirmationResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    PaymentStatusUpdateRequest,
    RefundRequest,
    RefundResponse,
    RouteCreateRequest,
    RouteResponse,
    RouteVerificationRequest,
    VendorDecisionRequest,
    WebhookResponse,
)
from src.application.booking_service import BookingService
from src.application.payment_service import PaymentService
from src.application.route_service import RouteService
from src.config import PaymentSettings
from src.domain.exceptions import NotFoundError
from src.domain.state_machine import BookingDecision, PaymentStatus, VerificationStatus
from src.infrastructure.db.models import OutboxEvent
from src.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        topic=item.topic,
        event_type=item.event_type,
        payload=json.loads(item.payload),
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.get("/health", response_model=Envelope[dict])
def health():
    return Envelope(message="Ticket booking engine is running")


# -----------------------------
# Bookings
# -----------------------------
@router.post(
    "/bookings",
    response_model=Envelope[BookingResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: BookingRequest,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.create_booking(
        route_id=request.route_id,
        user_id=principal.user_id,
        quantity=request.quantity,
        departure=request.booking_date,
        passengers=[p.model_dump() for p in request.passengers] if request.passengers else None,
    )
    return Envelope(
        message="Booking created successfully",
        data=BookingResponse.model_validate(booking),
    )


@router.get("/bookings/user", response_model=Envelope[list[BookingResponse]])
def list_user_bookings(
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    bookings = service.list_user_bookings(principal.user_id)
    return Envelope(data=[BookingResponse.model_validate(b) for b in bookings])


@router.get("/bookings/{booking_id}", response_model=Envelope[BookingResponse])
def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.get_booking(booking_id, principal.user_id, principal.role)
    return Envelope(data=BookingResponse.model_validate(booking))


@router.post("/bookings/{booking_id}/cancel", response_model=Envelope[BookingResponse])
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    service = BookingService(db, payment_service=payments)
    booking = service.cancel_booking(
        booking_id,
        principal.user_id,
        principal.role,
        reason=request.reason if request else None,
    )
    return Envelope(
        message=f"Booking {booking.status.value}",
        data=BookingResponse.model_validate(booking),
    )


# -----------------------------
# Vendor
# -----------------------------
@router.get("/vendor/bookings", response_model=Envelope[list[BookingResponse]])
def list_vendor_bookings(
    booking_status: BookingDecision | None = Query(default=None, alias="status"),
    principal: Principal = Depends(require_role("vendor")),
    service: BookingService = Depends(get_booking_service),
):
    bookings = service.list_vendor_bookings(principal.user_id, booking_status)
    return Envelope(data=[BookingResponse.model_validate(b) for b in bookings])


@router.put("/vendor/bookings/{booking_id}/accept", response_model=Envelope[BookingResponse])
def accept_booking(
    booking_id: str,
    request: VendorDecisionRequest | None = None,
    principal: Principal = Depends(require_role("vendor")),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.accept_booking(
        booking_id,
        principal.user_id,
        notes=request.notes if request else None,
    )
    return Envelope(
        message="Booking accepted successfully",
        data=BookingResponse.model_validate(booking),
    )


@router.put("/vendor/bookings/{booking_id}/reject", response_model=Envelope[BookingResponse])
def reject_booking(
    booking_id: str,
    request: VendorDecisionRequest | None = None,
    principal: Principal = Depends(require_role("vendor")),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.reject_booking(
        booking_id,
        principal.user_id,
        notes=request.notes if request else None,
    )
    return Envelope(
        message="Booking rejected successfully",
        data=BookingResponse.model_validate(booking),
    )


@router.put("/vendor/bookings/{booking_id}/complete", response_model=Envelope[BookingResponse])
def complete_booking(
    booking_id: str,
    principal: Principal = Depends(require_role("vendor")),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.complete_booking(booking_id, principal.user_id)
    return Envelope(
        message="Booking completed",
        data=BookingResponse.model_validate(booking),
    )


# -----------------------------
# Routes catalog
# -----------------------------
@router.post(
    "/vendor/routes",
    response_model=Envelope[RouteResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_route(
    request: RouteCreateRequest,
    principal: Principal = Depends(require_role("vendor")),
    db: Session = Depends(get_db),
):
    fields = request.model_dump(exclude={"schedules"})
    route = RouteService(db).create_route(
        principal.user_id,
        schedules=[s.model_dump() for s in request.schedules],
        **fields,
    )
    return Envelope(
        message="Route submitted for verification",
        data=RouteResponse.model_validate(route),
    )


@router.get("/routes/{route_id}", response_model=Envelope[RouteResponse])
def get_route(route_id: str, db: Session = Depends(get_db)):
    route = RouteService(db).get_route(route_id)
    return Envelope(data=RouteResponse.model_validate(route))


@router.put("/admin/routes/{route_id}/verification", response_model=Envelope[RouteResponse])
def verify_route(
    route_id: str,
    request: RouteVerificationRequest,
    principal: Principal = Depends(require_role("admin")),
    db: Session = Depends(get_db),
):
    route = RouteService(db).set_verification(
        route_id,
        VerificationStatus(request.verification_status),
        admin_notes=request.admin_notes,
    )
    logger.info("Admin %s reviewed route %s", principal.user_id, route.id)
    return Envelope(data=RouteResponse.model_validate(route))


# -----------------------------
# Payments
# -----------------------------
@router.post(
    "/payments/create-checkout-session",
    response_model=Envelope[CheckoutSessionResponse],
)
def create_checkout_session(
    request: CheckoutSessionRequest,
    service: PaymentService = Depends(get_payment_service),
):
    result = service.initiate_checkout(
        request.booking_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return Envelope(
        data=CheckoutSessionResponse(
            session_id=result.session_id,
            session_url=result.session_url,
            booking_id=result.booking_id,
        ),
    )


@router.post(
    "/payments/update-payment-status",
    response_model=Envelope[PaymentConfirmationResponse],
)
def update_payment_status(
    request: PaymentStatusUpdateRequest,
    service: PaymentService = Depends(get_payment_service),
):
    result = service.confirm_payment(request.booking_id, request.session_id)
    booking = result.booking
    return Envelope(
        message="Booking already paid" if result.already_paid else "Payment confirmed",
        data=PaymentConfirmationResponse(
            booking_id=booking.id,
            payment_id=result.payment.id if result.payment else None,
            payment_status=booking.payment_status,
            booking_status=booking.status,
            already_paid=result.already_paid,
        ),
    )


@router.post("/payments/webhook", response_model=Envelope[WebhookResponse])
def payment_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    result = service.handle_webhook(body, x_razorpay_signature, x_razorpay_event_id)
    return Envelope(data=WebhookResponse(result=result))


@router.post("/payments/refund", response_model=Envelope[RefundResponse])
def request_refund(
    request: RefundRequest,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    outcome = service.request_refund(request.payment_id, principal.user_id, request.reason)
    return Envelope(
        message="Refund processed successfully",
        data=RefundResponse(
            refund_id=outcome.refund_id,
            amount=outcome.amount,
            status=outcome.status,
        ),
    )


@router.get("/payments/history", response_model=Envelope[PaymentHistoryResponse])
def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    # Read-only projections never reach the gateway.
    service = PaymentService(db, gateway=None, settings=settings)
    payments, total = service.get_history(
        principal.user_id,
        page=page,
        limit=limit,
        status=payment_status,
        start_date=start_date,
        end_date=end_date,
    )
    return Envelope(
        data=PaymentHistoryResponse(
            payments=[PaymentResponse.model_validate(p) for p in payments],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit) if total else 0,
            ),
        ),
    )


@router.get("/payments/status/{payment_id}", response_model=Envelope[PaymentResponse])
def payment_status_detail(
    payment_id: str,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    payment = PaymentService(db, gateway=None).get_status(payment_id, principal.user_id)
    return Envelope(data=PaymentResponse.model_validate(payment))


@router.get("/payments/export")
def export_payments(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    content = PaymentService(db, gateway=None).export_csv(
        principal.user_id,
        start_date=start_date,
        end_date=end_date,
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payment-history.csv"'},
    )


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=Envelope[list[OutboxEventResponse]])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    topic: str | None = None,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_events(status_filter, safe_limit, topic)
    return Envelope(data=[_outbox_response(item) for item in events])


@router.post(
    "/outbox/events/{event_id}/mark-published",
    response_model=Envelope[OutboxEventResponse],
)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    repository = OutboxRepository(db)
    item = repository.get_by_id(event_id)
    if not item:
        raise NotFoundError("Outbox event not found")

    repository.mark_published(item)
    db.flush()
    return Envelope(data=_outbox_response(item))

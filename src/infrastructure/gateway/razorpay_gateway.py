# src/infrastructure/gateway/razorpay_gateway.py

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import razorpay
from razorpay.errors import (
    BadRequestError,
    GatewayError,
    ServerError,
    SignatureVerificationError,
)
import requests

from src.config import GatewaySettings
from src.domain.exceptions import UpstreamGatewayError

logger = logging.getLogger(__name__)

# Payment link states reported by the gateway that will never become paid.
CLOSED_LINK_STATES = frozenset({"cancelled", "expired"})


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None) -> Decimal:
    return (Decimal(amount or 0) / 100).quantize(Decimal("0.01"))


def with_booking_id(url: str, booking_id: str) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.setdefault("booking_id", booking_id)
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str
    status: str = "created"


@dataclass(frozen=True)
class SessionStatus:
    id: str
    status: str
    metadata: dict = field(default_factory=dict)
    url: str = ""
    payment_id: str | None = None
    gateway_fee: Decimal = Decimal("0")
    raw: dict = field(default_factory=dict)

    @property
    def paid(self) -> bool:
        return self.status == "paid"

    @property
    def closed(self) -> bool:
        return self.status in CLOSED_LINK_STATES


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount: Decimal


class RazorpayGateway:
    """
    Hosted checkout on top of Razorpay Payment Links.

    Every SDK or transport failure is logged here and re-raised as
    UpstreamGatewayError so callers never see gateway internals.
    """

    name = "razorpay"

    def __init__(self, settings: GatewaySettings, client: razorpay.Client | None = None):
        self.settings = settings
        self.client = client or razorpay.Client(auth=(settings.key_id, settings.key_secret))

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (
            BadRequestError,
            GatewayError,
            ServerError,
            requests.RequestException,
        ) as exc:
            logger.exception("Razorpay %s failed", operation)
            raise UpstreamGatewayError() from exc

    def create_checkout_session(
        self,
        booking_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> CheckoutSession:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "description": description[:2048],
            "callback_url": with_booking_id(success_url, booking_id),
            "callback_method": "get",
            "notify": {"sms": False, "email": False},
            "notes": {
                "booking_id": booking_id,
                "user_id": user_id,
                "cancel_url": cancel_url,
            },
        }
        if customer_email:
            payload["customer"] = {"email": customer_email}

        link = self._call("payment_link.create", self.client.payment_link.create, payload)
        logger.info("Created payment link %s for booking %s", link.get("id"), booking_id)
        return CheckoutSession(
            id=link["id"],
            url=link.get("short_url", ""),
            status=link.get("status", "created"),
        )

    def retrieve_session(self, session_id: str) -> SessionStatus:
        link = self._call("payment_link.fetch", self.client.payment_link.fetch, session_id)

        payment_id = None
        for item in link.get("payments") or []:
            if item.get("status") == "captured":
                payment_id = item.get("payment_id")
                break

        gateway_fee = Decimal("0")
        if link.get("status") == "paid" and payment_id:
            payment = self._call("payment.fetch", self.client.payment.fetch, payment_id)
            gateway_fee = from_minor_units(payment.get("fee"))

        return SessionStatus(
            id=link["id"],
            status=link.get("status", ""),
            metadata=dict(link.get("notes") or {}),
            url=link.get("short_url", ""),
            payment_id=payment_id,
            gateway_fee=gateway_fee,
            raw={"status": link.get("status"), "amount_paid": link.get("amount_paid")},
        )

    def cancel_session(self, session_id: str) -> str:
        """Cancels an unpaid payment link so it can no longer be paid."""
        link = self._call("payment_link.cancel", self.client.payment_link.cancel, session_id)
        logger.info("Cancelled payment link %s", session_id)
        return link.get("status", "cancelled")

    def refund(
        self,
        payment_id: str,
        amount: Decimal,
        reason: str,
        notes: dict | None = None,
    ) -> RefundResult:
        refund = self._call(
            "payment.refund",
            self.client.payment.refund,
            payment_id,
            {
                "amount": to_minor_units(amount),
                "notes": {"reason": reason[:255], **(notes or {})},
            },
        )
        return RefundResult(
            id=refund["id"],
            status=refund.get("status", "processed"),
            amount=from_minor_units(refund.get("amount")),
        )

    def find_refund(self, payment_id: str) -> RefundResult | None:
        refunds = self._call(
            "payment.fetch_multiple_refund",
            self.client.payment.fetch_multiple_refund,
            payment_id,
        )
        for refund in refunds.get("items") or []:
            if refund.get("status") != "failed":
                return RefundResult(
                    id=refund["id"],
                    status=refund.get("status", "processed"),
                    amount=from_minor_units(refund.get("amount")),
                )
        return None

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        if not self.settings.webhook_secret:
            logger.error("Webhook received but RAZORPAY_WEBHOOK_SECRET is not configured")
            return False
        try:
            self.client.utility.verify_webhook_signature(
                body.decode("utf-8"),
                signature,
                self.settings.webhook_secret,
            )
        except SignatureVerificationError:
            return False
        return True

from dataclasses import dataclass
import logging

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from src.application.booking_service import BookingService
from src.application.payment_service import PaymentService
from src.config import PaymentSettings
from src.domain.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    ConfigurationError,
)
from src.infrastructure.db.session import SessionLocal

logger = logging.getLogger(__name__)

ROLES = frozenset({"user", "vendor", "admin"})


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway(request: Request):
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise ConfigurationError("Payment gateway is not configured")
    return gateway


def get_payment_settings() -> PaymentSettings:
    return PaymentSettings.from_env()


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """Caller identity as forwarded by the upstream auth layer."""
    if not x_user_id:
        raise AuthenticationRequiredError()
    role = (x_user_role or "user").lower()
    if role not in ROLES:
        raise AuthorizationError(f"Unknown role {role!r}")
    return Principal(user_id=x_user_id, role=role)


def require_role(*roles: str):
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            logger.warning(
                "User %s with role %s denied, requires %s",
                principal.user_id,
                principal.role,
                "/".join(roles),
            )
            raise AuthorizationError(f"Requires role: {' or '.join(roles)}")
        return principal

    return dependency


def get_payment_service(
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    settings: PaymentSettings = Depends(get_payment_settings),
) -> PaymentService:
    return PaymentService(db, gateway, settings)


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    return BookingService(db)

from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.orm import Session

from src.domain.exceptions import ConflictError, NotFoundError, ValidationError
from src.domain.state_machine import VerificationStatus
from src.infrastructure.db.models import Route, utc_now
from src.infrastructure.repositories.route_repository import RouteRepository

logger = logging.getLogger(__name__)

TRANSPORT_TYPES = frozenset({"bus", "train", "flight", "launch", "ferry"})


class RouteService:
    """Vendor route listings and admin verification."""

    def __init__(self, db: Session, now: Callable[[], datetime] = utc_now):
        self.db = db
        self.route_repository = RouteRepository(db)
        self.now = now

    def create_route(
        self,
        vendor_id: str,
        schedules: list[dict] | None = None,
        **fields,
    ) -> Route:
        if fields.get("transport_type") not in TRANSPORT_TYPES:
            raise ValidationError(
                f"Transport type must be one of {', '.join(sorted(TRANSPORT_TYPES))}"
            )
        if fields.get("total_quantity", 0) < 0:
            raise ValidationError("Total quantity cannot be negative")

        # Without an embedded operator the listing vendor operates the route.
        if not fields.get("operator_name"):
            fields.setdefault("operator_id", vendor_id)

        route = self.route_repository.create_route(
            schedules=schedules,
            vendor_id=vendor_id,
            verification_status=VerificationStatus.PENDING,
            **fields,
        )
        self.db.flush()
        logger.info("Vendor %s listed route %s (%s)", vendor_id, route.id, route.title)
        return route

    def get_route(self, route_id: str) -> Route:
        route = self.route_repository.get_by_id(route_id)
        if route is None:
            raise NotFoundError("Route not found")
        return route

    def set_verification(
        self,
        route_id: str,
        verification_status: VerificationStatus,
        admin_notes: str | None = None,
    ) -> Route:
        route = self.get_route(route_id)
        if verification_status == VerificationStatus.PENDING:
            raise ConflictError("Verification can only be approved or rejected")

        route.verification_status = verification_status
        route.admin_notes = admin_notes
        route.admin_reviewed_at = self.now()
        self.db.flush()
        logger.info("Route %s marked %s", route.id, verification_status.value)
        return route

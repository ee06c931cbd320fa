import logging

from sqlalchemy.orm import Session

from src.domain.exceptions import (
    InsufficientInventoryError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from src.infrastructure.repositories.route_repository import RouteRepository

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Owner of a route's remaining sellable quantity. Every mutation is a
    single conditional UPDATE; there is no read-then-write path.
    """

    def __init__(self, db: Session):
        self.route_repository = RouteRepository(db)

    def reserve(self, route_id: str, quantity: int) -> int:
        self._ensure_positive(quantity)

        balance = self.route_repository.decrement_if_available(route_id, quantity)
        if balance is None:
            available = self.route_repository.get_available_quantity(route_id)
            if available is None:
                raise NotFoundError("Route not found")
            logger.warning(
                "Reservation refused. route_id=%s requested=%s available=%s",
                route_id,
                quantity,
                available,
            )
            raise InsufficientInventoryError(
                f"Insufficient tickets available: requested {quantity}, available {available}"
            )

        logger.info("Reserved %s on route %s, balance=%s", quantity, route_id, balance)
        return balance

    def release(self, route_id: str, quantity: int) -> int:
        self._ensure_positive(quantity)

        balance = self.route_repository.increment_within_capacity(route_id, quantity)
        if balance is None:
            if self.route_repository.get_available_quantity(route_id) is None:
                raise NotFoundError("Route not found")
            # Only a double release can push the counter past capacity.
            raise InvariantViolation(
                f"Releasing {quantity} on route {route_id} would exceed its capacity"
            )

        logger.info("Released %s on route %s, balance=%s", quantity, route_id, balance)
        return balance

    def balance(self, route_id: str) -> int:
        available = self.route_repository.get_available_quantity(route_id)
        if available is None:
            raise NotFoundError("Route not found")
        return available

    @staticmethod
    def _ensure_positive(quantity: int) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be a positive integer")

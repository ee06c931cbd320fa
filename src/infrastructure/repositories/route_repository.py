# src/infrastructure/repositories/route_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Route, RouteSchedule, User
from src.domain.vendor import ById, Embedded, ResolvedVendor, VendorRef


class RouteRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, route_id: str) -> Route | None:
        stmt = select(Route).where(Route.id == route_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_available_quantity(self, route_id: str) -> int | None:
        stmt = select(Route.available_quantity).where(Route.id == route_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_route(self, schedules: list[dict] | None = None, **fields) -> Route:
        quantity = fields.pop("total_quantity")
        route = Route(
            total_quantity=quantity,
            available_quantity=quantity,
            **fields,
        )
        for position, schedule in enumerate(schedules or []):
            route.schedules.append(RouteSchedule(position=position, **schedule))
        self.db.add(route)
        return route

    def decrement_if_available(
        self,
        route_id: str,
        quantity: int,
    ) -> int | None:
        """
        UPDATE ... SET available = available - q WHERE available >= q
        Check and write happen in one statement, so concurrent reservations
        cannot both pass the check. Returns the new balance, or None when
        the route is missing or short.
        """
        stmt = (
            update(Route)
            .where(Route.id == route_id)
            .where(Route.available_quantity >= quantity)
            .values(available_quantity=Route.available_quantity - quantity)
            .returning(Route.available_quantity)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def increment_within_capacity(
        self,
        route_id: str,
        quantity: int,
    ) -> int | None:
        stmt = (
            update(Route)
            .where(Route.id == route_id)
            .where(Route.available_quantity + quantity <= Route.total_quantity)
            .values(available_quantity=Route.available_quantity + quantity)
            .returning(Route.available_quantity)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def vendor_ref(route: Route) -> VendorRef | None:
        if route.operator_id:
            return ById(vendor_id=route.operator_id)
        if route.operator_name:
            return Embedded(
                name=route.operator_name,
                contact_email=route.operator_contact_email,
                contact_phone=route.operator_contact_phone,
                vendor_id=route.vendor_id,
            )
        if route.vendor_id:
            return ById(vendor_id=route.vendor_id)
        return None

    def resolve_vendor(self, ref: VendorRef | None) -> ResolvedVendor | None:
        if isinstance(ref, ById):
            user = self.db.get(User, ref.vendor_id)
            if user is None or user.role not in ("vendor", "admin"):
                return None
            return ResolvedVendor(
                id=user.id,
                name=user.name,
                email=user.email,
                phone=user.phone,
            )
        if isinstance(ref, Embedded):
            if not ref.vendor_id:
                return None
            return ResolvedVendor(
                id=ref.vendor_id,
                name=ref.name,
                email=ref.contact_email,
                phone=ref.contact_phone,
            )
        return None

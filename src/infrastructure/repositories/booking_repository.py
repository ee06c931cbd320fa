# src/infrastructure/repositories/booking_repository.py

from typing import Any

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking
from src.domain.state_machine import BookingDecision


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(
        self,
        booking_reference: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.booking_reference == booking_reference
        )

        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .options(selectinload(Booking.passengers))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def refresh(self, booking: Booking) -> Booking:
        self.db.refresh(booking)
        return booking

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        return booking

    def compare_and_set(
        self,
        booking_id: str,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> bool:
        """
        Conditional UPDATE: applies ``values`` only while every column in
        ``expected`` still holds the given value (or one of the values when a
        tuple/set is given). Returns False when another request got there first.
        """
        stmt = update(Booking).where(Booking.id == booking_id)
        for column_name, expected_value in expected.items():
            column = getattr(Booking, column_name)
            if isinstance(expected_value, (tuple, set, frozenset, list)):
                stmt = stmt.where(column.in_(list(expected_value)))
            else:
                stmt = stmt.where(column == expected_value)

        stmt = (
            stmt.values(**values)
            .returning(Booking.id)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).scalar_one_or_none() is not None

    def list_for_user(self, user_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .options(selectinload(Booking.passengers))
            .order_by(Booking.created_at.desc(), Booking.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_vendor(
        self,
        vendor_id: str,
        decision: BookingDecision | None = None,
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.vendor_id == vendor_id)
            .options(selectinload(Booking.passengers))
        )
        if decision is not None:
            stmt = stmt.where(Booking.booking_status == decision)
        stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
        return list(self.db.execute(stmt).scalars().all())

from decimal import Decimal

from sqlalchemy import select

from src.domain.state_machine import VerificationStatus
from src.infrastructure.db.models import Base, Route, User
from src.infrastructure.db.session import engine, get_db_session
from src.infrastructure.repositories.route_repository import RouteRepository


USERS = [
    {"id": "demo-admin", "name": "Platform Admin", "email": "admin@example.com", "role": "admin"},
    {"id": "demo-vendor", "name": "Green Line Paribahan", "email": "ops@greenline.example", "phone": "+8801700000001", "role": "vendor"},
    {"id": "demo-user", "name": "Rahim Uddin", "email": "rahim@example.com", "phone": "+8801800000002", "role": "user"},
]


def seed_users(db) -> None:
    for item in USERS:
        user = db.get(User, item["id"])
        if user is None:
            db.add(User(**item))
            continue
        for key, value in item.items():
            setattr(user, key, value)


def seed_routes(db) -> None:
    route_defs = [
        {
            "title": "Dhaka to Chattogram Express",
            "from_city": "Dhaka",
            "to_city": "Chattogram",
            "transport_type": "bus",
            "travel_class": "AC Business",
            "price": Decimal("1200"),
            "total_quantity": 40,
            "operator_id": "demo-vendor",
            "schedules": [{"departure_time": "22:30", "arrival_time": "05:30", "duration": "7h", "frequency": "daily"}],
        },
        {
            "title": "Dhaka to Barishal Launch",
            "from_city": "Dhaka",
            "to_city": "Barishal",
            "transport_type": "launch",
            "travel_class": "Cabin",
            "base_fare": Decimal("2500"),
            "total_quantity": 20,
            "operator_name": "Sundarban Navigation",
            "operator_contact_phone": "+8801900000003",
            "schedules": [{"departure_time": "20:00", "arrival_time": "06:00", "duration": "10h", "frequency": "daily"}],
        },
    ]

    repository = RouteRepository(db)
    for item in route_defs:
        existing = db.execute(
            select(Route).where(Route.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            continue
        schedules = item.pop("schedules")
        repository.create_route(
            schedules=schedules,
            vendor_id="demo-vendor",
            verification_status=VerificationStatus.APPROVED,
            **item,
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_users(db)
        db.flush()
        seed_routes(db)
    print("Seed complete: demo admin/vendor/user and two approved routes added.")


if __name__ == "__main__":
    main()

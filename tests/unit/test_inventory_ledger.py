# tests/unit/test_inventory_ledger.py

import pytest

from src.application.inventory_ledger import InventoryLedger
from src.domain.exceptions import (
    InsufficientInventoryError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)


def test_reserve_then_release_restores_balance(db_session, make_route):
    route = make_route(total_quantity=10)
    ledger = InventoryLedger(db_session)

    assert ledger.reserve(route.id, 3) == 7
    assert ledger.release(route.id, 3) == 10
    assert ledger.balance(route.id) == 10


def test_reserve_refuses_more_than_available(db_session, make_route):
    route = make_route(total_quantity=5)
    ledger = InventoryLedger(db_session)
    ledger.reserve(route.id, 4)

    with pytest.raises(InsufficientInventoryError):
        ledger.reserve(route.id, 2)

    assert ledger.balance(route.id) == 1


def test_reserve_ignores_stale_in_memory_balance(db_session, make_route):
    route = make_route(total_quantity=10)
    route_id = route.id
    ledger = InventoryLedger(db_session)
    ledger.reserve(route_id, 8)
    db_session.commit()

    # Pretend this session never saw the reservation.
    route.available_quantity = 10
    db_session.expunge(route)

    with pytest.raises(InsufficientInventoryError):
        ledger.reserve(route_id, 6)
    assert ledger.balance(route_id) == 2


def test_release_beyond_capacity_is_an_invariant_violation(db_session, make_route):
    route = make_route(total_quantity=4)
    ledger = InventoryLedger(db_session)
    ledger.reserve(route.id, 2)
    ledger.release(route.id, 2)

    with pytest.raises(InvariantViolation):
        ledger.release(route.id, 2)

    assert ledger.balance(route.id) == 4


def test_reserve_on_missing_route(db_session):
    with pytest.raises(NotFoundError):
        InventoryLedger(db_session).reserve("missing-route", 1)


@pytest.mark.parametrize("quantity", [0, -1, True])
def test_quantity_must_be_a_positive_integer(db_session, make_route, quantity):
    route = make_route()
    with pytest.raises(ValidationError):
        InventoryLedger(db_session).reserve(route.id, quantity)

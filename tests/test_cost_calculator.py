from datetime import date

import pytest

from models.booking import AmenitySelection, RoomSelection
from services.cost_calculator import (
    compute_costs,
    compute_schedule,
    default_deposit,
    room_line_subtotal,
)
from services.errors import InvalidInput


def amenity(quantity, price, amenity_id="a-1"):
    return AmenitySelection(amenity_id=amenity_id, quantity=quantity, price_per_unit=price)


def test_property_booking_costs_and_schedule():
    costs = compute_costs(200, [amenity(2, 10)], "property")

    assert costs.amenities_total == 20.00
    assert costs.subtotal == 220.00
    assert costs.service_fee == 22.00
    assert costs.taxes == 33.00
    assert costs.total == 275.00

    schedule = compute_schedule(costs.total)
    assert schedule.deposit_amount == 82.50
    assert schedule.balance_amount == 192.50


def test_package_bookings_use_lower_tax_rate():
    costs = compute_costs(100, [], "package")

    assert costs.subtotal == 100.00
    assert costs.taxes == 12.00
    assert costs.total == 122.00


def test_rounding_is_half_up_on_each_field():
    # 0.05 * 0.10 = 0.005 and 0.05 * 0.15 = 0.0075 both round up
    costs = compute_costs(0.05, [], "property")

    assert costs.service_fee == 0.01
    assert costs.taxes == 0.01
    assert costs.total == 0.07


@pytest.mark.parametrize("base, lines, booking_type", [
    (0, [], "property"),
    (199.99, [amenity(3, 33.33)], "property"),
    (1234.56, [amenity(1, 0.01), amenity(7, 12.345, "a-2")], "package"),
    (10.1, [amenity(4, 2.675)], "property"),
])
def test_total_is_sum_of_stored_parts(base, lines, booking_type):
    costs = compute_costs(base, lines, booking_type)

    assert costs.total == pytest.approx(
        costs.base_price + costs.amenities_total + costs.service_fee + costs.taxes, abs=1e-9
    )
    assert costs.subtotal == pytest.approx(costs.base_price + costs.amenities_total, abs=1e-9)


@pytest.mark.parametrize("total", [0, 0.01, 99.99, 275.00, 333.33, 1000.05])
def test_deposit_and_balance_add_up_to_total(total):
    schedule = compute_schedule(total)

    assert abs(schedule.deposit_amount + schedule.balance_amount - total) <= 0.01


def test_balance_due_a_week_before_check_in():
    schedule = compute_schedule(100, check_in_date=date(2030, 1, 20), today=date(2030, 1, 1))

    assert schedule.deposit_due_date == date(2030, 1, 1)
    assert schedule.balance_due_date == date(2030, 1, 13)


def test_balance_due_never_before_today():
    schedule = compute_schedule(100, check_in_date=date(2030, 1, 3), today=date(2030, 1, 1))

    assert schedule.balance_due_date == date(2030, 1, 1)


def test_room_subtotal_per_night_per_person():
    room = RoomSelection(room_id="r-1", guests=2, price_per_night_per_person=50)
    assert room_line_subtotal(room, 3) == 300

    # guests falls back to quantity
    room = RoomSelection(room_id="r-2", quantity=3, price_per_night_per_person=20)
    assert room_line_subtotal(room, 2) == 120


def test_default_deposit_is_thirty_percent():
    assert default_deposit(275) == 82.50


@pytest.mark.parametrize("base, lines", [
    (-1, []),
    (float("nan"), []),
    (float("inf"), []),
    (100, [amenity(-1, 10)]),
    (100, [amenity(1, -5)]),
    (100, [amenity(1, float("inf"))]),
])
def test_invalid_inputs_rejected(base, lines):
    with pytest.raises(InvalidInput):
        compute_costs(base, lines, "property")


def test_unknown_booking_type_rejected():
    with pytest.raises(ValueError):
        compute_costs(100, [], "cruise")

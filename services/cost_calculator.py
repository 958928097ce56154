import math
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

from models.booking import AmenitySelection, BookingType, Costs, PaymentSchedule, RoomSelection
from services.errors import InvalidInput

SERVICE_FEE_RATE = Decimal("0.10")
TAX_RATES = {
    BookingType.PROPERTY.value: Decimal("0.15"),
    BookingType.PACKAGE.value: Decimal("0.12"),
}
DEPOSIT_RATE = Decimal("0.30")
BALANCE_DUE_DAYS_BEFORE_CHECK_IN = 7

CENT = Decimal("0.01")

Number = Union[int, float, Decimal]


def money(value: Number) -> Decimal:
    """Round half-up to 2 decimal places"""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _checked(value: Optional[Number], field: str) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidInput(f"{field} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidInput(f"{field} must be finite")
    if isinstance(value, Decimal) and not value.is_finite():
        raise InvalidInput(f"{field} must be finite")
    if value < 0:
        raise InvalidInput(f"{field} must not be negative")
    return Decimal(str(value))


def amenity_line_total(line: AmenitySelection) -> Decimal:
    quantity = _checked(line.quantity, f"amenity {line.amenity_id} quantity")
    unit_price = _checked(line.price_per_unit, f"amenity {line.amenity_id} pricePerUnit")
    return money(quantity * unit_price)


def room_line_subtotal(line: RoomSelection, nights: int) -> Decimal:
    """Price is per night per person; guests defaults to the room quantity"""
    guests = line.guests if line.guests is not None else line.quantity
    guests = _checked(guests, f"room {line.room_id} guests")
    unit_price = _checked(line.price_per_night_per_person, f"room {line.room_id} pricePerNightPerPerson")
    nights_value = _checked(nights, "nights")
    return money(unit_price * guests * nights_value)


def compute_costs(
    base_price: Number,
    amenity_lines: Iterable[AmenitySelection],
    booking_type: Union[BookingType, str],
) -> Costs:
    """
    Derive the cost breakdown for a booking.

    Every derived field is rounded on its own so the stored sub-totals add
    up exactly to the stored total.
    """
    booking_type = BookingType(booking_type).value
    base = money(_checked(base_price, "basePrice"))
    amenities_total = money(sum((amenity_line_total(line) for line in amenity_lines), Decimal("0")))
    subtotal = money(base + amenities_total)
    service_fee = money(subtotal * SERVICE_FEE_RATE)
    taxes = money(subtotal * TAX_RATES[booking_type])
    total = money(subtotal + service_fee + taxes)

    return Costs(
        base_price=float(base),
        amenities_total=float(amenities_total),
        subtotal=float(subtotal),
        service_fee=float(service_fee),
        taxes=float(taxes),
        total=float(total),
    )


def compute_schedule(
    total: Number,
    check_in_date: Optional[date] = None,
    today: Optional[date] = None,
) -> PaymentSchedule:
    total_value = money(_checked(total, "total"))
    deposit = money(total_value * DEPOSIT_RATE)
    balance = money(total_value - deposit)

    today = today or date.today()
    balance_due = None
    if check_in_date:
        balance_due = max(today, check_in_date - timedelta(days=BALANCE_DUE_DAYS_BEFORE_CHECK_IN))

    return PaymentSchedule(
        deposit_amount=float(deposit),
        balance_amount=float(balance),
        deposit_due_date=today,
        balance_due_date=balance_due,
    )


def default_deposit(total: Number) -> float:
    """30% of the total, used when no schedule was stored"""
    return float(money(money(_checked(total, "total")) * DEPOSIT_RATE))

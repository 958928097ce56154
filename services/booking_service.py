import time
import secrets
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.booking import (
    AmenitySelection,
    Booking,
    BookingCreateRequest,
    BookingStatus,
    BookingType,
    Caller,
    CallerRole,
    PaymentTerm,
    RoomSelection,
)
from services.booking_state import apply_transition, plan_transition
from services.booking_store import DuplicateBookingError
from services.cost_calculator import (
    amenity_line_total,
    compute_costs,
    compute_schedule,
    money,
    room_line_subtotal,
)
from services.errors import ConflictError, Forbidden, NotFound, ValidationError
from services.notification_service import NOTIFICATION_TYPES, NotificationDispatcher

logger = logging.getLogger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
ID_ATTEMPTS = 3
MAX_PAGE_SIZE = 100

REQUIRED_FIELDS = (
    ("booking_type", "bookingType"),
    ("customer_name", "customerName"),
    ("customer_email", "customerEmail"),
    ("customer_phone", "customerPhone"),
    ("check_in_date", "checkInDate"),
    ("check_out_date", "checkOutDate"),
    ("total_guests", "totalGuests"),
)


def _epoch_digits() -> str:
    return str(int(time.time() * 1000))[-8:]


def generate_booking_id() -> str:
    return f"BK{_epoch_digits()}{secrets.token_hex(3).upper()}"


def generate_confirmation_number() -> str:
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"SB{_epoch_digits()}{suffix}"


def actor_for(caller: Optional[Caller]) -> str:
    """cancelledBy value: the role of an authenticated caller"""
    if caller is None or caller.role == CallerRole.GUEST:
        return "unknown"
    return CallerRole(caller.role).value


class BookingService:
    """Service for managing bookings and their status transitions"""

    def __init__(self, store, dispatcher: NotificationDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def create_booking(self, request: BookingCreateRequest) -> Dict[str, Any]:
        """
        Create a pending booking from the checkout payload.

        Costs and the payment schedule are derived here from the submitted
        room and amenity lines; client-sent figures are only compared.

        Args:
            request: checkout payload

        Returns:
            The stored booking document
        """
        self._validate(request)

        check_in = request.check_in_date
        check_out = request.check_out_date
        nights = (check_out - check_in).days
        if request.nights is not None and request.nights != nights:
            logger.warning(
                "Client sent nights=%s but dates give %s; using the dates", request.nights, nights
            )

        booking_type = BookingType(request.booking_type).value
        rooms: List[RoomSelection] = []
        amenities: List[AmenitySelection] = []

        for room in request.rooms:
            subtotal = room_line_subtotal(room, nights)
            rooms.append(room.model_copy(update={"subtotal": float(subtotal)}))
        for line in request.amenities:
            total_price = amenity_line_total(line)
            amenities.append(line.model_copy(update={"total_price": float(total_price)}))

        if booking_type == BookingType.PROPERTY.value:
            base_price = sum((money(room.subtotal) for room in rooms), money(0))
        else:
            # Package prices live in the catalog; the checkout sends them in costs
            if request.costs is None or "base_price" not in request.costs.model_fields_set:
                raise ValidationError(
                    "Package bookings require costs.basePrice",
                    details={"missing": ["costs.basePrice"]},
                )
            base_price = request.costs.base_price
        costs = compute_costs(base_price, amenities, booking_type)
        schedule = compute_schedule(costs.total, check_in_date=check_in)

        if request.costs is not None and abs(request.costs.total - costs.total) >= 0.01:
            logger.warning(
                "Client total %.2f differs from computed total %.2f; storing the computed costs",
                request.costs.total, costs.total,
            )

        amount_paid = 0.0
        if request.amount_paid is not None:
            if request.amount_paid < 0:
                raise ValidationError("amountPaid must not be negative")
            amount_paid = float(money(request.amount_paid))

        email = request.customer_email.strip().lower()

        for attempt in range(ID_ATTEMPTS):
            booking = Booking(
                booking_id=generate_booking_id(),
                confirmation_number=generate_confirmation_number(),
                booking_type=booking_type,
                property_ref=request.property_id if booking_type == BookingType.PROPERTY.value else None,
                package_ref=request.package_id if booking_type == BookingType.PACKAGE.value else None,
                customer_name=request.customer_name.strip(),
                customer_email=email,
                customer_phone=request.customer_phone,
                customer_country_code=request.customer_country_code,
                check_in_date=check_in,
                check_out_date=check_out,
                nights=nights,
                total_guests=request.total_guests,
                adults=request.adults or 0,
                children=request.children or 0,
                special_requests=request.special_requests,
                rooms=rooms,
                amenities=amenities,
                airport_transfer=request.airport_transfer or {},
                costs=costs,
                payment_term=request.payment_term or PaymentTerm.DEPOSIT,
                payment_schedule=schedule,
                amount_paid=amount_paid,
                status=BookingStatus.PENDING,
            )
            doc = booking.model_dump(by_alias=True, mode="json", exclude_none=True)
            try:
                stored = await self.store.insert(doc)
                break
            except DuplicateBookingError:
                logger.warning("Booking id collision on %s, regenerating", doc["bookingId"])
        else:
            raise ConflictError("Could not allocate a unique booking id, please retry")

        logger.info("Created booking %s (%s) total %.2f", stored["bookingId"], booking_type, costs.total)
        self.dispatcher.notify(stored, "created")
        return stored

    def _validate(self, request: BookingCreateRequest):
        missing = [wire for attr, wire in REQUIRED_FIELDS if getattr(request, attr) in (None, "")]
        if request.booking_type == BookingType.PROPERTY.value:
            if not request.property_id:
                missing.append("propertyId")
            if not request.rooms:
                missing.append("rooms")
        elif request.booking_type == BookingType.PACKAGE.value and not request.package_id:
            missing.append("packageId")
        if missing:
            raise ValidationError("Missing required booking fields", details={"missing": missing})

        if "@" not in request.customer_email:
            raise ValidationError("customerEmail is not a valid email address")
        if request.check_out_date <= request.check_in_date:
            raise ValidationError("checkOutDate must be after checkInDate")
        if request.total_guests < 1:
            raise ValidationError("totalGuests must be at least 1")

    async def get_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def _authorize(self, booking: Dict[str, Any], caller: Optional[Caller]):
        """Admins, or the customer the booking belongs to"""
        if caller is not None and caller.is_admin:
            return
        email = (caller.email or "").strip().lower() if caller else ""
        if not email or email != (booking.get("customerEmail") or "").lower():
            raise Forbidden("You are not allowed to access this booking")

    async def get_by_reference(self, booking_id: str, caller: Caller) -> Dict[str, Any]:
        booking = await self.get_booking(booking_id)
        self._authorize(booking, caller)
        return booking

    async def list_bookings(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 30,
    ) -> Dict[str, Any]:
        """Admin listing, newest first"""
        if status is not None:
            try:
                status = BookingStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown booking status: {status}")
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        data, total = await self.store.find(
            status=status, search=search or None, skip=(page - 1) * limit, limit=limit
        )
        return {"data": data, "total": total}

    async def list_for_customer(self, caller: Caller) -> List[Dict[str, Any]]:
        if not caller.email:
            raise Forbidden("No customer email on this account")
        data, _ = await self.store.find(
            customer_email=caller.email.strip().lower(), limit=MAX_PAGE_SIZE
        )
        return data

    async def _transition(self, booking_id: str, event: str, **kwargs) -> Dict[str, Any]:
        booking, _ = await apply_transition(
            self.store, booking_id, lambda current: plan_transition(current, event, **kwargs)
        )
        logger.info("Booking %s -> %s", booking_id, booking.get("status"))
        # Queued after the write; delivery problems never reach the caller
        self.dispatcher.notify(booking, event)
        return booking

    async def set_deposit_paid(self, booking_id: str, amount: Optional[float] = None) -> Dict[str, Any]:
        return await self._transition(booking_id, "deposit_paid", amount=amount)

    async def set_confirmed(self, booking_id: str) -> Dict[str, Any]:
        return await self._transition(booking_id, "confirmed")

    async def set_fully_paid(self, booking_id: str, amount: Optional[float] = None) -> Dict[str, Any]:
        return await self._transition(booking_id, "fully_paid", amount=amount)

    async def set_completed(self, booking_id: str) -> Dict[str, Any]:
        return await self._transition(booking_id, "completed")

    async def reopen(self, booking_id: str) -> Dict[str, Any]:
        return await self._transition(booking_id, "reopened")

    async def cancel(
        self, booking_id: str, caller: Caller, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        booking = await self.get_booking(booking_id)
        self._authorize(booking, caller)
        return await self._transition(
            booking_id, "cancelled", actor=actor_for(caller), reason=reason
        )

    async def notify(
        self, booking_id: str, caller: Caller, event_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Re-queue a notification for a booking"""
        event_type = event_type or "confirmed"
        if event_type not in NOTIFICATION_TYPES:
            raise ValidationError(
                f"Unknown notification type: {event_type}",
                details={"allowed": sorted(NOTIFICATION_TYPES)},
            )
        booking = await self.get_booking(booking_id)
        self._authorize(booking, caller)
        queued = self.dispatcher.notify(booking, event_type)
        return {"success": queued, "bookingId": booking_id, "type": event_type}

    async def generate_receipt(self, booking_id: str, caller: Caller) -> Dict[str, Any]:
        booking = await self.get_by_reference(booking_id, caller)
        return build_receipt(booking)

    async def send_receipt(self, booking_id: str, email: str) -> Dict[str, Any]:
        """Guest receipt-by-email; the address must be the one on the booking"""
        booking = await self.get_booking(booking_id)
        if not email or email.strip().lower() != (booking.get("customerEmail") or "").lower():
            raise Forbidden("Email does not match this booking")
        queued = self.dispatcher.notify(booking, "receipt")
        return {"success": queued, "bookingId": booking_id}


def build_receipt(booking: Dict[str, Any]) -> Dict[str, Any]:
    costs = booking.get("costs") or {}
    total = float(costs.get("total") or 0)
    paid = float(booking.get("amountPaid") or 0)
    transfer = booking.get("airportTransfer") or {}

    return {
        "bookingId": booking.get("bookingId"),
        "confirmationNumber": booking.get("confirmationNumber"),
        "status": booking.get("status"),
        "bookingType": booking.get("bookingType"),
        "propertyRef": booking.get("propertyRef"),
        "packageRef": booking.get("packageRef"),
        "customerName": booking.get("customerName"),
        "customerEmail": booking.get("customerEmail"),
        "customerPhone": booking.get("customerPhone"),
        "checkInDate": booking.get("checkInDate"),
        "checkOutDate": booking.get("checkOutDate"),
        "nights": booking.get("nights"),
        "totalGuests": booking.get("totalGuests"),
        "adults": booking.get("adults", 0),
        "children": booking.get("children", 0),
        "rooms": booking.get("rooms", []),
        "amenities": booking.get("amenities", []),
        "airportTransfer": "Yes" if transfer.get("needed") else "No",
        "specialRequests": booking.get("specialRequests") or "None",
        "costs": costs,
        "paymentTerm": booking.get("paymentTerm"),
        "paymentSchedule": booking.get("paymentSchedule") or {},
        "amountPaid": paid,
        "balanceDue": float(max(money(total) - money(paid), money(0))),
        "createdAt": booking.get("createdAt"),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }

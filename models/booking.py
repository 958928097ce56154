from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "pending"
    DEPOSIT_PAID = "deposit_paid"
    CONFIRMED = "confirmed"
    FULLY_PAID = "fully_paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingType(str, Enum):
    PROPERTY = "property"
    PACKAGE = "package"


class PaymentTerm(str, Enum):
    DEPOSIT = "deposit"
    FULL = "full"


class CallerRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class CamelModel(BaseModel):
    """Base model stored and served with camelCase field names"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class RoomSelection(CamelModel):
    room_id: str
    room_name: Optional[str] = None
    quantity: int = 1
    guests: Optional[int] = None
    price_per_night_per_person: float = 0.0
    subtotal: float = 0.0


class AmenitySelection(CamelModel):
    # Opaque id: may be a catalog id or a free-form id from client mock data
    amenity_id: str
    amenity_name: Optional[str] = None
    quantity: int = 1
    price_per_unit: float = 0.0
    total_price: float = 0.0


class AirportTransfer(CamelModel):
    needed: bool = False
    arrival_date: Optional[date] = None
    arrival_time: Optional[str] = None
    arrival_flight_number: Optional[str] = None
    departure_date: Optional[date] = None
    departure_time: Optional[str] = None
    departure_flight_number: Optional[str] = None


class Costs(CamelModel):
    base_price: float = 0.0
    amenities_total: float = 0.0
    subtotal: float = 0.0
    service_fee: float = 0.0
    taxes: float = 0.0
    total: float = 0.0


class PaymentSchedule(CamelModel):
    deposit_amount: float = 0.0
    balance_amount: float = 0.0
    deposit_due_date: Optional[date] = None
    balance_due_date: Optional[date] = None


class Booking(CamelModel):
    """Booking document as held by the booking store"""
    booking_id: str
    confirmation_number: str
    booking_type: BookingType
    property_ref: Optional[str] = None
    package_ref: Optional[str] = None

    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_country_code: Optional[str] = None

    check_in_date: date
    check_out_date: date
    nights: int
    total_guests: int
    adults: int = 0
    children: int = 0
    special_requests: Optional[str] = None

    rooms: List[RoomSelection] = []
    amenities: List[AmenitySelection] = []
    airport_transfer: AirportTransfer = Field(default_factory=AirportTransfer)

    costs: Costs = Field(default_factory=Costs)
    payment_term: PaymentTerm = PaymentTerm.DEPOSIT
    payment_schedule: PaymentSchedule = Field(default_factory=PaymentSchedule)

    amount_paid: float = 0.0
    status: BookingStatus = BookingStatus.PENDING
    payment_details: Dict[str, Any] = {}

    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    checked_in_at: Optional[datetime] = None

    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookingCreateRequest(CamelModel):
    """Checkout payload sent by the frontend"""
    booking_type: Optional[BookingType] = None
    property_id: Optional[str] = None
    package_id: Optional[str] = None
    rooms: List[RoomSelection] = []
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    nights: Optional[int] = None
    total_guests: Optional[int] = None
    adults: Optional[int] = None
    children: Optional[int] = None
    special_requests: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_country_code: Optional[str] = None
    airport_transfer: Optional[AirportTransfer] = None
    amenities: List[AmenitySelection] = []
    costs: Optional[Costs] = None
    payment_term: Optional[PaymentTerm] = None
    payment_schedule: Optional[PaymentSchedule] = None
    amount_paid: Optional[float] = None


class Caller(BaseModel):
    role: CallerRole = CallerRole.GUEST
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN


class StatusUpdateRequest(CamelModel):
    amount: Optional[float] = None
    reason: Optional[str] = None


class NotifyRequest(CamelModel):
    type: Optional[str] = None


class ReceiptEmailRequest(CamelModel):
    email: str


class BookingListResponse(BaseModel):
    data: List[Dict[str, Any]]
    total: int

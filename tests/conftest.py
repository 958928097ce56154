import os

os.environ["BOOKING_STORE"] = "memory"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["PESAPAL_ENV"] = "live"
os.environ["PESAPAL_CONSUMER_KEY"] = "test-key"
os.environ["PESAPAL_CONSUMER_SECRET"] = "test-secret"
os.environ["PESAPAL_IPN_ID"] = "ipn-test"
os.environ["PESAPAL_CALLBACK_URL"] = "https://api.example.test/api/payments/callback"
os.environ["FRONTEND_URL"] = "https://shop.example.test"
os.environ.pop("PESAPAL_STORE_PAGE_URL", None)
os.environ.pop("PESAPAL_EMBED_PAGE_URL", None)

from typing import Any, Dict, List, Optional, Tuple

import jwt
import pytest

from models.booking import BookingCreateRequest
from services.booking_service import BookingService
from services.booking_store import InMemoryBookingStore
from services.diagnostics import Diagnostics
from services.notification_service import NotificationDispatcher
from services.payment_service import PaymentService
from services.pesapal_service import PesapalService
from services.reconciliation import ReconciliationService

LIVE = "https://pay.pesapal.com"
AUTH_URL = f"{LIVE}/api/Auth/RequestToken"
AUTH_URLS = [
    AUTH_URL,
    f"{LIVE}/pesapalv3/api/Auth/RequestToken",
    f"{LIVE}/v3/api/Auth/RequestToken",
    f"{LIVE}/api/v3/Auth/RequestToken",
]
ORDER_URL = f"{LIVE}/v3/api/Transactions/SubmitOrder"
STATUS_URLS = [
    f"{LIVE}/v3/api/Transactions/GetTransactionStatus",
    f"{LIVE}/v3/v3/api/Transactions/GetTransactionStatus",
]
TOKEN = "live-token-0123456789abcdef"


class RecordingSender:
    """Notification sender that remembers what it was asked to send"""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: List[Tuple[str, str]] = []
        self.calls = 0

    async def send(self, booking: Dict[str, Any], event_type: str) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("mail server unavailable")
        self.sent.append((booking.get("bookingId"), event_type))


def make_token(role: str = "user", email: Optional[str] = "guest@example.com", secret: str = "test-secret") -> str:
    claims = {"role": role}
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


def property_request(**overrides) -> BookingCreateRequest:
    """Property booking whose costs come to 275.00 (200 rooms + 20 amenities)"""
    payload = {
        "bookingType": "property",
        "propertyId": "prop-1",
        "rooms": [{"roomId": "room-1", "roomName": "Garden Suite", "guests": 2, "pricePerNightPerPerson": 100}],
        "amenities": [{"amenityId": "mock-tour", "amenityName": "City tour", "quantity": 2, "pricePerUnit": 10}],
        "checkInDate": "2030-01-10",
        "checkOutDate": "2030-01-11",
        "totalGuests": 2,
        "adults": 2,
        "customerName": "Amina Otieno",
        "customerEmail": "Amina@Example.com ",
        "customerPhone": "+254 712 345 678",
    }
    payload.update(overrides)
    return BookingCreateRequest.model_validate(payload)


@pytest.fixture
def diag():
    return Diagnostics(max_size=50)


@pytest.fixture
def store():
    return InMemoryBookingStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender, diag):
    return NotificationDispatcher(sender=sender, max_attempts=3, diagnostics=diag, retry_delay=0)


@pytest.fixture
def gateway(diag):
    return PesapalService(
        consumer_key="key",
        consumer_secret="secret",
        environment="live",
        callback_url="https://api.example.test/api/payments/callback",
        ipn_id="ipn-1",
        timeout=20,
        diagnostics=diag,
    )


@pytest.fixture
def booking_service(store, dispatcher):
    return BookingService(store, dispatcher)


@pytest.fixture
def reconciler(store, gateway, dispatcher, diag):
    return ReconciliationService(store, gateway, dispatcher, diag)


@pytest.fixture
def payment_service(store, gateway, booking_service, reconciler, dispatcher):
    return PaymentService(store, gateway, booking_service, reconciler, dispatcher)

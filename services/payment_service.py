import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from models.booking import BookingCreateRequest
from models.payment import (
    OrderResult,
    OrderSpec,
    PaymentInitRequest,
    PaymentInitResponse,
    PaymentStatusResponse,
)
from services.booking_service import BookingService
from services.errors import NoRedirectTarget, NotFound, ValidationError
from services.notification_service import NotificationDispatcher
from services.pesapal_service import PesapalService
from services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

INITIATED = "initiated"


class PaymentService:
    """Starts gateway payments for bookings and answers status queries"""

    def __init__(
        self,
        store,
        gateway: PesapalService,
        bookings: BookingService,
        reconciler: ReconciliationService,
        dispatcher: NotificationDispatcher,
    ):
        self.store = store
        self.gateway = gateway
        self.bookings = bookings
        self.reconciler = reconciler
        self.dispatcher = dispatcher

    async def _resolve_booking(self, request: PaymentInitRequest) -> Dict[str, Any]:
        reference = request.booking_id or request.booking_reference
        if reference:
            booking = await self.store.get(reference)
            if booking is not None:
                return booking

        if not request.booking_payload:
            if reference:
                raise NotFound("Booking not found")
            raise ValidationError("Missing bookingReference")

        try:
            create_request = BookingCreateRequest.model_validate(request.booking_payload)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid bookingPayload", details=e.errors(include_url=False, include_context=False)
            )
        logger.info("Creating booking from payment payload (reference %s)", reference)
        return await self.bookings.create_booking(create_request)

    async def _record_initiation(
        self, booking_id: str, order: OrderResult, amount: float, include_response: bool = False
    ) -> Optional[Dict[str, Any]]:
        # Dotted paths so the notification log under paymentDetails survives
        fields: Dict[str, Any] = {
            "paymentDetails.pesapalOrderId": order.order_id,
            "paymentDetails.orderTrackingId": order.order_tracking_id,
            "paymentDetails.status": INITIATED,
            "paymentDetails.initiatedAt": datetime.now(timezone.utc).isoformat(),
            "paymentDetails.initiatedAmount": amount,
            "paymentDetails.embedIframe": order.embed_iframe_src,
        }
        if include_response:
            fields["paymentDetails.pesapalResponse"] = order.raw
        return await self.store.update(booking_id, fields)

    async def initiate_payment(self, request: PaymentInitRequest) -> PaymentInitResponse:
        """
        Submit a gateway order for a booking.

        Args:
            request: amount, payer details and the booking reference (or a
                booking payload to create the booking on the fly)

        Returns:
            PaymentInitResponse with the redirect URL and tracking id

        Raises:
            AuthError, GatewayError: the order could not be placed
            NoRedirectTarget: the order was placed but has no checkout URL;
                the booking keeps status "initiated" for reconciliation
        """
        if request.amount is None or request.amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        booking = await self._resolve_booking(request)
        booking_id = booking["bookingId"]

        email = request.email or booking.get("customerEmail")
        if not email:
            raise ValidationError("Missing payer email")

        first_name, last_name = request.first_name, request.last_name
        if not first_name and booking.get("customerName"):
            parts = booking["customerName"].split(" ", 1)
            first_name = parts[0]
            last_name = last_name or (parts[1] if len(parts) > 1 else None)

        spec = OrderSpec(
            amount=request.amount,
            currency=request.currency,
            description=request.description,
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone_number=request.phone_number or booking.get("customerPhone"),
            booking_reference=booking_id,
        )

        try:
            order = await self.gateway.submit_order(spec)
        except NoRedirectTarget as e:
            if e.order is not None:
                await self._record_initiation(booking_id, e.order, request.amount, include_response=True)
                logger.warning(
                    "Order %s for booking %s has no redirect target; left as %s",
                    e.order.order_id, booking_id, INITIATED,
                )
            raise

        updated = await self._record_initiation(booking_id, order, request.amount)
        self.dispatcher.notify(updated or booking, "payment_initiated")

        return PaymentInitResponse(
            redirect_url=order.redirect_url,
            order_tracking_id=order.order_tracking_id,
            embed_iframe_src=order.embed_iframe_src,
            environment=self.gateway.environment,
            booking_id=booking_id,
        )

    async def check_status(self, tracking_id: str) -> PaymentStatusResponse:
        txn = await self.gateway.get_transaction_status(tracking_id)
        return PaymentStatusResponse(
            status=txn.status,
            provider_status=txn.provider_status,
            amount=txn.amount,
            data=txn.raw,
        )

    async def reconcile(self, tracking_id: str) -> Dict[str, Any]:
        """Admin re-query of the provider for a tracking id"""
        if not tracking_id:
            raise ValidationError("Missing orderTrackingId")
        booking = await self.reconciler.reconcile(tracking_id)
        if booking is None:
            raise NotFound(f"No booking with tracking id {tracking_id}")
        return booking

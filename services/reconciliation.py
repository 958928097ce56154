import json
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.booking_state import apply_transition, plan_settlement
from services.diagnostics import Diagnostics, diagnostics as default_diagnostics
from services.errors import BookingError
from services.notification_service import NotificationDispatcher
from services.pesapal_service import PesapalService

logger = logging.getLogger(__name__)

TRACKING_ID_KEYS = ("OrderTrackingId", "orderTrackingId", "order_tracking_id")
MERCHANT_REFERENCE_KEYS = ("OrderMerchantReference", "orderMerchantReference", "merchant_reference")
NOTIFICATION_TYPE_KEYS = ("OrderNotificationType", "orderNotificationType", "notification_type")


def _first(payload: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable hash of a notification payload, used to skip duplicate log entries"""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ReconciliationService:
    """
    Applies provider payment notifications to bookings.

    The HTTP callback acknowledges first and hands the payload to
    handle_notification() in the background, so nothing raised here can
    reach the provider. Failures are logged and the booking can be
    re-checked later with reconcile().
    """

    def __init__(
        self,
        store,
        gateway: PesapalService,
        dispatcher: NotificationDispatcher,
        diagnostics: Optional[Diagnostics] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.diagnostics = diagnostics or default_diagnostics

    async def handle_notification(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Background entry point for the payment callback; never raises"""
        tracking_id = _first(payload, TRACKING_ID_KEYS)
        if not tracking_id:
            logger.warning("Payment notification without OrderTrackingId: %s", payload)
            self.diagnostics.record("unmatched_notifications", reason="missing tracking id", payload=payload)
            return None

        try:
            return await self.reconcile(tracking_id, payload=payload)
        except BookingError as e:
            logger.error("Reconciliation failed for %s: %s (%s)", tracking_id, e.message, e.code)
        except Exception:
            logger.exception("Unexpected error reconciling payment notification %s", tracking_id)
        return None

    async def reconcile(
        self, tracking_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Bring a booking in line with the provider's view of its payment.

        Args:
            tracking_id: provider order tracking id
            payload: the raw notification, appended to the booking's log

        Returns:
            The booking after reconciliation, or None if no booking has
            this tracking id
        """
        booking = await self.store.find_by_tracking_id(tracking_id)
        if booking is None:
            logger.warning("No booking found for tracking id %s", tracking_id)
            self.diagnostics.record(
                "unmatched_notifications",
                trackingId=tracking_id,
                merchantReference=_first(payload or {}, MERCHANT_REFERENCE_KEYS),
                notificationType=_first(payload or {}, NOTIFICATION_TYPE_KEYS),
                payload=payload,
            )
            return None

        booking_id = booking["bookingId"]
        if payload is not None:
            entry = {
                "fingerprint": fingerprint(payload),
                "receivedAt": datetime.now(timezone.utc).isoformat(),
                "notificationType": _first(payload, NOTIFICATION_TYPE_KEYS),
                "payload": payload,
            }
            if not await self.store.append_ipn(booking_id, entry):
                logger.info("Duplicate notification for booking %s, log unchanged", booking_id)

        txn = await self.gateway.get_transaction_status(tracking_id)

        emitted = []

        def planner(current: Dict[str, Any]):
            fields, event = plan_settlement(current, txn)
            emitted[:] = [event]
            return fields

        updated, written = await apply_transition(self.store, booking_id, planner)
        event = emitted[0] if emitted else None
        if written:
            logger.info(
                "Booking %s reconciled: %s, status %s, amountPaid %s",
                booking_id, txn.status.value, updated.get("status"), updated.get("amountPaid"),
            )
        if written and event:
            self.dispatcher.notify(updated, event)
        return updated

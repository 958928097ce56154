"""
Booking status state machine.

    pending -> deposit_paid -> confirmed -> fully_paid -> completed
    cancelled is reachable from any non-cancelled state
    reopen sends any state back to pending

Planners in this module are pure: they look at the current booking document
and return the fields to set, or raise ConflictError when a guard fails.
apply_transition() turns a plan into one conditional store update guarded on
the status the plan was computed from.
"""

import math
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from models.booking import BookingStatus, PaymentTerm
from models.payment import GatewayStatus, TransactionStatus
from services.cost_calculator import default_deposit, money
from services.errors import ConflictError, NotFound, ValidationError

logger = logging.getLogger(__name__)

Plan = Dict[str, Any]


@dataclass(frozen=True)
class Transition:
    event: str
    target: Optional[BookingStatus]
    blocked_when_cancelled: bool = True


TRANSITIONS: Dict[str, Transition] = {
    "deposit_paid": Transition("deposit_paid", BookingStatus.DEPOSIT_PAID),
    "confirmed": Transition("confirmed", BookingStatus.CONFIRMED),
    "fully_paid": Transition("fully_paid", BookingStatus.FULLY_PAID),
    "completed": Transition("completed", BookingStatus.COMPLETED),
    "reopened": Transition("reopened", BookingStatus.PENDING, blocked_when_cancelled=False),
    "cancelled": Transition("cancelled", BookingStatus.CANCELLED),
}

GATEWAY_TO_BOOKING_STATUS = {
    GatewayStatus.COMPLETED.value: BookingStatus.CONFIRMED.value,
    GatewayStatus.FAILED.value: BookingStatus.CANCELLED.value,
}

# Already past confirmation; a COMPLETED payment must not move these back
SETTLED_STATUSES = {BookingStatus.FULLY_PAID.value, BookingStatus.COMPLETED.value}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _total(booking: Dict[str, Any]) -> float:
    return float((booking.get("costs") or {}).get("total") or 0)


def _amount(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("amount must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValidationError("amount must be a finite, non-negative number")
    return float(money(value))


def plan_transition(
    booking: Dict[str, Any],
    event: str,
    amount: Optional[float] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[str] = None,
) -> Plan:
    transition = TRANSITIONS.get(event)
    if transition is None:
        raise ValidationError(f"Unknown booking transition: {event}")

    status = booking.get("status")
    if transition.blocked_when_cancelled and status == BookingStatus.CANCELLED.value:
        if event == "cancelled":
            raise ConflictError("Booking is already cancelled")
        raise ConflictError("Cannot update a cancelled booking")

    now = now or _now()
    plan: Plan = {"status": transition.target.value}

    if event == "deposit_paid":
        paid = _amount(amount)
        if paid is None:
            scheduled = (booking.get("paymentSchedule") or {}).get("depositAmount") or 0
            paid = float(scheduled) if scheduled > 0 else default_deposit(_total(booking))
        plan["amountPaid"] = paid
        plan["paymentTerm"] = booking.get("paymentTerm") or PaymentTerm.DEPOSIT.value

    elif event == "fully_paid":
        paid = _amount(amount)
        plan["amountPaid"] = paid if paid is not None else _total(booking)
        plan["paymentTerm"] = PaymentTerm.FULL.value

    elif event == "completed":
        plan["checkedInAt"] = now

    elif event == "cancelled":
        plan["cancelledAt"] = now
        plan["cancelledBy"] = actor or "unknown"
        plan["cancellationReason"] = reason

    return plan


def plan_settlement(
    booking: Dict[str, Any],
    txn: TransactionStatus,
    now: Optional[str] = None,
) -> Tuple[Plan, Optional[str]]:
    """
    Plan the update for an authoritative gateway status.

    Returns the fields that differ from the stored booking (empty when the
    notification changes nothing) and the notification tag to emit, if any.
    Every field is an absolute value, so applying the same status twice
    leaves the booking as it was after the first time.
    """
    now = now or _now()
    status = booking.get("status")
    details = booking.get("paymentDetails") or {}
    gateway_status = GatewayStatus(txn.status).value

    new_status = status
    target = GATEWAY_TO_BOOKING_STATUS.get(gateway_status)
    if target == BookingStatus.CONFIRMED.value and status not in SETTLED_STATUSES:
        if status == BookingStatus.CANCELLED.value:
            logger.warning(
                "Gateway reports COMPLETED payment for cancelled booking %s; confirming",
                booking.get("bookingId"),
            )
        new_status = target
    elif target == BookingStatus.CANCELLED.value:
        new_status = target

    current_paid = float(booking.get("amountPaid") or 0)
    new_paid = float(money(txn.amount)) if txn.amount is not None else current_paid

    total = _total(booking)
    payment_term = booking.get("paymentTerm") or PaymentTerm.DEPOSIT.value
    if total > 0 and new_paid >= total:
        payment_term = PaymentTerm.FULL.value
    elif new_paid > 0:
        payment_term = PaymentTerm.DEPOSIT.value

    plan: Plan = {
        "status": new_status,
        "amountPaid": new_paid,
        "paymentTerm": payment_term,
        "paymentDetails.status": gateway_status,
        "paymentDetails.pesapalResponse": txn.raw,
    }
    if gateway_status != GatewayStatus.PENDING.value:
        if details.get("status") != gateway_status or not details.get("completedAt"):
            plan["paymentDetails.completedAt"] = now
    if new_status == BookingStatus.CANCELLED.value and status != BookingStatus.CANCELLED.value:
        plan["cancelledAt"] = now
        plan["cancelledBy"] = "gateway"
        plan["cancellationReason"] = "Payment failed"

    changed = {
        path: value for path, value in plan.items()
        if _get(booking, path) != value
    }
    event = None
    if "status" in changed:
        event = "confirmed" if new_status == BookingStatus.CONFIRMED.value else "cancelled"
    return changed, event


def _get(doc: Dict[str, Any], path: str) -> Any:
    target: Any = doc
    for part in path.split("."):
        if not isinstance(target, dict):
            return None
        target = target.get(part)
    return target


async def apply_transition(
    store,
    booking_id: str,
    planner: Callable[[Dict[str, Any]], Plan],
    max_attempts: int = 3,
) -> Tuple[Dict[str, Any], bool]:
    """
    Read, plan and write the booking as one status-guarded update.

    If another writer changed the status in between, the plan is recomputed
    against the fresh document. Returns (booking, written).
    """
    for attempt in range(1, max_attempts + 1):
        booking = await store.get(booking_id)
        if booking is None:
            raise NotFound("Booking not found")

        fields = planner(booking)
        if not fields:
            return booking, False

        updated = await store.update(booking_id, fields, expected_status=booking.get("status"))
        if updated is not None:
            return updated, True

        logger.info(
            "Booking %s changed concurrently, re-planning (attempt %d/%d)",
            booking_id, attempt, max_attempts,
        )

    raise ConflictError("Booking was modified concurrently, please retry")

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Query, Depends, BackgroundTasks
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from typing import Optional
from dotenv import load_dotenv
import logging
import os

from models.booking import (
    BookingCreateRequest,
    BookingListResponse,
    Caller,
    NotifyRequest,
    ReceiptEmailRequest,
    StatusUpdateRequest,
)
from models.payment import PaymentInitRequest, PaymentInitResponse, PaymentStatusResponse
from services.auth import get_caller, require_admin, require_user
from services.booking_service import BookingService
from services.booking_store import build_booking_store
from services.diagnostics import diagnostics
from services.errors import BookingError, InternalError, ValidationError
from services.notification_service import NotificationDispatcher
from services.payment_service import PaymentService
from services.pesapal_service import PesapalService
from services.reconciliation import ReconciliationService

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize services
booking_store = build_booking_store()
dispatcher = NotificationDispatcher(diagnostics=diagnostics)
pesapal_service = PesapalService(diagnostics=diagnostics)
booking_service = BookingService(booking_store, dispatcher)
reconciliation_service = ReconciliationService(booking_store, pesapal_service, dispatcher, diagnostics)
payment_service = PaymentService(
    booking_store, pesapal_service, booking_service, reconciliation_service, dispatcher
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher.start()
    yield
    await dispatcher.stop()


app = FastAPI(title="Booking Payments API", lifespan=lifespan)

# CORS middleware
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Invalid request", details=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError("Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.get("/")
async def read_root():
    return {"message": "Booking Payments API", "environment": pesapal_service.environment}


# Customer booking routes

@app.post("/api/bookings", status_code=201)
async def create_booking(booking_request: BookingCreateRequest):
    """Create a pending booking from the checkout payload"""
    booking = await booking_service.create_booking(booking_request)
    return {"success": True, "data": booking}


@app.get("/api/bookings/my")
async def my_bookings(caller: Caller = Depends(require_user)):
    """Bookings made with the caller's email"""
    bookings = await booking_service.list_for_customer(caller)
    return {"success": True, "data": bookings}


@app.get("/api/bookings/ref/{booking_id}")
async def get_booking_by_reference(booking_id: str, caller: Caller = Depends(require_user)):
    booking = await booking_service.get_by_reference(booking_id, caller)
    return {"success": True, "data": booking}


@app.get("/api/bookings/receipt/{booking_id}")
async def get_receipt(booking_id: str, caller: Caller = Depends(require_user)):
    receipt = await booking_service.generate_receipt(booking_id, caller)
    return {"success": True, "data": receipt}


@app.post("/api/bookings/{booking_id}/cancel")
async def cancel_own_booking(
    booking_id: str,
    body: Optional[StatusUpdateRequest] = None,
    caller: Caller = Depends(require_user),
):
    reason = body.reason if body else None
    booking = await booking_service.cancel(booking_id, caller, reason=reason)
    return {"success": True, "data": booking}


@app.post("/api/bookings/{booking_id}/notify")
async def resend_notification(
    booking_id: str,
    body: Optional[NotifyRequest] = None,
    caller: Caller = Depends(require_user),
):
    return await booking_service.notify(booking_id, caller, body.type if body else None)


@app.post("/api/bookings/{booking_id}/email")
async def email_receipt(booking_id: str, body: ReceiptEmailRequest):
    """Guest receipt-by-email; the email must match the booking"""
    return await booking_service.send_receipt(booking_id, body.email)


# Admin routes

@app.get("/api/admin/bookings", response_model=BookingListResponse)
async def list_bookings(
    status: Optional[str] = Query(None, description="Filter by booking status"),
    search: Optional[str] = Query(None, description="Booking id substring"),
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=1, le=100),
    caller: Caller = Depends(require_admin),
):
    return await booking_service.list_bookings(status=status, search=search, page=page, limit=limit)


@app.get("/api/admin/bookings/{booking_id}")
async def admin_get_booking(booking_id: str, caller: Caller = Depends(require_admin)):
    booking = await booking_service.get_booking(booking_id)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/deposit")
async def admin_set_deposit_paid(
    booking_id: str,
    body: Optional[StatusUpdateRequest] = None,
    caller: Caller = Depends(require_admin),
):
    booking = await booking_service.set_deposit_paid(booking_id, amount=body.amount if body else None)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/confirm")
async def admin_set_confirmed(booking_id: str, caller: Caller = Depends(require_admin)):
    booking = await booking_service.set_confirmed(booking_id)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/paid")
async def admin_set_fully_paid(
    booking_id: str,
    body: Optional[StatusUpdateRequest] = None,
    caller: Caller = Depends(require_admin),
):
    booking = await booking_service.set_fully_paid(booking_id, amount=body.amount if body else None)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/complete")
async def admin_set_completed(booking_id: str, caller: Caller = Depends(require_admin)):
    booking = await booking_service.set_completed(booking_id)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/reopen")
async def admin_reopen(booking_id: str, caller: Caller = Depends(require_admin)):
    booking = await booking_service.reopen(booking_id)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/cancel")
async def admin_cancel(
    booking_id: str,
    body: Optional[StatusUpdateRequest] = None,
    caller: Caller = Depends(require_admin),
):
    booking = await booking_service.cancel(booking_id, caller, reason=body.reason if body else None)
    return {"success": True, "data": booking}


@app.post("/api/admin/bookings/{booking_id}/notify")
async def admin_notify(
    booking_id: str,
    body: Optional[NotifyRequest] = None,
    caller: Caller = Depends(require_admin),
):
    return await booking_service.notify(booking_id, caller, body.type if body else None)


@app.get("/api/admin/diagnostics")
async def get_diagnostics(caller: Caller = Depends(require_admin)):
    """Recent notification, webhook and gateway activity"""
    return diagnostics.snapshot()


@app.post("/api/admin/payments/reconcile/{tracking_id}")
async def admin_reconcile(tracking_id: str, caller: Caller = Depends(require_admin)):
    """Re-query the gateway and apply its status to the booking"""
    booking = await payment_service.reconcile(tracking_id)
    return {"success": True, "data": booking}


# Payment routes

@app.post("/api/payments/initiate", response_model=PaymentInitResponse)
async def initiate_payment(payment_request: PaymentInitRequest, caller: Caller = Depends(get_caller)):
    """Submit a PesaPal order and return where to send the customer"""
    return await payment_service.initiate_payment(payment_request)


@app.api_route("/api/payments/callback", methods=["GET", "POST"])
async def payment_callback(request: Request, background_tasks: BackgroundTasks):
    """
    PesaPal IPN / redirect callback.

    Acknowledged straight away; reconciliation runs after the response.
    """
    payload = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)

    logger.info("PesaPal callback received: %s", payload)
    background_tasks.add_task(reconciliation_service.handle_notification, payload)
    return PlainTextResponse("OK")


@app.get("/api/payments/status", response_model=PaymentStatusResponse)
async def payment_status(orderTrackingId: Optional[str] = Query(None)):
    if not orderTrackingId:
        raise ValidationError("Missing orderTrackingId")
    return await payment_service.check_status(orderTrackingId)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

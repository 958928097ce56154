from pydantic import BaseModel
from typing import Optional, Dict, Any
from enum import Enum

from models.booking import CamelModel


class GatewayStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderSpec(BaseModel):
    """Everything the gateway needs to build a provider order payload"""
    amount: float
    currency: Optional[str] = None
    description: Optional[str] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    booking_reference: str
    order_id: Optional[str] = None


class OrderResult(BaseModel):
    order_id: str
    redirect_url: Optional[str] = None
    order_tracking_id: Optional[str] = None
    embed_iframe_src: Optional[str] = None
    raw: Dict[str, Any] = {}


class TransactionStatus(BaseModel):
    status: GatewayStatus
    provider_status: Optional[str] = None
    amount: Optional[float] = None
    raw: Dict[str, Any] = {}


class PaymentInitRequest(CamelModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    booking_id: Optional[str] = None
    booking_reference: Optional[str] = None
    booking_payload: Optional[Dict[str, Any]] = None


class PaymentInitResponse(CamelModel):
    success: bool = True
    redirect_url: Optional[str] = None
    order_tracking_id: Optional[str] = None
    embed_iframe_src: Optional[str] = None
    environment: str
    booking_id: str


class PaymentStatusResponse(CamelModel):
    success: bool = True
    status: GatewayStatus
    provider_status: Optional[str] = None
    amount: Optional[float] = None
    data: Dict[str, Any] = {}

import os
import re
import time
import math
import logging
import httpx
from uuid import uuid4
from typing import Optional, List, Dict, Any, Tuple
from urllib.parse import quote
from dotenv import load_dotenv

from models.payment import GatewayStatus, OrderResult, OrderSpec, TransactionStatus
from services.cost_calculator import money
from services.diagnostics import Diagnostics, diagnostics as default_diagnostics
from services.errors import AuthError, GatewayError, NoRedirectTarget, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

BASE_URLS = {
    # (auth base, transactions base)
    "live": ("https://pay.pesapal.com", "https://pay.pesapal.com/v3"),
    "sandbox": ("https://cybqa.pesapal.com/pesapalv3", "https://cybqa.pesapal.com/pesapalv3"),
}

# The token endpoint lives under different prefixes depending on the
# deployment, so every shape is tried in order and the first token wins.
AUTH_CANDIDATES: List[Tuple[str, str]] = [
    ("/api/Auth/RequestToken", "json"),
    ("/pesapalv3/api/Auth/RequestToken", "json"),
    ("/v3/api/Auth/RequestToken", "json"),
    ("/api/v3/Auth/RequestToken", "json"),
]

ORDER_CANDIDATES: List[Tuple[str, str]] = [
    ("/api/Transactions/SubmitOrder", "json"),
    ("/v3/api/Transactions/SubmitOrder", "json"),
    ("/pesapalv3/api/Transactions/SubmitOrder", "json"),
    ("/Api/Transactions/SubmitOrder", "json"),
    ("/transactions/SubmitOrder", "json"),
]

STATUS_CANDIDATES: List[Tuple[str, str]] = [
    ("/api/Transactions/GetTransactionStatus", "query"),
    ("/v3/api/Transactions/GetTransactionStatus", "query"),
]

IPN_CANDIDATES: List[Tuple[str, str]] = [
    ("/api/URLSetup/RegisterIPN", "json"),
    ("/v3/api/URLSetup/RegisterIPN", "json"),
]

# Response field aliases, most specific first
TOKEN_ALIASES = ("token", "access_token")
REDIRECT_URL_ALIASES = (
    "redirect_url", "redirectUrl", "checkout_url", "checkoutUrl",
    "redirect", "url", "payment_url", "paymentUrl",
)
TRACKING_ID_ALIASES = (
    "order_tracking_id", "orderTrackingId", "order_tracking",
    "tracking_id", "orderId", "transaction_id",
)
EMBED_ALIASES = ("embedIframeSrc", "embed_iframe", "iframe_url", "iframeUrl")
PROVIDER_STATUS_ALIASES = ("payment_status_description", "payment_status", "status")
AMOUNT_ALIASES = ("amount", "payment_amount", "paid_amount", "transaction_amount")

PROVIDER_STATUS_MAP = {
    "COMPLETED": GatewayStatus.COMPLETED,
    "COMPLETE": GatewayStatus.COMPLETED,
    "SUCCESS": GatewayStatus.COMPLETED,
    "SUCCESSFUL": GatewayStatus.COMPLETED,
    "PAID": GatewayStatus.COMPLETED,
    "FAILED": GatewayStatus.FAILED,
    "REVERSED": GatewayStatus.FAILED,
    "CANCELLED": GatewayStatus.FAILED,
    "CANCELED": GatewayStatus.FAILED,
    "DECLINED": GatewayStatus.FAILED,
    "EXPIRED": GatewayStatus.FAILED,
    # INVALID is what the provider reports before the customer pays
    "INVALID": GatewayStatus.PENDING,
    "PENDING": GatewayStatus.PENDING,
    "PROCESSING": GatewayStatus.PENDING,
}
PROVIDER_STATUS_CODE_MAP = {
    0: GatewayStatus.PENDING,
    1: GatewayStatus.COMPLETED,
    2: GatewayStatus.FAILED,
    3: GatewayStatus.FAILED,
}

TOKEN_PATTERN = re.compile(
    r"(?:token|access_token|accessToken|auth_token)[^A-Za-z0-9\-._]*([A-Za-z0-9\-._]{20,})",
    re.IGNORECASE,
)
MIN_TOKEN_LENGTH = 11
TOKEN_TTL_SECONDS = 300
PREVIEW_CHARS = 2000


def _preview(body: Any) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text[:PREVIEW_CHARS]


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def provider_error(raw: Any) -> Optional[Any]:
    """The provider error envelope, if it actually carries an error"""
    if not isinstance(raw, dict):
        return None
    error = raw.get("error")
    if isinstance(error, dict):
        return error if any(v not in (None, "") for v in error.values()) else None
    return error or None


def first_alias(data: Any, aliases) -> Optional[Any]:
    """Return the first non-empty value found under any of the alias keys"""
    if not isinstance(data, dict):
        return None
    for key in aliases:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def extract_token(data: Any) -> Optional[str]:
    """
    Find a bearer token in the known response shapes.

    Checks the top level, a nested `data` envelope and the first element of
    an array response.
    """
    shapes = []
    if isinstance(data, dict):
        shapes.append(data)
        if isinstance(data.get("data"), dict):
            shapes.append(data["data"])
    elif isinstance(data, list) and data and isinstance(data[0], dict):
        shapes.append(data[0])

    for shape in shapes:
        for key in TOKEN_ALIASES:
            token = shape.get(key)
            if isinstance(token, str) and len(token) >= MIN_TOKEN_LENGTH:
                return token
    return None


def extract_token_from_text(text: str) -> Optional[str]:
    match = TOKEN_PATTERN.search(text or "")
    return match.group(1) if match else None


def sanitize_phone(phone: Optional[str]) -> str:
    """Digits only, with a single leading + kept if present"""
    if not phone:
        return ""
    phone = str(phone).strip()
    digits = re.sub(r"\D", "", phone)
    return f"+{digits}" if phone.startswith("+") and digits else digits


def map_provider_status(raw: Dict[str, Any]) -> Tuple[GatewayStatus, Optional[str]]:
    provider_status = first_alias(raw, PROVIDER_STATUS_ALIASES)
    if isinstance(provider_status, str):
        mapped = PROVIDER_STATUS_MAP.get(provider_status.strip().upper())
        if mapped:
            return mapped, provider_status

    status_code = raw.get("status_code") if isinstance(raw, dict) else None
    if isinstance(status_code, int) and status_code in PROVIDER_STATUS_CODE_MAP:
        return PROVIDER_STATUS_CODE_MAP[status_code], provider_status

    logger.warning("Unrecognised payment provider status %r, treating as PENDING", provider_status)
    return GatewayStatus.PENDING, provider_status


class PesapalService:
    """Client for the PesaPal v3 payment gateway"""

    def __init__(
        self,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        environment: Optional[str] = None,
        callback_url: Optional[str] = None,
        ipn_id: Optional[str] = None,
        timeout: Optional[float] = None,
        diagnostics: Optional[Diagnostics] = None,
    ):
        self.consumer_key = consumer_key if consumer_key is not None else os.getenv("PESAPAL_CONSUMER_KEY")
        self.consumer_secret = consumer_secret if consumer_secret is not None else os.getenv("PESAPAL_CONSUMER_SECRET")
        self.environment = (environment or os.getenv("PESAPAL_ENV", "sandbox")).lower()
        if self.environment not in BASE_URLS:
            raise ValueError(f"Unknown PESAPAL_ENV {self.environment!r}; expected 'sandbox' or 'live'")

        self.auth_base, self.tx_base = BASE_URLS[self.environment]
        self.callback_url = callback_url or os.getenv(
            "PESAPAL_CALLBACK_URL", "http://localhost:8000/api/payments/callback"
        )
        self.ipn_id = ipn_id if ipn_id is not None else os.getenv("PESAPAL_IPN_ID")
        self.frontend_url = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
        self.embed_page_url = os.getenv("PESAPAL_STORE_PAGE_URL") or os.getenv("PESAPAL_EMBED_PAGE_URL")
        self.default_currency = os.getenv("PESAPAL_DEFAULT_CURRENCY", "KES")
        self.country_code = os.getenv("PESAPAL_COUNTRY_CODE", "KE")

        # Bounded so a hung provider surfaces as GatewayError
        if timeout is None:
            timeout = float(os.getenv("PESAPAL_TIMEOUT_SECONDS", "20"))
        self.timeout = min(max(timeout, 15.0), 30.0)

        self.diagnostics = diagnostics or default_diagnostics
        self.access_token: Optional[str] = None
        self.token_expires_at: Optional[float] = None

        if not self.consumer_key or not self.consumer_secret:
            logger.warning(
                "PesaPal credentials not configured. Set PESAPAL_CONSUMER_KEY and PESAPAL_CONSUMER_SECRET."
            )
        logger.info("PesaPal client initialised in %s mode", self.environment)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    def _record(self, operation: str, url: str, status: Optional[int] = None, error: Optional[str] = None):
        entry: Dict[str, Any] = {"operation": operation, "url": url, "status": status}
        if error:
            entry["error"] = error
        self.diagnostics.record("gateway", **entry)

    async def _post_credentials(self, client: httpx.AsyncClient, url: str, shape: str) -> Optional[httpx.Response]:
        credentials = {"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret}
        try:
            logger.info("Requesting PesaPal token from %s (%s)", url, shape)
            if shape == "form":
                response = await client.post(
                    url,
                    data=credentials,
                    headers={"Accept": "application/json"},
                )
            else:
                response = await client.post(
                    url,
                    json=credentials,
                    headers={"Accept": "application/json", "Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.warning("PesaPal auth attempt failed for %s: %s", url, e)
            self._record("auth", url, error=str(e))
            return None

        self._record("auth", url, status=response.status_code)
        logger.debug("PesaPal auth response preview: %s", _preview(response.text))
        return response

    async def get_auth_token(self) -> str:
        """
        Exchange the consumer key/secret for a bearer token.

        Tries every JSON candidate URL, then one form-encoded retry, then a
        regex scan of the raw text bodies.

        Returns:
            Bearer token string

        Raises:
            AuthError: when no candidate yields a token. No placeholder token
            is ever returned.
        """
        if self.access_token and self.token_expires_at and time.time() < self.token_expires_at:
            return self.access_token

        if not self.consumer_key or not self.consumer_secret:
            raise AuthError("PesaPal credentials not configured")

        token: Optional[str] = None
        answered_url: Optional[str] = None
        text_bodies: List[str] = []
        last_status: Optional[int] = None
        last_body: Optional[str] = None

        async with self._client() as client:
            for path, shape in AUTH_CANDIDATES:
                url = f"{self.auth_base}{path}"
                response = await self._post_credentials(client, url, shape)
                if response is None:
                    continue
                last_status, last_body = response.status_code, _preview(response.text)
                if not response.is_success:
                    continue
                answered_url = answered_url or url
                text_bodies.append(response.text)
                token = extract_token(_json_or_none(response))
                if token:
                    break

            if not token:
                url = answered_url or f"{self.auth_base}{AUTH_CANDIDATES[0][0]}"
                response = await self._post_credentials(client, url, "form")
                if response is not None:
                    last_status, last_body = response.status_code, _preview(response.text)
                    if response.is_success:
                        text_bodies.insert(0, response.text)
                        token = extract_token(_json_or_none(response))

            if not token:
                for body in text_bodies:
                    token = extract_token_from_text(body)
                    if token:
                        logger.warning("PesaPal token recovered from raw response text")
                        break

        if not token:
            logger.error("PesaPal auth failed on every candidate (last status %s)", last_status)
            raise AuthError(
                "Failed to get PesaPal auth token",
                status=last_status,
                body=last_body,
            )

        self.access_token = token
        self.token_expires_at = time.time() + TOKEN_TTL_SECONDS - 30
        logger.info("PesaPal auth token obtained (%s mode): %s...", self.environment, token[:8])
        return token

    async def _send_to_candidates(
        self,
        operation: str,
        method: str,
        candidates: List[Tuple[str, str]],
        token: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        resubmittable: bool = True,
    ) -> httpx.Response:
        """
        Send one request to each candidate URL until one answers 2xx.

        A non-resubmittable request (an order) only moves on to the next
        candidate when the endpoint is missing (404/405) or the connection was
        never made; any other failure is final so an order is never sent twice.
        """
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        last_status: Optional[int] = None
        last_body: Optional[str] = None

        async with self._client() as client:
            for path, _shape in candidates:
                url = f"{self.tx_base}{path}"
                try:
                    logger.info("Trying PesaPal %s URL: %s", operation, url)
                    response = await client.request(method, url, json=payload, params=params, headers=headers)
                except httpx.TimeoutException as e:
                    self._record(operation, url, error="timeout")
                    if not resubmittable:
                        raise GatewayError(f"PesaPal {operation} timed out", body=str(e)) from e
                    last_body = f"timeout: {e}"
                    continue
                except httpx.ConnectError as e:
                    self._record(operation, url, error=str(e))
                    last_body = str(e)
                    continue
                except httpx.HTTPError as e:
                    self._record(operation, url, error=str(e))
                    if not resubmittable:
                        raise GatewayError(f"PesaPal {operation} request failed: {e}", body=str(e)) from e
                    last_body = str(e)
                    continue

                self._record(operation, url, status=response.status_code)
                if response.is_success:
                    return response

                last_status, last_body = response.status_code, _preview(response.text)
                logger.warning("PesaPal %s attempt failed for %s: %s", operation, url, last_status)
                if not resubmittable and response.status_code not in (404, 405):
                    raise GatewayError(
                        f"PesaPal {operation} rejected the request",
                        status=last_status,
                        body=last_body,
                    )

        raise GatewayError(
            f"PesaPal {operation} failed on every endpoint",
            status=last_status,
            body=last_body,
        )

    def build_order_payload(self, spec: OrderSpec, order_id: str) -> Dict[str, Any]:
        if isinstance(spec.amount, bool) or not math.isfinite(spec.amount) or spec.amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        return {
            "id": order_id,
            "currency": (spec.currency or self.default_currency).upper(),
            "amount": f"{money(spec.amount):.2f}",
            "description": (spec.description or f"Booking Payment - {spec.booking_reference}")[:100],
            "callback_url": self.callback_url,
            "redirect_url": f"{self.frontend_url}/booking/confirmation",
            "notification_id": self.ipn_id,
            "billing_address": {
                "email_address": spec.email,
                "phone_number": sanitize_phone(spec.phone_number),
                "first_name": spec.first_name or "Guest",
                "last_name": spec.last_name or "Booking",
                "country_code": self.country_code,
            },
        }

    def _embed_target(self, raw: Dict[str, Any]) -> Optional[str]:
        if self.embed_page_url:
            return f"https://store.pesapal.com/embed-code?pageUrl={quote(self.embed_page_url, safe='')}"
        return first_alias(raw, EMBED_ALIASES)

    async def submit_order(self, spec: OrderSpec) -> OrderResult:
        """
        Submit a payment order and normalise the provider response.

        Args:
            spec: amount, currency, customer billing details and booking reference

        Returns:
            OrderResult with redirect URL and order tracking id

        Raises:
            AuthError: no token could be obtained, nothing was submitted
            GatewayError: no endpoint accepted the order, or the provider
                answered with an error envelope
            NoRedirectTarget: the order was accepted but there is nowhere to
                send the customer
        """
        order_id = spec.order_id or str(uuid4())
        payload = self.build_order_payload(spec, order_id)

        token = await self.get_auth_token()

        logger.info("Submitting PesaPal order %s for %s %s", order_id, payload["amount"], payload["currency"])
        response = await self._send_to_candidates(
            "SubmitOrder", "POST", ORDER_CANDIDATES, token, payload=payload, resubmittable=False
        )

        raw = _json_or_none(response)
        if not isinstance(raw, dict):
            raw = {"body": _preview(response.text)}
        logger.info("PesaPal order %s response: %s", order_id, _preview(raw))

        redirect_url = first_alias(raw, REDIRECT_URL_ALIASES)
        tracking_id = first_alias(raw, TRACKING_ID_ALIASES)
        embed_src = self._embed_target(raw)

        result = OrderResult(
            order_id=order_id,
            redirect_url=redirect_url,
            order_tracking_id=str(tracking_id) if tracking_id is not None else None,
            embed_iframe_src=embed_src,
            raw=raw,
        )

        if not redirect_url and not embed_src:
            if provider_error(raw):
                raise GatewayError("PesaPal SubmitOrder returned an error", status=response.status_code, body=raw)
            logger.error("No redirect or embed URL in PesaPal SubmitOrder response for %s", order_id)
            raise NoRedirectTarget(
                "No redirect or embed URL returned from PesaPal SubmitOrder",
                order=result,
                status=response.status_code,
                body=raw,
            )

        return result

    async def get_transaction_status(self, tracking_id: str) -> TransactionStatus:
        """
        Query the provider for the current state of a payment.

        Args:
            tracking_id: order tracking id returned by submit_order

        Returns:
            TransactionStatus with the canonical PENDING/COMPLETED/FAILED status
        """
        if not tracking_id:
            raise ValidationError("Missing orderTrackingId")

        token = await self.get_auth_token()
        response = await self._send_to_candidates(
            "GetTransactionStatus", "GET", STATUS_CANDIDATES, token,
            params={"orderTrackingId": tracking_id},
        )

        raw = _json_or_none(response)
        if not isinstance(raw, dict):
            raise GatewayError("PesaPal status response was not JSON", status=response.status_code,
                               body=_preview(response.text))

        if provider_error(raw) and first_alias(raw, PROVIDER_STATUS_ALIASES[:2]) is None:
            raise GatewayError("PesaPal status query returned an error", status=response.status_code, body=raw)

        status, provider_status = map_provider_status(raw)
        amount = first_alias(raw, AMOUNT_ALIASES)
        try:
            amount = float(amount) if amount is not None else None
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric amount %r in PesaPal status for %s", amount, tracking_id)
            amount = None
        if amount is not None and (not math.isfinite(amount) or amount < 0):
            amount = None

        logger.info("PesaPal transaction %s status: %s (%s)", tracking_id, status.value, provider_status)
        return TransactionStatus(status=status, provider_status=provider_status, amount=amount, raw=raw)

    async def register_ipn(self, url: str, notification_type: str = "GET") -> str:
        """Register a notification URL and return its IPN id"""
        token = await self.get_auth_token()
        response = await self._send_to_candidates(
            "RegisterIPN", "POST", IPN_CANDIDATES, token,
            payload={"url": url, "ipn_notification_type": notification_type.upper()},
        )
        raw = _json_or_none(response) or {}
        ipn_id = first_alias(raw, ("ipn_id", "ipnId", "id"))
        if not ipn_id:
            raise GatewayError("PesaPal RegisterIPN returned no ipn_id", status=response.status_code, body=raw)
        self.ipn_id = ipn_id
        return ipn_id

import json

import httpx
import pytest
import respx

from conftest import AUTH_URL, AUTH_URLS, ORDER_URL, STATUS_URLS, TOKEN
from models.payment import GatewayStatus, OrderSpec
from services.errors import AuthError, GatewayError, NoRedirectTarget, ValidationError
from services.pesapal_service import PesapalService, map_provider_status, sanitize_phone


def order_spec(**overrides):
    data = {
        "amount": 275,
        "currency": "kes",
        "email": "amina@example.com",
        "first_name": "Amina",
        "last_name": "Otieno",
        "phone_number": "+254 712-345-678",
        "booking_reference": "BK12345678ABCDEF",
    }
    data.update(overrides)
    return OrderSpec(**data)


def mock_auth_ok():
    return respx.post(AUTH_URL).respond(200, json={"token": TOKEN, "expiryDate": "2030-01-01T00:00:00Z"})


@pytest.mark.asyncio
@respx.mock
async def test_token_from_first_candidate_is_cached(gateway):
    route = mock_auth_ok()

    assert await gateway.get_auth_token() == TOKEN
    assert await gateway.get_auth_token() == TOKEN
    assert route.call_count == 1

    body = json.loads(route.calls[0].request.content)
    assert body == {"consumer_key": "key", "consumer_secret": "secret"}


@pytest.mark.asyncio
@respx.mock
async def test_token_nested_in_data_envelope_on_later_candidate(gateway):
    respx.post(AUTH_URLS[0]).respond(404)
    respx.post(AUTH_URLS[1]).respond(200, json={"data": {"token": "nested-token-123456"}})

    assert await gateway.get_auth_token() == "nested-token-123456"


@pytest.mark.asyncio
@respx.mock
async def test_token_in_array_response(gateway):
    respx.post(AUTH_URL).respond(200, json=[{"access_token": "array-token-123456"}])

    assert await gateway.get_auth_token() == "array-token-123456"


@pytest.mark.asyncio
@respx.mock
async def test_form_encoded_retry(gateway):
    def token_for_form_only(request):
        if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
            return httpx.Response(200, json={"token": "form-token-1234567"})
        return httpx.Response(200, json={"error": {"code": "unsupported_content_type"}})

    respx.post(AUTH_URL).mock(side_effect=token_for_form_only)
    for url in AUTH_URLS[1:]:
        respx.post(url).respond(404)

    assert await gateway.get_auth_token() == "form-token-1234567"


@pytest.mark.asyncio
@respx.mock
async def test_token_regex_last_resort(gateway):
    respx.post(AUTH_URL).respond(200, text="ok token=abcdefghijklmnopqrstuvwxyz123 expires soon")
    for url in AUTH_URLS[1:]:
        respx.post(url).respond(404)

    assert await gateway.get_auth_token() == "abcdefghijklmnopqrstuvwxyz123"


@pytest.mark.asyncio
@respx.mock
async def test_auth_failure_never_yields_placeholder(gateway):
    for url in AUTH_URLS:
        respx.post(url).respond(401, json={"error": {"code": "invalid_consumer_key_or_secret_provided"}})

    with pytest.raises(AuthError) as exc:
        await gateway.get_auth_token()

    assert exc.value.status == 401
    assert exc.value.code == "gateway_auth_failed"
    assert gateway.access_token is None


@pytest.mark.asyncio
@respx.mock
async def test_missing_credentials(diag):
    gateway = PesapalService(consumer_key="", consumer_secret="", environment="live", diagnostics=diag)

    with pytest.raises(AuthError):
        await gateway.get_auth_token()


@pytest.mark.asyncio
@respx.mock
async def test_submit_order(gateway, diag):
    mock_auth_ok()
    route = respx.post(ORDER_URL).respond(200, json={
        "order_tracking_id": "trk-1",
        "merchant_reference": "BK12345678ABCDEF",
        "redirect_url": "https://pay.pesapal.com/iframe/PesapalIframe3/Index?OrderTrackingId=trk-1",
        "error": None,
        "status": "200",
    })

    result = await gateway.submit_order(order_spec(order_id="order-1"))

    assert result.order_id == "order-1"
    assert result.order_tracking_id == "trk-1"
    assert result.redirect_url.endswith("OrderTrackingId=trk-1")

    request = route.calls[0].request
    assert request.headers["authorization"] == f"Bearer {TOKEN}"
    payload = json.loads(request.content)
    assert payload["id"] == "order-1"
    assert payload["amount"] == "275.00"
    assert payload["currency"] == "KES"
    assert payload["notification_id"] == "ipn-1"
    assert payload["callback_url"] == "https://api.example.test/api/payments/callback"
    assert payload["billing_address"]["phone_number"] == "+254712345678"
    assert payload["billing_address"]["email_address"] == "amina@example.com"

    operations = [e["operation"] for e in diag.channel("gateway").entries()]
    assert operations == ["auth", "SubmitOrder"]


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_redirect_alias(gateway):
    mock_auth_ok()
    respx.post(ORDER_URL).respond(200, json={"orderTrackingId": "trk-2", "checkout_url": "https://pay.example/c"})

    result = await gateway.submit_order(order_spec())

    assert result.redirect_url == "https://pay.example/c"
    assert result.order_tracking_id == "trk-2"


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_without_redirect(gateway):
    mock_auth_ok()
    respx.post(ORDER_URL).respond(200, json={"order_tracking_id": "trk-3", "status": "200"})

    with pytest.raises(NoRedirectTarget) as exc:
        await gateway.submit_order(order_spec())

    assert exc.value.code == "no_redirect_target"
    assert exc.value.order.order_tracking_id == "trk-3"


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_error_envelope(gateway):
    mock_auth_ok()
    respx.post(ORDER_URL).respond(200, json={
        "error": {"error_type": "api_error", "code": "invalid_amount", "message": "Invalid amount"},
        "status": "500",
    })

    with pytest.raises(GatewayError):
        await gateway.submit_order(order_spec())


@pytest.mark.asyncio
async def test_submit_order_refused_without_token(gateway):
    with respx.mock(assert_all_called=False) as router:
        auth_routes = [router.post(url).respond(500, text="upstream error") for url in AUTH_URLS]
        order_route = router.post(ORDER_URL).respond(200, json={"redirect_url": "https://pay.example/c"})

        with pytest.raises(AuthError):
            await gateway.submit_order(order_spec())

    assert all(route.called for route in auth_routes)
    assert not order_route.called


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_moves_on_only_when_endpoint_missing(gateway):
    mock_auth_ok()
    respx.post(ORDER_URL).respond(404)
    second = respx.post("https://pay.pesapal.com/v3/v3/api/Transactions/SubmitOrder").respond(
        200, json={"order_tracking_id": "trk-4", "redirect_url": "https://pay.example/c"}
    )

    result = await gateway.submit_order(order_spec())

    assert second.called
    assert result.order_tracking_id == "trk-4"


@pytest.mark.asyncio
async def test_submit_order_not_resent_after_server_error(gateway):
    with respx.mock(assert_all_called=False) as router:
        router.post(AUTH_URL).respond(200, json={"token": TOKEN})
        first = router.post(ORDER_URL).respond(500, text="boom")
        second = router.post("https://pay.pesapal.com/v3/v3/api/Transactions/SubmitOrder").respond(200, json={})

        with pytest.raises(GatewayError) as exc:
            await gateway.submit_order(order_spec())

    assert exc.value.status == 500
    assert first.call_count == 1
    assert not second.called


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_timeout(gateway):
    mock_auth_ok()
    respx.post(ORDER_URL).mock(side_effect=httpx.ReadTimeout("provider too slow"))

    with pytest.raises(GatewayError, match="timed out"):
        await gateway.submit_order(order_spec())


@pytest.mark.asyncio
@respx.mock
async def test_submit_order_rejects_non_positive_amount(gateway):
    with pytest.raises(ValidationError):
        await gateway.submit_order(order_spec(amount=0))


@pytest.mark.asyncio
@respx.mock
async def test_transaction_status(gateway):
    mock_auth_ok()
    route = respx.get(STATUS_URLS[0]).respond(200, json={
        "payment_method": "MpesaKE",
        "amount": 275,
        "payment_status_description": "Completed",
        "status_code": 1,
        "merchant_reference": "BK12345678ABCDEF",
        "error": {"error_type": None, "code": None, "message": None},
        "status": "200",
    })

    result = await gateway.get_transaction_status("trk-1")

    assert result.status == GatewayStatus.COMPLETED
    assert result.provider_status == "Completed"
    assert result.amount == 275.0
    assert route.calls[0].request.url.params["orderTrackingId"] == "trk-1"


@pytest.mark.asyncio
@respx.mock
async def test_transaction_status_ignores_bad_amount(gateway):
    mock_auth_ok()
    respx.get(STATUS_URLS[0]).respond(200, json={"payment_status_description": "Failed", "amount": "n/a"})

    result = await gateway.get_transaction_status("trk-1")

    assert result.status == GatewayStatus.FAILED
    assert result.amount is None


@pytest.mark.asyncio
@respx.mock
async def test_transaction_status_all_candidates_fail(gateway):
    mock_auth_ok()
    for url in STATUS_URLS:
        respx.get(url).respond(503, text="maintenance")

    with pytest.raises(GatewayError) as exc:
        await gateway.get_transaction_status("trk-1")

    assert exc.value.status == 503


@pytest.mark.asyncio
async def test_transaction_status_requires_tracking_id(gateway):
    with pytest.raises(ValidationError):
        await gateway.get_transaction_status("")


@pytest.mark.asyncio
@respx.mock
async def test_register_ipn(gateway):
    mock_auth_ok()
    route = respx.post("https://pay.pesapal.com/v3/api/URLSetup/RegisterIPN").respond(
        200, json={"url": "https://api.example.test/ipn", "ipn_id": "ipn-new", "ipn_notification_type": "GET"}
    )

    assert await gateway.register_ipn("https://api.example.test/ipn") == "ipn-new"
    assert gateway.ipn_id == "ipn-new"
    assert json.loads(route.calls[0].request.content)["ipn_notification_type"] == "GET"


@pytest.mark.parametrize("raw, expected", [
    ({"payment_status_description": "Completed"}, GatewayStatus.COMPLETED),
    ({"payment_status_description": "FAILED"}, GatewayStatus.FAILED),
    ({"payment_status_description": "Reversed"}, GatewayStatus.FAILED),
    ({"payment_status_description": "INVALID"}, GatewayStatus.PENDING),
    ({"payment_status": "pending"}, GatewayStatus.PENDING),
    ({"status_code": 2}, GatewayStatus.FAILED),
    ({"status_code": 1}, GatewayStatus.COMPLETED),
    ({"payment_status_description": "Mystery"}, GatewayStatus.PENDING),
])
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw)[0] == expected


@pytest.mark.parametrize("phone, expected", [
    ("+254 712-345-678", "+254712345678"),
    ("0712 345 678", "0712345678"),
    ("++254(712)345678", "+254712345678"),
    (None, ""),
    ("abc", ""),
])
def test_sanitize_phone(phone, expected):
    assert sanitize_phone(phone) == expected


@pytest.mark.parametrize("timeout, expected", [(5, 15.0), (20, 20.0), (90, 30.0)])
def test_timeout_is_bounded(diag, timeout, expected):
    gateway = PesapalService(consumer_key="k", consumer_secret="s", environment="live",
                             timeout=timeout, diagnostics=diag)

    assert gateway.timeout == expected


def test_unknown_environment(diag):
    with pytest.raises(ValueError):
        PesapalService(environment="staging", diagnostics=diag)

from __future__ import annotations

import json

import httpx
import pytest

from paystate.config import Settings
from paystate.domain.dtos import CardData
from paystate.domain.errors import GatewayDeclineError, NotFoundError, TransientNetworkError, ValidationError
from paystate.domain.models import AcceptanceTokens
from paystate.domain.statuses import GatewayStatus
from paystate.providers.orders import OrderApiClient
from paystate.providers.wompi import WompiGateway, parse_transaction

MERCHANT = {
    "data": {
        "presigned_acceptance": {"acceptance_token": "acc-123", "permalink": "https://wompi.co/terms.pdf"},
        "presigned_personal_data_auth": {"acceptance_token": "auth-456"},
    }
}


def _settings() -> Settings:
    return Settings(
        _env_file=None,
        wompi_base_url="https://sandbox.wompi.test/v1",
        wompi_public_key="pub_test_abc",
        wompi_private_key="prv_test_xyz",
        api_url="http://backend.test/api",
        api_token="svc-token",
    )


def test_parse_transaction_reads_async_payment_url() -> None:
    tx = parse_transaction(
        {
            "data": {
                "id": "1234-1610641025-49201",
                "status": "PENDING",
                "reference": "order-1-1-abcd",
                "payment_method": {"type": "PSE", "extra": {"async_payment_url": "https://bank.example/pay"}},
            }
        }
    )
    assert tx.id == "1234-1610641025-49201"
    assert tx.status == GatewayStatus.PENDING
    assert tx.redirect_url == "https://bank.example/pay"


def test_parse_transaction_unknown_status_is_pending() -> None:
    assert parse_transaction({"id": "tx-1", "status": "SOMETHING_NEW"}).status == GatewayStatus.PENDING


def test_parse_transaction_without_id() -> None:
    with pytest.raises(TransientNetworkError):
        parse_transaction({"data": {"status": "APPROVED"}})


@pytest.mark.anyio
async def test_tokenize_uses_public_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"status": "CREATED", "data": {"id": "tok_prod_1"}})

    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(handler))
    card = CardData(number="4242424242424242", cvc="123", exp_month="08", exp_year="29", card_holder="Ana")
    assert await gateway.tokenize_card(card) == "tok_prod_1"
    assert seen[0].url.path == "/v1/tokens/cards"
    assert seen[0].headers["Authorization"] == "Bearer pub_test_abc"


@pytest.mark.anyio
async def test_acceptance_tokens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/merchants/pub_test_abc"
        return httpx.Response(200, json=MERCHANT)

    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(handler))
    tokens = await gateway.acceptance_tokens()
    assert tokens.acceptance_token == "acc-123"
    assert tokens.personal_data_auth_token == "auth-456"
    assert tokens.permalink == "https://wompi.co/terms.pdf"


@pytest.mark.anyio
async def test_create_transaction_payload() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer prv_test_xyz"
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"id": "tx-9", "status": "PENDING", "reference": "ref-9"}})

    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(handler))
    tx = await gateway.create_transaction(
        amount_in_cents=2500000,
        currency="COP",
        customer_email="cliente@example.com",
        reference="ref-9",
        payment_method={"type": "NEQUI", "phone_number": "3991111111"},
        acceptance=AcceptanceTokens("acc-123", "auth-456"),
    )
    assert tx.id == "tx-9"
    body = seen[0]
    assert body["acceptance_token"] == "acc-123"
    assert body["accept_personal_auth"] == "auth-456"
    assert body["amount_in_cents"] == 2500000
    assert "redirect_url" not in body


@pytest.mark.anyio
async def test_transaction_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/transactions/tx-9"
        return httpx.Response(200, json={"data": {"id": "tx-9", "status": "DECLINED", "status_message": "Saldo"}})

    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(handler))
    tx = await gateway.get_transaction("tx-9")
    assert tx.status == GatewayStatus.DECLINED
    assert tx.status_message == "Saldo"


@pytest.mark.anyio
async def test_gateway_rejection_message() -> None:
    body = {"error": {"type": "INPUT_VALIDATION_ERROR", "messages": {"phone_number": ["Número inválido"]}}}
    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(422, json=body)))
    with pytest.raises(ValidationError, match="phone_number: Número inválido"):
        await gateway.get_transaction("tx-1")


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_gateway_transient_statuses(status_code: int) -> None:
    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(status_code)))
    with pytest.raises(TransientNetworkError):
        await gateway.get_transaction("tx-1")


@pytest.mark.anyio
async def test_gateway_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(handler))
    with pytest.raises(TransientNetworkError):
        await gateway.acceptance_tokens()


@pytest.mark.anyio
async def test_order_client_endpoints() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    client = OrderApiClient(_settings(), transport=httpx.MockTransport(handler))
    await client.save_transaction("order-1", "tx-1")
    await client.confirm_order_payment("order-1", "tx-1")
    await client.confirm_cash_payment("order-1")

    assert [(r.method, r.url.path) for r in seen] == [
        ("PUT", "/api/orders/order-1"),
        ("POST", "/api/orders/order-1/confirm-payment"),
        ("POST", "/api/orders/order-1/confirm-cash-payment"),
    ]
    assert json.loads(seen[0].content) == {"paymentIntentId": "tx-1"}
    assert json.loads(seen[1].content) == {"transactionId": "tx-1"}
    assert seen[0].headers["Authorization"] == "Bearer svc-token"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "status_code,error",
    [(404, NotFoundError), (400, ValidationError), (502, TransientNetworkError)],
)
async def test_order_client_errors(status_code: int, error: type[Exception]) -> None:
    client = OrderApiClient(_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(status_code)))
    with pytest.raises(error):
        await client.confirm_order_payment("order-1", "tx-1")


@pytest.mark.anyio
async def test_create_transaction_declined_outright() -> None:
    body = {"data": {"id": "tx-13", "status": "DECLINED", "status_message": "Fondos insuficientes"}}
    gateway = WompiGateway(_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(201, json=body)))
    with pytest.raises(GatewayDeclineError) as excinfo:
        await gateway.create_transaction(
            amount_in_cents=2500000,
            currency="COP",
            customer_email="cliente@example.com",
            reference="ref-13",
            payment_method={"type": "CARD", "token": "tok_1", "installments": 1},
            acceptance=AcceptanceTokens("acc-123", "auth-456"),
        )
    assert excinfo.value.transaction_id == "tx-13"
    assert excinfo.value.status == "DECLINED"
    assert excinfo.value.message == "Fondos insuficientes"

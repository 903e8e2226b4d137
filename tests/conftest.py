from __future__ import annotations

import asyncio
import pathlib
import sys
from decimal import Decimal
from typing import Any

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from paystate.config import Settings
from paystate.domain.dtos import CardData, NequiData, PaymentCreateRequest, PseData
from paystate.domain.enums import PaymentMethod
from paystate.domain.errors import TransientNetworkError
from paystate.domain.models import AcceptanceTokens, GatewayTransaction
from paystate.domain.statuses import GatewayStatus
from paystate.providers.base import OrderBackend, PaymentGateway
from paystate.repositories.memory_store import PaymentStateStore
from paystate.services.payments_service import UnifiedPaymentService


class FakeGateway(PaymentGateway):
    """Scriptable gateway; ``statuses`` is consumed per status call, the last entry repeats."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.status_calls = 0
        self.create_status = GatewayStatus.PENDING
        self.create_message: str | None = None
        self.create_redirect: str | None = None
        self.create_error: Exception | None = None
        self.tokenize_error: Exception | None = None
        self.statuses: list[GatewayStatus | Exception] = [GatewayStatus.PENDING]
        self.status_message: str | None = None

    async def tokenize_card(self, card: CardData) -> str:
        if self.tokenize_error is not None:
            raise self.tokenize_error
        return "tok_test_4242"

    async def acceptance_tokens(self) -> AcceptanceTokens:
        return AcceptanceTokens(acceptance_token="acc_tok", personal_data_auth_token="auth_tok")

    async def create_transaction(self, **kwargs: Any) -> GatewayTransaction:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kwargs)
        return GatewayTransaction(
            id=f"tx-{len(self.created)}",
            status=self.create_status,
            reference=kwargs["reference"],
            status_message=self.create_message,
            redirect_url=self.create_redirect,
        )

    async def get_transaction(self, transaction_id: str) -> GatewayTransaction:
        self.status_calls += 1
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return GatewayTransaction(id=transaction_id, status=item, status_message=self.status_message)


class FakeOrders(OrderBackend):
    def __init__(self) -> None:
        self.confirmed: list[tuple[str, str]] = []
        self.cash: list[str] = []
        self.saved: list[tuple[str, str]] = []
        self.confirm_failures = 0
        self.save_failures = 0
        self.cash_error: Exception | None = None
        self.confirm_delay = 0.0

    async def confirm_order_payment(self, order_id: str, transaction_id: str) -> None:
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.confirm_failures > 0:
            self.confirm_failures -= 1
            raise TransientNetworkError("order backend down")
        self.confirmed.append((order_id, transaction_id))

    async def confirm_cash_payment(self, order_id: str) -> None:
        if self.cash_error is not None:
            raise self.cash_error
        self.cash.append(order_id)

    async def save_transaction(self, order_id: str, transaction_id: str) -> None:
        if self.save_failures > 0:
            self.save_failures -= 1
            raise TransientNetworkError("order backend down")
        self.saved.append((order_id, transaction_id))


def make_request(method: PaymentMethod | str, order_id: str = "order-1", **overrides: Any) -> PaymentCreateRequest:
    data: dict[str, Any] = {
        "order_id": order_id,
        "method": method,
        "amount": Decimal("107072.09"),
        "currency": "COP",
        "customer_email": "cliente@example.com",
        "customer_name": "Ana Cliente",
    }
    method_value = PaymentMethod(method)
    if method_value == PaymentMethod.CARD:
        data["card"] = CardData(
            number="4242424242424242", cvc="123", exp_month="08", exp_year="29", card_holder="Ana Cliente"
        )
    elif method_value == PaymentMethod.NEQUI:
        data["nequi"] = NequiData(phone_number="3991111111")
    elif method_value == PaymentMethod.PSE:
        data["pse"] = PseData(user_legal_id_type="CC", user_legal_id="1999888777", financial_institution_code="1")
    data.update(overrides)
    return PaymentCreateRequest(**data)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        poll_interval_seconds=0.01,
        auto_monitor=False,
        save_transaction_backoff_seconds=0,
        wompi_integrity_secret="integrity_secret",
        wompi_public_key="pub_test_abc",
    )


@pytest.fixture
def store() -> PaymentStateStore:
    return PaymentStateStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orders() -> FakeOrders:
    return FakeOrders()


@pytest.fixture
def service(store: PaymentStateStore, gateway: FakeGateway, orders: FakeOrders, settings: Settings) -> UnifiedPaymentService:
    return UnifiedPaymentService(store, gateway, orders, settings)

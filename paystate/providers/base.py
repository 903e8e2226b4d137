from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from paystate.domain.dtos import CardData, PaymentCreateRequest
from paystate.domain.enums import PaymentMethod
from paystate.domain.models import AcceptanceTokens, GatewayTransaction, PaymentState, ProcessorOutcome


class PaymentGateway(ABC):
    """Abstract payment gateway (tokenization, charging, status)."""

    @abstractmethod
    async def tokenize_card(self, card: CardData) -> str:
        """Exchange raw card fields for an opaque token.

        Raises ValidationError when the gateway rejects the card data
        (invalid number, expired date, invalid CVC).
        """

    @abstractmethod
    async def acceptance_tokens(self) -> AcceptanceTokens:
        """Return the legal acceptance tokens required before charging."""

    @abstractmethod
    async def create_transaction(
        self,
        *,
        amount_in_cents: int,
        currency: str,
        customer_email: str,
        reference: str,
        payment_method: dict[str, Any],
        acceptance: AcceptanceTokens,
        redirect_url: str | None = None,
    ) -> GatewayTransaction:
        """Create a transaction and return its id plus initial status.

        Raises GatewayDeclineError when the gateway rejects it outright.
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> GatewayTransaction:
        """Read-only status lookup.

        Network failures raise TransientNetworkError; callers decide whether
        to retry.
        """


class OrderBackend(ABC):
    """Marketplace order backend, the owner of order records."""

    @abstractmethod
    async def confirm_order_payment(self, order_id: str, transaction_id: str) -> None:
        """Promote a booking from payment-approved to confirmed."""

    @abstractmethod
    async def confirm_cash_payment(self, order_id: str) -> None:
        """Record that the order will be settled in cash on delivery."""

    @abstractmethod
    async def save_transaction(self, order_id: str, transaction_id: str) -> None:
        """Store the gateway transaction id on the order."""


class PaymentProcessor(ABC):
    """Rail-specific strategy run by the unified payment service."""

    methods: ClassVar[tuple[PaymentMethod, ...]] = ()

    @abstractmethod
    async def process(self, request: PaymentCreateRequest, state: PaymentState) -> ProcessorOutcome:
        """Run one payment attempt.

        May raise ValidationError, TransientNetworkError or
        GatewayDeclineError; the service translates them.
        """

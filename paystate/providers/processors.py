from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict
from urllib.parse import urlencode

from paystate.config import Settings
from paystate.domain.dtos import PaymentCreateRequest
from paystate.domain.enums import PaymentMethod
from paystate.domain.errors import ValidationError
from paystate.domain.models import PaymentState, ProcessorOutcome
from paystate.utils.security import build_integrity_signature
from paystate.utils.transaction_id import synthesize_cash_id

from .base import OrderBackend, PaymentGateway, PaymentProcessor

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Major units (pesos) to the gateway's ``amount_in_cents``."""
    quantized = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int((quantized * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def return_url(settings: Settings, request: PaymentCreateRequest) -> str:
    if request.redirect_url:
        return request.redirect_url
    base = settings.frontend_url.rstrip("/")
    return f"{base}/payment-success/{request.order_id}?method={request.method.value}"


class CashProcessor(PaymentProcessor):
    """Cash is settled at service delivery; no gateway round-trip."""

    methods = (PaymentMethod.CASH,)

    def __init__(self, orders: OrderBackend):
        self.orders = orders

    async def process(self, request: PaymentCreateRequest, state: PaymentState) -> ProcessorOutcome:
        await self.orders.confirm_cash_payment(request.order_id)
        return ProcessorOutcome(transaction_id=synthesize_cash_id(), confirmed=True)


class CardProcessor(PaymentProcessor):
    """Tokenize the card, then charge the token."""

    methods = (PaymentMethod.CARD,)

    def __init__(self, gateway: PaymentGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    async def process(self, request: PaymentCreateRequest, state: PaymentState) -> ProcessorOutcome:
        if request.card is None:
            raise ValidationError("Datos de tarjeta requeridos")
        token = await self.gateway.tokenize_card(request.card)
        logger.info("card tokenized", extra={"order_id": request.order_id, "reference": state.reference})
        acceptance = await self.gateway.acceptance_tokens()
        transaction = await self.gateway.create_transaction(
            amount_in_cents=to_minor_units(request.amount),
            currency=request.currency,
            customer_email=request.customer_email,
            reference=state.reference or request.order_id,
            payment_method={"type": "CARD", "token": token, "installments": request.installments},
            acceptance=acceptance,
        )
        return ProcessorOutcome(transaction=transaction)


class HostedCheckoutProcessor(PaymentProcessor):
    """Embedded widget and web checkout: the payer completes the flow on Wompi.

    The transaction id is only learned later, from the redirect or a webhook.
    """

    methods = (PaymentMethod.WIDGET, PaymentMethod.CHECKOUT_WEB)

    def __init__(self, settings: Settings):
        self.settings = settings

    async def process(self, request: PaymentCreateRequest, state: PaymentState) -> ProcessorOutcome:
        amount_in_cents = to_minor_units(request.amount)
        reference = state.reference or request.order_id
        redirect = return_url(self.settings, request)
        signature = build_integrity_signature(
            reference, amount_in_cents, request.currency, self.settings.wompi_integrity_secret
        )
        params: Dict[str, Any] = {
            "public-key": self.settings.wompi_public_key,
            "currency": request.currency,
            "amount-in-cents": amount_in_cents,
            "reference": reference,
            "redirect-url": redirect,
        }
        if signature:
            params["signature:integrity"] = signature
        if request.method == PaymentMethod.CHECKOUT_WEB:
            url = f"{self.settings.wompi_checkout_url}?{urlencode(params)}"
            return ProcessorOutcome(redirect_url=url, checkout=params)
        widget: Dict[str, Any] = {
            "publicKey": self.settings.wompi_public_key,
            "currency": request.currency,
            "amountInCents": amount_in_cents,
            "reference": reference,
            "redirectUrl": redirect,
            "customerData": {"email": request.customer_email, "fullName": request.customer_name},
        }
        if signature:
            widget["signature"] = {"integrity": signature}
        return ProcessorOutcome(checkout=widget)


class AsyncApprovalProcessor(PaymentProcessor):
    """Nequi, Bancolombia and PSE: the payer approves out of band."""

    methods = (PaymentMethod.NEQUI, PaymentMethod.BANCOLOMBIA, PaymentMethod.PSE)

    def __init__(self, gateway: PaymentGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def _payment_method(self, request: PaymentCreateRequest) -> Dict[str, Any]:
        description = f"Pedido {request.order_id}"[:30]
        if request.method == PaymentMethod.NEQUI:
            if request.nequi is None or not request.nequi.phone_number:
                raise ValidationError("Número de teléfono requerido para Nequi")
            return {"type": "NEQUI", "phone_number": request.nequi.phone_number}
        if request.method == PaymentMethod.PSE:
            if request.pse is None:
                raise ValidationError("Datos PSE requeridos")
            return {
                "type": "PSE",
                "user_type": int(request.pse.user_type.value),
                "user_legal_id_type": request.pse.user_legal_id_type,
                "user_legal_id": request.pse.user_legal_id,
                "financial_institution_code": request.pse.financial_institution_code,
                "payment_description": description,
            }
        return {
            "type": "BANCOLOMBIA_TRANSFER",
            "user_type": "PERSON",
            "payment_description": description,
        }

    async def process(self, request: PaymentCreateRequest, state: PaymentState) -> ProcessorOutcome:
        payment_method = self._payment_method(request)
        acceptance = await self.gateway.acceptance_tokens()
        redirect = None if request.method == PaymentMethod.NEQUI else return_url(self.settings, request)
        transaction = await self.gateway.create_transaction(
            amount_in_cents=to_minor_units(request.amount),
            currency=request.currency,
            customer_email=request.customer_email,
            reference=state.reference or request.order_id,
            payment_method=payment_method,
            acceptance=acceptance,
            redirect_url=redirect,
        )
        return ProcessorOutcome(transaction=transaction, redirect_url=transaction.redirect_url)

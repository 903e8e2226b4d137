from __future__ import annotations

from paystate.config import Settings
from paystate.domain.enums import PaymentMethod
from paystate.domain.errors import ValidationError

from .base import OrderBackend, PaymentGateway, PaymentProcessor
from .processors import AsyncApprovalProcessor, CardProcessor, CashProcessor, HostedCheckoutProcessor


def get_processor(
    method: PaymentMethod | str,
    *,
    gateway: PaymentGateway,
    orders: OrderBackend,
    settings: Settings,
) -> PaymentProcessor:
    """Return the processor for a payment method.

    Supported methods:
    - "cash" -> CashProcessor
    - "card" -> CardProcessor
    - "widget", "checkout-web" -> HostedCheckoutProcessor
    - "nequi", "bancolombia", "pse" -> AsyncApprovalProcessor
    """
    try:
        normalized = PaymentMethod(str(getattr(method, "value", method)).lower())
    except ValueError as exc:
        raise ValidationError(f"Método de pago no soportado: {method}") from exc
    if normalized in CashProcessor.methods:
        return CashProcessor(orders)
    if normalized in CardProcessor.methods:
        return CardProcessor(gateway, settings)
    if normalized in HostedCheckoutProcessor.methods:
        return HostedCheckoutProcessor(settings)
    return AsyncApprovalProcessor(gateway, settings)

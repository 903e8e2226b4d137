from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from .enums import PaymentMethod, PseUserType
from .models import PaymentResult, PaymentState
from .statuses import PaymentStatus


class CardData(BaseModel):
    """Raw card fields, only ever forwarded to the tokenization endpoint."""

    number: str
    cvc: str
    exp_month: str
    exp_year: str
    card_holder: str


class NequiData(BaseModel):
    phone_number: str = Field(..., description="Numero Nequi, 10 digitos sin indicativo")


class PseData(BaseModel):
    user_type: PseUserType = PseUserType.PERSON
    user_legal_id_type: str = Field(..., description="CC, NIT, CE...")
    user_legal_id: str
    financial_institution_code: str


class PaymentCreateRequest(BaseModel):
    """Request body for starting a payment attempt for an order."""

    order_id: str
    method: PaymentMethod
    amount: Decimal = Field(..., description="Monto en unidades mayores (pesos)")
    currency: str = "COP"
    customer_email: str
    customer_name: str | None = None
    installments: int = Field(default=1, ge=1)
    card: CardData | None = None
    nequi: NequiData | None = None
    pse: PseData | None = None
    redirect_url: str | None = Field(
        default=None, description="Front URL to return to after a redirect flow"
    )


class PaymentStateResponse(BaseModel):
    order_id: str
    method: PaymentMethod
    status: PaymentStatus
    status_display: str
    requires_user_action: bool = False
    transaction_id: str | None = None
    error: str | None = None
    reference: str | None = None
    redirect_url: str | None = None
    attempt: int = 1
    last_checked_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: PaymentState) -> PaymentStateResponse:
        return cls(
            order_id=state.order_id,
            method=state.method,
            status=state.status,
            status_display=state.status.display_name,
            requires_user_action=state.requires_user_action,
            transaction_id=state.transaction_id,
            error=state.error,
            reference=state.reference,
            redirect_url=state.redirect_url,
            attempt=state.attempt,
            last_checked_at=state.last_checked_at,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


class PaymentResultResponse(BaseModel):
    """Response returned when a payment attempt is processed."""

    success: bool
    requires_redirect: bool
    error: str | None = None
    transaction_id: str | None = None
    redirect_url: str | None = None
    checkout: dict[str, Any] | None = None
    state: PaymentStateResponse | None = None

    @classmethod
    def from_result(cls, result: PaymentResult) -> PaymentResultResponse:
        return cls(
            success=result.success,
            requires_redirect=result.requires_redirect,
            error=result.error,
            transaction_id=result.transaction_id,
            redirect_url=result.redirect_url,
            checkout=result.checkout,
            state=PaymentStateResponse.from_state(result.state) if result.state else None,
        )


class WebhookAck(BaseModel):
    received: bool = True
    order_id: str | None = None
    status: PaymentStatus | None = None

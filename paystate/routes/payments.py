from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from paystate.domain.dtos import (
    PaymentCreateRequest,
    PaymentResultResponse,
    PaymentStateResponse,
    WebhookAck,
)
from paystate.domain.errors import NotFoundError, ValidationError
from paystate.services.payments_service import UnifiedPaymentService
from paystate.utils.security import verify_event_signature

router = APIRouter(prefix="/api/payments")
logger = logging.getLogger(__name__)


def get_payments_service(request: Request) -> UnifiedPaymentService:
    return request.app.state.payments


@router.post("", response_model=PaymentResultResponse)
async def create_payment(
    body: PaymentCreateRequest,
    service: UnifiedPaymentService = Depends(get_payments_service),
) -> PaymentResultResponse:
    logger.info(
        "create_payment received",
        extra={
            "endpoint": "/api/payments",
            "order_id": body.order_id,
            "method": body.method,
            "amount": body.amount,
            "currency": body.currency,
        },
    )
    try:
        result = await service.process_payment(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    logger.info(
        "create_payment responded",
        extra={
            "endpoint": "/api/payments",
            "order_id": body.order_id,
            "status": result.state.status if result.state else None,
            "transaction_id": result.transaction_id,
            "event": result.error or "",
        },
    )
    return PaymentResultResponse.from_result(result)


@router.post("/webhook", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    service: UnifiedPaymentService = Depends(get_payments_service),
) -> WebhookAck:
    try:
        payload: Any = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")
    secret = service.settings.wompi_events_secret
    if secret and not verify_event_signature(payload, secret):
        logger.warning(
            "webhook signature mismatch",
            extra={"endpoint": "/api/payments/webhook", "event": str(payload.get("event"))},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")
    state = await service.handle_gateway_event(payload)
    if state is None:
        return WebhookAck()
    return WebhookAck(order_id=state.order_id, status=state.status)


@router.get("/{order_id}", response_model=PaymentStateResponse)
async def get_payment_state(
    order_id: str,
    service: UnifiedPaymentService = Depends(get_payments_service),
) -> PaymentStateResponse:
    state = service.get_state(order_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown order")
    return PaymentStateResponse.from_state(state)


@router.post("/{order_id}/check", response_model=PaymentStateResponse)
async def check_payment(
    order_id: str,
    service: UnifiedPaymentService = Depends(get_payments_service),
) -> PaymentStateResponse:
    try:
        state = await service.force_check(order_id) or service.get_state(order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return PaymentStateResponse.from_state(state)


@router.get("/{order_id}/return", response_model=PaymentStateResponse)
async def payment_return(
    order_id: str,
    transaction_id: str | None = Query(default=None, alias="id"),
    service: UnifiedPaymentService = Depends(get_payments_service),
) -> PaymentStateResponse:
    """Landing point after the hosted checkout redirects back with ``?id=``."""
    try:
        state = await service.attach_transaction_id(order_id, redirect_id=transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if state.transaction_id and not state.is_terminal:
        state = await service.force_check(order_id) or state
    return PaymentStateResponse.from_state(state)

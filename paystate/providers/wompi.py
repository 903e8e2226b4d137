from __future__ import annotations

import logging
import time
from typing import Any, Dict

import httpx

from paystate.config import Settings
from paystate.domain.dtos import CardData
from paystate.domain.errors import GatewayDeclineError, TransientNetworkError, ValidationError
from paystate.domain.models import AcceptanceTokens, GatewayTransaction
from paystate.domain.statuses import GatewayStatus

from .base import PaymentGateway

logger = logging.getLogger(__name__)


def _error_message(data: Any, fallback: str) -> str:
    """Pull a readable message out of a Wompi error body."""
    if not isinstance(data, dict):
        return fallback
    error = data.get("error")
    if isinstance(error, dict):
        messages = error.get("messages")
        if isinstance(messages, dict) and messages:
            parts = []
            for field, issues in messages.items():
                if isinstance(issues, list):
                    issues = ", ".join(str(i) for i in issues)
                parts.append(f"{field}: {issues}")
            return "; ".join(parts)
        reason = error.get("reason") or error.get("type")
        if reason:
            return str(reason)
    return str(data.get("message") or fallback)


def parse_transaction(data: Dict[str, Any]) -> GatewayTransaction:
    """Normalize a Wompi transaction body (``{"data": {...}}`` or bare)."""
    body = data.get("data") if isinstance(data.get("data"), dict) else data
    transaction_id = body.get("id")
    if not transaction_id:
        raise TransientNetworkError("Gateway response carried no transaction id")
    status = GatewayStatus.parse(body.get("status")) or GatewayStatus.PENDING
    redirect_url = body.get("redirect_url")
    payment_method = body.get("payment_method")
    if isinstance(payment_method, dict):
        extra = payment_method.get("extra") or {}
        if isinstance(extra, dict) and extra.get("async_payment_url"):
            redirect_url = extra["async_payment_url"]
    return GatewayTransaction(
        id=str(transaction_id),
        status=status,
        reference=body.get("reference"),
        status_message=body.get("status_message"),
        redirect_url=redirect_url,
        payload=body,
    )


class WompiGateway(PaymentGateway):
    """Wompi REST API implementation."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.base_url = settings.wompi_base_url.rstrip("/")
        self._transport = transport

    async def tokenize_card(self, card: CardData) -> str:
        data = await self._request(
            "POST",
            "/tokens/cards",
            operation="TOKENIZE",
            key=self.settings.wompi_public_key,
            json=card.model_dump(),
        )
        token = (data.get("data") or {}).get("id")
        if not token:
            raise ValidationError("Error al tokenizar tarjeta")
        return str(token)

    async def acceptance_tokens(self) -> AcceptanceTokens:
        data = await self._request(
            "GET",
            f"/merchants/{self.settings.wompi_public_key}",
            operation="ACCEPTANCE",
        )
        merchant = data.get("data") or {}
        acceptance = merchant.get("presigned_acceptance") or {}
        personal = merchant.get("presigned_personal_data_auth") or {}
        if not acceptance.get("acceptance_token") or not personal.get("acceptance_token"):
            raise TransientNetworkError("Acceptance tokens missing from merchant response")
        return AcceptanceTokens(
            acceptance_token=acceptance["acceptance_token"],
            personal_data_auth_token=personal["acceptance_token"],
            permalink=acceptance.get("permalink"),
        )

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
        payload: Dict[str, Any] = {
            "amount_in_cents": amount_in_cents,
            "currency": currency,
            "customer_email": customer_email,
            "reference": reference,
            "acceptance_token": acceptance.acceptance_token,
            "accept_personal_auth": acceptance.personal_data_auth_token,
            "payment_method": payment_method,
        }
        if redirect_url:
            payload["redirect_url"] = redirect_url
        data = await self._request(
            "POST",
            "/transactions",
            operation="CREATE",
            key=self.settings.wompi_private_key,
            json=payload,
        )
        transaction = parse_transaction(data)
        logger.info(
            "transaction created",
            extra={
                "reference": reference,
                "transaction_id": transaction.id,
                "gateway_status": transaction.status,
            },
        )
        if transaction.status.is_failure:
            # Rejected synchronously (card declined, invalid Nequi account, ...)
            raise GatewayDeclineError(
                transaction.status_message or "Pago rechazado",
                status=transaction.status.value,
                transaction_id=transaction.id,
            )
        return transaction

    async def get_transaction(self, transaction_id: str) -> GatewayTransaction:
        data = await self._request(
            "GET",
            f"/transactions/{transaction_id}",
            operation="STATUS",
        )
        return parse_transaction(data)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        key: str | None = None,
        json: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if key:
            headers["Authorization"] = f"Bearer {key}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.settings.http_timeout_seconds
            ) as client:
                resp = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as exc:
            self._log_event(operation=operation, url=url, headers=headers, error=str(exc), started=started)
            raise TransientNetworkError(f"Gateway unreachable ({operation}): {exc}") from exc

        data: Dict[str, Any] = {}
        try:
            parsed = resp.json()
            if isinstance(parsed, dict):
                data = parsed
        except ValueError:
            if resp.text:
                data = {"raw": resp.text}
        self._log_event(
            operation=operation,
            url=url,
            headers=headers,
            response_status=resp.status_code,
            error=None if not resp.is_error else _error_message(data, resp.reason_phrase),
            started=started,
        )
        if resp.status_code >= 500 or resp.status_code in (408, 429):
            raise TransientNetworkError(f"Gateway {operation} failed ({resp.status_code})")
        if resp.is_error:
            raise ValidationError(_error_message(data, f"Gateway {operation} rejected ({resp.status_code})"))
        return data

    def _mask_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        masked: Dict[str, str] = {}
        for key, value in (headers or {}).items():
            masked[key] = "***" if key.lower() == "authorization" else value
        return masked

    def _log_event(
        self,
        *,
        operation: str,
        url: str,
        headers: Dict[str, str],
        started: float,
        response_status: int | None = None,
        error: str | None = None,
    ) -> None:
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "wompi call",
            extra={
                "operation": operation,
                "endpoint": url,
                "response_status": response_status,
                "latency_ms": latency_ms,
                "event": error or "",
            },
        )
        logger.debug("wompi call headers %s", self._mask_headers(headers))

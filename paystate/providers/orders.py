from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from paystate.config import Settings
from paystate.domain.errors import NotFoundError, TransientNetworkError, ValidationError

from .base import OrderBackend

logger = logging.getLogger(__name__)


class OrderApiClient(OrderBackend):
    """HTTP client for the marketplace order endpoints."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.base_url = settings.api_url.rstrip("/")
        self._transport = transport

    async def confirm_order_payment(self, order_id: str, transaction_id: str) -> None:
        await self._send("POST", f"/orders/{order_id}/confirm-payment", {"transactionId": transaction_id})

    async def confirm_cash_payment(self, order_id: str) -> None:
        await self._send("POST", f"/orders/{order_id}/confirm-cash-payment")

    async def save_transaction(self, order_id: str, transaction_id: str) -> None:
        await self._send("PUT", f"/orders/{order_id}", {"paymentIntentId": transaction_id})

    async def _send(self, method: str, path: str, body: dict[str, Any] | None = None) -> None:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.settings.http_timeout_seconds
            ) as client:
                resp = await client.request(method, f"{self.base_url}{path}", headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Order backend unreachable: {exc}") from exc
        logger.info(
            "order backend call",
            extra={
                "endpoint": path,
                "operation": method,
                "response_status": resp.status_code,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        if resp.status_code == 404:
            raise NotFoundError(f"Order not found: {path}")
        if resp.status_code >= 500 or resp.status_code in (408, 429):
            raise TransientNetworkError(f"Order backend failed ({resp.status_code})")
        if resp.is_error:
            raise ValidationError(f"Order backend rejected {method} {path} ({resp.status_code})")

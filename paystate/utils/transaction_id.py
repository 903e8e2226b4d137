from __future__ import annotations

import time
from typing import Any, Iterable, Mapping
from uuid import uuid4

# Priority order; earlier sources win
GATEWAY_RESPONSE = "gateway_response"
REDIRECT_QUERY = "redirect_query"
WEBHOOK_PAYLOAD = "webhook_payload"
TRANSACTION_ID_SOURCES = (GATEWAY_RESPONSE, REDIRECT_QUERY, WEBHOOK_PAYLOAD)


def from_gateway_body(body: Mapping[str, Any] | None) -> str | None:
    if not body:
        return None
    data = body.get("data") if isinstance(body.get("data"), Mapping) else body
    value = data.get("id")
    return str(value) if value else None


def webhook_transaction(payload: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """``data.transaction`` of a gateway event, or an empty mapping when malformed."""
    data = payload.get("data") if isinstance(payload, Mapping) else None
    transaction = data.get("transaction") if isinstance(data, Mapping) else None
    return transaction if isinstance(transaction, Mapping) else {}


def from_webhook_payload(payload: Mapping[str, Any] | None) -> str | None:
    value = webhook_transaction(payload).get("id")
    return str(value) if value else None


def resolve_transaction_id(candidates: Iterable[tuple[str, str | None]]) -> tuple[str, str] | None:
    """Return ``(source, id)`` for the first candidate carrying a non-empty id."""
    for source, value in candidates:
        if value and str(value).strip():
            return source, str(value).strip()
    return None


def synthesize_cash_id() -> str:
    """Stand-in transaction id for cash payments settled out of band."""
    return f"cash_{int(time.time() * 1000)}_{uuid4().hex[:6]}"


def build_reference(order_id: str, attempt: int) -> str:
    return f"{order_id}-{attempt}-{uuid4().hex[:8]}"

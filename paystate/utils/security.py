from __future__ import annotations

import hashlib
import secrets
from typing import Any, Mapping


def build_integrity_signature(reference: str, amount_in_cents: int, currency: str, secret: str) -> str | None:
    """Wompi integrity signature: sha256(reference + amount + currency + secret)."""
    if not secret:
        return None
    raw = f"{reference}{amount_in_cents}{currency}{secret}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _lookup(data: Mapping[str, Any], path: str) -> str:
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, Mapping):
            return ""
        value = value.get(key, "")
    return str(value)


def _signature(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    signature = payload.get("signature")
    return signature if isinstance(signature, Mapping) else {}


def event_checksum(payload: Mapping[str, Any], secret: str) -> str:
    """Checksum of a gateway event: signed properties + timestamp + secret."""
    properties = _signature(payload).get("properties")
    if not isinstance(properties, list):
        properties = []
    data = payload.get("data") or {}
    concatenated = "".join(_lookup(data, str(prop)) for prop in properties)
    concatenated += str(payload.get("timestamp", ""))
    concatenated += secret
    return hashlib.sha256(concatenated.encode("utf-8")).hexdigest()


def verify_event_signature(payload: Mapping[str, Any], secret: str) -> bool:
    """Validate the checksum Wompi attaches to webhook events."""
    signature = _signature(payload)
    sent = str(signature.get("checksum") or "")
    properties = signature.get("properties")
    if not sent or not isinstance(properties, list) or not properties or not payload.get("timestamp"):
        return False
    expected = event_checksum(payload, secret)
    return secrets.compare_digest(expected.upper(), sent.upper())

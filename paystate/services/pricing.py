from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from paystate.config import Settings, settings
from paystate.domain.errors import TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

GATEWAY_RATE = 0.0265
GATEWAY_FIXED = 700
GATEWAY_TAX = 0.19
MIN_PLATFORM_MARGIN = 2000

# Local field name -> name used by the remote pricing endpoint
_PAYLOAD_KEYS = {
    "service_price": "servicePrice",
    "gateway_percent": "wompiPercent",
    "gateway_fixed": "wompiFixed",
    "gateway_subtotal": "wompiSubtotal",
    "gateway_tax": "wompiIVA",
    "gateway_cost": "wompiCost",
    "gateway_cost_client": "wompiCostClient",
    "gateway_cost_provider": "wompiCostProvider",
    "platform_margin": "platformMargin",
    "platform_margin_percent": "platformMarginPercent",
    "total_price": "totalPrice",
    "provider_earnings": "providerEarnings",
    "platform_earnings": "platformEarnings",
}


@dataclass(frozen=True)
class PricingBreakdown:
    """Three-way split of a service price (mixed fee strategy).

    total_price == service_price + platform_margin + gateway_cost_client
    provider_earnings == service_price - gateway_cost_provider
    """

    service_price: float
    base_amount: float
    gateway_percent: float
    gateway_fixed: float
    gateway_subtotal: float
    gateway_tax: float
    gateway_cost: float
    gateway_cost_client: float
    gateway_cost_provider: float
    platform_margin: float
    platform_margin_percent: float
    total_price: float
    provider_earnings: float
    platform_earnings: float

    def to_payload(self) -> dict[str, float]:
        data = asdict(self)
        return {remote: data[local] for local, remote in _PAYLOAD_KEYS.items()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PricingBreakdown:
        try:
            values = {local: float(payload[remote]) for local, remote in _PAYLOAD_KEYS.items()}
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed pricing payload: {exc}") from exc
        values["base_amount"] = values["service_price"] + values["platform_margin"]
        return cls(**values)


def _require_number(name: str, value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    return number


def gateway_cost(amount: float) -> float:
    """Full gateway fee (percentage + fixed, plus tax on the fee) for ``amount``."""
    amount = _require_number("amount", amount)
    if amount <= 0:
        raise ValidationError("amount must be positive")
    subtotal = amount * GATEWAY_RATE + GATEWAY_FIXED
    return subtotal + subtotal * GATEWAY_TAX


def compute_breakdown(
    service_price: float,
    margin_percent: float = 5,
    *,
    min_margin: float = MIN_PLATFORM_MARGIN,
) -> PricingBreakdown:
    """Split ``service_price`` into client total, provider net and platform margin.

    The gateway fee is charged on the gross amount (price plus margin) and is
    split evenly between payer and provider. ``margin_percent`` outside
    [0, 100] is rejected rather than clamped.

    The operation order mirrors the remote pricing endpoint so both return
    identical floats for the same inputs.
    """
    service_price = _require_number("service_price", service_price)
    margin_percent = _require_number("margin_percent", margin_percent)
    if service_price <= 0:
        raise ValidationError("service_price must be positive")
    if margin_percent < 0 or margin_percent > 100:
        raise ValidationError("margin_percent must be between 0 and 100")

    platform_margin = service_price * (margin_percent / 100)
    if platform_margin < min_margin:
        platform_margin = float(min_margin)

    base_amount = service_price + platform_margin
    fee_percent_part = base_amount * GATEWAY_RATE
    fee_subtotal = fee_percent_part + GATEWAY_FIXED
    fee_tax = fee_subtotal * GATEWAY_TAX
    total_gateway_cost = fee_subtotal + fee_tax

    cost_client = total_gateway_cost / 2
    cost_provider = total_gateway_cost / 2

    return PricingBreakdown(
        service_price=service_price,
        base_amount=base_amount,
        gateway_percent=fee_percent_part,
        gateway_fixed=float(GATEWAY_FIXED),
        gateway_subtotal=fee_subtotal,
        gateway_tax=fee_tax,
        gateway_cost=total_gateway_cost,
        gateway_cost_client=cost_client,
        gateway_cost_provider=cost_provider,
        platform_margin=platform_margin,
        platform_margin_percent=margin_percent,
        total_price=service_price + platform_margin + cost_client,
        provider_earnings=service_price - cost_provider,
        platform_earnings=platform_margin,
    )


def _cop(value: float) -> str:
    # es-CO groups thousands with dots
    return f"${value:,.0f}".replace(",", ".")


def format_breakdown_for_client(breakdown: PricingBreakdown) -> str:
    return "\n".join(
        [
            f"Precio del servicio: {_cop(breakdown.service_price)}",
            f"Comisión de plataforma: {_cop(breakdown.platform_margin)}",
            f"Costo de transacción: {_cop(breakdown.gateway_cost_client)}",
            "─" * 29,
            f"TOTAL A PAGAR: {_cop(breakdown.total_price)}",
        ]
    )


class PricingService:
    """Local preview plus the authoritative remote quote."""

    def __init__(self, cfg: Settings = settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = cfg
        self._transport = transport

    def calculate_pricing_local(self, service_price: float, margin_percent: float | None = None) -> PricingBreakdown:
        if margin_percent is None:
            margin_percent = self.settings.default_margin_percent
        return compute_breakdown(service_price, margin_percent, min_margin=self.settings.min_platform_margin)

    async def calculate_pricing(self, service_price: float, margin_percent: float | None = None) -> PricingBreakdown:
        params: dict[str, str] = {"servicePrice": str(service_price)}
        if margin_percent is not None:
            params["marginPercent"] = str(margin_percent)
        data = await self._get("/pricing/calculate", params)
        return PricingBreakdown.from_payload(data)

    async def calculate_gateway_cost(self, amount: float) -> float:
        data = await self._get("/pricing/wompi-cost", {"amount": str(amount)})
        try:
            return float(data["wompiCost"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Malformed gateway cost payload") from exc

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self.settings.api_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.settings.http_timeout_seconds
            ) as client:
                resp = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            logger.info("remote pricing unreachable", extra={"endpoint": path, "event": str(exc)})
            raise TransientNetworkError(f"Pricing endpoint unreachable: {exc}") from exc
        if resp.status_code == 400 or resp.status_code == 422:
            raise ValidationError(f"Pricing request rejected ({resp.status_code})")
        if resp.is_error:
            raise TransientNetworkError(f"Error calculando precios ({resp.status_code})")
        return resp.json()

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request, status

from paystate.domain.errors import ValidationError
from paystate.services.pricing import PricingService, gateway_cost

router = APIRouter(prefix="/api/pricing")


@router.get("/calculate")
async def calculate(
    request: Request,
    service_price: float = Query(..., alias="servicePrice"),
    margin_percent: float | None = Query(default=None, alias="marginPercent"),
) -> dict[str, float]:
    pricing: PricingService = request.app.state.pricing
    try:
        breakdown = pricing.calculate_pricing_local(service_price, margin_percent)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return breakdown.to_payload()


@router.get("/wompi-cost")
async def wompi_cost(amount: float = Query(...)) -> dict[str, float]:
    try:
        cost = gateway_cost(amount)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"amount": amount, "wompiCost": cost}

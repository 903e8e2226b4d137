from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paystate.config import Settings, settings as default_settings
from paystate.db.client import close_pool
from paystate.logging import setup_logging
from paystate.providers.base import OrderBackend, PaymentGateway
from paystate.providers.orders import OrderApiClient
from paystate.providers.wompi import WompiGateway
from paystate.repositories.memory_store import PaymentStateStore
from paystate.repositories.pg_store import PgStatePersistence
from paystate.routes import health, payments, pricing
from paystate.services.payments_service import UnifiedPaymentService
from paystate.services.pricing import PricingService

setup_logging()


def create_app(
    cfg: Settings = default_settings,
    *,
    gateway: PaymentGateway | None = None,
    orders: OrderBackend | None = None,
    store: PaymentStateStore | None = None,
) -> FastAPI:
    """Build the API with its collaborators; tests inject fakes here."""
    if store is None:
        store = PaymentStateStore(PgStatePersistence() if cfg.db_enabled else None)
    service = UnifiedPaymentService(
        store,
        gateway or WompiGateway(cfg),
        orders or OrderApiClient(cfg),
        cfg,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await service.close()
        close_pool()

    app = FastAPI(title="Paystate API", lifespan=lifespan)
    app.state.payments = service
    app.state.pricing = PricingService(cfg)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(pricing.router)
    return app


app = create_app()

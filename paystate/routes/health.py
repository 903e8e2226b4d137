from __future__ import annotations

import logging
import os
import platform
from collections import Counter
from datetime import datetime, timezone
from typing import Any

import psycopg2
from fastapi import APIRouter, Request

from paystate.db.client import pool_ready
from paystate.domain.statuses import PaymentStatus
from paystate.repositories.pg_store import PgStatePersistence
from paystate.services.payments_service import UnifiedPaymentService

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_payment_metrics(service: UnifiedPaymentService) -> dict[str, Any]:
    states = service.store.list_states()
    counts = Counter(state.status for state in states)
    return {
        "total": len(states),
        "status_counts": {s.value: counts.get(s, 0) for s in PaymentStatus},
        "status_counts_display": {s.display_name: counts.get(s, 0) for s in PaymentStatus},
        "pending_by_method": dict(
            Counter(s.method.value for s in states if s.status == PaymentStatus.PENDING)
        ),
        "monitored_orders": len(service.monitor.active_orders()),
    }


@router.get("/health/metrics")
async def health_metrics(request: Request) -> dict[str, Any]:
    """Detailed service health endpoint with lightweight operational metrics."""

    service: UnifiedPaymentService = request.app.state.payments
    captured_at = datetime.now(timezone.utc)
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    persisted: dict[str, int] | None = None
    if service.settings.db_enabled:
        try:
            persisted = PgStatePersistence().count_by_status()
        except psycopg2.Error as exc:
            logger.warning("snapshot counts unavailable", extra={"event": str(exc)})
    db_connected = pool_ready()
    status = "ok" if db_connected or not service.settings.db_enabled else "degraded"

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "gateway": service.settings.wompi_base_url,
            "poll_interval_seconds": service.settings.poll_interval_seconds,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": service.settings.db_enabled,
            "connected": db_connected,
            "schema": service.settings.db_schema or None,
            "status_counts": persisted,
        },
        "payments": _collect_payment_metrics(service),
    }

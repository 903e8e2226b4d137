from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from .enums import PaymentMethod
from .statuses import GatewayStatus, PaymentStatus


@dataclass(frozen=True)
class PaymentState:
    """Authoritative payment state of one order.

    Instances are immutable snapshots; the store swaps in a new instance on
    every update.
    """

    order_id: str
    method: PaymentMethod
    created_at: datetime
    updated_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = None
    error: str | None = None
    reference: str | None = None
    redirect_url: str | None = None
    attempt: int = 1
    last_checked_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def requires_user_action(self) -> bool:
        return self.status == PaymentStatus.PENDING and self.method == PaymentMethod.NEQUI

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "method": self.method.value,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "reference": self.reference,
            "redirect_url": self.redirect_url,
            "attempt": self.attempt,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class StateChanged:
    """Event delivered to store subscribers."""

    state: PaymentState
    type: Literal["state_changed"] = "state_changed"


@dataclass
class GatewayTransaction:
    """Normalized transaction returned by the gateway."""

    id: str
    status: GatewayStatus
    reference: str | None = None
    status_message: str | None = None
    redirect_url: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AcceptanceTokens:
    """Legal acceptance tokens the gateway requires before charging."""

    acceptance_token: str
    personal_data_auth_token: str
    permalink: str | None = None


@dataclass
class ProcessorOutcome:
    """What a rail processor achieved for one attempt."""

    transaction: GatewayTransaction | None = None
    transaction_id: str | None = None
    redirect_url: str | None = None
    checkout: dict[str, Any] | None = None
    confirmed: bool = False


@dataclass
class PaymentResult:
    """Outcome of ``process_payment`` handed to the presentation layer."""

    success: bool
    state: PaymentState | None
    requires_redirect: bool = False
    error: str | None = None
    transaction_id: str | None = None
    redirect_url: str | None = None
    checkout: dict[str, Any] | None = None

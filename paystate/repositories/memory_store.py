from __future__ import annotations

import logging
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from paystate.domain.enums import PaymentMethod
from paystate.domain.errors import NotFoundError, ValidationError
from paystate.domain.models import PaymentState, StateChanged
from paystate.domain.statuses import PaymentStatus

logger = logging.getLogger(__name__)

Listener = Callable[[StateChanged], None]

_IMMUTABLE_FIELDS = {"order_id", "method", "created_at", "updated_at"}
_STATE_FIELDS = {f.name for f in fields(PaymentState)}


class StatePersistence(Protocol):
    """Where the store flushes snapshots so they outlive the process."""

    def load_all(self) -> list[PaymentState]: ...

    def save(self, state: PaymentState) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStateStore:
    """In-memory payment state repository with per-order subscribers.

    ``update_state`` is the only mutation point; subscribers are notified
    synchronously before it returns.
    """

    def __init__(self, persistence: StatePersistence | None = None) -> None:
        self.by_order: Dict[str, PaymentState] = {}
        self.listeners: Dict[str, List[Listener]] = {}
        self.persistence = persistence
        if persistence is not None:
            try:
                loaded = persistence.load_all()
            except Exception as exc:  # noqa: BLE001
                logger.warning("payment state snapshots not loaded", extra={"event": str(exc)})
                loaded = []
            for state in loaded:
                self.by_order[state.order_id] = state

    def get_state(self, order_id: str) -> Optional[PaymentState]:
        return self.by_order.get(order_id)

    def create_state(self, order_id: str, method: PaymentMethod) -> PaymentState:
        existing = self.by_order.get(order_id)
        if existing is not None:
            return existing
        now = _now()
        state = PaymentState(order_id=order_id, method=PaymentMethod(method), created_at=now, updated_at=now)
        self._commit(state)
        logger.info(
            "payment state created",
            extra={"order_id": order_id, "method": state.method, "status": state.status},
        )
        self._notify(state)
        return state

    def recreate_state(self, order_id: str, method: PaymentMethod) -> PaymentState:
        """Start a fresh attempt; the previous transaction id is dropped."""
        previous = self.by_order.get(order_id)
        if previous is None:
            return self.create_state(order_id, method)
        now = _now()
        state = PaymentState(
            order_id=order_id,
            method=PaymentMethod(method),
            created_at=previous.created_at,
            updated_at=now,
            attempt=previous.attempt + 1,
        )
        self._commit(state)
        logger.info(
            "payment state re-created for retry",
            extra={
                "order_id": order_id,
                "method": state.method,
                "attempt": state.attempt,
                "transaction_id": previous.transaction_id or "",
            },
        )
        self._notify(state)
        return state

    def update_state(self, order_id: str, **changes: object) -> PaymentState:
        current = self.by_order.get(order_id)
        if current is None:
            raise NotFoundError(f"Payment state not found for order: {order_id}")
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown payment state fields: {sorted(unknown)}")
        frozen = set(changes) & _IMMUTABLE_FIELDS
        if frozen:
            raise ValidationError(f"Immutable payment state fields: {sorted(frozen)}")

        incoming_tx = changes.get("transaction_id")
        if current.transaction_id:
            if incoming_tx and incoming_tx != current.transaction_id:
                logger.warning(
                    "transaction id already set; keeping first value",
                    extra={"order_id": order_id, "transaction_id": current.transaction_id},
                )
            changes["transaction_id"] = current.transaction_id
        elif not incoming_tx:
            changes.pop("transaction_id", None)

        state = replace(current, **changes, updated_at=_now())
        if state.status != PaymentStatus.ERROR and state.error is not None:
            state = replace(state, error=None)
        self._commit(state)
        self._notify(state)
        return state

    def subscribe(self, order_id: str, listener: Listener) -> Callable[[], None]:
        self.listeners.setdefault(order_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self.listeners.get(order_id)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    self.listeners.pop(order_id, None)

        return unsubscribe

    def find_by_reference(self, reference: str) -> Optional[PaymentState]:
        for state in self.by_order.values():
            if state.reference == reference:
                return state
        return None

    def find_by_transaction_id(self, transaction_id: str) -> Optional[PaymentState]:
        for state in self.by_order.values():
            if state.transaction_id == transaction_id:
                return state
        return None

    def list_states(self) -> list[PaymentState]:
        return list(self.by_order.values())

    def list_active(self) -> list[PaymentState]:
        return [s for s in self.by_order.values() if not s.is_terminal]

    def _commit(self, state: PaymentState) -> None:
        self.by_order[state.order_id] = state
        if self.persistence is None:
            return
        try:
            self.persistence.save(state)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "payment state snapshot failed",
                extra={"order_id": state.order_id, "event": str(exc)},
            )

    def _notify(self, state: PaymentState) -> None:
        event = StateChanged(state=state)
        # Copy: listeners may unsubscribe while being notified
        for listener in list(self.listeners.get(state.order_id, ())):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "payment state listener failed",
                    extra={"order_id": state.order_id, "status": state.status},
                )

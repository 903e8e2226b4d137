from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping

from paystate.config import Settings, settings
from paystate.domain.dtos import PaymentCreateRequest
from paystate.domain.enums import PaymentMethod
from paystate.domain.errors import (
    GatewayDeclineError,
    NotFoundError,
    PaymentError,
    TransientNetworkError,
    ValidationError,
)
from paystate.domain.models import PaymentResult, PaymentState, ProcessorOutcome, StateChanged
from paystate.domain.statuses import GatewayStatus, PaymentStatus
from paystate.providers.base import OrderBackend, PaymentGateway
from paystate.providers.factory import get_processor
from paystate.repositories.memory_store import Listener, PaymentStateStore
from paystate.utils.transaction_id import (
    GATEWAY_RESPONSE,
    REDIRECT_QUERY,
    TRANSACTION_ID_SOURCES,
    WEBHOOK_PAYLOAD,
    build_reference,
    from_gateway_body,
    from_webhook_payload,
    resolve_transaction_id,
    webhook_transaction,
)

from .monitor import PollingHandle, ReconciliationMonitor

DECLINED_FALLBACK_MESSAGE = "Pago rechazado"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Forward-only ordering PENDING < APPROVED < CONFIRMED; ERROR is orthogonal.

    CONFIRMED is final. Leaving ERROR requires a new attempt
    (``PaymentStateStore.recreate_state``), never a plain transition.
    """
    if current == PaymentStatus.CONFIRMED:
        return target == PaymentStatus.CONFIRMED
    if target == PaymentStatus.ERROR:
        return True
    if current == PaymentStatus.ERROR:
        return False
    return (target.rank or 0) >= (current.rank or 0)


class UnifiedPaymentService:
    """Runs payment attempts on every rail and reconciles them into one state per order."""

    def __init__(
        self,
        store: PaymentStateStore,
        gateway: PaymentGateway,
        orders: OrderBackend,
        cfg: Settings = settings,
        monitor: ReconciliationMonitor | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.orders = orders
        self.settings = cfg
        self.logger = logging.getLogger(__name__)
        self.monitor = monitor or ReconciliationMonitor(
            self.check_and_update_payment_status, store, cfg.poll_interval_seconds
        )
        self._inflight: Dict[str, asyncio.Future[PaymentState | None]] = {}
        self._confirming: Dict[str, asyncio.Future[PaymentState]] = {}

    # -- presentation-facing API -------------------------------------------------

    def get_state(self, order_id: str) -> PaymentState | None:
        return self.store.get_state(order_id)

    def subscribe(self, order_id: str, listener: Listener, *, auto_monitor: bool = False) -> Callable[[], None]:
        """Register ``listener`` for state changes of ``order_id``.

        With ``auto_monitor`` the subscription also owns a polling loop that
        starts as soon as the order has a transaction id; unsubscribing
        cancels it. Outside a running event loop the loop is deferred to the
        first state change delivered inside one.
        """
        handle: PollingHandle | None = None

        def ensure_polling(state: PaymentState | None) -> None:
            nonlocal handle
            if state is None or state.is_terminal or not state.transaction_id:
                return
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                self.logger.info("polling deferred until an event loop runs", extra={"order_id": order_id})
                return
            if handle is None or handle.done or handle.cancelled:
                handle = self.monitor.watch(order_id)

        def on_change(event: StateChanged) -> None:
            listener(event)
            if auto_monitor:
                ensure_polling(event.state)

        unsubscribe_store = self.store.subscribe(order_id, on_change)
        if auto_monitor:
            ensure_polling(self.store.get_state(order_id))

        def unsubscribe() -> None:
            unsubscribe_store()
            if handle is not None:
                handle.cancel()

        return unsubscribe

    async def force_check(self, order_id: str) -> PaymentState | None:
        if self.store.get_state(order_id) is None:
            raise NotFoundError(f"Payment state not found for order: {order_id}")
        return await self.monitor.force_check(order_id)

    async def close(self) -> None:
        await self.monitor.shutdown()

    # -- initiation --------------------------------------------------------------

    def _validate(self, request: PaymentCreateRequest) -> None:
        if not request.order_id or not request.order_id.strip():
            raise ValidationError("order_id requerido")
        if request.amount is None or Decimal(request.amount) <= 0:
            raise ValidationError("Amount must be positive")
        if not request.customer_email or "@" not in request.customer_email:
            raise ValidationError("customer_email invalido")
        if not request.currency:
            raise ValidationError("currency requerida")
        if request.currency.upper() != self.settings.currency.upper():
            raise ValidationError(f"Moneda no soportada: {request.currency}")
        if request.method == PaymentMethod.CARD and request.card is None:
            raise ValidationError("Datos de tarjeta requeridos")
        if request.method == PaymentMethod.NEQUI and (request.nequi is None or not request.nequi.phone_number):
            raise ValidationError("Número de teléfono requerido para Nequi")
        if request.method == PaymentMethod.PSE and request.pse is None:
            raise ValidationError("Datos PSE requeridos")

    def _start_attempt(self, request: PaymentCreateRequest) -> PaymentState | PaymentResult:
        """Pick the state this attempt runs on, or a result when no attempt may run."""
        order_id = request.order_id
        current = self.store.get_state(order_id)
        if current is None:
            return self.store.create_state(order_id, request.method)
        if current.status == PaymentStatus.CONFIRMED:
            return PaymentResult(success=True, state=current, transaction_id=current.transaction_id)
        if current.transaction_id and current.status in (PaymentStatus.PENDING, PaymentStatus.APPROVED):
            return PaymentResult(
                success=False,
                state=current,
                error="Ya hay un pago en curso para este pedido",
                transaction_id=current.transaction_id,
            )
        if current.status == PaymentStatus.ERROR or current.method != request.method:
            self.monitor.stop(order_id)
            return self.store.recreate_state(order_id, request.method)
        return current

    async def process_payment(self, request: PaymentCreateRequest) -> PaymentResult:
        """Run one payment attempt for ``request.order_id``.

        Raises ValidationError for malformed input before touching any state.
        Every other failure is reported through ``PaymentResult``.
        """
        self._validate(request)
        order_id = request.order_id
        started = self._start_attempt(request)
        if isinstance(started, PaymentResult):
            return started
        state = self.store.update_state(order_id, reference=build_reference(order_id, started.attempt))
        self.logger.info(
            "processing payment",
            extra={
                "order_id": order_id,
                "method": request.method,
                "amount": request.amount,
                "currency": request.currency,
                "reference": state.reference,
                "attempt": state.attempt,
            },
        )
        processor = get_processor(request.method, gateway=self.gateway, orders=self.orders, settings=self.settings)
        try:
            outcome = await processor.process(request, state)
        except GatewayDeclineError as exc:
            changes: Dict[str, Any] = {"error": exc.message}
            if exc.transaction_id:
                changes["transaction_id"] = exc.transaction_id
            state = self._transition(order_id, PaymentStatus.ERROR, **changes)
            self.logger.info("payment declined", extra={"order_id": order_id, "event": exc.message})
            return PaymentResult(success=False, state=state, error=exc.message, transaction_id=state.transaction_id)
        except (ValidationError, TransientNetworkError, NotFoundError) as exc:
            # Partial progress stays; the attempt can be retried by the payer
            self.logger.info(
                "payment initiation failed",
                extra={"order_id": order_id, "method": request.method, "event": str(exc)},
            )
            return PaymentResult(success=False, state=self.store.get_state(order_id), error=str(exc))
        return await self._apply_outcome(order_id, outcome)

    async def _apply_outcome(self, order_id: str, outcome: ProcessorOutcome) -> PaymentResult:
        if outcome.confirmed:
            state = self._transition(order_id, PaymentStatus.CONFIRMED, transaction_id=outcome.transaction_id)
            self.logger.info(
                "payment confirmed without gateway",
                extra={"order_id": order_id, "transaction_id": state.transaction_id, "status": state.status},
            )
            return PaymentResult(success=True, state=state, transaction_id=state.transaction_id)

        changes: Dict[str, Any] = {}
        if outcome.redirect_url:
            changes["redirect_url"] = outcome.redirect_url
        transaction = outcome.transaction
        if transaction is None:
            state = self.store.update_state(order_id, **changes) if changes else self.store.get_state(order_id)
            return PaymentResult(
                success=True,
                state=state,
                requires_redirect=bool(outcome.redirect_url),
                redirect_url=outcome.redirect_url,
                checkout=outcome.checkout,
            )

        resolved = resolve_transaction_id([(GATEWAY_RESPONSE, transaction.id)])
        if resolved is not None:
            changes["transaction_id"] = resolved[1]
        self.store.update_state(order_id, **changes)
        await self._save_transaction_to_order(order_id, transaction.id)
        state = await self._apply_gateway_status(order_id, transaction.status, transaction.status_message)
        if state.status == PaymentStatus.ERROR:
            return PaymentResult(success=False, state=state, error=state.error, transaction_id=state.transaction_id)
        if not state.is_terminal:
            self._start_monitoring(order_id)
        return PaymentResult(
            success=True,
            state=state,
            requires_redirect=bool(outcome.redirect_url),
            redirect_url=outcome.redirect_url,
            transaction_id=state.transaction_id,
        )

    async def _save_transaction_to_order(self, order_id: str, transaction_id: str) -> None:
        retries = max(1, self.settings.save_transaction_retries)
        for attempt in range(retries):
            try:
                await self.orders.save_transaction(order_id, transaction_id)
                self.logger.info(
                    "transaction saved to order",
                    extra={"order_id": order_id, "transaction_id": transaction_id},
                )
                return
            except PaymentError as exc:
                self.logger.warning(
                    "saving transaction to order failed",
                    extra={
                        "order_id": order_id,
                        "transaction_id": transaction_id,
                        "attempt": attempt + 1,
                        "event": str(exc),
                    },
                )
                if attempt < retries - 1:
                    await asyncio.sleep(self.settings.save_transaction_backoff_seconds * (attempt + 1))
        # The payment continues; reconciliation does not depend on the order copy

    def _start_monitoring(self, order_id: str) -> None:
        if self.settings.auto_monitor:
            self.monitor.watch(order_id)

    # -- asynchronous transaction ids --------------------------------------------

    async def attach_transaction_id(
        self,
        order_id: str,
        *,
        gateway_body: Mapping[str, Any] | None = None,
        redirect_id: str | None = None,
        webhook_payload: Mapping[str, Any] | None = None,
    ) -> PaymentState:
        """Record the transaction id learned after a widget or redirect hand-off.

        Sources are consulted in priority order (gateway body, redirect query
        parameter, webhook payload); an id already on the state is never
        replaced.
        """
        state = self.store.get_state(order_id)
        if state is None:
            raise NotFoundError(f"Payment state not found for order: {order_id}")
        found = {
            GATEWAY_RESPONSE: from_gateway_body(gateway_body),
            REDIRECT_QUERY: redirect_id,
            WEBHOOK_PAYLOAD: from_webhook_payload(webhook_payload),
        }
        resolved = resolve_transaction_id((source, found[source]) for source in TRANSACTION_ID_SOURCES)
        if resolved is None:
            return state
        source, transaction_id = resolved
        if state.transaction_id:
            if state.transaction_id != transaction_id:
                self.logger.info(
                    "ignoring transaction id from later source",
                    extra={"order_id": order_id, "transaction_id": transaction_id, "event": source},
                )
            return state
        state = self.store.update_state(order_id, transaction_id=transaction_id)
        self.logger.info(
            "transaction id attached",
            extra={"order_id": order_id, "transaction_id": transaction_id, "event": source},
        )
        await self._save_transaction_to_order(order_id, transaction_id)
        if not state.is_terminal:
            self._start_monitoring(order_id)
        return state

    async def handle_gateway_event(self, payload: Mapping[str, Any]) -> PaymentState | None:
        """Apply a ``transaction.updated`` event pushed by the gateway."""
        event = payload.get("event")
        if event != "transaction.updated":
            self.logger.info("gateway event ignored", extra={"event": str(event)})
            return None
        transaction = webhook_transaction(payload)
        state = None
        if transaction.get("reference"):
            state = self.store.find_by_reference(str(transaction["reference"]))
        if state is None and transaction.get("id"):
            state = self.store.find_by_transaction_id(str(transaction["id"]))
        if state is None:
            self.logger.info(
                "gateway event for unknown order",
                extra={"reference": transaction.get("reference"), "transaction_id": transaction.get("id")},
            )
            return None
        state = await self.attach_transaction_id(state.order_id, webhook_payload=payload)
        if state.transaction_id != str(transaction.get("id") or ""):
            return state
        return await self._apply_gateway_status(
            state.order_id,
            GatewayStatus.parse(transaction.get("status")),
            transaction.get("status_message"),
        )

    # -- reconciliation ----------------------------------------------------------

    async def check_and_update_payment_status(self, order_id: str) -> PaymentState | None:
        """Reconcile ``order_id`` against the gateway.

        Concurrent callers for the same order share a single in-flight check.
        Never raises for gateway problems; the next poll retries.
        """
        inflight = self._join(self._inflight, order_id, lambda: self._reconcile(order_id))
        return await asyncio.shield(inflight)

    @staticmethod
    def _join(
        pending: Dict[str, asyncio.Future[Any]],
        order_id: str,
        start: Callable[[], Awaitable[Any]],
    ) -> asyncio.Future[Any]:
        """Return the running future for ``order_id`` in ``pending``, starting one if needed."""
        fut = pending.get(order_id)
        if fut is None or fut.done():
            fut = asyncio.ensure_future(start())
            pending[order_id] = fut

            def _clear(done: asyncio.Future[Any]) -> None:
                if pending.get(order_id) is done:
                    del pending[order_id]

            fut.add_done_callback(_clear)
        return fut

    async def _reconcile(self, order_id: str) -> PaymentState | None:
        state = self.store.get_state(order_id)
        if state is None or not state.transaction_id:
            return None
        if state.is_terminal:
            return state
        checked_at = _now()
        try:
            transaction = await self.gateway.get_transaction(state.transaction_id)
        except PaymentError as exc:
            self.logger.info(
                "gateway status unavailable",
                extra={"order_id": order_id, "transaction_id": state.transaction_id, "event": str(exc)},
            )
            return self._touch(order_id, checked_at)
        self.logger.info(
            "checking payment",
            extra={
                "order_id": order_id,
                "transaction_id": state.transaction_id,
                "gateway_status": transaction.status,
                "status": state.status,
            },
        )
        return await self._apply_gateway_status(
            order_id, transaction.status, transaction.status_message, checked_at=checked_at
        )

    async def _apply_gateway_status(
        self,
        order_id: str,
        gateway_status: GatewayStatus | None,
        message: str | None = None,
        *,
        checked_at: datetime | None = None,
    ) -> PaymentState:
        if gateway_status == GatewayStatus.APPROVED:
            state = self._transition(order_id, PaymentStatus.APPROVED, checked_at=checked_at)
            if state.status == PaymentStatus.APPROVED:
                state = await self._confirm_order(state)
            return state
        if gateway_status is not None and gateway_status.is_failure:
            return self._transition(
                order_id,
                PaymentStatus.ERROR,
                checked_at=checked_at,
                error=message or DECLINED_FALLBACK_MESSAGE,
            )
        if gateway_status is None:
            self.logger.warning("unknown gateway status", extra={"order_id": order_id})
        return self._touch(order_id, checked_at)

    async def _confirm_order(self, state: PaymentState) -> PaymentState:
        """APPROVED -> CONFIRMED once the order backend accepts the payment.

        Polling, webhooks and initiation may all see APPROVED at once; they
        share one confirmation call per order.
        """
        confirming = self._join(self._confirming, state.order_id, lambda: self._send_confirmation(state))
        return await asyncio.shield(confirming)

    async def _send_confirmation(self, state: PaymentState) -> PaymentState:
        current = self.store.get_state(state.order_id)
        if current is not None and current.status == PaymentStatus.CONFIRMED:
            return current
        try:
            await self.orders.confirm_order_payment(state.order_id, state.transaction_id or "")
        except PaymentError as exc:
            self.logger.warning(
                "order confirmation failed; staying APPROVED",
                extra={"order_id": state.order_id, "transaction_id": state.transaction_id, "event": str(exc)},
            )
            return self.store.get_state(state.order_id) or state
        confirmed = self._transition(state.order_id, PaymentStatus.CONFIRMED)
        self.logger.info(
            "payment confirmed",
            extra={"order_id": state.order_id, "transaction_id": state.transaction_id, "status": confirmed.status},
        )
        return confirmed

    def _transition(
        self,
        order_id: str,
        target: PaymentStatus,
        *,
        checked_at: datetime | None = None,
        **changes: Any,
    ) -> PaymentState:
        current = self.store.get_state(order_id)
        if current is None:
            raise NotFoundError(f"Payment state not found for order: {order_id}")
        if not can_transition(current.status, target):
            if current.status != target:
                self.logger.info(
                    "stale transition rejected",
                    extra={"order_id": order_id, "status": current.status, "event": target.value},
                )
            return self._touch(order_id, checked_at)
        if target == PaymentStatus.CONFIRMED and not (current.transaction_id or changes.get("transaction_id")):
            self.logger.warning("cannot confirm without transaction id", extra={"order_id": order_id})
            return self._touch(order_id, checked_at)
        if checked_at is not None:
            changes["last_checked_at"] = checked_at
        if target == current.status and not changes:
            return current
        return self.store.update_state(order_id, status=target, **changes)

    def _touch(self, order_id: str, checked_at: datetime | None) -> PaymentState:
        if checked_at is None:
            state = self.store.get_state(order_id)
            if state is None:
                raise NotFoundError(f"Payment state not found for order: {order_id}")
            return state
        return self.store.update_state(order_id, last_checked_at=checked_at)

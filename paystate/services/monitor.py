from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from paystate.domain.models import PaymentState, StateChanged
from paystate.repositories.memory_store import PaymentStateStore

logger = logging.getLogger(__name__)

CheckFn = Callable[[str], Awaitable[Optional[PaymentState]]]


class PollingHandle:
    """Cancellable polling loop for one order.

    ``cancel`` stops further polls. A check already in flight is allowed to
    finish and its result is applied.
    """

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def cancel(self) -> None:
        self._stop.set()

    stop = cancel

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task


class ReconciliationMonitor:
    """Polls the gateway for orders that are PENDING or APPROVED with a transaction id.

    One loop per order. A loop ends when the check returns a terminal state,
    when the state has no transaction id, or when its handle is cancelled.
    """

    def __init__(self, check: CheckFn, store: PaymentStateStore, interval: float = 5.0) -> None:
        self._check = check
        self.store = store
        self.interval = interval
        self._handles: Dict[str, PollingHandle] = {}

    def watch(self, order_id: str) -> PollingHandle:
        handle = self._handles.get(order_id)
        if handle is not None and not handle.cancelled and not handle.done:
            return handle
        handle = PollingHandle(order_id)
        handle._unsubscribe = self.store.subscribe(order_id, lambda event: self._on_state_change(handle, event))
        handle._task = asyncio.get_running_loop().create_task(self._run(handle))
        self._handles[order_id] = handle
        logger.info("monitoring started", extra={"order_id": order_id, "event": f"every {self.interval}s"})
        return handle

    async def force_check(self, order_id: str) -> PaymentState | None:
        state = await self._safe_check(order_id)
        if state is not None and state.is_terminal:
            self.stop(order_id)
        return state

    def stop(self, order_id: str) -> None:
        handle = self._handles.get(order_id)
        if handle is not None:
            handle.cancel()

    def stop_all(self) -> None:
        for handle in list(self._handles.values()):
            handle.cancel()

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        self.stop_all()
        await asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)

    def active_orders(self) -> list[str]:
        return [oid for oid, h in self._handles.items() if not h.cancelled and not h.done]

    def is_watching(self, order_id: str) -> bool:
        return order_id in self.active_orders()

    async def _run(self, handle: PollingHandle) -> None:
        order_id = handle.order_id
        try:
            while not handle.cancelled:
                try:
                    await asyncio.wait_for(handle._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
                if handle.cancelled:
                    break
                state = await self._safe_check(order_id)
                if state is None or state.is_terminal or not state.transaction_id:
                    break
        finally:
            self._release(handle)

    async def _safe_check(self, order_id: str) -> PaymentState | None:
        try:
            return await self._check(order_id)
        except Exception:  # noqa: BLE001
            logger.exception("reconciliation check failed", extra={"order_id": order_id})
            return self.store.get_state(order_id)

    def _on_state_change(self, handle: PollingHandle, event: StateChanged) -> None:
        if event.state.is_terminal and not handle.cancelled:
            handle.cancel()

    def _release(self, handle: PollingHandle) -> None:
        handle.cancel()
        if handle._unsubscribe is not None:
            handle._unsubscribe()
            handle._unsubscribe = None
        if self._handles.get(handle.order_id) is handle:
            del self._handles[handle.order_id]
        logger.info("monitoring stopped", extra={"order_id": handle.order_id})

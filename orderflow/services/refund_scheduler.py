"""
Refund Scheduler

Decouples "refund is pending" from "call the gateway now". One deferred
attempt per order code; a later schedule for the same order replaces the
earlier timer (last writer wins).

On firing the order is re-read and must still be cancelled, awaiting a
refund and holding a payment reference. The gateway call runs outside the
per-order lock. A per-process in-flight set plus the gateway idempotency key
``refund-<order_code>-<attempt>`` keep a manual approval and a timer from
refunding twice. The attempt counter moves only when a failed refund is
approved again, so a new attempt is never answered with the old failure.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from orderflow.core.config import settings
from orderflow.core.exceptions import InvalidTransition, OrderNotFound, PaymentError
from orderflow.models.order import OrderStatus, PaymentStatus, RefundStatus, REFUND_IN_FLIGHT
from orderflow.services.lifecycle import RefundFailed, RefundSucceeded

logger = logging.getLogger(__name__)


@dataclass
class RefundOutcome:
    order_code: str
    succeeded: bool
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[str] = None


def idempotency_key_for(order_code: str, attempt: int = 0) -> str:
    return f"refund-{order_code}-{attempt}"


class RefundScheduler:
    def __init__(
        self,
        store,
        gateway_client,
        lifecycle=None,
        default_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway_client = gateway_client
        self.lifecycle = lifecycle
        self.default_delay = settings.REFUND_DELAY_SECONDS if default_delay is None else default_delay
        self._sleep = sleep
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[str] = set()

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    async def schedule(self, order_code: str, delay: Optional[float] = None) -> asyncio.Task:
        """Arm (or re-arm) the deferred refund for ``order_code``."""
        delay = self.default_delay if delay is None else max(delay, 0)

        if self.cancel(order_code):
            logger.info(f"[RefundScheduler] Replaced pending refund timer for {order_code}")

        await self.store.mark_refund_scheduled(order_code)

        task = asyncio.create_task(self._fire(order_code, delay), name=f"refund-{order_code}")
        self._timers[order_code] = task
        logger.info(f"[RefundScheduler] Refund for {order_code} scheduled in {delay:.0f}s")
        return task

    def cancel(self, order_code: str) -> bool:
        """Drop the pending timer. A gateway call already in progress is not interrupted."""
        task = self._timers.pop(order_code, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_scheduled(self, order_code: str) -> bool:
        task = self._timers.get(order_code)
        return task is not None and not task.done()

    def is_in_flight(self, order_code: str) -> bool:
        return order_code in self._in_flight

    @property
    def pending(self):
        return sorted(code for code, task in self._timers.items() if not task.done())

    async def wait(self, order_code: str) -> Optional[RefundOutcome]:
        """Await the currently armed timer for ``order_code`` (tests, shutdown)."""
        task = self._timers.get(order_code)
        if task is None:
            return None
        try:
            return await task
        except asyncio.CancelledError:
            return None

    async def shutdown(self) -> None:
        for code in list(self._timers):
            self.cancel(code)

    async def _fire(self, order_code: str, delay: float) -> Optional[RefundOutcome]:
        try:
            if delay > 0:
                await self._sleep(delay)
        except asyncio.CancelledError:
            logger.info(f"[RefundScheduler] Timer for {order_code} cancelled")
            raise

        if self._timers.get(order_code) is asyncio.current_task():
            self._timers.pop(order_code, None)

        try:
            return await self.process_refund(order_code)
        except Exception as e:
            logger.error(f"[RefundScheduler] Refund for {order_code} crashed: {e}", exc_info=True)
            return RefundOutcome(order_code=order_code, succeeded=False, error=str(e))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def process_refund(self, order_code: str) -> Optional[RefundOutcome]:
        """
        Attempt the refund now.

        Returns None when the order is no longer eligible or another attempt
        for it is already running.
        """
        if order_code in self._in_flight:
            logger.info(f"[RefundScheduler] Refund for {order_code} already in flight, skipping")
            return None

        self._in_flight.add(order_code)
        try:
            try:
                order = await self.store.get(order_code)
            except OrderNotFound:
                logger.warning(f"[RefundScheduler] Order {order_code} vanished before refund")
                return None

            skip = self._ineligible_reason(order)
            if skip:
                logger.info(f"[RefundScheduler] Skipping refund for {order_code}: {skip}")
                return None

            amount = order.refund_amount or order.total_amount
            try:
                receipt = await self.gateway_client.refund(
                    order.payment_ref,
                    amount,
                    idempotency_key=idempotency_key_for(order_code, order.refund_attempt),
                )
            except PaymentError as e:
                logger.error(f"[RefundScheduler] Refund for {order_code} failed: {e.code} {e.message}")
                await self._record(order_code, RefundFailed(reason=e.message))
                return RefundOutcome(order_code=order_code, succeeded=False, error=e.message)

            logger.info(
                f"[RefundScheduler] Refund {receipt.refund_id} for {order_code} succeeded "
                f"({receipt.amount}, {receipt.attempts} attempt(s))"
            )
            await self._record(order_code, RefundSucceeded(refund_id=receipt.refund_id, amount=receipt.amount))
            return RefundOutcome(
                order_code=order_code,
                succeeded=True,
                refund_id=receipt.refund_id,
                amount=receipt.amount,
            )
        finally:
            self._in_flight.discard(order_code)

    async def _record(self, order_code: str, event) -> None:
        try:
            await self.lifecycle.apply_transition(order_code, event)
        except InvalidTransition as e:
            # Order moved on while the gateway call was running (webhook got there first)
            logger.warning(f"[RefundScheduler] Could not record {type(event).__name__} for {order_code}: {e.message}")

    @staticmethod
    def _ineligible_reason(order) -> Optional[str]:
        if order.status != OrderStatus.CANCELLED:
            return f"status is {order.status.value}"
        if order.refund_status not in REFUND_IN_FLIGHT:
            return f"refund is {order.refund_status.value}"
        if order.payment_status != PaymentStatus.REFUND_PROCESSING:
            return f"payment is {order.payment_status.value}"
        if not order.payment_ref:
            return "no payment reference"
        return None

    async def recover_pending(self) -> int:
        """Re-arm refunds a previous process left pending or scheduled."""
        orders = await self.store.list_by_refund_status(
            [RefundStatus.PENDING, RefundStatus.SCHEDULED],
            include_hidden=True,
        )
        count = 0
        for order in orders:
            if self._ineligible_reason(order) or self.is_scheduled(order.order_code):
                continue
            await self.schedule(order.order_code)
            count += 1
        if count:
            logger.info(f"[RefundScheduler] Recovered {count} pending refund(s)")
        return count

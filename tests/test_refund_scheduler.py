"""
Tests for the deferred refund scheduler.
"""
import asyncio

import pytest

from orderflow.models.order import OrderStatus, PaymentStatus, RefundStatus
from orderflow.services.lifecycle import AdminStatusChange, RefundApproved, RefundRejected
from orderflow.services.refund_scheduler import idempotency_key_for

from tests.conftest import T0, GatedSleep


@pytest.fixture
def refund_sleep():
    return GatedSleep()


async def cancel_paid(runtime, make_paid_order):
    order = await make_paid_order()
    result = await runtime.lifecycle.apply_transition(
        order.order_code, AdminStatusChange(target_status="cancelled"), now=T0
    )
    return result.order.order_code


async def until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestSchedule:
    @pytest.mark.asyncio
    async def test_second_schedule_supersedes_first(self, runtime, make_paid_order, gateway, refund_sleep):
        code = await cancel_paid(runtime, make_paid_order)
        first = runtime.refunds._timers[code]

        second = await runtime.refunds.schedule(code)
        assert first is not second
        assert runtime.refunds.pending == [code]

        refund_sleep.release()
        outcome = await runtime.refunds.wait(code)
        await asyncio.gather(first, return_exceptions=True)

        assert first.cancelled()
        assert outcome.succeeded
        assert len(gateway.refund_calls) == 1
        assert gateway.refund_calls[0]["idempotency_key"] == idempotency_key_for(code)

    @pytest.mark.asyncio
    async def test_reject_cancels_timer(self, runtime, make_paid_order, gateway, refund_sleep, notifier):
        code = await cancel_paid(runtime, make_paid_order)
        assert runtime.refunds.is_scheduled(code)

        result = await runtime.lifecycle.apply_transition(code, RefundRejected(reason="Order was eaten"), now=T0)

        assert not runtime.refunds.is_scheduled(code)
        assert result.order.refund_status == RefundStatus.REJECTED
        assert result.order.payment_status == PaymentStatus.PAID
        assert result.order.status == OrderStatus.CANCELLED
        assert notifier.templates()[-1] == "refund_rejected"

        refund_sleep.release()
        await asyncio.sleep(0)
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_timer_rechecks_state(self, runtime, make_paid_order, gateway, force_state):
        code = await cancel_paid(runtime, make_paid_order)
        await force_state(code, refund_status=RefundStatus.REJECTED)

        outcome = await runtime.refunds.process_refund(code)

        assert outcome is None
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_missing_order(self, runtime):
        assert await runtime.refunds.process_refund("ORD-20260310-NOPE00") is None


class TestConcurrentApproval:
    """An admin approval landing while the timer's gateway call is running."""

    @pytest.mark.asyncio
    async def test_single_gateway_refund(self, runtime, make_paid_order, gateway, monkeypatch):
        code = await cancel_paid(runtime, make_paid_order)

        gate = asyncio.Event()
        original_refund = runtime.gateway_client.refund

        async def slow_refund(*args, **kwargs):
            await gate.wait()
            return await original_refund(*args, **kwargs)

        monkeypatch.setattr(runtime.gateway_client, "refund", slow_refund)

        running = asyncio.create_task(runtime.refunds.process_refund(code))
        assert await until(lambda: runtime.refunds.is_in_flight(code))

        approved = await runtime.lifecycle.apply_transition(code, RefundApproved(note="customer called"), now=T0)
        assert approved.order.refund_status == RefundStatus.PENDING
        # The approval's immediate attempt sees the call already running
        assert await runtime.refunds.wait(code) is None

        gate.set()
        outcome = await running

        assert outcome.succeeded
        assert len(gateway.refund_calls) == 1
        stored = await runtime.store.get(code)
        assert stored.state == {"status": "refunded", "payment_status": "refunded", "refund_status": "completed"}


class TestRecoverPending:
    @pytest.mark.asyncio
    async def test_rearms_left_over_refunds(self, runtime, make_order, force_state):
        order = await make_order(payment_method="upi")
        await force_state(
            order.order_code,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.REFUND_PROCESSING,
            refund_status=RefundStatus.PENDING,
            payment_ref="pay_left_over",
        )
        other = await make_order(phone="9000000009")

        assert await runtime.refunds.recover_pending() == 1
        assert runtime.refunds.pending == [order.order_code]
        assert not runtime.refunds.is_scheduled(other.order_code)

        # Already armed
        assert await runtime.refunds.recover_pending() == 0
        assert (await runtime.store.get(order.order_code)).refund_status == RefundStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_skips_orders_without_payment_ref(self, runtime, make_order, force_state):
        order = await make_order()
        await force_state(
            order.order_code,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.REFUND_PROCESSING,
            refund_status=RefundStatus.PENDING,
        )

        assert await runtime.refunds.recover_pending() == 0

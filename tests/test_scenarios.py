"""
End-to-end order scenarios: placement, payment, delivery, cancellation and
refund, run against the wired runtime with fake collaborators.
"""
import pytest

from orderflow.core.exceptions import GatewayTransient, InvalidTransition
from orderflow.models.order import OrderStatus, PaymentStatus
from orderflow.services.effects import Notify, SyncLedger, UpdateDailyRevenue
from orderflow.services.lifecycle import (
    WEBHOOK_PAYMENT_CAPTURED,
    AdminStatusChange,
    PaymentWebhook,
)
from orderflow.services.refund_scheduler import idempotency_key_for

from tests.conftest import T0, GatedSleep


@pytest.fixture
def refund_sleep():
    # Keep refund timers armed until a test releases them
    return GatedSleep()


class TestOrderCode:
    @pytest.mark.asyncio
    async def test_code_carries_business_date(self, make_order):
        # 19:00 UTC on the 10th is already the 11th in Asia/Kolkata
        order = await make_order(now=T0.replace(hour=19))
        assert order.order_code.startswith("ORD-20260311-")

        pickup = await make_order(now=T0, service_type="pickup", phone="9000000001")
        assert pickup.order_code.startswith("SORD-20260310-")


class TestPaymentCapture:
    """Order placed, then the gateway reports the payment."""

    @pytest.mark.asyncio
    async def test_webhook_confirms_order(self, runtime, make_order, ledger, notifier):
        order = await make_order(payment_method="upi")
        assert order.state == {"status": "pending", "payment_status": "pending", "refund_status": "none"}
        # UPI orders are confirmed to the customer once paid
        assert notifier.sent == []

        result = await runtime.lifecycle.apply_transition(
            order.order_code,
            PaymentWebhook(
                kind=WEBHOOK_PAYMENT_CAPTURED, payment_ref=order.gateway_order_id, amount=order.total_amount
            ),
            now=T0,
        )

        assert result.order.state == {"status": "confirmed", "payment_status": "paid", "refund_status": "none"}
        assert result.order.payment_ref == order.gateway_order_id
        assert [e.bucket for e in result.effects if isinstance(e, SyncLedger)] == ["new"]
        assert ledger.codes("new") == [order.order_code]
        assert notifier.templates() == ["order_confirmed"]

        row = ledger.rows("new")[0]
        assert row[7] == "Paid"
        assert row[8] == "Confirmed"

    @pytest.mark.asyncio
    async def test_replayed_capture_is_rejected(self, runtime, make_order, notifier):
        order = await make_order(payment_method="upi")
        event = PaymentWebhook(
            kind=WEBHOOK_PAYMENT_CAPTURED, payment_ref=order.gateway_order_id, amount=order.total_amount
        )
        await runtime.lifecycle.apply_transition(order.order_code, event, now=T0)

        with pytest.raises(InvalidTransition):
            await runtime.lifecycle.apply_transition(order.order_code, event, now=T0)
        assert notifier.templates() == ["order_confirmed"]


class TestDelivery:
    @pytest.mark.asyncio
    async def test_paid_delivery_counts_revenue_once(self, runtime, make_order, force_state, ledger):
        order = await make_order(payment_method="cod", service_type="delivery")
        await force_state(order.order_code, status=OrderStatus.PREPARING, payment_status=PaymentStatus.PAID)

        result = await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="delivered"), now=T0
        )

        assert result.order.status == OrderStatus.DELIVERED
        assert result.order.payment_status == PaymentStatus.PAID
        assert result.order.delivered_at == T0
        assert len([e for e in result.effects if isinstance(e, UpdateDailyRevenue)]) == 1

        dashboard = await runtime.statistics.get_dashboard(T0)
        assert dashboard["today"]["revenue"] == order.total_amount

        with pytest.raises(InvalidTransition):
            await runtime.lifecycle.apply_transition(
                order.order_code, AdminStatusChange(target_status="delivered"), now=T0
            )
        dashboard = await runtime.statistics.get_dashboard(T0)
        assert dashboard["today"]["revenue"] == order.total_amount

        assert ledger.codes("new") == []
        assert ledger.codes("delivered") == [order.order_code]

    @pytest.mark.asyncio
    async def test_cod_delivery_collects_cash(self, runtime, make_order):
        order = await make_order(payment_method="cod")
        for target in ("confirmed", "preparing", "out_for_delivery", "delivered"):
            result = await runtime.lifecycle.apply_transition(
                order.order_code, AdminStatusChange(target_status=target), now=T0
            )

        assert result.order.payment_status == PaymentStatus.PAID
        assert result.order.actual_payment_method.value == "cash"
        assert result.order.paid_at == T0
        assert "Cash collected on delivery" in [t.message for t in result.order.tracking]

    @pytest.mark.asyncio
    async def test_pickup_handover_lands_in_selfpick(self, runtime, make_order, ledger):
        order = await make_order(payment_method="cod", service_type="pickup")
        assert order.order_code.startswith("SORD-")

        await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="preparing"), now=T0
        )
        await runtime.lifecycle.apply_transition(
            order.order_code,
            AdminStatusChange(target_status="ready", actual_payment_method="cash"),
            now=T0,
        )
        result = await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="delivered"), now=T0
        )

        assert result.order.payment_status == PaymentStatus.PAID
        assert ledger.codes("selfpick") == [order.order_code]
        row = ledger.rows("selfpick")[0]
        assert row[7] == "Paid (Cash)"
        assert row[8] == "Picked Up"
        assert row[9] == "Self Pickup"


class TestCancellationRefund:
    """Paid order cancelled by an admin; the refund runs on the scheduler."""

    async def _cancel_paid(self, runtime, make_paid_order):
        order = await make_paid_order()
        await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="preparing"), now=T0
        )
        result = await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="cancelled", reason="Kitchen closed"), now=T0
        )
        return result

    @pytest.mark.asyncio
    async def test_refund_succeeds(self, runtime, make_paid_order, gateway, refund_sleep, ledger, notifier):
        result = await self._cancel_paid(runtime, make_paid_order)
        code = result.order.order_code

        assert result.order.state == {
            "status": "cancelled",
            "payment_status": "refund_processing",
            "refund_status": "pending",
        }
        assert runtime.refunds.is_scheduled(code)
        assert (await runtime.store.get(code)).refund_status.value == "scheduled"
        assert gateway.refund_calls == []

        refund_sleep.release()
        outcome = await runtime.refunds.wait(code)

        assert outcome.succeeded
        stored = await runtime.store.get(code)
        assert stored.state == {"status": "refunded", "payment_status": "refunded", "refund_status": "completed"}
        assert stored.refund_id == outcome.refund_id
        assert gateway.refund_calls == [{
            "payment_ref": stored.payment_ref,
            "amount": stored.total_amount,
            "idempotency_key": idempotency_key_for(code),
        }]
        assert ledger.codes("cancelled") == [code]
        assert "refund_initiated" in notifier.templates()
        assert notifier.templates()[-1] == "refund_completed"

    @pytest.mark.asyncio
    async def test_refund_fails_after_retries(self, runtime, make_paid_order, gateway, gateway_sleep,
                                              refund_sleep, notifier):
        gateway.refund_errors = [GatewayTransient("Gateway timeout", gateway_code="timeout") for _ in range(4)]
        result = await self._cancel_paid(runtime, make_paid_order)
        code = result.order.order_code

        refund_sleep.release()
        outcome = await runtime.refunds.wait(code)

        assert not outcome.succeeded
        assert len(gateway.refund_calls) == 4
        assert gateway_sleep.calls == [5.0, 5.0, 5.0]
        first_key = idempotency_key_for(code, 0)
        assert gateway.keys_used() == [first_key] + [f"{first_key}-r{n}" for n in (1, 2, 3)]

        stored = await runtime.store.get(code)
        assert stored.state == {
            "status": "refund_failed",
            "payment_status": "refund_failed",
            "refund_status": "failed",
        }
        assert stored.refund_error == "Gateway timeout"
        assert stored.tracking[-1].message == "Refund failed: Gateway timeout"
        assert notifier.templates()[-1] == "refund_delayed"

        # Visible to admins awaiting a decision
        awaiting = await runtime.store.list_by_refund_status(["failed"])
        assert [o.order_code for o in awaiting] == [code]

    @pytest.mark.asyncio
    async def test_failed_refund_can_be_approved_again(self, runtime, make_paid_order, gateway, refund_sleep):
        from orderflow.services.lifecycle import RefundApproved

        gateway.refund_errors = [GatewayTransient("Gateway timeout") for _ in range(4)]
        result = await self._cancel_paid(runtime, make_paid_order)
        code = result.order.order_code
        refund_sleep.release()
        await runtime.refunds.wait(code)

        approved = await runtime.lifecycle.apply_transition(code, RefundApproved(note="retry"), now=T0)
        assert approved.order.state == {
            "status": "cancelled",
            "payment_status": "refund_processing",
            "refund_status": "pending",
        }
        assert approved.order.refund_attempt == 1
        outcome = await runtime.refunds.wait(code)

        assert outcome.succeeded
        stored = await runtime.store.get(code)
        assert stored.status == OrderStatus.REFUNDED
        # The retry is not answered with the stored failure of the first attempt
        assert gateway.keys_used()[-1] == idempotency_key_for(code, 1)
        assert idempotency_key_for(code, 1) not in gateway.keys_used()[:-1]

    @pytest.mark.asyncio
    async def test_partner_told_about_cancellation(self, runtime, make_order, session_factory, notifier):
        from orderflow.models.delivery_partner import DeliveryPartner

        async with session_factory() as db:
            partner = DeliveryPartner(name="Ravi", phone="9000000001", email="ravi@example.com",
                                      push_token="ExponentPushToken[ravi]")
            db.add(partner)
            await db.commit()
            partner_id = partner.id

        order = await make_order()
        await runtime.orders.assign_partner(runtime.lifecycle, order.order_code, partner_id, now=T0)
        assert notifier.templates("push") == ["partner_assigned"]
        assert notifier.templates("email") == ["partner_assigned"]

        result = await runtime.lifecycle.apply_transition(
            order.order_code, AdminStatusChange(target_status="cancelled"), now=T0
        )

        assert result.order.payment_status == PaymentStatus.CANCELLED
        assert notifier.templates("push") == ["partner_assigned", "partner_order_cancelled"]
        assert any(
            m["template"] == "partner_order_cancelled" and m["recipient"] == "ExponentPushToken[ravi]"
            for m in notifier.sent
        )
        assert not [e for e in result.effects if isinstance(e, Notify) and e.template == "refund_initiated"]

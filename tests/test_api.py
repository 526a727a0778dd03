"""
HTTP surface tests. The app gets the test runtime injected, so the lifespan
(table creation, scheduler start) is not involved.
"""
import json
import uuid

import httpx
import pytest
import pytest_asyncio

from orderflow.main import create_app
from orderflow.models.order import OrderStatus, PaymentStatus, RefundStatus
from orderflow.services.order_service import NewOrderItem


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime=runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


ORDER_BODY = {
    "customer_phone": "9876543210",
    "customer_name": "Asha",
    "customer_address": "12 MG Road",
    "items": [
        {"name": "Paneer Tikka", "unit_price": 25000, "quantity": 2, "category": "Starters"},
        {"name": "Butter Naan", "unit_price": 5000, "quantity": 1, "category": "Breads"},
    ],
}


def webhook_event(event_type, obj):
    return {"id": f"evt_{uuid.uuid4().hex}", "type": event_type, "data": {"object": obj}}


async def post_webhook(client, event, signature="valid-signature"):
    headers = {"stripe-signature": signature} if signature else {}
    return await client.post("/api/payments/webhook", content=json.dumps(event), headers=headers)


class TestOrders:
    @pytest.mark.asyncio
    async def test_place_cod_order(self, client, ledger):
        response = await client.post("/api/orders", json=ORDER_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["order"]["status"] == "pending"
        assert data["order"]["total_amount"] == 55000
        assert data["order"]["tracking"][0]["message"] == "Order placed"
        assert data["client_secret"] is None
        assert ledger.codes("new") == [data["order"]["order_code"]]

    @pytest.mark.asyncio
    async def test_place_upi_order_returns_client_secret(self, client, gateway):
        response = await client.post("/api/orders", json={**ORDER_BODY, "payment_method": "upi"})

        assert response.status_code == 201
        code = response.json()["order"]["order_code"]
        assert response.json()["client_secret"] == f"secret_{code}"
        assert gateway.intents == [code]

    @pytest.mark.asyncio
    async def test_rejects_bad_phone(self, client):
        response = await client.post("/api/orders", json={**ORDER_BODY, "customer_phone": "12"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_unknown_order(self, client):
        response = await client.get("/api/orders/ORD-20260310-NOPE00")
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_status_changes(self, client, make_order):
        order = await make_order()

        ok = await client.put(f"/api/orders/{order.order_code}/status", json={"status": "confirmed"})
        assert ok.status_code == 200
        assert ok.json()["order"]["status"] == "confirmed"
        assert "SyncLedger" in ok.json()["effects"]

        illegal = await client.put(f"/api/orders/{order.order_code}/status", json={"status": "pending"})
        assert illegal.status_code == 409
        body = illegal.json()
        assert body["code"] == "INVALID_TRANSITION"
        assert body["details"]["state"]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_assign_unknown_partner(self, client, make_order):
        order = await make_order()
        response = await client.put(f"/api/orders/{order.order_code}/assign", json={"partner_id": 999})
        assert response.status_code == 409
        assert response.json()["code"] == "PARTNER_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_delivery_time(self, client, make_order, notifier):
        order = await make_order()
        response = await client.put(
            f"/api/orders/{order.order_code}/delivery-time",
            json={"estimated_at": "2026-03-10T09:00:00+00:00"},
        )
        assert response.status_code == 200
        assert response.json()["order"]["estimated_delivery_at"].startswith("2026-03-10T09:00:00")
        assert notifier.templates()[-1] == "delivery_time_updated"


class TestRefundEndpoints:
    @pytest.mark.asyncio
    async def test_list_and_reject(self, client, make_order, force_state):
        order = await make_order(payment_method="upi")
        await force_state(
            order.order_code,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.REFUND_PROCESSING,
            refund_status=RefundStatus.PENDING,
            payment_ref="pay_1",
        )

        listed = await client.get("/api/orders/refunds")
        assert listed.json()["total"] == 1
        assert listed.json()["orders"][0]["order_code"] == order.order_code

        rejected = await client.post(
            f"/api/orders/{order.order_code}/refund/reject", json={"note": "Delivered already"}
        )
        assert rejected.status_code == 200
        assert rejected.json()["order"]["refund_status"] == "rejected"
        assert rejected.json()["order"]["payment_status"] == "paid"

        assert (await client.get("/api/orders/refunds")).json()["total"] == 0
        again = await client.post(f"/api/orders/{order.order_code}/refund/reject")
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_refund_status_filter(self, client):
        response = await client.get("/api/orders/refunds", params={"status": "lost"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_approve_cod_refund_completes(self, client, make_order, force_state):
        order = await make_order()
        await force_state(
            order.order_code,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.PAID,
            refund_status=RefundStatus.PENDING,
        )

        response = await client.post(f"/api/orders/{order.order_code}/refund/approve")

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "refunded"
        assert response.json()["order"]["refund_status"] == "completed"


class TestPayments:
    @pytest.mark.asyncio
    async def test_verify(self, client, make_order, gateway):
        order = await make_order(payment_method="upi")
        gateway.add_payment(order.gateway_order_id, order.total_amount)

        response = await client.post(
            "/api/payments/verify",
            json={"order_code": order.order_code, "payment_ref": order.gateway_order_id},
        )

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "confirmed"
        assert response.json()["order"]["payment_status"] == "paid"

    @pytest.mark.asyncio
    async def test_verify_rejects_payment_of_another_order(self, client, runtime, make_order, gateway):
        cheap = await make_order(payment_method="upi", phone="9000000001", items=[
            NewOrderItem(name="Chai", unit_price=1000, quantity=1, category="Drinks"),
        ])
        order = await make_order(payment_method="upi")
        gateway.add_payment(cheap.gateway_order_id, cheap.total_amount)

        response = await client.post(
            "/api/payments/verify",
            json={"order_code": order.order_code, "payment_ref": cheap.gateway_order_id},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_MISMATCH"
        assert (await runtime.store.get(order.order_code)).payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_verify_rejects_short_capture(self, client, runtime, make_order, gateway):
        order = await make_order(payment_method="upi")
        gateway.add_payment(order.gateway_order_id, order.total_amount - 1)

        response = await client.post(
            "/api/payments/verify",
            json={"order_code": order.order_code, "payment_ref": order.gateway_order_id},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_MISMATCH"
        assert (await runtime.store.get(order.order_code)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_verify_rejects_uncaptured(self, client, make_order, gateway):
        order = await make_order(payment_method="upi")
        gateway.add_payment("pay_open", order.total_amount, status="requires_action")

        response = await client.post(
            "/api/payments/verify", json={"order_code": order.order_code, "payment_ref": "pay_open"}
        )

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Payment not completed")

    @pytest.mark.asyncio
    async def test_webhook_signature_required(self, client):
        event = webhook_event("payment_intent.succeeded", {"id": "pi_x"})
        assert (await post_webhook(client, event, signature=None)).status_code == 400
        assert (await post_webhook(client, event, signature="forged")).status_code == 400

    @pytest.mark.asyncio
    async def test_webhook_capture_and_replay(self, client, make_order):
        order = await make_order(payment_method="upi")
        event = webhook_event("payment_intent.succeeded", {
            "id": order.gateway_order_id,
            "amount_received": order.total_amount,
            "metadata": {"order_code": order.order_code},
        })

        first = await post_webhook(client, event)
        assert first.json() == {"status": "success", "order_code": order.order_code, "order_status": "confirmed"}

        replay = await post_webhook(client, event)
        assert replay.json() == {"status": "already_processed"}

        # Same capture delivered under a new event id
        redelivered = await post_webhook(client, {**event, "id": f"evt_{uuid.uuid4().hex}"})
        assert redelivered.json() == {"status": "ignored", "reason": "INVALID_TRANSITION"}

    @pytest.mark.asyncio
    async def test_webhook_capture_must_match_order(self, client, runtime, make_order):
        order = await make_order(payment_method="upi")
        foreign = webhook_event("payment_intent.succeeded", {
            "id": "pi_someone_else",
            "amount_received": order.total_amount,
            "metadata": {"order_code": order.order_code},
        })
        short = webhook_event("payment_intent.succeeded", {
            "id": order.gateway_order_id,
            "amount_received": order.total_amount // 2,
            "metadata": {"order_code": order.order_code},
        })

        assert (await post_webhook(client, foreign)).json() == {"status": "ignored", "reason": "PAYMENT_MISMATCH"}
        assert (await post_webhook(client, short)).json() == {"status": "ignored", "reason": "PAYMENT_MISMATCH"}
        stored = await runtime.store.get(order.order_code)
        assert stored.state == {"status": "pending", "payment_status": "pending", "refund_status": "none"}
        assert stored.payment_ref is None

    @pytest.mark.asyncio
    async def test_webhook_refund_by_payment_ref(self, client, runtime, make_order, force_state):
        order = await make_order(payment_method="upi")
        await force_state(
            order.order_code,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.REFUND_PROCESSING,
            refund_status=RefundStatus.SCHEDULED,
            payment_ref="pi_refund_me",
        )
        event = webhook_event("refund.updated", {
            "id": "re_1", "status": "succeeded", "payment_intent": "pi_refund_me", "amount": order.total_amount,
        })

        response = await post_webhook(client, event)

        assert response.json()["status"] == "success"
        stored = await runtime.store.get(order.order_code)
        assert stored.state == {"status": "refunded", "payment_status": "refunded", "refund_status": "completed"}
        assert stored.refund_id == "re_1"

    @pytest.mark.asyncio
    async def test_webhook_unknown_payment_and_type(self, client):
        unknown = webhook_event("refund.updated", {"id": "re_2", "status": "failed", "payment_intent": "pi_ghost"})
        assert (await post_webhook(client, unknown)).json() == {"status": "unknown_order"}

        unhandled = webhook_event("customer.created", {"id": "cus_1"})
        assert (await post_webhook(client, unhandled)).json() == {"status": "ignored"}


class TestDashboard:
    @pytest.mark.asyncio
    async def test_dashboard_and_reports(self, client, make_order):
        await make_order()

        dashboard = await client.get("/api/dashboard")
        assert dashboard.status_code == 200
        assert dashboard.json()["cumulative"]["total_customers"] == 1

        assert (await client.get("/api/dashboard/reports/2026-03-10")).status_code == 404

    @pytest.mark.asyncio
    async def test_jobs(self, client):
        hide = await client.post("/api/dashboard/jobs/hide_completed")
        assert hide.status_code == 200
        assert hide.json()["hidden"] == 0

        assert (await client.post("/api/dashboard/jobs/vacuum")).status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client, runtime):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"
        assert response.json()["pending_refunds"] == 0

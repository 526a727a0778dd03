"""
Tests for the payment gateway client refund policy and Stripe adapter.
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
import stripe

from orderflow.core.exceptions import GatewayTerminal, GatewayTransient
from orderflow.services.payment_gateway import (
    PaymentGatewayClient,
    RetryPolicy,
    StripeGateway,
    _map_stripe_error,
)

from tests.conftest import T0, RecordingSleep


class TestRefundPolicy:
    """Snapshot checks, clamping and the settlement wait."""

    @pytest.mark.asyncio
    async def test_clamps_to_refundable_amount(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000, refunded=4000)

        receipt = await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1")

        assert receipt.amount == 6000
        assert gateway.refund_calls == [{"payment_ref": "pay_1", "amount": 6000, "idempotency_key": "refund-ORD-1"}]

    @pytest.mark.asyncio
    async def test_fully_refunded_is_terminal(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000, refunded=10000)

        with pytest.raises(GatewayTerminal) as exc_info:
            await gateway_client.refund("pay_1", 10000)
        assert exc_info.value.gateway_code == "already_refunded"
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_uncaptured_is_terminal(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000, status="requires_payment_method")

        with pytest.raises(GatewayTerminal) as exc_info:
            await gateway_client.refund("pay_1", 10000)
        assert exc_info.value.gateway_code == "not_captured"

    @pytest.mark.asyncio
    async def test_unknown_payment(self, gateway_client):
        with pytest.raises(GatewayTerminal):
            await gateway_client.refund("pay_missing", 100)

    @pytest.mark.asyncio
    async def test_waits_for_fresh_payment_to_settle(self, gateway, gateway_client, gateway_sleep):
        gateway.add_payment("pay_1", 10000, created_at=T0 - timedelta(seconds=100))

        await gateway_client.refund("pay_1", 10000)

        # 200s short of the settlement age, capped at the max wait
        assert gateway_sleep.calls == [30.0]

    @pytest.mark.asyncio
    async def test_old_payment_is_not_delayed(self, gateway, gateway_client, gateway_sleep):
        gateway.add_payment("pay_1", 10000, created_at=T0 - timedelta(hours=1))

        await gateway_client.refund("pay_1", 10000)

        assert gateway_sleep.calls == []


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_then_success(self, gateway, gateway_client, gateway_sleep):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTransient("503"), GatewayTransient("503")]

        receipt = await gateway_client.refund("pay_1", 10000)

        assert receipt.attempts == 3
        assert gateway_sleep.calls == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_timing_errors_use_longer_delay(self, gateway, gateway_client, gateway_sleep):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTransient("not ready", gateway_code="balance_insufficient", timing=True)]

        receipt = await gateway_client.refund("pay_1", 10000)

        assert receipt.attempts == 2
        assert gateway_sleep.calls == [30.0]

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTransient("503") for _ in range(10)]

        with pytest.raises(GatewayTransient):
            await gateway_client.refund("pay_1", 10000)
        assert len(gateway.refund_calls) == 4

    @pytest.mark.asyncio
    async def test_total_delay_is_bounded(self, gateway):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_retries=10, retry_delay=5.0, timing_retry_delay=30.0,
                             max_total_delay=40.0, min_payment_age=300.0, max_settlement_wait=30.0)
        client = PaymentGatewayClient(gateway, policy=policy, sleep=sleep, clock=lambda: T0)
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTransient("not ready", timing=True) for _ in range(10)]

        with pytest.raises(GatewayTransient):
            await client.refund("pay_1", 10000)

        assert sum(sleep.calls) <= 40.0
        assert len(gateway.refund_calls) == 2

    @pytest.mark.asyncio
    async def test_terminal_is_not_retried(self, gateway, gateway_client, gateway_sleep):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTerminal("charge disputed", gateway_code="charge_disputed")]

        with pytest.raises(GatewayTerminal):
            await gateway_client.refund("pay_1", 10000)
        assert len(gateway.refund_calls) == 1
        assert gateway_sleep.calls == []

    @pytest.mark.asyncio
    async def test_retry_after_error_response_gets_fresh_key(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTransient("503"), GatewayTransient("503")]

        receipt = await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1-0")

        assert receipt.attempts == 3
        assert gateway.keys_used() == ["refund-ORD-1-0", "refund-ORD-1-0-r1", "refund-ORD-1-0-r2"]
        assert gateway.payments["pay_1"].refunded_amount == 10000

    @pytest.mark.asyncio
    async def test_connection_error_keeps_key(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [
            GatewayTransient("unreachable", response_received=False),
            GatewayTransient("503"),
            GatewayTransient("unreachable", response_received=False),
        ]

        receipt = await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1-0")

        assert receipt.attempts == 4
        assert gateway.keys_used() == [
            "refund-ORD-1-0",
            "refund-ORD-1-0",
            "refund-ORD-1-0-r1",
            "refund-ORD-1-0-r1",
        ]

    @pytest.mark.asyncio
    async def test_reused_key_replays_stored_error(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [GatewayTerminal("charge disputed", gateway_code="charge_disputed")]

        with pytest.raises(GatewayTerminal):
            await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1-0")
        # Same key again: the stored failure comes back even though the gateway recovered
        with pytest.raises(GatewayTerminal):
            await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1-0")

        receipt = await gateway_client.refund("pay_1", 10000, idempotency_key="refund-ORD-1-1")
        assert receipt.amount == 10000

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_terminal(self, gateway, gateway_client):
        gateway.add_payment("pay_1", 10000)
        gateway.refund_errors = [RuntimeError("socket exploded")]

        with pytest.raises(GatewayTerminal) as exc_info:
            await gateway_client.refund("pay_1", 10000)
        assert "socket exploded" in exc_info.value.message


class TestStripeErrorMapping:
    def test_balance_insufficient_is_timing(self):
        error = stripe.InvalidRequestError("Insufficient funds", param=None, code="balance_insufficient")
        mapped = _map_stripe_error(error, "refund")
        assert isinstance(mapped, GatewayTransient)
        assert mapped.timing

    def test_invalid_request_is_terminal(self):
        error = stripe.InvalidRequestError("Charge already refunded", param=None, code="charge_already_refunded")
        mapped = _map_stripe_error(error, "refund")
        assert isinstance(mapped, GatewayTerminal)
        assert mapped.gateway_code == "charge_already_refunded"

    def test_connection_errors_are_transient(self):
        unreachable = _map_stripe_error(stripe.APIConnectionError("timeout"), "refund")
        assert isinstance(unreachable, GatewayTransient)
        assert not unreachable.response_received

        limited = _map_stripe_error(stripe.RateLimitError("slow down"), "refund")
        assert isinstance(limited, GatewayTransient)
        assert limited.response_received

    def test_auth_errors_are_terminal(self):
        assert isinstance(_map_stripe_error(stripe.AuthenticationError("bad key"), "refund"), GatewayTerminal)


class TestStripeWebhookSignature:
    SECRET = "whsec_test_secret"

    def _sign(self, payload: bytes, secret: str) -> str:
        timestamp = int(time.time())
        signed = f"{timestamp}.{payload.decode()}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def test_valid_and_tampered(self):
        gw = StripeGateway(api_key="sk_test_dummy", webhook_secret=self.SECRET)
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1"}},
        }).encode()
        signature = self._sign(payload, self.SECRET)

        assert gw.verify_signature(payload, signature)
        assert not gw.verify_signature(payload + b" ", signature)
        assert not gw.verify_signature(payload, self._sign(payload, "whsec_other"))

    def test_unconfigured_secret_rejects(self):
        gw = StripeGateway(api_key="sk_test_dummy", webhook_secret="")
        assert not gw.verify_signature(b"{}", "t=1,v1=abc")

"""
Pytest configuration and fixtures for Orderflow tests.

Every test gets its own in-memory SQLite database and a runtime wired to
fakes: a scripted payment gateway, the in-memory ledger and a recording
notifier. Refund timers never really sleep.
"""
import asyncio
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["BUSINESS_TIMEZONE"] = "Asia/Kolkata"

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from orderflow.core.database import init_models
from orderflow.core.exceptions import GatewayTerminal
from orderflow.models.order import Order
from orderflow.runtime import build_runtime
from orderflow.services.ledger import InMemoryLedger
from orderflow.services.lifecycle import PaymentVerified
from orderflow.services.notifier import SendResult
from orderflow.services.order_service import NewOrder, NewOrderItem
from orderflow.services.payment_gateway import (
    CAPTURED,
    PaymentGatewayClient,
    PaymentIntent,
    PaymentSnapshot,
    RefundReceipt,
    RetryPolicy,
)

# 2026-03-10 08:00 UTC = 13:30 in Asia/Kolkata
T0 = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)


async def no_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep that yields without waiting."""
    await asyncio.sleep(0)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class GatedSleep:
    """Blocks every sleeper until release() is called."""

    def __init__(self):
        self.calls: List[float] = []
        self.released = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self.released.wait()

    def release(self):
        self.released.set()


class FakeGateway:
    """
    Scripted PaymentGateway.

    ``refund_errors`` is consumed one exception per refund call; once empty
    refunds succeed. Like the real processor it remembers the outcome of
    every idempotency key it answered and replays it when the key comes
    back; errors that never got a response are not remembered.
    """

    def __init__(self):
        self.payments: Dict[str, PaymentSnapshot] = {}
        self.refund_errors: List[Exception] = []
        self.refund_calls: List[dict] = []
        self.intents: List[str] = []
        self.key_outcomes: Dict[str, object] = {}

    def add_payment(self, payment_ref: str, amount: int, created_at: Optional[datetime] = None,
                    refunded: int = 0, status: str = CAPTURED, gateway_order_id: Optional[str] = None):
        self.payments[payment_ref] = PaymentSnapshot(
            status=status,
            captured_amount=amount,
            refunded_amount=refunded,
            created_at=created_at or T0 - timedelta(hours=2),
            payment_ref=payment_ref,
            gateway_order_id=gateway_order_id or payment_ref,
        )

    def keys_used(self) -> List[Optional[str]]:
        return [call["idempotency_key"] for call in self.refund_calls]

    async def create_intent(self, amount: int, order_ref: str) -> PaymentIntent:
        self.intents.append(order_ref)
        return PaymentIntent(gateway_order_id=f"pi_{order_ref}", client_secret=f"secret_{order_ref}", amount=amount)

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        return signature == "valid-signature"

    async def fetch_payment(self, payment_ref: str) -> PaymentSnapshot:
        if payment_ref not in self.payments:
            raise GatewayTerminal(f"No such payment: {payment_ref}", gateway_code="resource_missing")
        return self.payments[payment_ref]

    async def refund(self, payment_ref: str, amount: int, idempotency_key: Optional[str] = None) -> RefundReceipt:
        self.refund_calls.append({"payment_ref": payment_ref, "amount": amount, "idempotency_key": idempotency_key})
        if idempotency_key in self.key_outcomes:
            stored = self.key_outcomes[idempotency_key]
            if isinstance(stored, Exception):
                raise stored
            return stored

        if self.refund_errors:
            error = self.refund_errors.pop(0)
            if idempotency_key and getattr(error, "response_received", True):
                self.key_outcomes[idempotency_key] = error
            raise error

        snapshot = self.payments[payment_ref]
        self.payments[payment_ref] = replace(snapshot, refunded_amount=snapshot.refunded_amount + amount)
        receipt = RefundReceipt(refund_id=f"re_{len(self.refund_calls)}", payment_ref=payment_ref, amount=amount)
        if idempotency_key:
            self.key_outcomes[idempotency_key] = receipt
        return receipt


class RecordingNotifier:
    def __init__(self, fail_channels=()):
        self.sent: List[dict] = []
        self.fail_channels = set(fail_channels)

    async def send(self, channel, recipient, template, params=None):
        if channel in self.fail_channels:
            from orderflow.core.exceptions import NotifierFailure
            raise NotifierFailure(f"{channel} down", channel=channel)
        self.sent.append({"channel": channel, "recipient": recipient, "template": template, "params": params or {}})
        return SendResult(success=True, channel=channel, message_id=str(len(self.sent)))

    def templates(self, channel=None):
        return [m["template"] for m in self.sent if channel is None or m["channel"] == channel]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def gateway_sleep():
    return RecordingSleep()


@pytest.fixture
def gateway_client(gateway, gateway_sleep):
    policy = RetryPolicy(
        max_retries=3,
        retry_delay=5.0,
        timing_retry_delay=30.0,
        max_total_delay=150.0,
        min_payment_age=300.0,
        max_settlement_wait=30.0,
    )
    return PaymentGatewayClient(gateway, policy=policy, sleep=gateway_sleep, clock=lambda: T0)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def refund_sleep():
    """Sleep used by refund timers. Override in a module to hold timers open."""
    return no_sleep


@pytest_asyncio.fixture
async def runtime(session_factory, ledger, notifier, gateway_client, refund_sleep):
    rt = build_runtime(
        session_factory=session_factory,
        ledger=ledger,
        notifier=notifier,
        gateway_client=gateway_client,
        refund_sleep=refund_sleep,
    )
    yield rt
    await rt.refunds.shutdown()
    await rt.dispatcher.drain()


@pytest.fixture
def make_order(runtime):
    """Place an order at T0 (or ``now``) and return its OrderView."""

    async def _make(payment_method="cod", service_type="delivery", phone="9876543210",
                    items=None, now=None, **kwargs):
        items = items or [
            NewOrderItem(name="Paneer Tikka", unit_price=25000, quantity=2, category="Starters"),
            NewOrderItem(name="Butter Naan", unit_price=5000, quantity=1, category="Breads"),
        ]
        request = NewOrder(
            customer_phone=phone,
            customer_name=kwargs.pop("customer_name", "Asha"),
            customer_address=kwargs.pop("customer_address", "12 MG Road"),
            payment_method=payment_method,
            service_type=service_type,
            items=items,
            **kwargs,
        )
        placed = await runtime.orders.place_order(request, now=now or T0)
        return placed.order

    return _make


@pytest.fixture
def make_paid_order(runtime, gateway, make_order):
    """UPI order whose payment was captured at the gateway and recorded."""

    async def _make(now=None, **kwargs):
        order = await make_order(payment_method="upi", now=now, **kwargs)
        payment_ref = order.gateway_order_id
        gateway.add_payment(payment_ref, order.total_amount)
        verified = PaymentVerified(payment_ref=payment_ref, gateway_order_id=payment_ref, amount=order.total_amount)
        result = await runtime.lifecycle.apply_transition(order.order_code, verified, now=now or T0)
        return result.order

    return _make


@pytest.fixture
def force_state(session_factory):
    """Write fields straight onto an order row, bypassing the lifecycle."""

    async def _force(order_code, **values):
        async with session_factory() as db:
            await db.execute(update(Order).where(Order.order_code == order_code).values(**values))
            await db.commit()

    return _force

"""
Payment Gateway Client

Wraps the payment processor behind the ``PaymentGateway`` protocol and owns
the refund retry policy.

Refund flow:
1. Fetch live payment state; it must be captured and not fully refunded
2. Clamp the requested amount to what is still refundable
3. If the payment is younger than the settlement age, wait (bounded)
4. Call refund, retrying transient failures a fixed number of times; a retry
   after an error response goes out under a fresh idempotency key

Transient failures use a short delay; the "timing" class (payment too fresh
for the processor to refund) uses a longer one. Every other failure is
terminal and surfaces immediately. Total sleeping is capped so a stuck refund
cannot block the scheduler indefinitely.

The Stripe SDK is synchronous; calls run through ``asyncio.to_thread``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import stripe

from orderflow.core.config import settings
from orderflow.core.exceptions import GatewayTerminal, GatewayTransient, PaymentError
from orderflow.core.utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

CAPTURED = "captured"


@dataclass(frozen=True)
class PaymentSnapshot:
    status: str
    captured_amount: int
    refunded_amount: int
    created_at: datetime
    payment_ref: Optional[str] = None
    gateway_order_id: Optional[str] = None

    @property
    def refundable_amount(self) -> int:
        return max(self.captured_amount - self.refunded_amount, 0)

    @property
    def fully_refunded(self) -> bool:
        return self.captured_amount > 0 and self.refunded_amount >= self.captured_amount


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    payment_ref: str
    amount: int
    status: str = "succeeded"
    attempts: int = 1


@dataclass(frozen=True)
class PaymentIntent:
    gateway_order_id: str
    client_secret: Optional[str] = None
    amount: int = 0


class PaymentGateway(Protocol):
    async def create_intent(self, amount: int, order_ref: str) -> PaymentIntent: ...

    def verify_signature(self, payload: bytes, signature: str) -> bool: ...

    async def refund(self, payment_ref: str, amount: int, idempotency_key: Optional[str] = None) -> RefundReceipt: ...

    async def fetch_payment(self, payment_ref: str) -> PaymentSnapshot: ...


@dataclass
class RetryPolicy:
    max_retries: int = 3
    retry_delay: float = 5.0
    timing_retry_delay: float = 30.0
    max_total_delay: float = 150.0
    min_payment_age: float = 300.0
    max_settlement_wait: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.REFUND_MAX_RETRIES,
            retry_delay=settings.REFUND_RETRY_DELAY_SECONDS,
            timing_retry_delay=settings.REFUND_TIMING_RETRY_DELAY_SECONDS,
            max_total_delay=settings.REFUND_MAX_TOTAL_DELAY_SECONDS,
            min_payment_age=settings.REFUND_MIN_PAYMENT_AGE_SECONDS,
            max_settlement_wait=settings.REFUND_MAX_SETTLEMENT_WAIT_SECONDS,
        )

    def delay_for(self, error: GatewayTransient) -> float:
        return self.timing_retry_delay if error.timing else self.retry_delay


# =============================================================================
# STRIPE
# =============================================================================

# Stripe refuses refunds while the charge's funds are not yet available
TIMING_ERROR_CODES = frozenset({"balance_insufficient"})


def _map_stripe_error(e: Exception, action: str) -> PaymentError:
    """Translate a Stripe SDK exception into the gateway taxonomy."""
    code = getattr(e, "code", None)
    message = getattr(e, "user_message", None) or str(e)

    if isinstance(e, stripe.InvalidRequestError):
        if code in TIMING_ERROR_CODES:
            return GatewayTransient(f"Stripe not ready to {action}: {message}", gateway_code=code, timing=True)
        return GatewayTerminal(f"Invalid {action} request: {message}", gateway_code=code)
    if isinstance(e, stripe.CardError):
        return GatewayTerminal(f"Card error during {action}: {message}", gateway_code=code)
    if isinstance(e, (stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayTerminal(f"Stripe rejected credentials during {action}: {message}", gateway_code=code)
    if isinstance(e, stripe.APIConnectionError):
        return GatewayTransient(
            f"Stripe unreachable during {action}: {message}", gateway_code=code, response_received=False
        )
    if isinstance(e, (stripe.RateLimitError, stripe.APIError)):
        return GatewayTransient(f"Stripe unavailable during {action}: {message}", gateway_code=code)
    if isinstance(e, stripe.StripeError):
        return GatewayTerminal(f"Stripe error during {action}: {message}", gateway_code=code)
    return GatewayTerminal(f"Unexpected error during {action}: {e}")


class StripeGateway:
    """PaymentGateway backed by Stripe PaymentIntents and Refunds."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 currency: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.currency = currency or settings.STRIPE_CURRENCY
        stripe.api_key = self.api_key

    async def _call(self, action: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {type(e).__name__} during {action}: {e}")
            raise _map_stripe_error(e, action) from e

    async def create_intent(self, amount: int, order_ref: str) -> PaymentIntent:
        intent = await self._call(
            "create intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=self.currency,
            metadata={"order_code": order_ref},
            automatic_payment_methods={"enabled": True},
            idempotency_key=f"intent-{order_ref}",
        )
        return PaymentIntent(gateway_order_id=intent.id, client_secret=intent.client_secret, amount=amount)

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret or not signature:
            return False
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            return False
        return True

    def parse_event(self, payload: bytes, signature: str):
        """Verified Stripe event object. Raises GatewayTerminal on a bad signature."""
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise GatewayTerminal(f"Invalid webhook signature: {e}", gateway_code="invalid_signature") from e

    async def fetch_payment(self, payment_ref: str) -> PaymentSnapshot:
        intent = await self._call(
            "fetch payment",
            stripe.PaymentIntent.retrieve,
            payment_ref,
            expand=["latest_charge"],
        )
        charge = intent.get("latest_charge") if hasattr(intent, "get") else None
        refunded = 0
        if charge is not None and not isinstance(charge, str):
            refunded = charge.get("amount_refunded", 0) or 0
        status = CAPTURED if intent.status == "succeeded" else intent.status
        return PaymentSnapshot(
            status=status,
            captured_amount=intent.get("amount_received", 0) or 0,
            refunded_amount=refunded,
            created_at=datetime.fromtimestamp(intent.created, tz=timezone.utc),
            payment_ref=payment_ref,
            gateway_order_id=intent.id,
        )

    async def refund(self, payment_ref: str, amount: int, idempotency_key: Optional[str] = None) -> RefundReceipt:
        kwargs: Dict[str, Any] = {
            "payment_intent": payment_ref,
            "amount": amount,
            "metadata": {"source": "orderflow_refund_scheduler"},
        }
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        refund = await self._call("refund", stripe.Refund.create, **kwargs)

        logger.info(f"Stripe refund created: {refund.id} for {amount} (payment_intent: {payment_ref})")
        if refund.status == "failed":
            raise GatewayTerminal(
                f"Stripe refund {refund.id} failed: {refund.get('failure_reason')}",
                gateway_code=refund.get("failure_reason"),
            )
        return RefundReceipt(refund_id=refund.id, payment_ref=payment_ref, amount=refund.amount, status=refund.status)


# =============================================================================
# CLIENT
# =============================================================================

class PaymentGatewayClient:
    """
    Policy layer over a PaymentGateway.

    ``sleep`` and ``clock`` are injectable so tests can drive the settlement
    wait and retries without real time passing.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._clock = clock

    async def create_intent(self, amount: int, order_ref: str) -> PaymentIntent:
        return await self.gateway.create_intent(amount, order_ref)

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        return self.gateway.verify_signature(payload, signature)

    async def fetch_payment(self, payment_ref: str) -> PaymentSnapshot:
        return await self.gateway.fetch_payment(payment_ref)

    async def refund(self, payment_ref: str, amount: int, idempotency_key: Optional[str] = None) -> RefundReceipt:
        """
        Refund up to ``amount`` of a captured payment.

        Raises:
            GatewayTerminal: payment not refundable, or a non-retryable failure
            GatewayTransient: retries exhausted or total delay budget spent
        """
        budget = _DelayBudget(self.policy.max_total_delay)

        snapshot = await self._with_retries("fetch payment", payment_ref, budget,
                                            lambda: self.gateway.fetch_payment(payment_ref))

        if snapshot.status != CAPTURED:
            raise GatewayTerminal(f"Payment not captured. Status: {snapshot.status}", gateway_code="not_captured")
        if snapshot.fully_refunded:
            raise GatewayTerminal("Payment already fully refunded", gateway_code="already_refunded")

        final_amount = min(amount, snapshot.refundable_amount)
        if final_amount <= 0:
            raise GatewayTerminal("No amount available for refund", gateway_code="nothing_refundable")
        if final_amount < amount:
            logger.warning(f"Refund for {payment_ref} clamped from {amount} to {final_amount}")

        age = (self._clock() - ensure_utc(snapshot.created_at)).total_seconds()
        if age < self.policy.min_payment_age:
            wait = min(self.policy.min_payment_age - age, self.policy.max_settlement_wait)
            wait = budget.take(wait)
            if wait > 0:
                logger.info(f"Payment {payment_ref} is {int(age)}s old, waiting {wait:.0f}s before refund")
                await self._sleep(wait)

        keys = _RetryKeys(idempotency_key)
        return await self._with_retries(
            "refund", payment_ref, budget,
            lambda: self.gateway.refund(payment_ref, final_amount, idempotency_key=keys.current),
            on_retry=keys.advance,
        )

    async def _with_retries(
        self,
        action: str,
        payment_ref: str,
        budget: "_DelayBudget",
        call,
        on_retry: Optional[Callable[[GatewayTransient], None]] = None,
    ):
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await call()
            except GatewayTransient as e:
                if attempt > self.policy.max_retries:
                    logger.error(f"{action} for {payment_ref} failed after {attempt} attempts: {e.message}")
                    raise
                delay = self.policy.delay_for(e)
                if not budget.allows(delay):
                    logger.error(f"{action} for {payment_ref} out of retry time after {attempt} attempts")
                    raise
                budget.take(delay)
                logger.warning(
                    f"{action} for {payment_ref} failed ({e.gateway_code or 'transient'}), "
                    f"retrying in {delay:.0f}s (attempt {attempt + 1}/{self.policy.max_retries + 1})"
                )
                await self._sleep(delay)
                if on_retry is not None:
                    on_retry(e)
                continue
            except PaymentError:
                raise
            except Exception as e:
                raise GatewayTerminal(f"Unexpected error during {action}: {e}") from e

            if isinstance(result, RefundReceipt) and result.attempts != attempt:
                result = RefundReceipt(
                    refund_id=result.refund_id,
                    payment_ref=result.payment_ref,
                    amount=result.amount,
                    status=result.status,
                    attempts=attempt,
                )
            return result


@dataclass
class _RetryKeys:
    """
    Idempotency key for each refund request.

    The gateway replays the stored outcome of a key it has answered, so a
    retry after an error response needs a fresh key. Only a request that
    never got a response reuses the current one.
    """
    base: Optional[str]
    retries: int = 0

    @property
    def current(self) -> Optional[str]:
        if not self.base or not self.retries:
            return self.base
        return f"{self.base}-r{self.retries}"

    def advance(self, error: GatewayTransient) -> None:
        if error.response_received:
            self.retries += 1


@dataclass
class _DelayBudget:
    limit: float
    spent: float = field(default=0.0)

    def allows(self, delay: float) -> bool:
        return self.spent + delay <= self.limit

    def take(self, delay: float) -> float:
        granted = max(min(delay, self.limit - self.spent), 0.0)
        self.spent += granted
        return granted

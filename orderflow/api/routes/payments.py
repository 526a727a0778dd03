"""
Payment routes

Two ways a payment lands:
1. verify: the client reports a completed checkout; confirmed against the gateway
2. webhook: the gateway tells us directly (signature verified)

Webhook events map onto PaymentWebhook kinds. Replays and out-of-order
deliveries are expected: an event the order's state no longer accepts is
acknowledged and ignored so the gateway stops retrying it.
"""
import json
import logging
from collections import OrderedDict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from orderflow.api.deps import get_runtime
from orderflow.core.exceptions import InvalidTransition, OrderNotFound, PaymentError
from orderflow.runtime import Runtime
from orderflow.schemas.orders import OrderResponse, TransitionResponse
from orderflow.services.lifecycle import (
    PaymentVerified,
    PaymentWebhook,
    WEBHOOK_PAYMENT_CAPTURED,
    WEBHOOK_PAYMENT_FAILED,
    WEBHOOK_REFUND_FAILED,
    WEBHOOK_REFUND_PROCESSED,
)
from orderflow.services.payment_gateway import CAPTURED

logger = logging.getLogger(__name__)

router = APIRouter()

# Processed webhook event ids, most recent last
_processed_webhook_events: "OrderedDict[str, bool]" = OrderedDict()
_MAX_REMEMBERED_EVENTS = 10000


class VerifyPaymentRequest(BaseModel):
    order_code: str
    payment_ref: str


def _remember(event_id: Optional[str]) -> None:
    if not event_id:
        return
    _processed_webhook_events[event_id] = True
    while len(_processed_webhook_events) > _MAX_REMEMBERED_EVENTS:
        _processed_webhook_events.popitem(last=False)


def map_gateway_event(event: dict) -> Optional[PaymentWebhook]:
    """Translate a Stripe event payload into a PaymentWebhook, or None if we don't handle it."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "payment_intent.succeeded":
        return PaymentWebhook(
            kind=WEBHOOK_PAYMENT_CAPTURED,
            payment_ref=obj.get("id"),
            amount=obj.get("amount_received"),
        )
    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return PaymentWebhook(
            kind=WEBHOOK_PAYMENT_FAILED,
            payment_ref=obj.get("id"),
            failure_reason=error.get("message"),
        )
    if event_type in ("refund.updated", "refund.created", "charge.refund.updated"):
        refund_status = obj.get("status")
        if refund_status == "succeeded":
            kind = WEBHOOK_REFUND_PROCESSED
        elif refund_status in ("failed", "canceled"):
            kind = WEBHOOK_REFUND_FAILED
        else:
            return None
        return PaymentWebhook(
            kind=kind,
            payment_ref=obj.get("payment_intent"),
            amount=obj.get("amount"),
            refund_id=obj.get("id"),
            failure_reason=obj.get("failure_reason"),
        )
    return None


def _order_code_hint(event: dict) -> Optional[str]:
    obj = (event.get("data") or {}).get("object") or {}
    return (obj.get("metadata") or {}).get("order_code")


@router.post("/verify", response_model=TransitionResponse)
async def verify_payment(body: VerifyPaymentRequest, runtime: Runtime = Depends(get_runtime)):
    """Client-side checkout completion, confirmed against the gateway before it counts"""
    try:
        snapshot = await runtime.gateway_client.fetch_payment(body.payment_ref)
    except PaymentError as e:
        logger.warning(f"Payment verification for {body.order_code} failed: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)

    if snapshot.status != CAPTURED:
        raise HTTPException(status_code=400, detail=f"Payment not completed. Status: {snapshot.status}")

    # The planner checks the intent and captured amount against the order
    event = PaymentVerified(
        payment_ref=body.payment_ref,
        gateway_order_id=snapshot.gateway_order_id,
        amount=snapshot.captured_amount,
    )
    result = await runtime.lifecycle.apply_transition(body.order_code, event)
    return TransitionResponse(
        order=OrderResponse.from_view(result.order),
        effects=[type(e).__name__ for e in result.effects],
    )


@router.post("/webhook")
async def payment_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.warning("Payment webhook missing signature header")
        raise HTTPException(status_code=400, detail="Missing signature")
    if not runtime.gateway_client.verify_signature(payload, signature):
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_id = event.get("id")
    if event_id and event_id in _processed_webhook_events:
        logger.info(f"Payment webhook event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    webhook = map_gateway_event(event)
    if webhook is None:
        logger.info(f"Unhandled webhook event type: {event.get('type')}")
        _remember(event_id)
        return {"status": "ignored"}

    order_code = _order_code_hint(event)
    if not order_code and webhook.payment_ref:
        order = await runtime.store.find_by_payment_ref(webhook.payment_ref)
        order_code = order.order_code if order else None
    if not order_code:
        logger.warning(f"Webhook {event.get('type')} for unknown payment {webhook.payment_ref}")
        _remember(event_id)
        return {"status": "unknown_order"}

    try:
        result = await runtime.lifecycle.apply_transition(order_code, webhook)
    except (InvalidTransition, OrderNotFound) as e:
        logger.info(f"Webhook {webhook.kind} for {order_code} ignored: {e.message}")
        _remember(event_id)
        return {"status": "ignored", "reason": e.code}

    _remember(event_id)
    return {"status": "success", "order_code": order_code, "order_status": result.order.status.value}

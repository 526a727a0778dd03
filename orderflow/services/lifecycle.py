"""
Order Lifecycle Engine

The state machine over (status, payment_status, refund_status).

``plan_transition`` is pure: given an order snapshot, an event and a clock
it returns the field changes plus the ordered list of declared side effects,
or raises InvalidTransition. ``OrderLifecycleService.apply_transition`` wraps
it with the per-order lock, persistence and post-commit dispatch.

Business rules expressed as effects:
- delivered + COD + not pickup: payment collected in cash
- pickup + actual payment method supplied: payment collected
- delivered + paid: today's revenue grows by the order total
- cancelled + paid + payment ref: refund pending, refund scheduled
- cancelled + COD + unpaid: payment cancelled
- cancelled + partner assigned: partner told by push
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.exceptions import InvalidTransition, PaymentMismatch, StaleOrderError
from orderflow.core.utils import utcnow, format_amount
from orderflow.core import events as bus
from orderflow.models.order import (
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ServiceType,
    PaymentMethod,
    ActualPaymentMethod,
    TERMINAL_STATUSES,
    REFUND_IN_FLIGHT,
)
from orderflow.services.effects import (
    Effect,
    AppendTracking,
    SetPaymentPaid,
    ScheduleRefund,
    CancelScheduledRefund,
    SyncLedger,
    UpdateLedgerPartner,
    Notify,
    UpdateDailyRevenue,
    EmitEvent,
)
from orderflow.services.order_store import OrderStore, OrderView

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

ORDER_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.CANCELLED],
    OrderStatus.PREPARING: [
        OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.CANCELLED,
    ],
    OrderStatus.READY: [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    OrderStatus.OUT_FOR_DELIVERY: [OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    OrderStatus.REFUND_FAILED: [OrderStatus.CANCELLED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.REFUNDED: [],
}

# Reached only through refund events
REFUND_ONLY_STATUSES = frozenset({OrderStatus.REFUNDED, OrderStatus.REFUND_FAILED})

STATUS_MESSAGES = {
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PREPARING: "Order is being prepared",
    OrderStatus.READY: "Order is ready",
    OrderStatus.OUT_FOR_DELIVERY: "Order is out for delivery",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
}


# =============================================================================
# LEDGER BUCKETS
# =============================================================================

BUCKET_NEW = "new"
BUCKET_DELIVERED = "delivered"
BUCKET_CANCELLED = "cancelled"
BUCKET_SELFPICK = "selfpick"


def bucket_for(status: OrderStatus, service_type: ServiceType) -> str:
    """Ledger bucket an order belongs in for a given status."""
    if status == OrderStatus.DELIVERED:
        return BUCKET_SELFPICK if service_type == ServiceType.PICKUP else BUCKET_DELIVERED
    if status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.REFUND_FAILED):
        return BUCKET_CANCELLED
    return BUCKET_NEW


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class AdminStatusChange:
    target_status: str
    message: Optional[str] = None
    actual_payment_method: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentVerified:
    payment_ref: str
    gateway_order_id: Optional[str] = None
    amount: Optional[int] = None


WEBHOOK_PAYMENT_CAPTURED = "payment_captured"
WEBHOOK_PAYMENT_FAILED = "payment_failed"
WEBHOOK_REFUND_PROCESSED = "refund_processed"
WEBHOOK_REFUND_FAILED = "refund_failed"

WEBHOOK_KINDS = frozenset({
    WEBHOOK_PAYMENT_CAPTURED,
    WEBHOOK_PAYMENT_FAILED,
    WEBHOOK_REFUND_PROCESSED,
    WEBHOOK_REFUND_FAILED,
})


@dataclass(frozen=True)
class PaymentWebhook:
    kind: str
    payment_ref: Optional[str] = None
    amount: Optional[int] = None
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RefundApproved:
    note: Optional[str] = None


@dataclass(frozen=True)
class RefundRejected:
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryAssigned:
    partner_id: int
    partner_name: str
    partner_contact: Dict[str, Optional[str]] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class RefundSucceeded:
    refund_id: Optional[str] = None
    amount: Optional[int] = None


@dataclass(frozen=True)
class RefundFailed:
    reason: str = "Refund failed"


@dataclass(frozen=True)
class DeliveryTimeSet:
    estimated_at: datetime


LifecycleEvent = Union[
    AdminStatusChange,
    PaymentVerified,
    PaymentWebhook,
    RefundApproved,
    RefundRejected,
    DeliveryAssigned,
    RefundSucceeded,
    RefundFailed,
    DeliveryTimeSet,
]


# =============================================================================
# PLANNING
# =============================================================================

@dataclass
class TransitionPlan:
    order_code: str
    event: str
    from_state: Dict[str, str]
    changes: Dict[str, Any] = field(default_factory=dict)
    effects: List[Effect] = field(default_factory=list)
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    refund_status: Optional[RefundStatus] = None

    @property
    def to_state(self) -> Dict[str, str]:
        return {
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "refund_status": self.refund_status.value,
        }

    def effects_of(self, effect_type) -> List[Effect]:
        return [e for e in self.effects if isinstance(e, effect_type)]


class _Planner:
    """Accumulates changes and effects against a working copy of the state triple."""

    def __init__(self, order: OrderView, event, now: datetime):
        self.order = order
        self.now = now
        self.plan = TransitionPlan(
            order_code=order.order_code,
            event=type(event).__name__,
            from_state=order.state,
            status=order.status,
            payment_status=order.payment_status,
            refund_status=order.refund_status,
        )
        self.event = event

    # -- state ---------------------------------------------------------------

    @property
    def target(self) -> str:
        return self.plan.status.value

    def set_status(self, status: OrderStatus):
        self.plan.status = status
        self.plan.changes["status"] = status
        if status in TERMINAL_STATUSES:
            # Monotonic: never earlier than a previous terminal stamp
            previous = self.order.status_updated_at
            stamp = self.now if previous is None or self.now > previous else previous
            self.plan.changes["status_updated_at"] = stamp

    def set_payment(self, status: PaymentStatus):
        self.plan.payment_status = status
        self.plan.changes["payment_status"] = status

    def set_refund(self, status: RefundStatus):
        self.plan.refund_status = status
        self.plan.changes["refund_status"] = status

    def change(self, **fields):
        self.plan.changes.update(fields)

    # -- effects -------------------------------------------------------------

    def add(self, effect_cls, **kwargs):
        self.plan.effects.append(
            effect_cls(order_code=self.order.order_code, target_status=self.target, **kwargs)
        )

    def track(self, status, message: str):
        status = status.value if hasattr(status, "value") else status
        self.add(AppendTracking, status=status, message=message)

    def mark_paid(self, method: Optional[str] = None):
        self.plan.payment_status = PaymentStatus.PAID
        self.add(SetPaymentPaid, method=method)

    def notify_customer(self, template: str, discriminator: str = "", **params):
        params.setdefault("order_code", self.order.order_code)
        params.setdefault("customer_name", self.order.customer_name or "")
        params.setdefault("amount", format_amount(self.order.total_amount))
        self.add(
            Notify,
            template=template,
            channel="whatsapp",
            recipient=self.order.customer_phone,
            params=params,
            discriminator=discriminator,
        )

    def sync_ledger(self, status: Optional[OrderStatus] = None):
        self.add(SyncLedger, bucket=bucket_for(status or self.plan.status, self.order.service_type))

    def emit(self, *names: str):
        for name in names:
            self.add(EmitEvent, name=name)

    def reject(self, message: str, error_cls=InvalidTransition):
        raise error_cls(
            message,
            order_code=self.order.order_code,
            event=self.plan.event,
            state=self.order.state,
        )


def plan_transition(order: OrderView, event: LifecycleEvent, now: Optional[datetime] = None) -> TransitionPlan:
    """
    Validate ``event`` against the order's current state and return the plan.

    Raises InvalidTransition for anything outside the legal transition table.
    """
    p = _Planner(order, event, now or utcnow())

    if isinstance(event, AdminStatusChange):
        _plan_admin_status(p, event)
    elif isinstance(event, PaymentVerified):
        _plan_payment_captured(p, event.payment_ref, event.gateway_order_id, event.amount)
    elif isinstance(event, PaymentWebhook):
        _plan_webhook(p, event)
    elif isinstance(event, RefundApproved):
        _plan_refund_approved(p, event)
    elif isinstance(event, RefundRejected):
        _plan_refund_rejected(p, event)
    elif isinstance(event, RefundSucceeded):
        _plan_refund_succeeded(p, event.refund_id, event.amount, from_gateway_call=True)
    elif isinstance(event, RefundFailed):
        _plan_refund_failed(p, event.reason)
    elif isinstance(event, DeliveryAssigned):
        _plan_assignment(p, event)
    elif isinstance(event, DeliveryTimeSet):
        _plan_delivery_time(p, event)
    else:
        p.reject(f"Unsupported event {type(event).__name__}")

    return p.plan


def _plan_admin_status(p: _Planner, event: AdminStatusChange):
    order = p.order
    try:
        target = OrderStatus(event.target_status)
    except ValueError:
        p.reject(f"Unknown order status '{event.target_status}'")

    if target in REFUND_ONLY_STATUSES:
        p.reject(f"Status '{target.value}' is set by the refund workflow, not by admins")
    if target == order.status:
        p.reject(f"Order is already {target.value}")
    if target not in ORDER_TRANSITIONS.get(order.status, []):
        allowed = [s.value for s in ORDER_TRANSITIONS.get(order.status, [])]
        p.reject(f"Cannot move order from {order.status.value} to {target.value}. Allowed: {allowed}")
    if target == OrderStatus.OUT_FOR_DELIVERY and order.service_type != ServiceType.DELIVERY:
        p.reject(f"{order.service_type.value} orders are never out for delivery")

    method = event.actual_payment_method
    if method is not None:
        try:
            method = ActualPaymentMethod(method).value
        except ValueError:
            p.reject(f"Unknown payment method '{method}'")

    p.set_status(target)
    p.track(target, event.message or STATUS_MESSAGES.get(target, target.value))

    # Pickup counter collects cash or UPI at handover
    if order.is_pickup and method:
        if p.plan.payment_status == PaymentStatus.PENDING:
            p.mark_paid(method)
            p.track(target, f"Payment collected at counter ({method})")
        elif order.actual_payment_method is None:
            p.change(actual_payment_method=ActualPaymentMethod(method))

    if target == OrderStatus.DELIVERED:
        p.change(delivered_at=p.now)
        if (
            order.payment_method == PaymentMethod.COD
            and not order.is_pickup
            and p.plan.payment_status == PaymentStatus.PENDING
        ):
            p.mark_paid(ActualPaymentMethod.CASH.value)
            p.track(target, "Cash collected on delivery")
        if p.plan.payment_status == PaymentStatus.PAID:
            p.add(UpdateDailyRevenue, amount=order.total_amount, at=p.now)

    if target == OrderStatus.CANCELLED:
        if event.reason:
            p.change(cancellation_reason=event.reason)
        _plan_cancellation_money(p)
        if order.assigned_partner_id:
            p.add(
                Notify,
                template="partner_order_cancelled",
                channel="push",
                recipient=order.partner_push_token,
                params={"order_code": order.order_code, "partner_name": order.partner_name or ""},
            )

    p.sync_ledger()
    p.notify_customer(f"order_{target.value}", reason=event.reason or "")
    p.emit(bus.ORDERS, bus.DASHBOARD)


def _plan_cancellation_money(p: _Planner):
    order = p.order
    if p.plan.payment_status == PaymentStatus.PAID and order.payment_ref:
        p.set_payment(PaymentStatus.REFUND_PROCESSING)
        p.set_refund(RefundStatus.PENDING)
        p.change(
            refund_requested_at=p.now,
            refund_amount=order.total_amount,
            refund_error=None,
        )
        p.track("refund_processing", f"Refund of {format_amount(order.total_amount)} initiated")
        p.add(ScheduleRefund)
        p.notify_customer("refund_initiated")
    elif order.payment_method == PaymentMethod.COD and p.plan.payment_status == PaymentStatus.PENDING:
        p.set_payment(PaymentStatus.CANCELLED)


def _plan_payment_captured(
    p: _Planner,
    payment_ref: Optional[str],
    gateway_order_id: Optional[str],
    amount: Optional[int],
):
    order = p.order
    if not payment_ref:
        p.reject("Payment reference is required")
    if order.payment_status != PaymentStatus.PENDING or order.status != OrderStatus.PENDING:
        p.reject(
            f"Payment already recorded for order in state "
            f"{order.status.value}/{order.payment_status.value}"
        )

    # A capture only counts for the intent created for this order, in full
    intent = gateway_order_id or payment_ref
    if order.gateway_order_id and intent != order.gateway_order_id:
        p.reject(
            f"Payment {intent} does not belong to this order (expected {order.gateway_order_id})",
            PaymentMismatch,
        )
    if amount is None:
        p.reject("Captured amount is required", PaymentMismatch)
    if amount < order.total_amount:
        p.reject(
            f"Captured {format_amount(amount)} is less than the order total {format_amount(order.total_amount)}",
            PaymentMismatch,
        )

    p.change(payment_ref=payment_ref)
    if gateway_order_id:
        p.change(gateway_order_id=gateway_order_id)
    p.set_status(OrderStatus.CONFIRMED)
    p.mark_paid(ActualPaymentMethod.UPI.value)
    p.track(OrderStatus.CONFIRMED, f"Payment received ({payment_ref})")
    p.sync_ledger()
    p.notify_customer("order_confirmed")
    p.emit(bus.ORDERS, bus.DASHBOARD)


def _plan_webhook(p: _Planner, event: PaymentWebhook):
    if event.kind not in WEBHOOK_KINDS:
        p.reject(f"Unknown webhook kind '{event.kind}'")

    if event.kind == WEBHOOK_PAYMENT_CAPTURED:
        _plan_payment_captured(p, event.payment_ref, None, event.amount)
    elif event.kind == WEBHOOK_PAYMENT_FAILED:
        if p.order.payment_status != PaymentStatus.PENDING:
            p.reject(f"Payment is {p.order.payment_status.value}, not pending")
        p.set_payment(PaymentStatus.FAILED)
        p.track("payment_failed", event.failure_reason or "Payment failed")
        p.notify_customer("payment_failed")
        p.emit(bus.ORDERS)
    elif event.kind == WEBHOOK_REFUND_PROCESSED:
        if p.order.refund_status not in REFUND_IN_FLIGHT | {RefundStatus.FAILED}:
            p.reject(f"No refund in flight (refund is {p.order.refund_status.value})")
        _plan_refund_succeeded(p, event.refund_id, event.amount, from_gateway_call=False)
    elif event.kind == WEBHOOK_REFUND_FAILED:
        if p.order.refund_status not in REFUND_IN_FLIGHT:
            p.reject(f"No refund in flight (refund is {p.order.refund_status.value})")
        _plan_refund_failed(p, event.failure_reason or "Refund failed at gateway")


def _plan_refund_succeeded(p: _Planner, refund_id, amount, from_gateway_call: bool):
    order = p.order
    if order.refund_status == RefundStatus.COMPLETED:
        p.reject("Refund already completed")
    if from_gateway_call and order.refund_status == RefundStatus.NONE:
        p.reject("No refund was requested for this order")

    amount = amount if amount is not None else (order.refund_amount or order.total_amount)
    p.set_status(OrderStatus.REFUNDED)
    p.set_payment(PaymentStatus.REFUNDED)
    p.set_refund(RefundStatus.COMPLETED)
    p.change(
        refund_id=refund_id or order.refund_id,
        refund_amount=amount,
        refund_processed_at=p.now,
        refund_error=None,
    )
    suffix = f" ({refund_id})" if refund_id else ""
    p.track(OrderStatus.REFUNDED, f"Refund of {format_amount(amount)} processed{suffix}")
    p.sync_ledger()
    p.notify_customer("refund_completed", amount=format_amount(amount))
    p.emit(bus.ORDERS, bus.DASHBOARD)


def _plan_refund_failed(p: _Planner, reason: str):
    order = p.order
    if order.refund_status not in REFUND_IN_FLIGHT:
        p.reject(f"No refund in flight (refund is {order.refund_status.value})")

    p.set_status(OrderStatus.REFUND_FAILED)
    p.set_payment(PaymentStatus.REFUND_FAILED)
    p.set_refund(RefundStatus.FAILED)
    p.change(refund_error=reason)
    p.track(OrderStatus.REFUND_FAILED, f"Refund failed: {reason}")
    p.sync_ledger()
    p.notify_customer("refund_delayed")
    p.emit(bus.ORDERS, bus.DASHBOARD)


def _plan_refund_approved(p: _Planner, event: RefundApproved):
    order = p.order
    if order.refund_status not in (RefundStatus.PENDING, RefundStatus.SCHEDULED, RefundStatus.FAILED):
        p.reject(f"Refund is {order.refund_status.value}; only pending, scheduled or failed refunds can be approved")

    note = f": {event.note}" if event.note else ""
    if order.payment_ref:
        if order.status != OrderStatus.CANCELLED:
            p.set_status(OrderStatus.CANCELLED)
        p.set_payment(PaymentStatus.REFUND_PROCESSING)
        p.set_refund(RefundStatus.PENDING)
        p.change(refund_error=None, refund_requested_at=p.now)
        if order.refund_status == RefundStatus.FAILED:
            # The failed attempt's key is spent at the gateway
            p.change(refund_attempt=order.refund_attempt + 1)
        p.track("refund_processing", f"Refund approved by admin{note}")
        p.add(ScheduleRefund, delay=0)
        p.emit(bus.ORDERS)
        return

    # No gateway payment to reverse: cash handed back in person
    amount = order.refund_amount or order.total_amount
    p.set_status(OrderStatus.REFUNDED)
    p.set_payment(PaymentStatus.REFUNDED)
    p.set_refund(RefundStatus.COMPLETED)
    p.change(refund_amount=amount, refund_processed_at=p.now, refund_error=None)
    p.track(OrderStatus.REFUNDED, f"Refund of {format_amount(amount)} completed manually{note}")
    p.sync_ledger()
    p.notify_customer("refund_completed", amount=format_amount(amount))
    p.emit(bus.ORDERS, bus.DASHBOARD)


def _plan_refund_rejected(p: _Planner, event: RefundRejected):
    order = p.order
    if order.refund_status not in REFUND_IN_FLIGHT:
        p.reject(f"Refund is {order.refund_status.value}; only pending or scheduled refunds can be rejected")

    p.set_refund(RefundStatus.REJECTED)
    p.set_payment(PaymentStatus.PAID)
    p.track("refund_rejected", f"Refund rejected{': ' + event.reason if event.reason else ''}")
    p.add(CancelScheduledRefund)
    p.notify_customer("refund_rejected", reason=event.reason or "")
    p.emit(bus.ORDERS)


def _plan_assignment(p: _Planner, event: DeliveryAssigned):
    order = p.order
    if order.status in TERMINAL_STATUSES or order.status == OrderStatus.REFUND_FAILED:
        p.reject(f"Cannot assign a partner to a {order.status.value} order")
    if order.service_type != ServiceType.DELIVERY:
        p.reject(f"{order.service_type.value} orders have no delivery partner")

    contact = event.partner_contact or {}
    p.change(
        assigned_partner_id=event.partner_id,
        partner_name=event.partner_name,
        assigned_at=p.now,
    )
    p.track(order.status, f"Assigned to delivery partner {event.partner_name}")
    p.add(UpdateLedgerPartner, partner_name=event.partner_name)

    params = {
        "order_code": order.order_code,
        "partner_name": event.partner_name,
        "customer_name": order.customer_name or "",
        "customer_phone": order.customer_phone,
        "address": order.delivery_address or order.customer_address or "",
        "amount": format_amount(order.total_amount),
    }
    discriminator = str(event.partner_id)
    if contact.get("push_token"):
        p.add(Notify, template="partner_assigned", channel="push", recipient=contact["push_token"],
              params=params, discriminator=discriminator)
    if contact.get("email"):
        p.add(Notify, template="partner_assigned", channel="email", recipient=contact["email"],
              params=params, discriminator=discriminator)
    p.emit(bus.ORDERS)


def _plan_delivery_time(p: _Planner, event: DeliveryTimeSet):
    order = p.order
    if order.status in TERMINAL_STATUSES or order.status == OrderStatus.REFUND_FAILED:
        p.reject(f"Cannot set delivery time on a {order.status.value} order")

    p.change(estimated_delivery_at=event.estimated_at)
    p.track(order.status, f"Estimated delivery at {event.estimated_at.isoformat()}")
    p.notify_customer(
        "delivery_time_updated",
        discriminator=event.estimated_at.isoformat(),
        estimated_at=event.estimated_at.isoformat(),
    )
    p.emit(bus.ORDERS)


# =============================================================================
# SERVICE
# =============================================================================

@dataclass
class TransitionResult:
    order: OrderView
    effects: List[Effect]
    plan: TransitionPlan


class OrderLifecycleService:
    """
    Applies lifecycle events to stored orders.

    The per-order lock covers load, plan and commit only. Effects are
    dispatched after the lock is released so no external call runs inside it.
    """

    MAX_STALE_RETRIES = 3

    def __init__(self, store: OrderStore, dispatcher=None):
        self.store = store
        self.dispatcher = dispatcher

    async def apply_transition(
        self,
        order_code: str,
        event: LifecycleEvent,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = now or utcnow()

        for attempt in range(1, self.MAX_STALE_RETRIES + 1):
            try:
                async with self.store.locked(order_code):
                    async with self.store.session() as db:
                        order = await self.store.load(db, order_code)
                        plan = plan_transition(OrderView.from_model(order), event, now)
                        self.store.apply_plan(order, plan, now)
                        await db.flush()
                        view = OrderView.from_model(order)
                break
            except StaleDataError:
                logger.warning(
                    f"Order {order_code} changed concurrently while applying "
                    f"{type(event).__name__} (attempt {attempt}/{self.MAX_STALE_RETRIES})"
                )
        else:
            raise StaleOrderError(
                f"Order {order_code} kept changing underneath {type(event).__name__}",
                details={"order_code": order_code, "event": type(event).__name__},
            )

        logger.info(
            f"Order {order_code} {plan.event}: "
            f"{plan.from_state['status']}/{plan.from_state['payment_status']}/{plan.from_state['refund_status']} -> "
            f"{view.status.value}/{view.payment_status.value}/{view.refund_status.value}"
        )

        if self.dispatcher is not None:
            await self.dispatcher.dispatch(plan.effects, view)

        return TransitionResult(order=view, effects=plan.effects, plan=plan)

"""
Order Store

Single source of truth for order state. All writes to one order go through
``locked(order_code)`` plus the optimistic ``version`` column, so a webhook
and an admin action racing on the same order are applied one after another.

Readers get ``OrderView`` snapshots, never live ORM rows, so nothing outside
this module can mutate an order without going through a transition.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update

from orderflow.core.database import get_db_session
from orderflow.core.locks import KeyedLockManager
from orderflow.core.exceptions import OrderNotFound
from orderflow.core.utils import ensure_utc, utcnow
from orderflow.services.effects import AppendTracking, SetPaymentPaid
from orderflow.models.order import (
    Order,
    OrderTrackingEvent,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ServiceType,
    PaymentMethod,
    ActualPaymentMethod,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemView:
    name: str
    unit_price: int
    quantity: int
    unit: Optional[str] = None
    unit_quantity: Optional[float] = None
    category: Optional[str] = None
    catalog_ref: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class TrackingEntry:
    seq: int
    status: str
    message: Optional[str]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class OrderView:
    """Immutable snapshot of an order row."""
    order_code: str
    status: OrderStatus
    payment_status: PaymentStatus
    refund_status: RefundStatus
    service_type: ServiceType
    payment_method: PaymentMethod
    total_amount: int
    customer_phone: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_address: Optional[str] = None
    actual_payment_method: Optional[ActualPaymentMethod] = None
    gateway_order_id: Optional[str] = None
    payment_ref: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_error: Optional[str] = None
    refund_attempt: int = 0
    cancellation_reason: Optional[str] = None
    assigned_partner_id: Optional[int] = None
    partner_name: Optional[str] = None
    partner_push_token: Optional[str] = None
    assigned_at: Optional[datetime] = None
    is_hidden: bool = False
    status_updated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 1
    items: Tuple[ItemView, ...] = field(default_factory=tuple)
    tracking: Tuple[TrackingEntry, ...] = field(default_factory=tuple)

    @property
    def is_pickup(self) -> bool:
        return self.service_type == ServiceType.PICKUP

    @property
    def state(self) -> dict:
        return {
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "refund_status": self.refund_status.value,
        }

    @classmethod
    def from_model(cls, order: Order) -> "OrderView":
        return cls(
            order_code=order.order_code,
            status=OrderStatus(order.status),
            payment_status=PaymentStatus(order.payment_status),
            refund_status=RefundStatus(order.refund_status),
            service_type=ServiceType(order.service_type),
            payment_method=PaymentMethod(order.payment_method),
            total_amount=order.total_amount,
            customer_phone=order.customer_phone,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            customer_address=order.customer_address,
            delivery_address=order.delivery_address,
            actual_payment_method=(
                ActualPaymentMethod(order.actual_payment_method) if order.actual_payment_method else None
            ),
            gateway_order_id=order.gateway_order_id,
            payment_ref=order.payment_ref,
            refund_id=order.refund_id,
            refund_amount=order.refund_amount,
            refund_error=order.refund_error,
            refund_attempt=order.refund_attempt or 0,
            cancellation_reason=order.cancellation_reason,
            assigned_partner_id=order.assigned_partner_id,
            partner_name=order.partner_name,
            partner_push_token=order.partner.push_token if order.partner is not None else None,
            assigned_at=ensure_utc(order.assigned_at),
            is_hidden=bool(order.is_hidden),
            status_updated_at=ensure_utc(order.status_updated_at),
            delivered_at=ensure_utc(order.delivered_at),
            estimated_delivery_at=ensure_utc(order.estimated_delivery_at),
            paid_at=ensure_utc(order.paid_at),
            created_at=ensure_utc(order.created_at),
            version=order.version or 1,
            items=tuple(
                ItemView(
                    name=i.name,
                    unit_price=i.unit_price,
                    quantity=i.quantity,
                    unit=i.unit,
                    unit_quantity=i.unit_quantity,
                    category=i.category,
                    catalog_ref=i.catalog_ref,
                )
                for i in order.items
            ),
            tracking=tuple(
                TrackingEntry(seq=t.seq, status=t.status, message=t.message, created_at=ensure_utc(t.created_at))
                for t in sorted(order.tracking, key=lambda t: t.seq)
            ),
        )


class OrderStore:
    def __init__(self, session_factory=None, locks: Optional[KeyedLockManager] = None):
        self.session_factory = session_factory
        self.locks = locks or KeyedLockManager()

    def session(self):
        return get_db_session(self.session_factory)

    def locked(self, order_code: str):
        """Per-order critical section. Never hold it across gateway/ledger/notifier calls."""
        return self.locks.hold(order_code)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    async def load(db, order_code: str) -> Order:
        result = await db.execute(select(Order).where(Order.order_code == order_code))
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_code)
        return order

    async def get(self, order_code: str) -> OrderView:
        async with self.session() as db:
            return OrderView.from_model(await self.load(db, order_code))

    async def find_by_payment_ref(self, payment_ref: str) -> Optional[OrderView]:
        async with self.session() as db:
            result = await db.execute(
                select(Order).where(
                    (Order.payment_ref == payment_ref) | (Order.gateway_order_id == payment_ref)
                )
            )
            order = result.scalars().first()
            return OrderView.from_model(order) if order else None

    async def list_by_refund_status(
        self,
        statuses: Iterable[RefundStatus],
        include_hidden: bool = False,
    ) -> List[OrderView]:
        statuses = [RefundStatus(s) for s in statuses]
        async with self.session() as db:
            query = select(Order).where(Order.refund_status.in_(statuses))
            if not include_hidden:
                query = query.where(Order.is_hidden.is_(False))
            result = await db.execute(query.order_by(Order.refund_requested_at.desc(), Order.id.desc()))
            return [OrderView.from_model(o) for o in result.scalars().all()]

    async def list_by_status(self, statuses: Iterable[OrderStatus], include_hidden: bool = False) -> List[OrderView]:
        statuses = [OrderStatus(s) for s in statuses]
        async with self.session() as db:
            query = select(Order).where(Order.status.in_(statuses))
            if not include_hidden:
                query = query.where(Order.is_hidden.is_(False))
            result = await db.execute(query.order_by(Order.created_at))
            return [OrderView.from_model(o) for o in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @staticmethod
    def apply_plan(order: Order, plan, now: Optional[datetime] = None) -> None:
        """
        Apply a TransitionPlan to a loaded row: field changes first, then the
        store-level effects in declaration order.
        """
        now = now or utcnow()
        for name, value in plan.changes.items():
            setattr(order, name, value)

        next_seq = max((t.seq for t in order.tracking), default=0) + 1
        for effect in plan.effects:
            if not effect.in_store:
                continue
            if isinstance(effect, SetPaymentPaid):
                order.payment_status = PaymentStatus.PAID
                order.paid_at = order.paid_at or now
                if effect.method:
                    order.actual_payment_method = ActualPaymentMethod(effect.method)
            elif isinstance(effect, AppendTracking):
                order.tracking.append(
                    OrderTrackingEvent(
                        seq=next_seq,
                        status=effect.status,
                        message=effect.message,
                        created_at=now,
                    )
                )
                next_seq += 1

    async def mark_refund_scheduled(self, order_code: str) -> bool:
        """pending -> scheduled. Conditional, so a concurrent reject/approve wins."""
        async with self.locked(order_code):
            async with self.session() as db:
                result = await db.execute(
                    update(Order)
                    .where(
                        Order.order_code == order_code,
                        Order.refund_status == RefundStatus.PENDING,
                    )
                    .values(
                        refund_status=RefundStatus.SCHEDULED,
                        version=Order.version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

"""
Order models

Three orthogonal state axes live on the order row:
- status: kitchen/fulfilment lifecycle
- payment_status: money collected or returned
- refund_status: refund sub-workflow

Monetary fields are integers in the smallest currency unit (paise/cents),
matching what the payment gateway expects.

DB Compliance:
- Indexes on the retention scan predicates (status, status_updated_at, is_hidden)
- Timezone-aware UTC timestamps
- version column for optimistic concurrency, bumped on every committed update
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Float,
    ForeignKey, Index, Enum,
)
from sqlalchemy.orm import relationship

from orderflow.core.database import Base
from orderflow.core.utils import utcnow


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUND_PROCESSING = "refund_processing"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class RefundStatus(str, PyEnum):
    NONE = "none"
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class ServiceType(str, PyEnum):
    DELIVERY = "delivery"
    PICKUP = "pickup"
    DINE_IN = "dine_in"


class PaymentMethod(str, PyEnum):
    UPI = "upi"
    COD = "cod"


class ActualPaymentMethod(str, PyEnum):
    CASH = "cash"
    UPI = "upi"


TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

# Refund states in which money may still move
REFUND_IN_FLIGHT = frozenset({
    RefundStatus.PENDING,
    RefundStatus.SCHEDULED,
})


def _enum(enum_cls, name):
    # Store the lowercase values, not the member names
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ORDER
# =============================================================================

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)

    # External identity, immutable. Format: ORD-YYYYMMDD-XXXXXX (S prefix for pickup)
    order_code = Column(String(32), unique=True, index=True, nullable=False)

    # Customer snapshot at order time
    customer_phone = Column(String(20), nullable=False, index=True)
    customer_name = Column(String(120))
    customer_email = Column(String(255))
    customer_address = Column(Text)
    delivery_address = Column(Text)
    delivery_lat = Column(Float)
    delivery_lng = Column(Float)
    notes = Column(Text)

    # Pricing (smallest currency unit)
    total_amount = Column(Integer, nullable=False)

    # State axes
    status = Column(_enum(OrderStatus, "order_status"), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING,
                            nullable=False, index=True)
    refund_status = Column(_enum(RefundStatus, "refund_status"), default=RefundStatus.NONE,
                           nullable=False, index=True)

    service_type = Column(_enum(ServiceType, "service_type"), default=ServiceType.DELIVERY, nullable=False)
    payment_method = Column(_enum(PaymentMethod, "payment_method"), default=PaymentMethod.UPI, nullable=False)
    actual_payment_method = Column(_enum(ActualPaymentMethod, "actual_payment_method"), nullable=True)

    # Gateway references
    gateway_order_id = Column(String(100), index=True)
    payment_ref = Column(String(100), index=True)
    refund_id = Column(String(100))
    refund_amount = Column(Integer)
    refund_error = Column(Text)
    # Bumped per logical refund attempt; part of the gateway idempotency key
    refund_attempt = Column(Integer, default=0, nullable=False)
    refund_requested_at = Column(DateTime(timezone=True))
    refund_processed_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)

    # Delivery assignment
    assigned_partner_id = Column(Integer, ForeignKey("delivery_partners.id", ondelete="SET NULL"), nullable=True)
    assigned_at = Column(DateTime(timezone=True))
    partner_name = Column(String(120))

    # Retention
    is_hidden = Column(Boolean, default=False, nullable=False, index=True)
    status_updated_at = Column(DateTime(timezone=True), index=True)

    # Timestamps
    paid_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    estimated_delivery_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False, default=1)

    # Relationships
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    tracking = relationship(
        "OrderTrackingEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderTrackingEvent.seq",
    )
    partner = relationship("DeliveryPartner", lazy="selectin")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_orders_status_status_updated_at", "status", "status_updated_at"),
        Index("ix_orders_hidden_status_updated_at", "is_hidden", "status_updated_at"),
    )

    @property
    def is_pickup(self) -> bool:
        return self.service_type == ServiceType.PICKUP

    def __repr__(self):
        return (
            f"<Order {self.order_code} {self.status.value if self.status else None}/"
            f"{self.payment_status.value if self.payment_status else None}/"
            f"{self.refund_status.value if self.refund_status else None}>"
        )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    # Snapshot of the menu item at time of order
    name = Column(String(200), nullable=False)
    unit_price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit = Column(String(20))
    unit_quantity = Column(Float)
    category = Column(String(100))
    catalog_ref = Column(String(64))  # Menu item id, may no longer exist

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class OrderTrackingEvent(Base):
    """
    Append-only audit trail.

    Rows are never updated. ``seq`` is assigned per order in the order
    transitions were applied.
    """
    __tablename__ = "order_tracking_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="tracking")

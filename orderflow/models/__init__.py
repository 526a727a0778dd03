from orderflow.models.delivery_partner import DeliveryPartner
from orderflow.models.customer import Customer
from orderflow.models.order import (
    Order,
    OrderItem,
    OrderTrackingEvent,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ServiceType,
    PaymentMethod,
    ActualPaymentMethod,
    TERMINAL_STATUSES,
    REFUND_IN_FLIGHT,
)
from orderflow.models.statistics import DashboardStats, ReportHistory, DASHBOARD_STATS_ID

__all__ = [
    "DeliveryPartner",
    "Customer",
    "Order",
    "OrderItem",
    "OrderTrackingEvent",
    "OrderStatus",
    "PaymentStatus",
    "RefundStatus",
    "ServiceType",
    "PaymentMethod",
    "ActualPaymentMethod",
    "TERMINAL_STATUSES",
    "REFUND_IN_FLIGHT",
    "DashboardStats",
    "ReportHistory",
    "DASHBOARD_STATS_ID",
]

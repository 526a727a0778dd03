"""
Order Schemas

Pydantic models for order API requests and responses.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from orderflow.models.order import ActualPaymentMethod, PaymentMethod, ServiceType


# ==================== Requests ====================


class OrderItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    unit_price: int = Field(..., ge=0, description="Smallest currency unit")
    quantity: int = Field(..., gt=0)
    unit: Optional[str] = Field(None, max_length=20)
    unit_quantity: Optional[float] = None
    category: Optional[str] = Field(None, max_length=100)
    catalog_ref: Optional[str] = Field(None, max_length=64)


class OrderCreate(BaseModel):
    customer_phone: str = Field(..., max_length=20)
    customer_name: Optional[str] = Field(None, max_length=120)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_address: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    notes: Optional[str] = None
    service_type: ServiceType = ServiceType.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.COD
    items: List[OrderItemCreate] = Field(..., min_length=1)

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v):
        digits = re.sub(r"\D", "", v)
        if len(digits) < 10 or len(digits) > 15:
            raise ValueError("Phone number must be 10-15 digits")
        return v


class StatusUpdate(BaseModel):
    status: str
    message: Optional[str] = Field(None, max_length=500)
    reason: Optional[str] = Field(None, max_length=500)
    actual_payment_method: Optional[ActualPaymentMethod] = None


class AssignPartner(BaseModel):
    partner_id: int


class DeliveryTimeUpdate(BaseModel):
    estimated_at: datetime


class RefundDecision(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


# ==================== Responses ====================


class OrderItemResponse(BaseModel):
    name: str
    unit_price: int
    quantity: int
    unit: Optional[str] = None
    category: Optional[str] = None


class TrackingResponse(BaseModel):
    seq: int
    status: str
    message: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    order_code: str
    status: str
    payment_status: str
    refund_status: str
    service_type: str
    payment_method: str
    actual_payment_method: Optional[str] = None
    total_amount: int
    customer_phone: str
    customer_name: Optional[str] = None
    payment_ref: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_error: Optional[str] = None
    cancellation_reason: Optional[str] = None
    partner_name: Optional[str] = None
    estimated_delivery_at: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    is_hidden: bool = False
    items: List[OrderItemResponse] = []
    tracking: List[TrackingResponse] = []

    @classmethod
    def from_view(cls, view) -> "OrderResponse":
        return cls(
            order_code=view.order_code,
            status=view.status.value,
            payment_status=view.payment_status.value,
            refund_status=view.refund_status.value,
            service_type=view.service_type.value,
            payment_method=view.payment_method.value,
            actual_payment_method=view.actual_payment_method.value if view.actual_payment_method else None,
            total_amount=view.total_amount,
            customer_phone=view.customer_phone,
            customer_name=view.customer_name,
            payment_ref=view.payment_ref,
            refund_id=view.refund_id,
            refund_amount=view.refund_amount,
            refund_error=view.refund_error,
            cancellation_reason=view.cancellation_reason,
            partner_name=view.partner_name,
            estimated_delivery_at=view.estimated_delivery_at,
            status_updated_at=view.status_updated_at,
            created_at=view.created_at,
            is_hidden=view.is_hidden,
            items=[
                OrderItemResponse(
                    name=i.name, unit_price=i.unit_price, quantity=i.quantity, unit=i.unit, category=i.category,
                )
                for i in view.items
            ],
            tracking=[
                TrackingResponse(seq=t.seq, status=t.status, message=t.message, created_at=t.created_at)
                for t in view.tracking
            ],
        )


class OrderPlacedResponse(BaseModel):
    order: OrderResponse
    client_secret: Optional[str] = None


class TransitionResponse(BaseModel):
    order: OrderResponse
    effects: List[str] = []


class RefundList(BaseModel):
    orders: List[OrderResponse]
    total: int


class DashboardResponse(BaseModel):
    cumulative: Dict[str, int]
    today: Dict[str, Any]
    last_updated: Optional[str] = None

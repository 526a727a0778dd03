"""
Order routes

Thin adapters from admin requests onto lifecycle events. Business rules live
in the lifecycle engine; InvalidTransition and OrderNotFound are mapped to
409 and 404 by the app-level handlers.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from orderflow.api.deps import get_runtime
from orderflow.models.order import RefundStatus
from orderflow.runtime import Runtime
from orderflow.schemas.orders import (
    AssignPartner,
    DeliveryTimeUpdate,
    OrderCreate,
    OrderPlacedResponse,
    OrderResponse,
    RefundDecision,
    RefundList,
    StatusUpdate,
    TransitionResponse,
)
from orderflow.services.lifecycle import (
    AdminStatusChange,
    DeliveryTimeSet,
    RefundApproved,
    RefundRejected,
)
from orderflow.services.order_service import NewOrder, NewOrderItem

logger = logging.getLogger(__name__)

router = APIRouter()


def _transition_response(result) -> TransitionResponse:
    return TransitionResponse(
        order=OrderResponse.from_view(result.order),
        effects=[type(e).__name__ for e in result.effects],
    )


@router.post("", response_model=OrderPlacedResponse, status_code=status.HTTP_201_CREATED)
async def create_order(order_data: OrderCreate, runtime: Runtime = Depends(get_runtime)):
    """Place an order"""
    request = NewOrder(
        customer_phone=order_data.customer_phone,
        customer_name=order_data.customer_name,
        customer_email=order_data.customer_email,
        customer_address=order_data.customer_address,
        delivery_address=order_data.delivery_address,
        delivery_lat=order_data.delivery_lat,
        delivery_lng=order_data.delivery_lng,
        notes=order_data.notes,
        service_type=order_data.service_type,
        payment_method=order_data.payment_method,
        items=[NewOrderItem(**item.model_dump()) for item in order_data.items],
    )
    placed = await runtime.orders.place_order(request)
    return OrderPlacedResponse(order=OrderResponse.from_view(placed.order), client_secret=placed.client_secret)


@router.get("/refunds", response_model=RefundList)
async def list_refunds(
    refund_status: Optional[str] = Query(None, alias="status"),
    runtime: Runtime = Depends(get_runtime),
):
    """Orders by refund status (default: everything awaiting an admin decision)"""
    if refund_status:
        try:
            statuses = [RefundStatus(refund_status)]
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown refund status '{refund_status}'")
    else:
        statuses = [RefundStatus.PENDING, RefundStatus.SCHEDULED, RefundStatus.FAILED]

    orders = await runtime.store.list_by_refund_status(statuses)
    return RefundList(orders=[OrderResponse.from_view(o) for o in orders], total=len(orders))


@router.get("/{order_code}", response_model=OrderResponse)
async def get_order(order_code: str, runtime: Runtime = Depends(get_runtime)):
    """Get single order"""
    return OrderResponse.from_view(await runtime.store.get(order_code))


@router.put("/{order_code}/status", response_model=TransitionResponse)
async def update_status(order_code: str, update: StatusUpdate, runtime: Runtime = Depends(get_runtime)):
    event = AdminStatusChange(
        target_status=update.status,
        message=update.message,
        actual_payment_method=update.actual_payment_method.value if update.actual_payment_method else None,
        reason=update.reason,
    )
    result = await runtime.lifecycle.apply_transition(order_code, event)
    return _transition_response(result)


@router.put("/{order_code}/assign", response_model=TransitionResponse)
async def assign_partner(order_code: str, body: AssignPartner, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.orders.assign_partner(runtime.lifecycle, order_code, body.partner_id)
    return _transition_response(result)


@router.put("/{order_code}/delivery-time", response_model=TransitionResponse)
async def set_delivery_time(order_code: str, body: DeliveryTimeUpdate, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.lifecycle.apply_transition(order_code, DeliveryTimeSet(estimated_at=body.estimated_at))
    return _transition_response(result)


@router.post("/{order_code}/refund/approve", response_model=TransitionResponse)
async def approve_refund(
    order_code: str,
    body: Optional[RefundDecision] = None,
    runtime: Runtime = Depends(get_runtime),
):
    note = body.note if body else None
    result = await runtime.lifecycle.apply_transition(order_code, RefundApproved(note=note))
    logger.info(f"Refund for {order_code} approved by admin")
    return _transition_response(result)


@router.post("/{order_code}/refund/reject", response_model=TransitionResponse)
async def reject_refund(
    order_code: str,
    body: Optional[RefundDecision] = None,
    runtime: Runtime = Depends(get_runtime),
):
    reason = body.note if body else None
    result = await runtime.lifecycle.apply_transition(order_code, RefundRejected(reason=reason))
    logger.info(f"Refund for {order_code} rejected by admin")
    return _transition_response(result)

"""
Order placement and partner assignment.

Placement is the only place an order row is created. Everything after that
goes through the lifecycle engine.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from orderflow.core.exceptions import PartnerUnavailable
from orderflow.core.utils import business_local_time, format_amount, utcnow
from orderflow.core import events as bus
from orderflow.models.customer import Customer
from orderflow.models.delivery_partner import DeliveryPartner
from orderflow.models.order import (
    Order,
    OrderItem,
    OrderTrackingEvent,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ServiceType,
    PaymentMethod,
)
from orderflow.services.effects import EmitEvent, Notify, SyncLedger
from orderflow.services.lifecycle import BUCKET_NEW, DeliveryAssigned
from orderflow.services.order_store import OrderView

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


def generate_order_code(service_type: ServiceType, now: Optional[datetime] = None) -> str:
    """ORD-YYYYMMDD-XXXXXX (business-local date), SORD-... for pickup."""
    local = business_local_time(now)
    code = f"ORD-{local.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"
    return f"S{code}" if service_type == ServiceType.PICKUP else code


@dataclass
class NewOrderItem:
    name: str
    unit_price: int
    quantity: int
    unit: Optional[str] = None
    unit_quantity: Optional[float] = None
    category: Optional[str] = None
    catalog_ref: Optional[str] = None


@dataclass
class NewOrder:
    customer_phone: str
    items: List[NewOrderItem]
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    notes: Optional[str] = None
    service_type: ServiceType = ServiceType.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.COD

    @property
    def total_amount(self) -> int:
        return sum(i.unit_price * i.quantity for i in self.items)


@dataclass
class PlacedOrder:
    order: OrderView
    client_secret: Optional[str] = None
    new_customer: bool = False
    effects: list = field(default_factory=list)


class OrderService:
    def __init__(self, store, statistics, dispatcher=None, gateway_client=None):
        self.store = store
        self.statistics = statistics
        self.dispatcher = dispatcher
        self.gateway_client = gateway_client

    async def place_order(self, request: NewOrder, now: Optional[datetime] = None) -> PlacedOrder:
        if not request.items:
            raise ValueError("An order needs at least one item")
        if any(i.quantity <= 0 or i.unit_price < 0 for i in request.items):
            raise ValueError("Item quantities must be positive and prices non-negative")

        now = now or utcnow()
        service_type = ServiceType(request.service_type)
        payment_method = PaymentMethod(request.payment_method)
        total = request.total_amount

        last_error = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            order_code = generate_order_code(service_type, now)

            intent = None
            if payment_method == PaymentMethod.UPI and self.gateway_client is not None:
                # No row is written if the gateway refuses the intent
                intent = await self.gateway_client.create_intent(total, order_code)

            try:
                view, new_customer = await self._insert(request, order_code, service_type,
                                                        payment_method, total, intent, now)
                break
            except IntegrityError as e:
                last_error = e
                logger.warning(f"Order code collision on {order_code} (attempt {attempt}/{MAX_CODE_ATTEMPTS})")
        else:
            raise RuntimeError(f"Could not allocate a unique order code: {last_error}")

        logger.info(
            f"Order {view.order_code} placed: {format_amount(total)} "
            f"{payment_method.value}/{service_type.value} for {request.customer_phone}"
        )

        effects = [
            SyncLedger(order_code=view.order_code, target_status=view.status.value, bucket=BUCKET_NEW),
            EmitEvent(order_code=view.order_code, target_status=view.status.value, name=bus.ORDERS),
            EmitEvent(order_code=view.order_code, target_status=view.status.value, name=bus.DASHBOARD),
        ]
        if new_customer:
            effects.append(EmitEvent(order_code=view.order_code, target_status=view.status.value, name=bus.CUSTOMERS))
        if payment_method == PaymentMethod.COD:
            # UPI orders are confirmed to the customer once payment lands
            effects.insert(1, Notify(
                order_code=view.order_code,
                target_status=view.status.value,
                template="order_confirmed",
                channel="whatsapp",
                recipient=view.customer_phone,
                params={
                    "order_code": view.order_code,
                    "customer_name": view.customer_name or "",
                    "amount": format_amount(view.total_amount),
                },
            ))
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(effects, view)

        return PlacedOrder(
            order=view,
            client_secret=intent.client_secret if intent else None,
            new_customer=new_customer,
            effects=effects,
        )

    async def _insert(self, request, order_code, service_type, payment_method, total, intent, now):
        async with self.store.session() as db:
            order = Order(
                order_code=order_code,
                customer_phone=request.customer_phone,
                customer_name=request.customer_name,
                customer_email=request.customer_email,
                customer_address=request.customer_address,
                delivery_address=request.delivery_address,
                delivery_lat=request.delivery_lat,
                delivery_lng=request.delivery_lng,
                notes=request.notes,
                total_amount=total,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                refund_status=RefundStatus.NONE,
                service_type=service_type,
                payment_method=payment_method,
                gateway_order_id=intent.gateway_order_id if intent else None,
                is_hidden=False,
                created_at=now,
                updated_at=now,
                items=[
                    OrderItem(
                        name=i.name,
                        unit_price=i.unit_price,
                        quantity=i.quantity,
                        unit=i.unit,
                        unit_quantity=i.unit_quantity,
                        category=i.category,
                        catalog_ref=i.catalog_ref,
                    )
                    for i in request.items
                ],
                tracking=[
                    OrderTrackingEvent(seq=1, status=OrderStatus.PENDING.value, message="Order placed", created_at=now),
                ],
            )
            db.add(order)
            await db.flush()

            new_customer = await self._upsert_customer(db, request, total, now)
            await self.statistics.record_order_placed(now, db=db)
            if new_customer:
                await self.statistics.record_customers(1, db=db)

            await db.refresh(order, attribute_names=["items", "tracking", "partner"])
            return OrderView.from_model(order), new_customer

    @staticmethod
    async def _upsert_customer(db, request, total: int, now: datetime) -> bool:
        result = await db.execute(select(Customer).where(Customer.phone == request.customer_phone))
        customer = result.scalar_one_or_none()
        if customer is None:
            db.add(Customer(
                phone=request.customer_phone,
                name=request.customer_name,
                email=request.customer_email,
                has_ordered=True,
                total_orders=1,
                total_spent=total,
                last_interaction_at=now,
                created_at=now,
            ))
            await db.flush()
            return True

        # A profile created by an earlier chat becomes a customer on first order
        first_order = not customer.has_ordered
        customer.has_ordered = True
        customer.total_orders = (customer.total_orders or 0) + 1
        customer.total_spent = (customer.total_spent or 0) + total
        customer.last_interaction_at = now
        if request.customer_name:
            customer.name = request.customer_name
        if request.customer_email:
            customer.email = request.customer_email
        return first_order

    async def assign_partner(self, lifecycle, order_code: str, partner_id: int, now: Optional[datetime] = None):
        """Resolve an active partner and apply DeliveryAssigned."""
        async with self.store.session() as db:
            partner = await db.get(DeliveryPartner, partner_id)
            if partner is None or not partner.is_active:
                raise PartnerUnavailable(partner_id)
            event = DeliveryAssigned(
                partner_id=partner.id,
                partner_name=partner.name,
                partner_contact={"push_token": partner.push_token, "email": partner.email, "phone": partner.phone},
            )
        return await lifecycle.apply_transition(order_code, event, now=now)

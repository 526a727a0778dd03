"""
Retention Pipeline

Three steps against the orders table, each a plain coroutine taking ``now``
so it can be driven directly with a controlled clock:

1. hide_completed (every few minutes)
   Terminal orders whose status_updated_at is older than HIDE_DELAY_MINUTES,
   not hidden, no refund in flight. Each order is claimed with a conditional
   ``UPDATE ... WHERE is_hidden = false`` in the same transaction as its
   rollup, so a repeated or overlapping scan never counts it twice.

2. delete_expired (daily)
   Hidden orders whose status_updated_at is older than RETENTION_DAYS.
   Statistics were captured at hide time; this only reclaims space.

3. prune_customers (daily)
   Profiles that never ordered, inactive for RETENTION_DAYS, with no
   remaining visible orders. Customers who ordered are kept for the count.

Plus reset_today (minute timer and startup): zero the today counters when
the stored date no longer matches.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, exists, select, update

from orderflow.core.config import settings
from orderflow.core.database import get_db_session
from orderflow.core.exceptions import RetentionSkip
from orderflow.core.utils import ensure_utc, utcnow
from orderflow.core import events as bus
from orderflow.models.customer import Customer
from orderflow.models.order import (
    Order,
    OrderItem,
    OrderTrackingEvent,
    REFUND_IN_FLIGHT,
    TERMINAL_STATUSES,
)
from orderflow.services.order_store import OrderView

logger = logging.getLogger(__name__)


def ensure_hideable(order, now: datetime, delay: Optional[timedelta] = None) -> None:
    """
    Raise RetentionSkip unless ``order`` may be hidden and rolled up at ``now``.
    """
    delay = delay if delay is not None else timedelta(minutes=settings.HIDE_DELAY_MINUTES)
    if order.is_hidden:
        raise RetentionSkip(f"{order.order_code} already hidden")
    if order.status not in TERMINAL_STATUSES:
        raise RetentionSkip(f"{order.order_code} is {order.status.value}, not terminal")
    if order.refund_status in REFUND_IN_FLIGHT:
        raise RetentionSkip(f"{order.order_code} has a refund in flight")
    stamp = ensure_utc(order.status_updated_at)
    if stamp is None:
        raise RetentionSkip(f"{order.order_code} has no terminal timestamp")
    if stamp > now - delay:
        raise RetentionSkip(f"{order.order_code} reached {order.status.value} less than {delay} ago")


class RetentionPipeline:
    def __init__(
        self,
        statistics,
        session_factory=None,
        events=None,
        hide_delay_minutes: Optional[int] = None,
        retention_days: Optional[int] = None,
    ):
        self.statistics = statistics
        self.session_factory = session_factory
        self.events = events
        self.hide_delay = timedelta(
            minutes=settings.HIDE_DELAY_MINUTES if hide_delay_minutes is None else hide_delay_minutes
        )
        self.retention = timedelta(days=settings.RETENTION_DAYS if retention_days is None else retention_days)

    def _session(self):
        return get_db_session(self.session_factory)

    async def _emit(self, *names):
        if self.events is None:
            return
        for name in names:
            await self.events.emit(name)

    # -------------------------------------------------------------------------
    # 1. Hide + rollup
    # -------------------------------------------------------------------------

    async def hide_completed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        cutoff = now - self.hide_delay
        summary = {"started_at": now.isoformat(), "candidates": 0, "hidden": 0, "skipped": 0, "revenue": 0}

        async with self._session() as db:
            result = await db.execute(
                select(Order).where(
                    Order.status.in_(list(TERMINAL_STATUSES)),
                    Order.is_hidden.is_(False),
                    Order.status_updated_at.isnot(None),
                    Order.status_updated_at < cutoff,
                    Order.refund_status.notin_(list(REFUND_IN_FLIGHT)),
                )
            )
            candidates = result.scalars().all()
            summary["candidates"] = len(candidates)

            claimed = []
            for order in candidates:
                view = OrderView.from_model(order)
                try:
                    ensure_hideable(view, now, self.hide_delay)
                except RetentionSkip as e:
                    summary["skipped"] += 1
                    logger.debug(f"[Retention] {e.message}")
                    continue

                claim = await db.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.is_hidden.is_(False))
                    .values(is_hidden=True, version=Order.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount == 1:
                    claimed.append(view)
                else:
                    summary["skipped"] += 1

            if claimed:
                rollup = await self.statistics.record_deletion_rollup(claimed, db=db)
                summary["revenue"] = rollup.revenue
            summary["hidden"] = len(claimed)

        summary["completed_at"] = utcnow().isoformat()
        if claimed:
            logger.info(f"[Retention] Hid {len(claimed)} completed orders, revenue +{summary['revenue']}")
            await self._emit(bus.ORDERS, bus.DASHBOARD)
        return summary

    # -------------------------------------------------------------------------
    # 2. Delete
    # -------------------------------------------------------------------------

    async def delete_expired(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        cutoff = now - self.retention
        summary = {"started_at": now.isoformat(), "deleted": 0}

        async with self._session() as db:
            result = await db.execute(
                select(Order.id).where(
                    Order.is_hidden.is_(True),
                    Order.status_updated_at.isnot(None),
                    Order.status_updated_at < cutoff,
                )
            )
            ids = [row[0] for row in result.all()]
            if ids:
                # Bulk deletes bypass ORM cascades
                await db.execute(delete(OrderTrackingEvent).where(OrderTrackingEvent.order_id.in_(ids)))
                await db.execute(delete(OrderItem).where(OrderItem.order_id.in_(ids)))
                deleted = await db.execute(
                    delete(Order).where(Order.id.in_(ids), Order.is_hidden.is_(True))
                )
                summary["deleted"] = deleted.rowcount

        summary["completed_at"] = utcnow().isoformat()
        if summary["deleted"]:
            logger.info(f"[Retention] Deleted {summary['deleted']} orders hidden for over {self.retention.days} days")
        else:
            logger.info("[Retention] No expired orders to delete")
        return summary

    # -------------------------------------------------------------------------
    # 3. Customer prune
    # -------------------------------------------------------------------------

    async def prune_customers(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        cutoff = now - self.retention
        summary = {"started_at": now.isoformat(), "deleted": 0}

        has_visible_orders = exists().where(
            Order.customer_phone == Customer.phone,
            Order.is_hidden.is_(False),
        )
        async with self._session() as db:
            result = await db.execute(
                delete(Customer)
                .where(
                    Customer.has_ordered.is_(False),
                    Customer.last_interaction_at < cutoff,
                    ~has_visible_orders,
                )
                .execution_options(synchronize_session=False)
            )
            summary["deleted"] = result.rowcount or 0

        summary["completed_at"] = utcnow().isoformat()
        if summary["deleted"]:
            logger.info(f"[Retention] Pruned {summary['deleted']} inactive customers")
            await self._emit(bus.CUSTOMERS)
        return summary

    # -------------------------------------------------------------------------
    # Today counters
    # -------------------------------------------------------------------------

    async def reset_today(self, now: Optional[datetime] = None) -> bool:
        reset = await self.statistics.reset_today_if_stale(now)
        if reset:
            await self._emit(bus.DASHBOARD)
        return reset

    async def run_daily_cleanup(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Delete + prune, each step isolated so one failure doesn't skip the other."""
        now = now or utcnow()
        results: Dict[str, Any] = {"started_at": now.isoformat(), "errors": []}

        for name, step in (("orders", self.delete_expired), ("customers", self.prune_customers)):
            try:
                results[name] = await step(now)
            except Exception as e:
                logger.error(f"[Retention] Daily cleanup step '{name}' failed: {e}", exc_info=True)
                results["errors"].append(f"{name}: {e}")

        results["completed_at"] = utcnow().isoformat()
        return results

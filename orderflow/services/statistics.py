"""
Statistics Aggregator

Owns the dashboard counters and the per-day report history. Nothing else
writes these tables.

- Cumulative counters (total orders, revenue, customers) are never reset.
  Orders move into them when hidden; the dashboard adds the live (not yet
  hidden) orders on top, so every order is counted exactly once.
- Today counters reset when the stored date marker no longer matches the
  business date; checked before every today update and by the midnight job.
- Rollups are additive and not deduplicated here. The retention hide step
  guarantees each order is rolled up once.

Counter updates are single SQL UPDATE statements (``col = col + n``) so
concurrent writers never lose increments.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy import and_, case, func, select, update

from orderflow.core.database import get_db_session
from orderflow.core.utils import business_date_string, utcnow
from orderflow.models.order import Order, OrderStatus, PaymentStatus, PaymentMethod
from orderflow.models.statistics import DashboardStats, ReportHistory, DASHBOARD_STATS_ID

logger = logging.getLogger(__name__)

# Statuses whose line items do not count as sold
_UNSOLD = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def counts_toward_revenue(order) -> bool:
    """Cumulative revenue: paid and not cancelled."""
    return order.payment_status == PaymentStatus.PAID and order.status not in _UNSOLD


@dataclass
class RollupSummary:
    orders: int = 0
    revenue: int = 0
    dates: Dict[str, int] = field(default_factory=dict)


class StatisticsAggregator:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, db=None):
        if db is not None:
            yield db
        else:
            async with get_db_session(self.session_factory) as session:
                yield session

    @staticmethod
    async def _ensure_stats(db) -> DashboardStats:
        stats = await db.get(DashboardStats, DASHBOARD_STATS_ID)
        if stats is None:
            stats = DashboardStats(
                id=DASHBOARD_STATS_ID,
                total_orders=0,
                total_revenue=0,
                total_customers=0,
                today_revenue=0,
                today_orders=0,
                today_date=business_date_string(),
            )
            db.add(stats)
            await db.flush()
        return stats

    @staticmethod
    async def _reset_today(db, today: str) -> bool:
        result = await db.execute(
            update(DashboardStats)
            .where(
                DashboardStats.id == DASHBOARD_STATS_ID,
                (DashboardStats.today_date.is_(None)) | (DashboardStats.today_date != today),
            )
            .values(today_revenue=0, today_orders=0, today_date=today, last_updated=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Today
    # -------------------------------------------------------------------------

    async def reset_today_if_stale(self, now: Optional[datetime] = None, db=None) -> bool:
        """Zero today's counters once per business day. Returns True if a reset happened."""
        today = business_date_string(now)
        async with self._session(db) as session:
            await self._ensure_stats(session)
            reset = await self._reset_today(session, today)
        if reset:
            logger.info(f"[Stats] Today counters reset for {today}")
        return reset

    async def record_completion(self, order, amount: Optional[int] = None, now: Optional[datetime] = None, db=None):
        """A paid order was delivered: add it to today's revenue."""
        amount = order.total_amount if amount is None else amount
        today = business_date_string(now)
        async with self._session(db) as session:
            await self._ensure_stats(session)
            await self._reset_today(session, today)
            await session.execute(
                update(DashboardStats)
                .where(DashboardStats.id == DASHBOARD_STATS_ID)
                .values(
                    today_revenue=DashboardStats.today_revenue + amount,
                    last_updated=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        logger.info(f"[Stats] Today revenue +{amount} ({order.order_code})")

    async def record_order_placed(self, now: Optional[datetime] = None, db=None):
        today = business_date_string(now)
        async with self._session(db) as session:
            await self._ensure_stats(session)
            await self._reset_today(session, today)
            await session.execute(
                update(DashboardStats)
                .where(DashboardStats.id == DASHBOARD_STATS_ID)
                .values(today_orders=DashboardStats.today_orders + 1, last_updated=utcnow())
                .execution_options(synchronize_session=False)
            )

    async def record_customers(self, count: int = 1, db=None):
        if count <= 0:
            return
        async with self._session(db) as session:
            await self._ensure_stats(session)
            await session.execute(
                update(DashboardStats)
                .where(DashboardStats.id == DASHBOARD_STATS_ID)
                .values(total_customers=DashboardStats.total_customers + count, last_updated=utcnow())
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # Rollup
    # -------------------------------------------------------------------------

    async def record_deletion_rollup(self, orders: Iterable, db=None) -> RollupSummary:
        """
        Fold orders into cumulative totals and report history.

        Callers must pass each order at most once.
        """
        orders = list(orders)
        summary = RollupSummary(orders=len(orders))
        if not orders:
            return summary

        summary.revenue = sum(o.total_amount or 0 for o in orders if counts_toward_revenue(o))

        by_date: Dict[str, list] = {}
        for order in orders:
            by_date.setdefault(business_date_string(order.created_at), []).append(order)

        async with self._session(db) as session:
            await self._ensure_stats(session)
            await session.execute(
                update(DashboardStats)
                .where(DashboardStats.id == DASHBOARD_STATS_ID)
                .values(
                    total_orders=DashboardStats.total_orders + summary.orders,
                    total_revenue=DashboardStats.total_revenue + summary.revenue,
                    last_updated=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

            for date_str, day_orders in by_date.items():
                await self._add_to_report(session, date_str, day_orders)
                summary.dates[date_str] = len(day_orders)

        logger.info(f"[Stats] Rolled up {summary.orders} orders, revenue +{summary.revenue}")
        return summary

    @staticmethod
    async def _add_to_report(db, date_str: str, orders: list):
        result = await db.execute(select(ReportHistory).where(ReportHistory.date == date_str))
        report = result.scalar_one_or_none()
        if report is None:
            report = ReportHistory(
                date=date_str, revenue=0, orders=0, delivered=0, cancelled=0, refunded=0,
                cod=0, upi=0, items_sold=0, items={}, categories={},
            )
            db.add(report)

        # JSON columns only persist on reassignment
        items = {k: dict(v) for k, v in (report.items or {}).items()}
        categories = {k: dict(v) for k, v in (report.categories or {}).items()}

        for order in orders:
            report.orders += 1
            if order.status == OrderStatus.DELIVERED:
                report.delivered += 1
            elif order.status == OrderStatus.CANCELLED:
                report.cancelled += 1
            elif order.status == OrderStatus.REFUNDED:
                report.refunded += 1

            if order.payment_method == PaymentMethod.COD:
                report.cod += 1
            elif order.payment_method == PaymentMethod.UPI:
                report.upi += 1

            if order.status == OrderStatus.DELIVERED and order.payment_status == PaymentStatus.PAID:
                report.revenue += order.total_amount or 0

            if order.status in _UNSOLD:
                continue
            for item in order.items:
                quantity = item.quantity or 0
                revenue = (item.unit_price or 0) * quantity
                report.items_sold += quantity

                entry = items.setdefault(item.name, {"category": item.category, "quantity": 0, "revenue": 0})
                entry["quantity"] += quantity
                entry["revenue"] += revenue

                cat = categories.setdefault(item.category or "Uncategorized", {"quantity": 0, "revenue": 0})
                cat["quantity"] += quantity
                cat["revenue"] += revenue

        report.items = items
        report.categories = categories
        report.updated_at = utcnow()
        await db.flush()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_dashboard(self, now: Optional[datetime] = None) -> dict:
        today = business_date_string(now)
        async with self._session() as session:
            stats = await self._ensure_stats(session)
            fresh = stats.today_date == today
            live_orders, live_revenue = await self._live_totals(session)
            return {
                "cumulative": {
                    "total_orders": stats.total_orders + live_orders,
                    "total_revenue": stats.total_revenue + live_revenue,
                    "total_customers": stats.total_customers,
                },
                "today": {
                    "date": today,
                    "revenue": stats.today_revenue if fresh else 0,
                    "orders": stats.today_orders if fresh else 0,
                },
                "last_updated": stats.last_updated.isoformat() if stats.last_updated else None,
            }

    @staticmethod
    async def _live_totals(db):
        """Order count and revenue of orders not yet hidden (and so not yet rolled up)."""
        sold = and_(
            Order.payment_status == PaymentStatus.PAID,
            Order.status.notin_(list(_UNSOLD)),
        )
        result = await db.execute(
            select(
                func.count(Order.id),
                func.coalesce(func.sum(case((sold, Order.total_amount), else_=0)), 0),
            ).where(Order.is_hidden.is_(False))
        )
        orders, revenue = result.one()
        return orders or 0, int(revenue or 0)

    async def get_report(self, date_str: str) -> Optional[dict]:
        async with self._session() as session:
            result = await session.execute(select(ReportHistory).where(ReportHistory.date == date_str))
            report = result.scalar_one_or_none()
            if report is None:
                return None
            return {
                "date": report.date,
                "revenue": report.revenue,
                "orders": report.orders,
                "delivered": report.delivered,
                "cancelled": report.cancelled,
                "refunded": report.refunded,
                "cod": report.cod,
                "upi": report.upi,
                "items_sold": report.items_sold,
                "items": report.items or {},
                "categories": report.categories or {},
            }

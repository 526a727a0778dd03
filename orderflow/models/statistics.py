"""
Aggregate statistics models

Both tables survive order deletion. They are only ever incremented; nothing
recomputes them from the orders table.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON

from orderflow.core.database import Base
from orderflow.core.utils import utcnow

DASHBOARD_STATS_ID = 1


class DashboardStats(Base):
    """Singleton row (id=1) with cumulative and today-scoped counters."""
    __tablename__ = "dashboard_stats"

    id = Column(Integer, primary_key=True, default=DASHBOARD_STATS_ID)

    # Cumulative, never reset
    total_orders = Column(Integer, default=0, nullable=False)
    total_revenue = Column(Integer, default=0, nullable=False)
    total_customers = Column(Integer, default=0, nullable=False)

    # Today, reset when today_date no longer matches the business date
    today_revenue = Column(Integer, default=0, nullable=False)
    today_orders = Column(Integer, default=0, nullable=False)
    today_date = Column(String(10))  # YYYY-MM-DD

    last_updated = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ReportHistory(Base):
    """One row per business day, created the first time an order of that day is rolled up."""
    __tablename__ = "report_history"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(String(10), unique=True, index=True, nullable=False)  # YYYY-MM-DD

    revenue = Column(Integer, default=0, nullable=False)
    orders = Column(Integer, default=0, nullable=False)
    delivered = Column(Integer, default=0, nullable=False)
    cancelled = Column(Integer, default=0, nullable=False)
    refunded = Column(Integer, default=0, nullable=False)
    cod = Column(Integer, default=0, nullable=False)
    upi = Column(Integer, default=0, nullable=False)
    items_sold = Column(Integer, default=0, nullable=False)

    # {"Paneer Tikka": {"quantity": 3, "revenue": 75000}}
    items = Column(JSON, default=dict)
    # {"Starters": {"quantity": 3, "revenue": 75000}}
    categories = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

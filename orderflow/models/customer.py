"""
Customer profile

Orders keep their own customer snapshot; this row only backs the customer
count and the inactive-profile prune.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime

from orderflow.core.database import Base
from orderflow.core.utils import utcnow


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), unique=True, index=True, nullable=False)
    name = Column(String(120))
    email = Column(String(255))

    # Customers who ever ordered are kept forever so totals stay accurate
    has_ordered = Column(Boolean, default=False, nullable=False)
    total_orders = Column(Integer, default=0, nullable=False)
    total_spent = Column(Integer, default=0, nullable=False)

    last_interaction_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

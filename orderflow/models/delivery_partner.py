from sqlalchemy import Column, Integer, String, Boolean, DateTime

from orderflow.core.database import Base
from orderflow.core.utils import utcnow


class DeliveryPartner(Base):
    __tablename__ = "delivery_partners"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(20), unique=True, nullable=False)
    email = Column(String(255))
    push_token = Column(String(255))  # Expo push token from the delivery app
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Integer, Boolean
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.core.clock import utcnow
import enum


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL = "trial"


class SubscriptionType(str, enum.Enum):
    FIXED = "fixed"
    VARIABLE = "variable"
    SINGLE = "single"


class Subscription(Base):
    """Recurring charge owned by the billing side; the engine only reprices it"""
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)  # merchant (Firebase UID)
    product_id = Column(String, ForeignKey("products.id"), nullable=True, index=True)
    reference = Column(String, nullable=False)
    concept = Column(String, nullable=False)
    client_name = Column(String, nullable=False)
    client_email = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # minor currency units
    type = Column(Enum(SubscriptionType), nullable=False, default=SubscriptionType.FIXED)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    next_charge_date = Column(DateTime, nullable=True)

    # Price change bookkeeping
    pending_price_change_id = Column(String, nullable=True, index=True)
    last_price_change_date = Column(DateTime, nullable=True)
    price_change_history_count = Column(Integer, nullable=False, default=0)
    # Read by the billing engine: skip charges until the client answers the approval request
    billing_suspended_for_price_change = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    product = relationship("Product", back_populates="subscriptions")
    price_changes = relationship("SubscriptionPriceChange", back_populates="subscription")

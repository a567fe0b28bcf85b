from sqlalchemy import Column, String, DateTime, Boolean, Integer, Enum
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.core.clock import utcnow
from app.models.subscription import SubscriptionType


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)  # merchant (Firebase UID)
    name = Column(String, nullable=False)
    base_amount = Column(Integer, nullable=False)  # template price for new subscriptions
    type = Column(Enum(SubscriptionType), nullable=False, default=SubscriptionType.FIXED)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="product")
    price_changes = relationship("ProductPriceChange", back_populates="product")

from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Integer, Boolean, Numeric, Text
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.core.clock import utcnow
from app.models.price_change import ApplicationType, PriceChangeType


class ProductPriceChange(Base):
    """
    Product-level price change fanned out to one child record per subscription.

    Completion is derived from the counters, never stored:
    applied + (failed - skipped) == total_subscriptions_affected.
    """
    __tablename__ = "product_price_changes"

    id = Column(String, primary_key=True, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    changed_by = Column(String, nullable=True)

    old_base_amount = Column(Integer, nullable=False)
    new_base_amount = Column(Integer, nullable=False)
    difference = Column(Integer, nullable=False)
    percentage_change = Column(Numeric(10, 2), nullable=False)

    change_type = Column(Enum(PriceChangeType), nullable=False, default=PriceChangeType.CUSTOM)
    reason = Column(Text, nullable=False)
    internal_notes = Column(Text, nullable=True)
    application_type = Column(Enum(ApplicationType), nullable=False)
    scheduled_date = Column(DateTime, nullable=True)

    requires_approval_for_fixed = Column(Boolean, nullable=False, default=True)
    auto_suspend_fixed_until_approval = Column(Boolean, nullable=False, default=False)

    # Progress counters, only ever changed with atomic SQL increments
    total_subscriptions_affected = Column(Integer, nullable=False, default=0)
    subscriptions_applied = Column(Integer, nullable=False, default=0)
    subscriptions_pending_approval = Column(Integer, nullable=False, default=0)
    subscriptions_failed = Column(Integer, nullable=False, default=0)
    subscriptions_skipped = Column(Integer, nullable=False, default=0)  # fan-out share of failed

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    product = relationship("Product", back_populates="price_changes")
    children = relationship("SubscriptionPriceChange", back_populates="product_price_change")

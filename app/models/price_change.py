from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Integer, Boolean, Numeric, Text, Index, text
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.core.clock import utcnow
import enum


class PriceChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    CANCELLED = "cancelled"


class ClientApprovalStatus(str, enum.Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApplicationType(str, enum.Enum):
    IMMEDIATE = "immediate"
    NEXT_CYCLE = "next_cycle"
    SCHEDULED = "scheduled"


class PriceChangeType(str, enum.Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    INFLATION = "inflation"
    CUSTOM = "custom"


class ApprovalMethod(str, enum.Enum):
    WEB = "web"
    AUTO_TIMEOUT = "auto_timeout"


class CancellationReason(str, enum.Enum):
    REJECTED_BY_CLIENT = "rejected_by_client"
    CANCELLED_BY_MERCHANT = "cancelled_by_merchant"
    APPLY_FAILED = "apply_failed"


class SubscriptionPriceChange(Base):
    """Proposal to change one subscription's amount. Immutable once applied or cancelled."""
    __tablename__ = "subscription_price_changes"
    __table_args__ = (
        # At most one pending change per subscription
        Index(
            "uq_subscription_price_changes_one_pending",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(String, primary_key=True, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=False, index=True)
    product_price_change_id = Column(String, ForeignKey("product_price_changes.id"), nullable=True, index=True)
    changed_by = Column(String, nullable=True)  # merchant uid

    old_amount = Column(Integer, nullable=False)
    new_amount = Column(Integer, nullable=False)
    difference = Column(Integer, nullable=False)
    percentage_change = Column(Numeric(10, 2), nullable=False)

    change_type = Column(Enum(PriceChangeType), nullable=False, default=PriceChangeType.CUSTOM)
    reason = Column(Text, nullable=False)  # shown to the client
    internal_notes = Column(Text, nullable=True)  # never shown to the client

    application_type = Column(Enum(ApplicationType), nullable=False)
    scheduled_date = Column(DateTime, nullable=True)
    status = Column(Enum(PriceChangeStatus), nullable=False, default=PriceChangeStatus.PENDING, index=True)

    requires_client_approval = Column(Boolean, nullable=False, default=False)
    client_approval_status = Column(Enum(ClientApprovalStatus), nullable=False,
                                    default=ClientApprovalStatus.NOT_REQUIRED, index=True)
    approval_token = Column(String, nullable=True, unique=True)
    client_approval_date = Column(DateTime, nullable=True)
    client_approval_method = Column(Enum(ApprovalMethod), nullable=True)
    client_notified = Column(Boolean, nullable=False, default=False)
    client_notified_at = Column(DateTime, nullable=True)

    apply_attempts = Column(Integer, nullable=False, default=0)
    last_apply_error = Column(Text, nullable=True)
    cancellation_reason = Column(Enum(CancellationReason), nullable=True)

    applied_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="price_changes")
    product_price_change = relationship("ProductPriceChange", back_populates="children")

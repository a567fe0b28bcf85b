from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Integer
from app.core.database import Base
from app.core.clock import utcnow


class NotificationLog(Base):
    """Outbound notification request; delivery is handled by an external sender"""
    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=False, index=True)
    phone_number = Column(String, nullable=True)
    channel = Column(String, nullable=False)  # 'whatsapp', 'sms', 'email'
    event = Column(String, nullable=False, index=True)  # 'price_change_applied', 'price_change_approval_required'
    message = Column(Text, nullable=False)
    amount = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow, index=True)

import logging
import uuid

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.notification_log import NotificationLog
from app.services.price_change_store import storage_errors

logger = logging.getLogger(__name__)

EVENT_PRICE_CHANGE_APPLIED = 'price_change_applied'
EVENT_APPROVAL_REQUIRED = 'price_change_approval_required'


class NotificationRecorder:
    """
    Writes notification requests for the external sender to pick up.
    Nothing is delivered from here.
    """

    def __init__(self, default_channel: str = None):
        self.default_channel = default_channel or settings.notification_channel

    def record_notification(
        self,
        db: Session,
        subscription_id: str,
        event: str,
        message: str,
        channel: str = None,
        phone_number: str = None,
        amount: int = None,
    ) -> NotificationLog:
        """Insert and commit one pending notification record"""
        logger.info(f"record_notification: Entry - subscription: {subscription_id}, event: {event}")

        try:
            with storage_errors():
                entry = NotificationLog(
                    id=str(uuid.uuid4()),
                    subscription_id=subscription_id,
                    phone_number=phone_number,
                    channel=channel or self.default_channel,
                    event=event,
                    message=message,
                    amount=amount,
                    status='pending',
                )
                db.add(entry)
                db.commit()
            logger.info(f"record_notification: Success - {entry.id}")
            return entry
        except Exception as e:
            db.rollback()
            logger.error(f"record_notification: Failure - {e}")
            raise

import logging
from app.core.clock import utcnow
from app.core.firebase import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Product analytics and error tracking for price change operations, stored in Firestore"""

    def __init__(self):
        self.db = get_firestore_client()
        self.events_collection = 'price_change_events'
        self.errors_collection = 'price_change_errors'

    def log_event(
        self,
        event_name: str,
        merchant_id: str = None,
        parameters: dict = None,
    ):
        """Record an analytics event. Failures are logged and swallowed."""
        logger.debug(f"log_event: Entry - {event_name}, merchant: {merchant_id}")

        try:
            self.db.collection(self.events_collection).add({
                'event_name': event_name,
                'merchant_id': merchant_id,
                'parameters': parameters or {},
                'timestamp': utcnow()
            })
            logger.debug(f"log_event: Success - {event_name}")
        except Exception as e:
            # Analytics failures should not break price change processing
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        error: str,
        action: str,
        merchant_id: str = None,
        parameters: dict = None,
    ):
        """Record an error for monitoring. Failures are logged and swallowed."""
        try:
            self.db.collection(self.errors_collection).add({
                'action': action,
                'merchant_id': merchant_id,
                'error_message': error,
                'parameters': parameters or {},
                'timestamp': utcnow()
            })
        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_success(self, action: str, merchant_id: str = None, parameters: dict = None):
        self.log_event(
            event_name=f'{action}_success',
            merchant_id=merchant_id,
            parameters={'status': 'success', **(parameters or {})}
        )

    def log_failure(self, action: str, error: str, merchant_id: str = None, parameters: dict = None):
        """Log a failed action both as an analytics event and as a tracked error"""
        self.log_event(
            event_name=f'{action}_failure',
            merchant_id=merchant_id,
            parameters={'status': 'failure', 'error': error, **(parameters or {})}
        )
        self.log_error(error=error, action=action, merchant_id=merchant_id, parameters=parameters)

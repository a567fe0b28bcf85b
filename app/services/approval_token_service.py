import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError
from app.models.price_change import ClientApprovalStatus, PriceChangeStatus, SubscriptionPriceChange
from app.services.price_change_store import storage_errors

logger = logging.getLogger(__name__)


class ApprovalTokenService:
    """Mints and checks the single-use tokens embedded in client approval links"""

    def __init__(self, token_bytes: int = None, approval_window_days: int = None):
        self.token_bytes = settings.approval_token_bytes if token_bytes is None else token_bytes
        self.approval_window = timedelta(
            days=settings.approval_window_days if approval_window_days is None else approval_window_days)

    def generate_token(self) -> str:
        """
        URL-safe random token. Uniqueness is enforced by the unique
        constraint on subscription_price_changes.approval_token.
        """
        return secrets.token_urlsafe(self.token_bytes)

    def validate_token(self, db: Session, token: str) -> SubscriptionPriceChange:
        """Return the change owning the token while its approval is still open"""
        if not token or not token.strip():
            raise ValidationError("Token is required")

        with storage_errors():
            record = db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.approval_token == token,
                SubscriptionPriceChange.client_approval_status == ClientApprovalStatus.PENDING,
                SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
            ).first()

        if not record:
            logger.info("validate_token: Failure - invalid or consumed token")
            raise NotFoundError("Invalid token or price change already processed")
        return record

    def approval_expires_at(self, record: SubscriptionPriceChange) -> datetime:
        """Instant after which silence counts as consent"""
        return record.created_at + self.approval_window

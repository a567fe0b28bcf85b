import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.core.clock import Clock, to_naive_utc, utcnow
from app.core.config import settings
from app.core.exceptions import (ConflictError, NotFoundError, PermissionDeniedError,
                                 ValidationError)
from app.models.price_change import (ApplicationType, ApprovalMethod, CancellationReason,
                                     ClientApprovalStatus, PriceChangeStatus, PriceChangeType,
                                     SubscriptionPriceChange)
from app.models.subscription import Subscription
from app.services import price_change_store as store
from app.services.analytics_service import AnalyticsService
from app.services.approval_token_service import ApprovalTokenService
from app.services.notification_recorder import EVENT_APPROVAL_REQUIRED, NotificationRecorder

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def compute_change(old_amount: int, new_amount: int) -> tuple[int, Decimal]:
    """Difference and percentage change (2 decimals, half-up) against old_amount"""
    difference = new_amount - old_amount
    percentage = (Decimal(difference) * 100 / Decimal(old_amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return difference, percentage


def suggest_change_type(old_amount: int, new_amount: int) -> PriceChangeType:
    """Small moves are classified as inflation adjustments, larger ones by direction"""
    _, percentage = compute_change(old_amount, new_amount)
    if abs(percentage) <= Decimal(str(settings.inflation_threshold_percent)):
        return PriceChangeType.INFLATION
    return PriceChangeType.UPGRADE if percentage > 0 else PriceChangeType.DOWNGRADE


def parse_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field}: {value!r} (expected one of: {allowed})")


def validate_price_change(
    current_amount: int,
    new_amount: int,
    reason: str,
    application_type: ApplicationType,
    scheduled_date: Optional[datetime],
    now: datetime,
) -> Optional[datetime]:
    """
    Boundary checks shared by single and bulk proposals.
    Returns the scheduled date normalized to naive UTC (None unless scheduled).
    """
    if isinstance(new_amount, bool) or not isinstance(new_amount, int):
        raise ValidationError("New amount must be an integer in minor currency units")
    if new_amount <= 0:
        raise ValidationError("New amount must be greater than zero")
    if new_amount == current_amount:
        raise ValidationError("New amount must be different from the current amount")
    if not reason or not reason.strip():
        raise ValidationError("A reason for the price change is required")

    if application_type == ApplicationType.SCHEDULED:
        if scheduled_date is None:
            raise ValidationError("Scheduled changes require a scheduled date")
        scheduled_date = to_naive_utc(scheduled_date)
        if scheduled_date <= now:
            raise ValidationError("Scheduled date must be in the future")
        return scheduled_date
    return None


class SubscriptionPriceChangeService:
    def __init__(
        self,
        clock: Clock = utcnow,
        token_service: ApprovalTokenService = None,
        notifier: NotificationRecorder = None,
    ):
        self.clock = clock
        self.token_service = token_service or ApprovalTokenService()
        self.notifier = notifier or NotificationRecorder()
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def _get_subscription(self, db: Session, subscription_id: str, changed_by: Optional[str]) -> Subscription:
        subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        if changed_by is not None and subscription.user_id != changed_by:
            raise PermissionDeniedError("Subscription belongs to another merchant")
        return subscription

    def _get_price_change(self, db: Session, price_change_id: str) -> SubscriptionPriceChange:
        record = db.query(SubscriptionPriceChange).filter(SubscriptionPriceChange.id == price_change_id).first()
        if not record:
            raise NotFoundError(f"Price change not found: {price_change_id}")
        return record

    def propose_change(
        self,
        db: Session,
        subscription_id: str,
        new_amount: int,
        reason: str,
        change_type: Union[PriceChangeType, str, None],
        application_type: Union[ApplicationType, str],
        scheduled_date: Optional[datetime] = None,
        requires_approval: bool = False,
        internal_notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        product_price_change_id: Optional[str] = None,
        suspend_billing_until_approval: bool = False,
    ) -> SubscriptionPriceChange:
        """
        Create a pending price change for one subscription.

        When product_price_change_id is given the parent's total and
        pending-approval counters move in the same transaction as the child.
        """
        self.logger.info(
            f"propose_change: Entry - subscription: {subscription_id}, new_amount: {new_amount}, "
            f"application: {application_type}, approval: {requires_approval}")

        try:
            application_type = parse_enum(ApplicationType, application_type, 'application_type')

            with store.storage_errors():
                subscription = self._get_subscription(db, subscription_id, changed_by)
                now = self.clock()
                scheduled_date = validate_price_change(
                    subscription.amount, new_amount, reason, application_type, scheduled_date, now)

                if change_type is None:
                    change_type = suggest_change_type(subscription.amount, new_amount)
                change_type = parse_enum(PriceChangeType, change_type, 'change_type')

                if subscription.pending_price_change_id:
                    raise ConflictError(
                        f"Subscription {subscription_id} already has a pending price change")

                difference, percentage = compute_change(subscription.amount, new_amount)
                record = SubscriptionPriceChange(
                    id=str(uuid.uuid4()),
                    subscription_id=subscription.id,
                    product_price_change_id=product_price_change_id,
                    changed_by=changed_by,
                    old_amount=subscription.amount,
                    new_amount=new_amount,
                    difference=difference,
                    percentage_change=percentage,
                    change_type=change_type,
                    reason=reason.strip(),
                    internal_notes=internal_notes,
                    application_type=application_type,
                    scheduled_date=scheduled_date,
                    status=PriceChangeStatus.PENDING,
                    requires_client_approval=requires_approval,
                    client_approval_status=(ClientApprovalStatus.PENDING if requires_approval
                                            else ClientApprovalStatus.NOT_REQUIRED),
                    approval_token=self.token_service.generate_token() if requires_approval else None,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                db.flush()

                if not store.claim_subscription(db, subscription.id, record.id):
                    raise ConflictError(
                        f"Subscription {subscription_id} already has a pending price change")
                if requires_approval and suspend_billing_until_approval:
                    store.set_billing_suspension(db, subscription.id, True)
                if product_price_change_id:
                    store.increment_counters(
                        db, product_price_change_id,
                        total_subscriptions_affected=1,
                        subscriptions_pending_approval=1 if requires_approval else 0,
                    )
                db.commit()
            db.refresh(record)
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(
                action='propose_price_change',
                error=str(e),
                merchant_id=changed_by,
                parameters={'subscription_id': subscription_id}
            )
            self.logger.error(f"propose_change: Failure - {e}")
            raise

        if requires_approval:
            self._notify_approval_required(db, record, subscription)

        self.analytics.log_success(
            action='propose_price_change',
            merchant_id=changed_by,
            parameters={
                'price_change_id': record.id,
                'subscription_id': subscription_id,
                'percentage_change': float(record.percentage_change),
                'requires_approval': requires_approval,
            }
        )
        self.logger.info(f"propose_change: Success - price_change: {record.id}")
        return record

    def _notify_approval_required(self, db: Session, record: SubscriptionPriceChange, subscription: Subscription):
        """Best effort: a missing notification never undoes the proposal"""
        try:
            self.notifier.record_notification(
                db,
                subscription_id=subscription.id,
                event=EVENT_APPROVAL_REQUIRED,
                message=(f"Price change approval requested for {subscription.concept}: "
                         f"{record.old_amount} -> {record.new_amount}"),
                phone_number=subscription.phone_number,
                amount=record.new_amount,
            )
            now = self.clock()
            store.guarded_update(
                db, SubscriptionPriceChange, record.id,
                expected={},
                values={'client_notified': True, 'client_notified_at': now},
            )
            db.commit()
            db.refresh(record)
        except Exception as e:
            db.rollback()
            self.logger.warning(f"_notify_approval_required: Failure - {record.id}: {e}")

    def resolve_approval(self, db: Session, token: str, decision: Union[ClientApprovalStatus, str]) -> SubscriptionPriceChange:
        """
        Client answer to an approval request. Tokens are single use: once the
        approval leaves 'pending' the same token raises NotFoundError.
        """
        self.logger.info(f"resolve_approval: Entry - decision: {decision}")

        try:
            decision = parse_enum(ClientApprovalStatus, decision, 'decision')
            if decision not in (ClientApprovalStatus.APPROVED, ClientApprovalStatus.REJECTED):
                raise ValidationError("Decision must be 'approved' or 'rejected'")

            with store.storage_errors():
                record = self.token_service.validate_token(db, token)
                record_id = record.id
                subscription_id = record.subscription_id
                parent_id = record.product_price_change_id
                now = self.clock()

                values = {
                    'client_approval_status': decision,
                    'client_approval_date': now,
                    'client_approval_method': ApprovalMethod.WEB,
                    'updated_at': now,
                }
                if decision == ClientApprovalStatus.REJECTED:
                    values['status'] = PriceChangeStatus.CANCELLED
                    values['cancellation_reason'] = CancellationReason.REJECTED_BY_CLIENT

                resolved = store.guarded_update(
                    db, SubscriptionPriceChange, record_id,
                    expected={
                        'client_approval_status': ClientApprovalStatus.PENDING,
                        'status': PriceChangeStatus.PENDING,
                    },
                    values=values,
                )
                if not resolved:
                    raise NotFoundError("Invalid token or price change already processed")

                if decision == ClientApprovalStatus.REJECTED:
                    store.release_subscription(db, subscription_id, record_id)
                else:
                    store.set_billing_suspension(db, subscription_id, False)

                if parent_id:
                    store.increment_counters(
                        db, parent_id,
                        subscriptions_pending_approval=-1,
                        subscriptions_failed=1 if decision == ClientApprovalStatus.REJECTED else 0,
                    )
                db.commit()
            db.refresh(record)

            self.analytics.log_success(
                action='resolve_price_change_approval',
                parameters={'price_change_id': record_id, 'decision': decision.value}
            )
            self.logger.info(f"resolve_approval: Success - price_change: {record_id}, decision: {decision.value}")
            return record
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='resolve_price_change_approval', error=str(e))
            self.logger.error(f"resolve_approval: Failure - {e}")
            raise

    def get_approval_details(self, db: Session, token: str) -> dict:
        """Client-facing summary for the approval page. Internal notes are never included."""
        self.logger.info("get_approval_details: Entry")

        record = self.token_service.validate_token(db, token)
        subscription = record.subscription
        details = {
            'price_change_id': record.id,
            'concept': subscription.concept,
            'reference': subscription.reference,
            'client_name': subscription.client_name,
            'old_amount': record.old_amount,
            'new_amount': record.new_amount,
            'difference': record.difference,
            'percentage_change': float(record.percentage_change),
            'reason': record.reason,
            'application_type': record.application_type.value,
            'scheduled_date': record.scheduled_date.isoformat() if record.scheduled_date else None,
            'auto_approves_at': self.token_service.approval_expires_at(record).isoformat(),
        }
        self.logger.info(f"get_approval_details: Success - price_change: {record.id}")
        return details

    def cancel_change(self, db: Session, price_change_id: str, changed_by: Optional[str] = None) -> SubscriptionPriceChange:
        """Merchant withdraws a pending change; its approval token dies with it"""
        self.logger.info(f"cancel_change: Entry - price_change: {price_change_id}")

        try:
            with store.storage_errors():
                record = self._get_price_change(db, price_change_id)
                self._get_subscription(db, record.subscription_id, changed_by)
                subscription_id = record.subscription_id
                parent_id = record.product_price_change_id
                approval_was_pending = record.client_approval_status == ClientApprovalStatus.PENDING
                now = self.clock()

                cancelled = store.guarded_update(
                    db, SubscriptionPriceChange, price_change_id,
                    expected={'status': PriceChangeStatus.PENDING},
                    values={
                        'status': PriceChangeStatus.CANCELLED,
                        'cancellation_reason': CancellationReason.CANCELLED_BY_MERCHANT,
                        'updated_at': now,
                    },
                )
                if not cancelled:
                    raise ConflictError("Price change is no longer pending")

                store.release_subscription(db, subscription_id, price_change_id)
                if parent_id:
                    store.increment_counters(
                        db, parent_id,
                        subscriptions_pending_approval=-1 if approval_was_pending else 0,
                        subscriptions_failed=1,
                    )
                db.commit()
            db.refresh(record)

            self.analytics.log_success(
                action='cancel_price_change',
                merchant_id=changed_by,
                parameters={'price_change_id': price_change_id}
            )
            self.logger.info(f"cancel_change: Success - price_change: {price_change_id}")
            return record
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(
                action='cancel_price_change',
                error=str(e),
                merchant_id=changed_by,
                parameters={'price_change_id': price_change_id}
            )
            self.logger.error(f"cancel_change: Failure - {e}")
            raise

    def get_history(self, db: Session, subscription_id: str, changed_by: Optional[str] = None) -> list[dict]:
        """Price changes of one subscription, newest first"""
        self.logger.info(f"get_history: Entry - subscription: {subscription_id}")

        with store.storage_errors():
            self._get_subscription(db, subscription_id, changed_by)
            records = db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.subscription_id == subscription_id
            ).order_by(SubscriptionPriceChange.created_at.desc()).all()

        result = [self.to_dict(record) for record in records]
        self.logger.info(f"get_history: Success - subscription: {subscription_id}, count: {len(result)}")
        return result

    @staticmethod
    def to_dict(record: SubscriptionPriceChange, include_internal: bool = True) -> dict:
        data = {
            'id': record.id,
            'subscription_id': record.subscription_id,
            'product_price_change_id': record.product_price_change_id,
            'old_amount': record.old_amount,
            'new_amount': record.new_amount,
            'difference': record.difference,
            'percentage_change': float(record.percentage_change),
            'change_type': record.change_type.value,
            'reason': record.reason,
            'application_type': record.application_type.value,
            'scheduled_date': record.scheduled_date.isoformat() if record.scheduled_date else None,
            'status': record.status.value,
            'requires_client_approval': record.requires_client_approval,
            'client_approval_status': record.client_approval_status.value,
            'client_approval_date': record.client_approval_date.isoformat() if record.client_approval_date else None,
            'client_approval_method': record.client_approval_method.value if record.client_approval_method else None,
            'applied_at': record.applied_at.isoformat() if record.applied_at else None,
            'created_at': record.created_at.isoformat(),
        }
        if include_internal:
            data.update({
                'internal_notes': record.internal_notes,
                'approval_token': record.approval_token,
                'changed_by': record.changed_by,
                'apply_attempts': record.apply_attempts,
                'last_apply_error': record.last_apply_error,
                'cancellation_reason': record.cancellation_reason.value if record.cancellation_reason else None,
            })
        return data

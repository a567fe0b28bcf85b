import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import NotFoundError, PriceChangeError, ValidationError
from app.core.redis_lock import RedisLock
from app.models.price_change import (ApplicationType, ApprovalMethod, CancellationReason,
                                     ClientApprovalStatus, PriceChangeStatus, SubscriptionPriceChange)
from app.models.subscription import Subscription, SubscriptionStatus
from app.services import price_change_store as store
from app.services.analytics_service import AnalyticsService
from app.services.notification_recorder import EVENT_PRICE_CHANGE_APPLIED, NotificationRecorder

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "price_change_sweep"

# Approval states that let a pending change be applied
APPROVAL_SATISFIED = (ClientApprovalStatus.NOT_REQUIRED, ClientApprovalStatus.APPROVED)

# Subscriptions that can no longer be repriced
_CLOSED_SUBSCRIPTION_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class ApplyChangeError(PriceChangeError):
    """Application of one change failed; carries the retry bookkeeping outcome"""

    def __init__(self, message: str, attempts: Optional[int] = None, gave_up: bool = False):
        super().__init__(message)
        self.attempts = attempts
        self.gave_up = gave_up


class SweepError(BaseModel):
    price_change_id: str
    subscription_id: str
    error: str
    attempts: Optional[int] = None
    gave_up: bool = False


class SweepSummary(BaseModel):
    """Reporting artifact of one sweep; the next sweep does not read it"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    applied: int = 0
    auto_approved: int = 0
    failed: int = 0
    skipped_locked: bool = False
    errors: list[SweepError] = Field(default_factory=list)


def is_date_eligible(record: SubscriptionPriceChange, now: datetime) -> bool:
    """Date half of eligibility; every application type must be handled here"""
    application_type = record.application_type
    if application_type == ApplicationType.IMMEDIATE:
        return True
    if application_type == ApplicationType.NEXT_CYCLE:
        # The billing path decides when the next cycle starts
        return True
    if application_type == ApplicationType.SCHEDULED:
        return record.scheduled_date is not None and record.scheduled_date <= now
    raise ValueError(f"Unhandled application type: {application_type!r}")


def is_approval_satisfied(record: SubscriptionPriceChange) -> bool:
    return (not record.requires_client_approval) or record.client_approval_status == ClientApprovalStatus.APPROVED


class _Snapshot:
    """Record fields captured right after loading, so commits and rollbacks never force a reload"""

    def __init__(self, record: SubscriptionPriceChange):
        self.id = record.id
        self.subscription_id = record.subscription_id
        self.product_price_change_id = record.product_price_change_id
        self.old_amount = record.old_amount
        self.new_amount = record.new_amount
        self.application_type = record.application_type
        self.scheduled_date = record.scheduled_date


def _snapshot_of(record: Union[SubscriptionPriceChange, _Snapshot]) -> _Snapshot:
    if isinstance(record, _Snapshot):
        return record
    # An expired instance reloads here
    with store.storage_errors():
        return _Snapshot(record)


class PriceChangeScheduler:
    """
    Periodic sweep over pending price changes.

    Pass A applies every pending change whose approval is satisfied and whose
    date has come. Pass B auto-approves approvals left unanswered for the
    approval window, then applies them when date-eligible. Both passes are
    idempotent; every transition is a conditional write, so a sweep racing a
    client approval or another sweep never applies a change twice.
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        notifier: NotificationRecorder = None,
        lock: Optional[RedisLock] = None,
        approval_window_days: int = None,
        max_apply_attempts: int = None,
    ):
        self.clock = clock
        self.notifier = notifier or NotificationRecorder()
        self.lock = lock
        self.approval_window = timedelta(
            days=settings.approval_window_days if approval_window_days is None else approval_window_days)
        self.max_apply_attempts = (settings.price_change_max_apply_attempts
                                   if max_apply_attempts is None else max_apply_attempts)
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def run_sweep(self, db: Session) -> SweepSummary:
        """Run both passes once and report what happened"""
        summary = SweepSummary(started_at=self.clock())
        self.logger.info(f"run_sweep: Entry - now: {summary.started_at.isoformat()}")

        lock_acquired = False
        if self.lock is not None:
            lock_acquired = self.lock.acquire(SWEEP_LOCK_KEY, settings.sweep_lock_timeout_seconds)
            if not lock_acquired:
                if self.lock.ping():
                    self.logger.warning("run_sweep: Skipped - another sweep holds the lock")
                    summary.skipped_locked = True
                    summary.finished_at = self.clock()
                    return summary
                # Redis unreachable: run without the lock
                self.logger.warning("run_sweep: Lock unavailable, continuing without it")

        try:
            self.apply_eligible_changes(db, summary)
            self.auto_approve_expired(db, summary)
        finally:
            if lock_acquired:
                self.lock.release(SWEEP_LOCK_KEY)

        summary.finished_at = self.clock()
        self.analytics.log_success(
            action='price_change_sweep',
            parameters={
                'applied': summary.applied,
                'auto_approved': summary.auto_approved,
                'failed': summary.failed,
            }
        )
        self.logger.info(
            f"run_sweep: Success - applied: {summary.applied}, auto_approved: {summary.auto_approved}, "
            f"failed: {summary.failed}")
        return summary

    def find_eligible_changes(self, db: Session, now: datetime) -> list[SubscriptionPriceChange]:
        """Pending changes with approval satisfied and date condition met"""
        with store.storage_errors():
            candidates = db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
                SubscriptionPriceChange.client_approval_status.in_(APPROVAL_SATISFIED),
            ).order_by(SubscriptionPriceChange.created_at).all()
        return [record for record in candidates
                if is_approval_satisfied(record) and is_date_eligible(record, now)]

    def find_expired_approvals(self, db: Session, now: datetime) -> list[SubscriptionPriceChange]:
        """Pending approvals whose window has fully elapsed"""
        cutoff = now - self.approval_window
        with store.storage_errors():
            return db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
                SubscriptionPriceChange.client_approval_status == ClientApprovalStatus.PENDING,
                SubscriptionPriceChange.created_at <= cutoff,
            ).order_by(SubscriptionPriceChange.created_at).all()

    def apply_eligible_changes(self, db: Session, summary: SweepSummary):
        """Pass A"""
        now = self.clock()
        try:
            with store.storage_errors():
                eligible = [_Snapshot(record) for record in self.find_eligible_changes(db, now)]
        except PriceChangeError as e:
            self.logger.error(f"apply_eligible_changes: Failure - {e}")
            summary.errors.append(SweepError(price_change_id='*', subscription_id='*', error=str(e)))
            return

        self.logger.info(f"apply_eligible_changes: Found {len(eligible)} eligible changes")
        for snapshot in eligible:
            self._apply_into_summary(db, snapshot, summary)

    def auto_approve_expired(self, db: Session, summary: SweepSummary):
        """Pass B"""
        now = self.clock()
        try:
            with store.storage_errors():
                expired = [_Snapshot(record) for record in self.find_expired_approvals(db, now)]
        except PriceChangeError as e:
            self.logger.error(f"auto_approve_expired: Failure - {e}")
            summary.errors.append(SweepError(price_change_id='*', subscription_id='*', error=str(e)))
            return

        self.logger.info(f"auto_approve_expired: Found {len(expired)} expired approvals")
        for snapshot in expired:
            try:
                approved = self.auto_approve(db, snapshot)
            except Exception as e:
                db.rollback()
                self.logger.error(f"auto_approve_expired: Failure - {snapshot.id}: {e}")
                summary.failed += 1
                summary.errors.append(SweepError(
                    price_change_id=snapshot.id, subscription_id=snapshot.subscription_id, error=str(e)))
                continue
            if not approved:
                continue

            summary.auto_approved += 1
            if is_date_eligible(snapshot, self.clock()):
                self._apply_into_summary(db, snapshot, summary)

    def auto_approve(self, db: Session, record: Union[SubscriptionPriceChange, _Snapshot]) -> bool:
        """
        Treat an unanswered approval as consent. Returns False when the
        approval was resolved elsewhere first.
        """
        snapshot = _snapshot_of(record)
        now = self.clock()
        with store.storage_errors():
            approved = store.guarded_update(
                db, SubscriptionPriceChange, snapshot.id,
                expected={
                    'status': PriceChangeStatus.PENDING,
                    'client_approval_status': ClientApprovalStatus.PENDING,
                },
                values={
                    'client_approval_status': ClientApprovalStatus.APPROVED,
                    'client_approval_date': now,
                    'client_approval_method': ApprovalMethod.AUTO_TIMEOUT,
                    'updated_at': now,
                },
            )
            if not approved:
                db.rollback()
                return False
            store.set_billing_suspension(db, snapshot.subscription_id, False)
            if snapshot.product_price_change_id:
                store.increment_counters(db, snapshot.product_price_change_id, subscriptions_pending_approval=-1)
            db.commit()
        self.logger.info(f"auto_approve: Success - price_change: {snapshot.id}")
        return True

    def _apply_into_summary(self, db: Session, snapshot: _Snapshot, summary: SweepSummary):
        try:
            if self.apply_change(db, snapshot):
                summary.applied += 1
        except ApplyChangeError as e:
            summary.failed += 1
            summary.errors.append(SweepError(
                price_change_id=snapshot.id,
                subscription_id=snapshot.subscription_id,
                error=e.message,
                attempts=e.attempts,
                gave_up=e.gave_up,
            ))

    def apply_change(self, db: Session, record: Union[SubscriptionPriceChange, _Snapshot]) -> bool:
        """
        Apply one approved change to its subscription.

        Returns False if the change was no longer applicable (resolved by a
        concurrent actor). Raises ApplyChangeError after recording the failed
        attempt; the change stays pending until the attempt budget is spent.
        """
        snapshot = _snapshot_of(record)
        self.logger.info(f"apply_change: Entry - price_change: {snapshot.id}, subscription: {snapshot.subscription_id}")

        try:
            applied = self._apply_in_transaction(db, snapshot)
        except Exception as e:
            db.rollback()
            attempts, gave_up = self._record_failed_attempt(db, snapshot, e)
            self.analytics.log_failure(
                action='apply_price_change',
                error=str(e),
                parameters={'price_change_id': snapshot.id, 'attempts': attempts, 'gave_up': gave_up}
            )
            self.logger.error(f"apply_change: Failure - {snapshot.id}: {e} (attempts: {attempts}, gave_up: {gave_up})")
            raise ApplyChangeError(str(e), attempts=attempts, gave_up=gave_up) from e

        if not applied:
            self.logger.info(f"apply_change: Skipped - {snapshot.id} already resolved")
            return False

        self._notify_applied(db, snapshot)
        self.logger.info(f"apply_change: Success - {snapshot.id}: {snapshot.old_amount} -> {snapshot.new_amount}")
        return True

    def _apply_in_transaction(self, db: Session, snapshot: _Snapshot) -> bool:
        now = self.clock()
        with store.storage_errors():
            subscription = db.query(Subscription).filter(Subscription.id == snapshot.subscription_id).first()
            if not subscription:
                raise NotFoundError(f"Subscription not found: {snapshot.subscription_id}")
            if subscription.status in _CLOSED_SUBSCRIPTION_STATUSES:
                raise ValidationError(f"Subscription {snapshot.subscription_id} is {subscription.status.value}")

            claimed = store.guarded_update(
                db, SubscriptionPriceChange, snapshot.id,
                expected={
                    'status': PriceChangeStatus.PENDING,
                    'client_approval_status': APPROVAL_SATISFIED,
                },
                values={
                    'status': PriceChangeStatus.APPLIED,
                    'applied_at': now,
                    'updated_at': now,
                },
            )
            if not claimed:
                db.rollback()
                return False

            db.execute(
                update(Subscription)
                .where(Subscription.id == snapshot.subscription_id)
                .values(
                    amount=snapshot.new_amount,
                    last_price_change_date=now,
                    price_change_history_count=Subscription.price_change_history_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            store.release_subscription(db, snapshot.subscription_id, snapshot.id)
            if snapshot.product_price_change_id:
                store.increment_counters(db, snapshot.product_price_change_id, subscriptions_applied=1)
            db.commit()
        return True

    def _record_failed_attempt(self, db: Session, snapshot: _Snapshot, error: Exception) -> tuple[Optional[int], bool]:
        """
        Count a failed application. When the attempt budget is spent the
        change is cancelled and, for bulk children, counted once as failed.
        """
        now = self.clock()
        try:
            with store.storage_errors():
                db.execute(
                    update(SubscriptionPriceChange)
                    .where(
                        SubscriptionPriceChange.id == snapshot.id,
                        SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
                    )
                    .values(
                        apply_attempts=SubscriptionPriceChange.apply_attempts + 1,
                        last_apply_error=str(error)[:1000],
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                attempts = db.query(SubscriptionPriceChange.apply_attempts).filter(
                    SubscriptionPriceChange.id == snapshot.id
                ).scalar()

                gave_up = False
                if attempts is not None and attempts >= self.max_apply_attempts:
                    gave_up = store.guarded_update(
                        db, SubscriptionPriceChange, snapshot.id,
                        expected={'status': PriceChangeStatus.PENDING},
                        values={
                            'status': PriceChangeStatus.CANCELLED,
                            'cancellation_reason': CancellationReason.APPLY_FAILED,
                            'updated_at': now,
                        },
                    )
                    if gave_up:
                        store.release_subscription(db, snapshot.subscription_id, snapshot.id)
                        if snapshot.product_price_change_id:
                            store.increment_counters(db, snapshot.product_price_change_id, subscriptions_failed=1)
                db.commit()
            return attempts, gave_up
        except PriceChangeError as bookkeeping_error:
            db.rollback()
            self.logger.error(f"_record_failed_attempt: Failure - {snapshot.id}: {bookkeeping_error}")
            return None, False

    def _notify_applied(self, db: Session, snapshot: _Snapshot):
        """Best effort: the applied status stands even if this fails"""
        try:
            subscription = db.query(Subscription).filter(Subscription.id == snapshot.subscription_id).first()
            self.notifier.record_notification(
                db,
                subscription_id=snapshot.subscription_id,
                event=EVENT_PRICE_CHANGE_APPLIED,
                message=(f"Price change applied: {subscription.reference}. "
                         f"Amount {snapshot.old_amount} -> {snapshot.new_amount}"),
                phone_number=subscription.phone_number,
                amount=snapshot.new_amount,
            )
        except Exception as e:
            db.rollback()
            self.logger.warning(f"_notify_applied: Failure - {snapshot.id}: {e}")

"""
Tests for PriceChangeScheduler
"""

import sqlite3
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import event, update

from app.models.notification_log import NotificationLog
from app.models.price_change import (ApprovalMethod, CancellationReason, ClientApprovalStatus,
                                     PriceChangeStatus, SubscriptionPriceChange)
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.notification_recorder import EVENT_PRICE_CHANGE_APPLIED
from app.services.price_change_scheduler import PriceChangeScheduler, SWEEP_LOCK_KEY, is_date_eligible


def _propose(change_service, db_session, subscription, new_amount=120000, **kwargs):
    kwargs.setdefault('application_type', 'immediate')
    return change_service.propose_change(
        db_session, subscription.id, new_amount, "Annual adjustment", change_type=None, **kwargs)


def _reload(db_session, record):
    db_session.expire_all()
    return db_session.get(type(record), record.id)


class TestEndToEnd:
    """Proposal to application through the sweep"""

    def test_immediate_change_applied_by_one_sweep(self, db_session, change_service, scheduler, make_subscription, clock):
        subscription = make_subscription(amount=100000)
        record = _propose(change_service, db_session, subscription)

        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 1
        assert summary.failed == 0
        assert summary.errors == []
        record = _reload(db_session, record)
        subscription = _reload(db_session, subscription)
        assert record.status == PriceChangeStatus.APPLIED
        assert record.applied_at == clock()
        assert subscription.amount == 120000
        assert subscription.pending_price_change_id is None
        assert subscription.price_change_history_count == 1
        assert subscription.last_price_change_date == clock()

        notification = db_session.query(NotificationLog).filter(
            NotificationLog.event == EVENT_PRICE_CHANGE_APPLIED).one()
        assert notification.amount == 120000

    def test_rejected_change_never_applied(self, db_session, change_service, scheduler, make_subscription):
        subscription = make_subscription(amount=100000)
        record = _propose(change_service, db_session, subscription, requires_approval=True)

        change_service.resolve_approval(db_session, record.approval_token, "rejected")
        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 0
        record = _reload(db_session, record)
        assert record.status == PriceChangeStatus.CANCELLED
        assert _reload(db_session, subscription).amount == 100000

    def test_unanswered_approval_auto_approved_and_applied(self, db_session, change_service, scheduler,
                                                          make_subscription, clock):
        subscription = make_subscription(amount=100000)
        record = _propose(change_service, db_session, subscription, requires_approval=True)

        clock.advance(days=8)
        summary = scheduler.run_sweep(db_session)

        assert summary.auto_approved == 1
        assert summary.applied == 1
        record = _reload(db_session, record)
        assert record.status == PriceChangeStatus.APPLIED
        assert record.client_approval_status == ClientApprovalStatus.APPROVED
        assert record.client_approval_method == ApprovalMethod.AUTO_TIMEOUT
        assert _reload(db_session, subscription).amount == 120000

    def test_pending_approval_blocks_application(self, db_session, change_service, scheduler, make_subscription):
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription, requires_approval=True)

        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 0
        assert summary.auto_approved == 0
        assert _reload(db_session, record).status == PriceChangeStatus.PENDING

    def test_client_approved_change_applied(self, db_session, change_service, scheduler, make_subscription):
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription, requires_approval=True)
        change_service.resolve_approval(db_session, record.approval_token, "approved")

        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 1
        assert summary.auto_approved == 0
        assert _reload(db_session, subscription).amount == 120000


class TestAutoApprovalWindow:
    """Auto-approval fires exactly when the window has elapsed, and only once"""

    def test_not_before_window(self, db_session, change_service, scheduler, make_subscription, clock):
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription, requires_approval=True)

        clock.advance(days=7, seconds=-1)
        summary = scheduler.run_sweep(db_session)

        assert summary.auto_approved == 0
        assert _reload(db_session, record).client_approval_status == ClientApprovalStatus.PENDING

    def test_at_window_boundary(self, db_session, change_service, scheduler, make_subscription, clock):
        subscription = make_subscription()
        _propose(change_service, db_session, subscription, requires_approval=True)

        clock.advance(days=7)
        first = scheduler.run_sweep(db_session)
        second = scheduler.run_sweep(db_session)

        assert first.auto_approved == 1
        assert second.auto_approved == 0
        assert second.applied == 0

    def test_zero_window_approves_at_once(self, db_session, change_service, make_subscription, clock):
        scheduler = PriceChangeScheduler(clock=clock, approval_window_days=0)
        subscription = make_subscription()
        _propose(change_service, db_session, subscription, requires_approval=True)

        summary = scheduler.run_sweep(db_session)

        assert scheduler.approval_window == timedelta(0)
        assert summary.auto_approved == 1
        assert summary.applied == 1

    def test_auto_approval_lifts_suspension(self, db_session, change_service, scheduler, make_subscription, clock):
        subscription = make_subscription()
        _propose(change_service, db_session, subscription, requires_approval=True,
                 suspend_billing_until_approval=True)
        assert _reload(db_session, subscription).billing_suspended_for_price_change is True

        clock.advance(days=8)
        scheduler.run_sweep(db_session)

        assert _reload(db_session, subscription).billing_suspended_for_price_change is False


class TestScheduledChanges:
    """Scheduled changes wait for their date"""

    def test_applied_on_first_sweep_at_or_after_date(self, db_session, change_service, scheduler,
                                                     make_subscription, clock):
        subscription = make_subscription()
        scheduled_for = clock() + timedelta(days=5)
        record = _propose(change_service, db_session, subscription,
                          application_type='scheduled', scheduled_date=scheduled_for)

        clock.advance(days=4, hours=23)
        assert scheduler.run_sweep(db_session).applied == 0
        assert _reload(db_session, record).status == PriceChangeStatus.PENDING

        clock.now = scheduled_for
        assert scheduler.run_sweep(db_session).applied == 1
        assert _reload(db_session, record).status == PriceChangeStatus.APPLIED

    def test_auto_approved_but_waits_for_date(self, db_session, change_service, scheduler,
                                              make_subscription, clock):
        subscription = make_subscription()
        scheduled_for = clock() + timedelta(days=20)
        record = _propose(change_service, db_session, subscription, requires_approval=True,
                          application_type='scheduled', scheduled_date=scheduled_for)

        clock.advance(days=8)
        summary = scheduler.run_sweep(db_session)
        assert summary.auto_approved == 1
        assert summary.applied == 0
        assert _reload(db_session, record).status == PriceChangeStatus.PENDING

        clock.now = scheduled_for + timedelta(hours=1)
        assert scheduler.run_sweep(db_session).applied == 1

    def test_next_cycle_eligible_once_approved(self, db_session, change_service, scheduler, make_subscription):
        subscription = make_subscription()
        _propose(change_service, db_session, subscription, application_type='next_cycle')

        assert scheduler.run_sweep(db_session).applied == 1

    def test_unknown_application_type_is_not_ignored(self, clock):
        record = SimpleNamespace(application_type="weekly", scheduled_date=None)

        with pytest.raises(ValueError):
            is_date_eligible(record, clock())


class TestApplyFailures:
    """Failed applications are retried, then given up"""

    def _close_subscription(self, db_session, subscription):
        db_session.execute(
            update(Subscription).where(Subscription.id == subscription.id)
            .values(status=SubscriptionStatus.CANCELLED)
        )
        db_session.commit()

    def test_retried_then_cancelled(self, db_session, change_service, scheduler, make_subscription, clock):
        subscription = make_subscription(amount=100000)
        record = _propose(change_service, db_session, subscription)
        self._close_subscription(db_session, subscription)

        first = scheduler.run_sweep(db_session)
        assert first.failed == 1
        assert first.errors[0].attempts == 1
        assert first.errors[0].gave_up is False
        assert _reload(db_session, record).status == PriceChangeStatus.PENDING

        clock.advance(days=1)
        scheduler.run_sweep(db_session)
        clock.advance(days=1)
        third = scheduler.run_sweep(db_session)

        assert third.errors[0].attempts == 3
        assert third.errors[0].gave_up is True
        record = _reload(db_session, record)
        assert record.status == PriceChangeStatus.CANCELLED
        assert record.cancellation_reason == CancellationReason.APPLY_FAILED
        assert record.apply_attempts == 3
        assert record.last_apply_error
        subscription = _reload(db_session, subscription)
        assert subscription.pending_price_change_id is None
        assert subscription.amount == 100000

        clock.advance(days=1)
        assert scheduler.run_sweep(db_session).failed == 0

    def test_failure_isolated_to_one_record(self, db_session, change_service, scheduler, make_subscription):
        broken = make_subscription()
        healthy = make_subscription()
        _propose(change_service, db_session, broken)
        _propose(change_service, db_session, healthy)
        self._close_subscription(db_session, broken)

        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 1
        assert summary.failed == 1
        assert summary.errors[0].subscription_id == broken.id
        assert _reload(db_session, healthy).amount == 120000

    def test_notification_failure_keeps_application(self, db_session, change_service, make_subscription, clock):
        notifier = MagicMock()
        notifier.record_notification.side_effect = RuntimeError("queue down")
        scheduler = PriceChangeScheduler(clock=clock, notifier=notifier)
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription)

        summary = scheduler.run_sweep(db_session)

        assert summary.applied == 1
        assert summary.failed == 0
        assert _reload(db_session, record).status == PriceChangeStatus.APPLIED
        assert _reload(db_session, subscription).amount == 120000

    def test_storage_outage_mid_sweep_is_collected(self, db_session, change_service, make_subscription, clock):
        subscriptions = [make_subscription() for _ in range(3)]
        for subscription in subscriptions:
            _propose(change_service, db_session, subscription)
        outage = {'on': False}

        def fail_price_change_statements(conn, cursor, statement, parameters, context, executemany):
            if outage['on'] and 'subscription_price_changes' in statement:
                raise sqlite3.OperationalError("disk I/O error")

        # The first applied change switches the store off
        notifier = MagicMock()
        notifier.record_notification.side_effect = lambda *args, **kwargs: outage.update(on=True)
        scheduler = PriceChangeScheduler(clock=clock, notifier=notifier, approval_window_days=7, max_apply_attempts=3)
        engine = db_session.get_bind()
        event.listen(engine, 'before_cursor_execute', fail_price_change_statements)
        try:
            summary = scheduler.run_sweep(db_session)
        finally:
            event.remove(engine, 'before_cursor_execute', fail_price_change_statements)

        assert summary.applied == 1
        assert summary.failed == 2
        assert summary.finished_at is not None
        failed_subscriptions = {e.subscription_id for e in summary.errors if e.price_change_id != '*'}
        assert len(failed_subscriptions) == 2
        # Pass B still ran and reported its own storage error
        assert any(e.price_change_id == '*' for e in summary.errors)

        retry = scheduler.run_sweep(db_session)

        assert retry.applied == 2
        assert {_reload(db_session, s).amount for s in subscriptions} == {120000}

    def test_already_applied_change_not_applied_twice(self, db_session, change_service, scheduler, make_subscription):
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription)
        scheduler.run_sweep(db_session)

        assert scheduler.apply_change(db_session, _reload(db_session, record)) is False
        assert _reload(db_session, subscription).price_change_history_count == 1


class TestSweepLock:
    """Overlapping sweeps are kept apart by the Redis lock"""

    def test_skips_when_lock_held(self, db_session, change_service, make_subscription, clock):
        lock = MagicMock()
        lock.acquire.return_value = False
        lock.ping.return_value = True
        subscription = make_subscription()
        record = _propose(change_service, db_session, subscription)

        summary = PriceChangeScheduler(clock=clock, lock=lock).run_sweep(db_session)

        assert summary.skipped_locked is True
        assert summary.applied == 0
        assert _reload(db_session, record).status == PriceChangeStatus.PENDING
        lock.release.assert_not_called()

    def test_proceeds_when_redis_unavailable(self, db_session, change_service, make_subscription, clock):
        lock = MagicMock()
        lock.acquire.return_value = False
        lock.ping.return_value = False
        subscription = make_subscription()
        _propose(change_service, db_session, subscription)

        summary = PriceChangeScheduler(clock=clock, lock=lock).run_sweep(db_session)

        assert summary.skipped_locked is False
        assert summary.applied == 1
        lock.release.assert_not_called()

    def test_releases_lock_after_sweep(self, db_session, clock):
        lock = MagicMock()
        lock.acquire.return_value = True

        PriceChangeScheduler(clock=clock, lock=lock).run_sweep(db_session)

        lock.acquire.assert_called_once()
        assert lock.acquire.call_args[0][0] == SWEEP_LOCK_KEY
        lock.release.assert_called_once_with(SWEEP_LOCK_KEY)

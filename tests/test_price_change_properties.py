"""
Property-based tests for the price change engine invariants
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from fractions import Fraction

from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.core.database import Base
from app.core.exceptions import PriceChangeError
from app.models.price_change import ClientApprovalStatus, PriceChangeStatus, SubscriptionPriceChange
from app.models.product import Product
from app.models.product_price_change import ProductPriceChange
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionType
from app.services.price_change_scheduler import PriceChangeScheduler
from app.services.price_change_service import SubscriptionPriceChangeService, compute_change
from app.services.product_price_change_service import ProductPriceChangeService

T0 = datetime(2026, 3, 1, 12, 0, 0)

PROPERTY_SETTINGS = hypothesis_settings(
    max_examples=30,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture, HealthCheck.too_slow],
)


class _Clock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now


class _Engine:
    """Services wired to one clock, as a deployment would wire them"""

    def __init__(self):
        self.clock = _Clock()
        self.changes = SubscriptionPriceChangeService(clock=self.clock)
        self.bulk = ProductPriceChangeService(clock=self.clock, change_service=self.changes)
        self.scheduler = PriceChangeScheduler(clock=self.clock, approval_window_days=7, max_apply_attempts=3)


@contextmanager
def fresh_session():
    """Isolated in-memory database per generated example"""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _add_product(db, base_amount=100000):
    product = Product(id=str(uuid.uuid4()), user_id="merchant_123", name="Plan",
                      base_amount=base_amount, type=SubscriptionType.FIXED, is_active=True)
    db.add(product)
    db.commit()
    return product.id


def _add_subscription(db, product_id=None, amount=100000, type=SubscriptionType.FIXED):
    subscription = Subscription(
        id=str(uuid.uuid4()), user_id="merchant_123", product_id=product_id,
        reference="SUB", concept="Plan", client_name="Client", amount=amount,
        type=type, status=SubscriptionStatus.ACTIVE, created_at=T0)
    db.add(subscription)
    db.commit()
    return subscription.id


def _pending_for(db, subscription_id):
    return db.query(SubscriptionPriceChange).filter(
        SubscriptionPriceChange.subscription_id == subscription_id,
        SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
    ).all()


def _pending_approval_token(db, subscription_id):
    record = db.query(SubscriptionPriceChange).filter(
        SubscriptionPriceChange.subscription_id == subscription_id,
        SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
        SubscriptionPriceChange.client_approval_status == ClientApprovalStatus.PENDING,
    ).first()
    return record.approval_token if record else "unknown-token"


def _pending_id(db, subscription_id):
    records = _pending_for(db, subscription_id)
    return records[0].id if records else "unknown-id"


operations = st.lists(
    st.one_of(
        st.tuples(st.just("propose"), st.integers(0, 2), st.integers(1, 300000), st.booleans()),
        st.tuples(st.just("approve"), st.integers(0, 2)),
        st.tuples(st.just("reject"), st.integers(0, 2)),
        st.tuples(st.just("cancel"), st.integers(0, 2)),
        st.tuples(st.just("sweep")),
        st.tuples(st.just("advance"), st.integers(0, 10)),
    ),
    min_size=1,
    max_size=25,
)


def _run(engine, db, op, subscription_ids):
    kind = op[0]
    try:
        if kind == "propose":
            _, index, amount, requires_approval = op
            engine.changes.propose_change(
                db, subscription_ids[index], amount, "Adjustment",
                change_type=None, application_type="immediate", requires_approval=requires_approval)
        elif kind == "approve":
            engine.changes.resolve_approval(db, _pending_approval_token(db, subscription_ids[op[1]]), "approved")
        elif kind == "reject":
            engine.changes.resolve_approval(db, _pending_approval_token(db, subscription_ids[op[1]]), "rejected")
        elif kind == "cancel":
            engine.changes.cancel_change(db, _pending_id(db, subscription_ids[op[1]]))
        elif kind == "sweep":
            engine.scheduler.run_sweep(db)
        elif kind == "advance":
            engine.clock.now += timedelta(days=op[1])
    except PriceChangeError:
        pass


class TestSingleOutstandingChange:
    """At most one pending change per subscription, always matching the pointer"""

    @PROPERTY_SETTINGS
    @given(ops=operations)
    def test_interleavings_keep_one_pending_change(self, ops):
        engine = _Engine()
        with fresh_session() as db:
            subscription_ids = [_add_subscription(db) for _ in range(3)]

            for op in ops:
                _run(engine, db, op, subscription_ids)
                db.expire_all()
                for subscription_id in subscription_ids:
                    pending = _pending_for(db, subscription_id)
                    subscription = db.get(Subscription, subscription_id)
                    assert len(pending) <= 1
                    expected = pending[0].id if pending else None
                    assert subscription.pending_price_change_id == expected


class TestPercentageChange:
    """percentage_change is (new - old) / old * 100 rounded to 2 decimals"""

    @given(old=st.integers(1, 10_000_000), new=st.integers(1, 10_000_000))
    def test_percentage_rounding(self, old, new):
        difference, percentage = compute_change(old, new)

        assert difference == new - old
        assert percentage.as_tuple().exponent == -2
        exact = Fraction(new - old) * 100 / old
        assert abs(Fraction(percentage) - exact) <= Fraction(1, 200)

    @given(old=st.integers(1, 1_000_000), new=st.integers(1, 1_000_000))
    def test_sign_follows_direction(self, old, new):
        _, percentage = compute_change(old, new)
        if new > old:
            assert percentage >= Decimal("0")
        elif new < old:
            assert percentage <= Decimal("0")
        else:
            assert percentage == Decimal("0")


class TestAutoApprovalWindow:
    """Auto-approval fires iff the whole window has elapsed"""

    @PROPERTY_SETTINGS
    @given(elapsed_seconds=st.integers(0, 14 * 24 * 3600))
    def test_fires_iff_window_elapsed(self, elapsed_seconds):
        engine = _Engine()
        with fresh_session() as db:
            subscription_id = _add_subscription(db)
            engine.changes.propose_change(
                db, subscription_id, 120000, "Adjustment",
                change_type=None, application_type="immediate", requires_approval=True)

            engine.clock.now = T0 + timedelta(seconds=elapsed_seconds)
            first = engine.scheduler.run_sweep(db)
            second = engine.scheduler.run_sweep(db)

            window_elapsed = elapsed_seconds >= 7 * 24 * 3600
            assert first.auto_approved == (1 if window_elapsed else 0)
            assert second.auto_approved == 0


bulk_operations = st.lists(
    st.one_of(
        st.tuples(st.just("sweep")),
        st.tuples(st.just("advance"), st.integers(0, 10)),
        st.tuples(st.just("approve"), st.integers(0, 5)),
        st.tuples(st.just("reject"), st.integers(0, 5)),
        st.tuples(st.just("cancel"), st.integers(0, 5)),
        st.tuples(st.just("close"), st.integers(0, 5)),
    ),
    max_size=20,
)


class TestBulkProgress:
    """Bulk counters stay within the affected total"""

    @PROPERTY_SETTINGS
    @given(
        types=st.lists(st.sampled_from([SubscriptionType.FIXED, SubscriptionType.VARIABLE]), min_size=6, max_size=6),
        preexisting=st.sets(st.integers(0, 5), max_size=3),
        ops=bulk_operations,
    )
    def test_counters_bounded_by_total(self, types, preexisting, ops):
        engine = _Engine()
        with fresh_session() as db:
            product_id = _add_product(db)
            subscription_ids = [_add_subscription(db, product_id, type=t) for t in types]
            for index in preexisting:
                engine.changes.propose_change(
                    db, subscription_ids[index], 90000, "Individual deal",
                    change_type=None, application_type="scheduled",
                    scheduled_date=T0 + timedelta(days=365))

            parent = engine.bulk.propose_bulk_change(
                db, product_id, 120000, "Supplier prices",
                change_type=None, application_type="immediate")
            parent_id = parent.id
            assert parent.total_subscriptions_affected == 6 - len(preexisting)
            assert parent.subscriptions_skipped == len(preexisting)

            for op in ops:
                if op[0] == "close":
                    subscription = db.get(Subscription, subscription_ids[op[1]])
                    subscription.status = SubscriptionStatus.CANCELLED
                    db.commit()
                else:
                    _run(engine, db, op, subscription_ids)

                db.expire_all()
                parent = db.get(ProductPriceChange, parent_id)
                failed_children = parent.subscriptions_failed - parent.subscriptions_skipped
                assert parent.subscriptions_applied + failed_children <= parent.total_subscriptions_affected
                assert parent.subscriptions_pending_approval >= 0
                assert failed_children >= 0

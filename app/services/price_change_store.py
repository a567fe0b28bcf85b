"""
Guarded writes shared by the price change services.

Every state transition goes through guarded_update(), which only writes when
the row still holds the expected values and reports whether it did. Counters
on ProductPriceChange are moved with SQL-side increments, never read-modify-write.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, PriceChangeError, TransientStorageError
from app.models.product_price_change import ProductPriceChange
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

ONE_PENDING_INDEX = "uq_subscription_price_changes_one_pending"

_COUNTERS = (
    'total_subscriptions_affected',
    'subscriptions_applied',
    'subscriptions_pending_approval',
    'subscriptions_failed',
    'subscriptions_skipped',
)


def is_one_pending_violation(error: IntegrityError) -> bool:
    """True when the violated constraint is the one-pending-change-per-subscription index"""
    diag = getattr(error.orig, 'diag', None)
    constraint_name = getattr(diag, 'constraint_name', None)
    if constraint_name:
        return constraint_name == ONE_PENDING_INDEX
    # SQLite names the columns, not the index
    message = str(error.orig)
    return ONE_PENDING_INDEX in message or "subscription_price_changes.subscription_id" in message


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate driver errors into engine error kinds"""
    try:
        yield
    except IntegrityError as e:
        if is_one_pending_violation(e):
            logger.warning(f"storage_errors: Pending change conflict - {e.orig}")
            raise ConflictError("Subscription already has a pending price change") from e
        logger.error(f"storage_errors: Integrity violation - {e.orig}")
        raise PriceChangeError(f"Integrity violation: {e.orig}") from e
    except DBAPIError as e:
        logger.error(f"storage_errors: Storage unavailable - {e.orig}")
        raise TransientStorageError("Storage temporarily unavailable") from e


def guarded_update(db: Session, model, record_id: str, expected: dict[str, Any], values: dict[str, Any]) -> bool:
    """
    UPDATE model SET values WHERE id = record_id AND <expected>.

    A tuple/list/set in expected matches any of its members.
    Returns True when exactly one row was written.
    """
    stmt = update(model).where(model.id == record_id)
    for column_name, value in expected.items():
        column = getattr(model, column_name)
        if value is None:
            stmt = stmt.where(column.is_(None))
        elif isinstance(value, (tuple, list, set, frozenset)):
            stmt = stmt.where(column.in_(list(value)))
        else:
            stmt = stmt.where(column == value)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


def claim_subscription(db: Session, subscription_id: str, price_change_id: str) -> bool:
    """Attach a pending change, only if the subscription has none"""
    return guarded_update(
        db, Subscription, subscription_id,
        expected={'pending_price_change_id': None},
        values={'pending_price_change_id': price_change_id},
    )


def release_subscription(db: Session, subscription_id: str, price_change_id: str) -> bool:
    """Detach a change from its subscription and lift any billing suspension it caused"""
    return guarded_update(
        db, Subscription, subscription_id,
        expected={'pending_price_change_id': price_change_id},
        values={'pending_price_change_id': None, 'billing_suspended_for_price_change': False},
    )


def set_billing_suspension(db: Session, subscription_id: str, suspended: bool):
    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(billing_suspended_for_price_change=suspended)
        .execution_options(synchronize_session=False)
    )


def increment_counters(db: Session, product_price_change_id: str, **deltas: int):
    """Atomically add deltas to the named ProductPriceChange counters"""
    values = {}
    for name, delta in deltas.items():
        if name not in _COUNTERS:
            raise ValueError(f"Unknown counter: {name}")
        if delta:
            values[name] = getattr(ProductPriceChange, name) + delta
    if not values:
        return
    db.execute(
        update(ProductPriceChange)
        .where(ProductPriceChange.id == product_price_change_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

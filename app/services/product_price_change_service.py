import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.clock import Clock, utcnow
from app.core.exceptions import NotFoundError, PermissionDeniedError, PriceChangeError
from app.models.price_change import ApplicationType, PriceChangeType, SubscriptionPriceChange
from app.models.product import Product
from app.models.product_price_change import ProductPriceChange
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionType
from app.services import price_change_store as store
from app.services.analytics_service import AnalyticsService
from app.services.price_change_service import (SubscriptionPriceChangeService, compute_change, parse_enum,
                                               suggest_change_type, validate_price_change)

logger = logging.getLogger(__name__)


class ProductPriceChangeService:
    """Fans a product price change out to every active subscription of the product"""

    def __init__(self, clock: Clock = utcnow, change_service: SubscriptionPriceChangeService = None):
        self.clock = clock
        self.change_service = change_service or SubscriptionPriceChangeService(clock=clock)
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def _get_product(self, db: Session, product_id: str, changed_by: Optional[str]) -> Product:
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product not found: {product_id}")
        if changed_by is not None and product.user_id != changed_by:
            raise PermissionDeniedError("Product belongs to another merchant")
        return product

    def propose_bulk_change(
        self,
        db: Session,
        product_id: str,
        new_base_amount: int,
        reason: str,
        change_type: Union[PriceChangeType, str, None],
        application_type: Union[ApplicationType, str],
        scheduled_date: Optional[datetime] = None,
        requires_approval_for_fixed: bool = True,
        auto_suspend_fixed_until_approval: bool = False,
        internal_notes: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> ProductPriceChange:
        """
        Create the parent record, then one child per active subscription.

        Children that cannot be created (already pending, the new amount
        equals the subscription's own amount, the subscription vanished, or
        the store failed for that child) are skipped and counted as failed;
        they do not count toward total_subscriptions_affected. Only a failed
        write to the parent or the product propagates.
        """
        self.logger.info(
            f"propose_bulk_change: Entry - product: {product_id}, new_base_amount: {new_base_amount}")

        try:
            application_type = parse_enum(ApplicationType, application_type, 'application_type')

            with store.storage_errors():
                product = self._get_product(db, product_id, changed_by)
                now = self.clock()
                scheduled_date = validate_price_change(
                    product.base_amount, new_base_amount, reason, application_type, scheduled_date, now)
                if change_type is None:
                    change_type = suggest_change_type(product.base_amount, new_base_amount)
                change_type = parse_enum(PriceChangeType, change_type, 'change_type')

                difference, percentage = compute_change(product.base_amount, new_base_amount)
                parent = ProductPriceChange(
                    id=str(uuid.uuid4()),
                    product_id=product.id,
                    changed_by=changed_by,
                    old_base_amount=product.base_amount,
                    new_base_amount=new_base_amount,
                    difference=difference,
                    percentage_change=percentage,
                    change_type=change_type,
                    reason=reason.strip(),
                    internal_notes=internal_notes,
                    application_type=application_type,
                    scheduled_date=scheduled_date,
                    requires_approval_for_fixed=requires_approval_for_fixed,
                    auto_suspend_fixed_until_approval=auto_suspend_fixed_until_approval,
                    total_subscriptions_affected=0,
                    subscriptions_applied=0,
                    subscriptions_pending_approval=0,
                    subscriptions_failed=0,
                    subscriptions_skipped=0,
                    created_at=now,
                    updated_at=now,
                )
                db.add(parent)
                db.commit()
                parent_id = parent.id

                subscription_rows = db.query(Subscription.id, Subscription.type).filter(
                    Subscription.product_id == product_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                ).order_by(Subscription.created_at).all()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(
                action='propose_bulk_price_change',
                error=str(e),
                merchant_id=changed_by,
                parameters={'product_id': product_id}
            )
            self.logger.error(f"propose_bulk_change: Failure - {e}")
            raise

        created = 0
        skipped = 0
        for subscription_id, subscription_type in subscription_rows:
            requires_approval = subscription_type == SubscriptionType.FIXED and requires_approval_for_fixed
            try:
                self.change_service.propose_change(
                    db,
                    subscription_id=subscription_id,
                    new_amount=new_base_amount,
                    reason=reason,
                    change_type=change_type,
                    application_type=application_type,
                    scheduled_date=scheduled_date,
                    requires_approval=requires_approval,
                    internal_notes=internal_notes,
                    product_price_change_id=parent_id,
                    suspend_billing_until_approval=auto_suspend_fixed_until_approval,
                )
                created += 1
            except PriceChangeError as e:
                self.logger.warning(f"propose_bulk_change: Skipped subscription {subscription_id} - {e}")
                with store.storage_errors():
                    store.increment_counters(db, parent_id, subscriptions_failed=1, subscriptions_skipped=1)
                    db.commit()
                skipped += 1

        with store.storage_errors():
            db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(base_amount=new_base_amount, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            db.refresh(parent)

        self.analytics.log_success(
            action='propose_bulk_price_change',
            merchant_id=changed_by,
            parameters={'product_price_change_id': parent_id, 'created': created, 'skipped': skipped}
        )
        self.logger.info(
            f"propose_bulk_change: Success - {parent_id}, created: {created}, skipped: {skipped}")
        return parent

    def get_bulk_change(self, db: Session, product_price_change_id: str, changed_by: Optional[str] = None) -> ProductPriceChange:
        with store.storage_errors():
            parent = db.query(ProductPriceChange).filter(ProductPriceChange.id == product_price_change_id).first()
            if not parent:
                raise NotFoundError(f"Product price change not found: {product_price_change_id}")
            self._get_product(db, parent.product_id, changed_by)
        return parent

    def list_children(self, db: Session, product_price_change_id: str, changed_by: Optional[str] = None) -> list[SubscriptionPriceChange]:
        self.get_bulk_change(db, product_price_change_id, changed_by)
        with store.storage_errors():
            return db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.product_price_change_id == product_price_change_id
            ).order_by(SubscriptionPriceChange.created_at).all()

    def get_progress(self, db: Session, product_price_change_id: str, changed_by: Optional[str] = None) -> dict:
        """Progress derived from the counters; a parent with no children is complete"""
        self.logger.info(f"get_progress: Entry - {product_price_change_id}")

        parent = self.get_bulk_change(db, product_price_change_id, changed_by)
        total = parent.total_subscriptions_affected
        applied = parent.subscriptions_applied
        failed = parent.subscriptions_failed
        skipped = parent.subscriptions_skipped
        resolved = applied + (failed - skipped)

        progress = {
            'id': parent.id,
            'total': total,
            'applied': applied,
            'pending_approval': parent.subscriptions_pending_approval,
            'failed': failed,
            'skipped': skipped,
            'percentage_complete': round(applied / total * 100, 2) if total else 100.0,
            'is_complete': resolved >= total,
        }
        self.logger.info(f"get_progress: Success - {product_price_change_id}: {applied}/{total}")
        return progress

    @staticmethod
    def to_dict(parent: ProductPriceChange) -> dict:
        return {
            'id': parent.id,
            'product_id': parent.product_id,
            'old_base_amount': parent.old_base_amount,
            'new_base_amount': parent.new_base_amount,
            'difference': parent.difference,
            'percentage_change': float(parent.percentage_change),
            'change_type': parent.change_type.value,
            'reason': parent.reason,
            'application_type': parent.application_type.value,
            'scheduled_date': parent.scheduled_date.isoformat() if parent.scheduled_date else None,
            'requires_approval_for_fixed': parent.requires_approval_for_fixed,
            'auto_suspend_fixed_until_approval': parent.auto_suspend_fixed_until_approval,
            'total_subscriptions_affected': parent.total_subscriptions_affected,
            'subscriptions_applied': parent.subscriptions_applied,
            'subscriptions_pending_approval': parent.subscriptions_pending_approval,
            'subscriptions_failed': parent.subscriptions_failed,
            'subscriptions_skipped': parent.subscriptions_skipped,
            'created_at': parent.created_at.isoformat(),
        }

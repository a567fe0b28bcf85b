import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import PriceChangeError
from app.core.middleware import get_current_merchant
from app.services.price_change_service import SubscriptionPriceChangeService
from app.services.product_price_change_service import ProductPriceChangeService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_product_price_change_service() -> ProductPriceChangeService:
    """Dependency to get product price change service instance"""
    return ProductPriceChangeService()


class ProposeBulkPriceChangeRequest(BaseModel):
    new_base_amount: int  # minor currency units
    reason: str
    change_type: Optional[str] = None
    application_type: str = "immediate"
    scheduled_date: Optional[datetime] = None
    requires_approval_for_fixed: bool = True
    auto_suspend_fixed_until_approval: bool = False
    internal_notes: Optional[str] = None


@router.post("/products/{product_id}/price-changes", status_code=status.HTTP_201_CREATED)
async def propose_bulk_price_change(
    product_id: str,
    request: ProposeBulkPriceChangeRequest,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    service: ProductPriceChangeService = Depends(get_product_price_change_service)
):
    """
    Change a product's base price and propagate it to its active subscriptions.
    Requires authentication; the product must belong to the caller.
    """
    merchant_id = current_merchant['uid']
    logger.info(f"propose_bulk_price_change: Entry - merchant: {merchant_id}, product: {product_id}")

    try:
        parent = service.propose_bulk_change(
            db=db,
            product_id=product_id,
            new_base_amount=request.new_base_amount,
            reason=request.reason,
            change_type=request.change_type,
            application_type=request.application_type,
            scheduled_date=request.scheduled_date,
            requires_approval_for_fixed=request.requires_approval_for_fixed,
            auto_suspend_fixed_until_approval=request.auto_suspend_fixed_until_approval,
            internal_notes=request.internal_notes,
            changed_by=merchant_id,
        )
        logger.info(f"propose_bulk_price_change: Success - {parent.id}")
        return service.to_dict(parent)
    except PriceChangeError as e:
        logger.error(f"propose_bulk_price_change: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"propose_bulk_price_change: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/product-price-changes/{product_price_change_id}")
async def get_bulk_price_change(
    product_price_change_id: str,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    service: ProductPriceChangeService = Depends(get_product_price_change_service)
):
    """Bulk change with the per-subscription children it created"""
    merchant_id = current_merchant['uid']
    logger.info(f"get_bulk_price_change: Entry - merchant: {merchant_id}, id: {product_price_change_id}")

    try:
        parent = service.get_bulk_change(db, product_price_change_id, changed_by=merchant_id)
        children = service.list_children(db, product_price_change_id, changed_by=merchant_id)
        logger.info(f"get_bulk_price_change: Success - {len(children)} children")
        return {
            **service.to_dict(parent),
            "children": [SubscriptionPriceChangeService.to_dict(child) for child in children],
        }
    except PriceChangeError as e:
        logger.error(f"get_bulk_price_change: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"get_bulk_price_change: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/product-price-changes/{product_price_change_id}/progress")
async def get_bulk_price_change_progress(
    product_price_change_id: str,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    service: ProductPriceChangeService = Depends(get_product_price_change_service)
):
    """Progress of a bulk change"""
    merchant_id = current_merchant['uid']
    logger.info(f"get_bulk_price_change_progress: Entry - id: {product_price_change_id}")

    try:
        progress = service.get_progress(db, product_price_change_id, changed_by=merchant_id)
        logger.info(f"get_bulk_price_change_progress: Success - {progress['percentage_complete']}%")
        return progress
    except PriceChangeError as e:
        logger.error(f"get_bulk_price_change_progress: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"get_bulk_price_change_progress: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

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

router = APIRouter()
logger = logging.getLogger(__name__)


def get_price_change_service() -> SubscriptionPriceChangeService:
    """Dependency to get price change service instance"""
    return SubscriptionPriceChangeService()


class ProposePriceChangeRequest(BaseModel):
    new_amount: int  # minor currency units
    reason: str
    change_type: Optional[str] = None  # suggested from the percentage when omitted
    application_type: str = "immediate"  # 'immediate', 'next_cycle' or 'scheduled'
    scheduled_date: Optional[datetime] = None
    requires_approval: bool = False
    internal_notes: Optional[str] = None


@router.post("/subscriptions/{subscription_id}/price-changes", status_code=status.HTTP_201_CREATED)
async def propose_price_change(
    subscription_id: str,
    request: ProposePriceChangeRequest,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    price_change_service: SubscriptionPriceChangeService = Depends(get_price_change_service)
):
    """
    Propose a new price for a subscription.
    Requires authentication; the subscription must belong to the caller.
    """
    merchant_id = current_merchant['uid']
    logger.info(f"propose_price_change: Entry - merchant: {merchant_id}, subscription: {subscription_id}")

    try:
        record = price_change_service.propose_change(
            db=db,
            subscription_id=subscription_id,
            new_amount=request.new_amount,
            reason=request.reason,
            change_type=request.change_type,
            application_type=request.application_type,
            scheduled_date=request.scheduled_date,
            requires_approval=request.requires_approval,
            internal_notes=request.internal_notes,
            changed_by=merchant_id,
        )
        logger.info(f"propose_price_change: Success - price_change: {record.id}")
        return price_change_service.to_dict(record)
    except PriceChangeError as e:
        logger.error(f"propose_price_change: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"propose_price_change: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/subscriptions/{subscription_id}/price-changes")
async def get_price_change_history(
    subscription_id: str,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    price_change_service: SubscriptionPriceChangeService = Depends(get_price_change_service)
):
    """Price change history of a subscription, newest first"""
    merchant_id = current_merchant['uid']
    logger.info(f"get_price_change_history: Entry - merchant: {merchant_id}, subscription: {subscription_id}")

    try:
        history = price_change_service.get_history(db, subscription_id, changed_by=merchant_id)
        logger.info(f"get_price_change_history: Success - {len(history)} changes")
        return {"price_changes": history}
    except PriceChangeError as e:
        logger.error(f"get_price_change_history: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"get_price_change_history: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/price-changes/{price_change_id}/cancel")
async def cancel_price_change(
    price_change_id: str,
    db: Session = Depends(get_db),
    current_merchant: dict = Depends(get_current_merchant),
    price_change_service: SubscriptionPriceChangeService = Depends(get_price_change_service)
):
    """Withdraw a pending price change"""
    merchant_id = current_merchant['uid']
    logger.info(f"cancel_price_change: Entry - merchant: {merchant_id}, price_change: {price_change_id}")

    try:
        record = price_change_service.cancel_change(db, price_change_id, changed_by=merchant_id)
        logger.info(f"cancel_price_change: Success - {price_change_id}")
        return price_change_service.to_dict(record)
    except PriceChangeError as e:
        logger.error(f"cancel_price_change: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"cancel_price_change: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

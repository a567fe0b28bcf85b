import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import PriceChangeError
from app.models.price_change import ClientApprovalStatus
from app.services.price_change_service import SubscriptionPriceChangeService

router = APIRouter()
logger = logging.getLogger(__name__)

_ACTIONS = {
    'approve': ClientApprovalStatus.APPROVED,
    'reject': ClientApprovalStatus.REJECTED,
}


def get_price_change_service() -> SubscriptionPriceChangeService:
    """Dependency to get price change service instance"""
    return SubscriptionPriceChangeService()


class ApprovalDecisionRequest(BaseModel):
    action: str  # 'approve' or 'reject'


@router.get("/{token}")
async def get_approval(
    token: str,
    db: Session = Depends(get_db),
    price_change_service: SubscriptionPriceChangeService = Depends(get_price_change_service)
):
    """
    Details shown on the client approval page.
    Public endpoint - the token is the credential.
    """
    logger.info("get_approval: Entry")

    try:
        details = price_change_service.get_approval_details(db, token)
        logger.info(f"get_approval: Success - price_change: {details['price_change_id']}")
        return details
    except PriceChangeError as e:
        logger.error(f"get_approval: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"get_approval: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/{token}")
async def submit_approval(
    token: str,
    request: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    price_change_service: SubscriptionPriceChangeService = Depends(get_price_change_service)
):
    """
    Client approves or rejects a price change. Tokens are single use.
    Public endpoint - the token is the credential.
    """
    logger.info(f"submit_approval: Entry - action: {request.action}")

    decision = _ACTIONS.get(request.action)
    if decision is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Action must be 'approve' or 'reject'"
        )

    try:
        record = price_change_service.resolve_approval(db, token, decision)
        logger.info(f"submit_approval: Success - price_change: {record.id}")
        return {
            "price_change_id": record.id,
            "status": record.status.value,
            "client_approval_status": record.client_approval_status.value,
            "message": "Price change approved" if decision == ClientApprovalStatus.APPROVED
            else "Price change rejected"
        }
    except PriceChangeError as e:
        logger.error(f"submit_approval: {type(e).__name__} - {e}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"submit_approval: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

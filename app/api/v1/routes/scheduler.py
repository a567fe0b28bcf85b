import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.middleware import verify_scheduler_key
from app.core.redis_lock import RedisLock, get_sweep_lock
from app.services.price_change_scheduler import PriceChangeScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


def get_scheduler(lock: RedisLock = Depends(get_sweep_lock)) -> PriceChangeScheduler:
    """Dependency to get a scheduler bound to the shared sweep lock"""
    return PriceChangeScheduler(lock=lock)


@router.post("/sweep", dependencies=[Depends(verify_scheduler_key)])
async def trigger_sweep(
    db: Session = Depends(get_db),
    scheduler: PriceChangeScheduler = Depends(get_scheduler)
):
    """
    Run one price change sweep now.
    Called by an external timer; requires the X-Scheduler-Key header.
    """
    logger.info("trigger_sweep: Entry")

    try:
        summary = scheduler.run_sweep(db)
        logger.info(f"trigger_sweep: Success - applied: {summary.applied}, failed: {summary.failed}")
        return summary.model_dump(mode="json")
    except Exception as e:
        logger.error(f"trigger_sweep: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

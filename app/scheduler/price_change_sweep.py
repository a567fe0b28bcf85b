import logging

from app.core.database import SessionLocal
from app.core.redis_lock import get_sweep_lock
from app.services.price_change_scheduler import PriceChangeScheduler

logger = logging.getLogger(__name__)


def run_price_change_sweep():
    """Scheduler job: apply due price changes and auto-approve expired approvals"""
    logger.info("run_price_change_sweep: Entry")

    db = SessionLocal()
    try:
        summary = PriceChangeScheduler(lock=get_sweep_lock()).run_sweep(db)
        if summary.skipped_locked:
            logger.info("run_price_change_sweep: Skipped - sweep already running")
            return
        for error in summary.errors:
            logger.warning(
                f"run_price_change_sweep: price_change {error.price_change_id} "
                f"(subscription {error.subscription_id}) failed - {error.error}")
        logger.info(
            f"run_price_change_sweep: Success - applied: {summary.applied}, "
            f"auto_approved: {summary.auto_approved}, failed: {summary.failed}")
    except Exception as e:
        logger.error(f"run_price_change_sweep: Failure - {e}")
    finally:
        db.close()

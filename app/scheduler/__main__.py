"""Scheduler entry point: python -m app.scheduler"""
import logging
import signal
import sys

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import settings
from app.core.firebase import init_firebase
from app.scheduler.price_change_sweep import run_price_change_sweep

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("scheduler")

scheduler = BlockingScheduler(timezone=settings.scheduler_timezone)


def signal_handler(sig, frame):
    logger.info("Scheduler stop signal received")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Scheduler starting")
    init_firebase()

    # Daily: apply due price changes, auto-approve expired approvals
    scheduler.add_job(
        run_price_change_sweep,
        CronTrigger(
            hour=settings.sweep_cron_hour,
            minute=settings.sweep_cron_minute,
            timezone=settings.scheduler_timezone,
        ),
        id="price_change_sweep",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()

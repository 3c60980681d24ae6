import asyncio
import logging
from datetime import datetime, timedelta

from notifications import Mailer, run_sweeps

logger = logging.getLogger(__name__)

def seconds_until(hour: int, now: datetime | None = None) -> float:
    """Seconds from now until the next hour:00 (UTC)."""
    now = now or datetime.utcnow()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()

def sweep_once(session_factory, mailer: Mailer) -> list[dict]:
    db = session_factory()
    try:
        return run_sweeps(db, mailer)
    finally:
        db.close()

async def run_daily(session_factory, mailer: Mailer, hour: int):
    logger.info("Notification scheduler started (runs daily at %02d:00 UTC)", hour)
    while True:
        await asyncio.sleep(seconds_until(hour))
        try:
            summary = await asyncio.to_thread(sweep_once, session_factory, mailer)
            logger.info("Scheduled notification sweep: %s", summary)
        except Exception:
            logger.exception("Scheduled notification sweep failed")

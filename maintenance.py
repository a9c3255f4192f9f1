"""Periodic housekeeping: expire stale spots and deliver due session reminders."""
import asyncio
import logging

from errors import ParkingError

logger = logging.getLogger(__name__)


def sweep(spots, sessions, now=None) -> dict:
    expired = spots.expire_stale(now)
    reminders = sessions.send_due_reminders(now)
    logger.info(f"Sweep finished: {expired} spots expired, {reminders} reminders sent")
    return {"expired_spots": expired, "reminders_sent": reminders}


async def run_periodic(services_factory, interval_seconds: int):
    """Run ``sweep`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            spots, sessions = services_factory()
            await asyncio.to_thread(sweep, spots, sessions)
        except ParkingError as e:
            logger.error(f"Scheduled sweep failed: {e}")
        except Exception:
            logger.exception("Scheduled sweep crashed, retrying next interval")

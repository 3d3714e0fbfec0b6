import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

scheduler = AsyncIOScheduler(timezone="UTC")

_scheduler_enabled: bool = True


def set_scheduler_enabled(enabled: bool) -> None:
    global _scheduler_enabled
    _scheduler_enabled = enabled
    if enabled:
        scheduler.resume()
    else:
        scheduler.pause()


def is_scheduler_enabled() -> bool:
    return _scheduler_enabled


async def expire_invitations_job(chat) -> int:
    """Flip time-expired pending invitations to ``expired`` so listings stay tidy."""
    try:
        count = await chat.invitations.expire_stale()
        if count:
            logger.info(f"Expired {count} stale invitation(s)")
        return count
    except Exception as e:
        logger.error(f"expire_invitations_job failed: {e}", exc_info=True)
        return 0


async def reconcile_membership_job(chat) -> int:
    """Drop live seats the store no longer agrees with."""
    dropped = 0
    for room_id in list(chat.membership.occupancy()):
        try:
            dropped += len(await chat.membership.reconcile(room_id))
        except Exception as e:
            logger.error(f"reconcile_membership_job failed for room {room_id}: {e}", exc_info=True)
    return dropped


def start_scheduler(chat) -> None:
    scheduler.add_job(expire_invitations_job, "interval", minutes=settings.INVITE_SWEEP_MINUTES,
                      args=[chat], id="expire_invitations", replace_existing=True)
    scheduler.add_job(reconcile_membership_job, "interval", minutes=settings.RECONCILE_MINUTES,
                      args=[chat], id="reconcile_membership", replace_existing=True)
    scheduler.start()
    logger.info("Scheduler started")


def list_jobs() -> list[dict]:
    return [
        {
            "id": job.id,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        }
        for job in scheduler.get_jobs()
    ]

import logging

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..models import UserStats
from . import notifications
from .results import BatchSummary, Ok, SoftFail

logger = logging.getLogger(__name__)

DECAY_PER_HOUR = 2
LOW_CONFIDENCE = 20


async def decay_confidence_meters(db: Session, *, gateway=None, now=None) -> BatchSummary:
    """Drain 2 confidence points per idle hour; warn users the moment they drop below 20."""
    now = now or utcnow()
    summary = BatchSummary("confidence_decay")
    created = []
    rows = db.query(UserStats).filter(UserStats.daily_confidence_meter > 0).all()

    for stats in rows:
        stats_id = stats.id
        try:
            last = stats.last_confidence_decay_at or stats.last_quest_completed_at or stats.created_at or now
            hours = (now - last).total_seconds() / 3600
            if hours <= 0:
                summary.add(Ok("skipped"))
                continue
            before = stats.daily_confidence_meter or 0
            after = max(0, before - min(before, hours * DECAY_PER_HOUR))
            stats.daily_confidence_meter = after
            stats.last_confidence_decay_at = now

            notification = None
            if before >= LOW_CONFIDENCE > after:
                notification = notifications.create_notification(
                    db, stats.user_id, notifications.CONFIDENCE_LOW,
                    "Your Confidence Meter is Low! 💪",
                    "Your confidence meter has dropped. Complete a quest to boost your confidence!",
                    {"type": "confidence_low", "confidenceLevel": after},
                )
            db.commit()
            if notification is not None:
                created.append(notification)
            summary.add(Ok("updated"))
        except Exception as e:
            db.rollback()
            logger.error("Error decaying confidence for stats %s", stats_id, exc_info=True)
            summary.add(SoftFail(str(e), stats_id))

    try:
        await notifications.deliver_batch(db, created, gateway)
    except Exception:
        logger.exception("Error pushing low confidence notifications")
    logger.info("Confidence decay: updated %d users, %d low confidence notifications",
                summary.count("updated"), len(created))
    return summary

# goforno/services/time_warnings.py
from __future__ import annotations
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..models import QUEST_ACTIVE, Notification, QuestInstance
from . import notifications
from .progress import relevant_count
from .results import BatchSummary, Ok, SoftFail

logger = logging.getLogger(__name__)

# Time allowed per quest, by difficulty
DURATION_SECONDS = {
    "EASY": 10 * 60,
    "MEDIUM": 15 * 60,
    "HARD": 20 * 60,
    "EXPERT": 30 * 60,
}
DEFAULT_DURATION_SECONDS = 15 * 60

# (type, remaining lower bound exclusive, upper bound inclusive, title, message, announced seconds)
WARNINGS = [
    (notifications.QUEST_TIME_WARNING_5MIN, 4 * 60, 5 * 60, "⏰ Quest Time Warning",
     'Your quest "{title}" has 5 minutes remaining! Complete it before time runs out!', 5 * 60),
    (notifications.QUEST_TIME_WARNING_1MIN, 30, 60, "🚨 Final Warning!",
     'Hurry! Your quest "{title}" has only 1 minute left!', 60),
]

REMINDER_MIN_AGE = timedelta(minutes=5)
REMINDER_INTERVAL = timedelta(hours=1)


def quest_duration(difficulty: str) -> int:
    return DURATION_SECONDS.get((difficulty or "").upper(), DEFAULT_DURATION_SECONDS)


def time_remaining(instance: QuestInstance, now) -> float:
    elapsed = (now - instance.started_at).total_seconds()
    return quest_duration(instance.quest.difficulty) - elapsed


def _warn(db: Session, instance: QuestInstance, now) -> Optional[Notification]:
    remaining = time_remaining(instance, now)
    for kind, low, high, title, message, announced in WARNINGS:
        if not (low < remaining <= high):
            continue
        # One warning of each kind per instance; the unique key makes repeat sweeps a no-op
        return notifications.create_notification(
            db, instance.user_id, kind, title, message.format(title=instance.quest.title),
            {
                "userQuestId": instance.id,
                "questId": instance.quest_id,
                "type": kind.lower(),
                "timeRemaining": announced,
            },
            reference_id=instance.id,
            dedup_key=notifications.make_dedup_key(instance.user_id, kind, instance.id),
        )
    return None


async def check_quest_time_warnings(db: Session, *, gateway=None, now=None) -> BatchSummary:
    """Sweep active quests and send 5-minute and 1-minute warnings."""
    now = now or utcnow()
    summary = BatchSummary("time_warnings")
    created = []
    active = db.query(QuestInstance).filter(
        QuestInstance.status == QUEST_ACTIVE, QuestInstance.started_at.isnot(None)
    ).all()

    for instance in active:
        instance_id = instance.id
        try:
            notification = _warn(db, instance, now)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Error checking time warning for user quest %s", instance_id, exc_info=True)
            summary.add(SoftFail(str(e), instance_id))
            continue
        if notification is None:
            summary.add(Ok("skipped"))
        else:
            created.append(notification)
            summary.add(Ok("sent"))

    try:
        await notifications.deliver_batch(db, created, gateway)
    except Exception:
        logger.exception("Error pushing time warnings")
    if created:
        logger.info("Sent %d time warning(s)", len(created))
    return summary


def _recently_reminded(db: Session, instance: QuestInstance, now) -> bool:
    return db.query(Notification.id).filter(
        Notification.user_id == instance.user_id,
        Notification.type == notifications.QUEST_REMINDER,
        Notification.reference_id == instance.id,
        Notification.created_at >= now - REMINDER_INTERVAL,
    ).first() is not None


async def send_quest_reminders(db: Session, *, gateway=None, now=None) -> BatchSummary:
    """Remind users about active quests started at least 5 minutes ago, at most once an hour per quest."""
    now = now or utcnow()
    summary = BatchSummary("quest_reminders")
    created = []
    active = db.query(QuestInstance).filter(
        QuestInstance.status == QUEST_ACTIVE,
        QuestInstance.started_at.isnot(None),
        QuestInstance.started_at <= now - REMINDER_MIN_AGE,
    ).all()

    for instance in active:
        instance_id = instance.id
        try:
            if _recently_reminded(db, instance, now):
                summary.add(Ok("skipped"))
                continue
            quest = instance.quest
            progress = relevant_count(instance)
            notification = notifications.create_notification(
                db, instance.user_id, notifications.QUEST_REMINDER,
                "📋 Quest Reminder",
                f'Don\'t forget your quest: "{quest.title}" ({progress}/{quest.goal_count} progress)',
                {
                    "userQuestId": instance.id,
                    "questId": quest.id,
                    "type": "quest_reminder",
                    "progress": progress,
                    "goalCount": quest.goal_count,
                },
                reference_id=instance.id,
                dedup_key=notifications.make_dedup_key(
                    instance.user_id, notifications.QUEST_REMINDER, instance.id, now.strftime("%Y%m%d%H")
                ),
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Error sending reminder for user quest %s", instance_id, exc_info=True)
            summary.add(SoftFail(str(e), instance_id))
            continue
        if notification is None:
            summary.add(Ok("skipped"))
        else:
            created.append(notification)
            summary.add(Ok("sent"))

    try:
        await notifications.deliver_batch(db, created, gateway)
    except Exception:
        logger.exception("Error pushing quest reminders")
    if created:
        logger.info("Sent %d reminder(s)", len(created))
    return summary

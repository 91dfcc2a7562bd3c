# goforno/services/notifications.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..config import PUSH_BATCH_SIZE
from ..models import Notification, PushDevice, User
from .push_client import ExpoPushGateway

logger = logging.getLogger(__name__)

DAILY_CHALLENGE = "DAILY_CHALLENGE"
CHALLENGE_MOTIVATION = "CHALLENGE_MOTIVATION"
CHALLENGE_DAY_COMPLETED = "CHALLENGE_DAY_COMPLETED"
QUEST_COMPLETED = "QUEST_COMPLETED"
QUEST_TIME_WARNING_5MIN = "QUEST_TIME_WARNING_5MIN"
QUEST_TIME_WARNING_1MIN = "QUEST_TIME_WARNING_1MIN"
QUEST_REMINDER = "QUEST_REMINDER"
CONFIDENCE_LOW = "CONFIDENCE_LOW"
QUEST_SUGGESTION_ACCEPTED = "QUEST_SUGGESTION_ACCEPTED"
LEADERBOARD_FALL_BEHIND = "LEADERBOARD_FALL_BEHIND"

# Notification type -> opt-out key in User.notification_preferences
PREFERENCE_KEYS = {
    DAILY_CHALLENGE: "dailyChallenge",
    CHALLENGE_MOTIVATION: "challengeMotivation",
    CHALLENGE_DAY_COMPLETED: "challengeProgress",
    QUEST_COMPLETED: "questCompleted",
    QUEST_TIME_WARNING_5MIN: "questTimeWarning",
    QUEST_TIME_WARNING_1MIN: "questTimeWarning",
    QUEST_REMINDER: "questReminder",
    CONFIDENCE_LOW: "confidenceLow",
    QUEST_SUGGESTION_ACCEPTED: "questSuggestion",
    LEADERBOARD_FALL_BEHIND: "leaderboardFallBehind",
}

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def make_dedup_key(user_id: int, kind: str, reference_id: Optional[int], bucket=None) -> str:
    key = f"{user_id}:{kind}:{reference_id if reference_id is not None else '-'}"
    if bucket is not None:
        key = f"{key}:{bucket}"
    return key[:160]


def create_notification(
    db: Session,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    sender_id: Optional[int] = None,
    reference_id: Optional[int] = None,
    dedup_key: Optional[str] = None,
) -> Optional[Notification]:
    """
    Record an in-app notification.

    With a dedup_key the insert is insert-or-skip against the unique index:
    returns None when a notification with the same key already exists.
    """
    values = {
        "user_id": user_id,
        "sender_id": sender_id,
        "type": type,
        "title": title,
        "message": message,
        "data": data or {},
        "reference_id": reference_id,
        "dedup_key": dedup_key,
    }
    if dedup_key is None:
        notification = Notification(**values)
        db.add(notification)
        db.flush()
        return notification

    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is None:
        # No native ON CONFLICT; the unique index still rejects a racing duplicate at commit
        if db.query(Notification.id).filter(Notification.dedup_key == dedup_key).first():
            return None
        notification = Notification(**values)
        db.add(notification)
        db.flush()
        return notification

    stmt = (
        insert(Notification)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["dedup_key"])
        .returning(Notification.id)
    )
    new_id = db.execute(stmt).scalar_one_or_none()
    if new_id is None:
        logger.debug("Notification %s already sent, skipping", dedup_key)
        return None
    return db.get(Notification, new_id)


def push_allowed(user: Optional[User], notification_type: str) -> bool:
    if user is None:
        return False
    prefs = user.notification_preferences or {}
    if not isinstance(prefs, dict):
        return True
    key = PREFERENCE_KEYS.get(notification_type)
    return not (key and prefs.get(key) is False)


async def deliver(db: Session, notification: Notification, gateway=None) -> int:
    """Push an already-recorded notification to every registered device. Returns successful sends."""
    gateway = gateway or ExpoPushGateway()
    user = db.get(User, notification.user_id)
    if not push_allowed(user, notification.type):
        logger.info("Skipping push for user %s - %s disabled", notification.user_id, notification.type)
        return 0

    tokens = [d.token for d in db.query(PushDevice).filter(PushDevice.user_id == notification.user_id).all()]
    if not tokens:
        logger.debug("No push device for user %s - in-app notification only", notification.user_id)
        return 0

    payload = dict(notification.data or {})
    payload.setdefault("type", notification.type.lower())
    payload["notificationId"] = notification.id

    results = await asyncio.gather(
        *(asyncio.to_thread(gateway.send, token, notification.title, notification.message, payload)
          for token in tokens),
        return_exceptions=True,
    )
    sent = 0
    for token, result in zip(tokens, results):
        if isinstance(result, Exception):
            logger.warning("Push to %s failed: %s", token[:12], result)
        elif not result.success:
            logger.warning("Push to %s rejected: %s", token[:12], result.error)
        else:
            sent += 1
    return sent


async def deliver_batch(db: Session, notifications: Iterable[Notification], gateway=None,
                        batch_size: int = PUSH_BATCH_SIZE) -> int:
    """Fan out pushes in fixed-size batches; each batch is sent concurrently and awaited together."""
    gateway = gateway or ExpoPushGateway()
    pending: List[Notification] = [n for n in notifications if n is not None]
    batch_size = max(1, int(batch_size))
    sent = 0
    for start in range(0, len(pending), batch_size):
        batch = pending[start:start + batch_size]
        results = await asyncio.gather(*(deliver(db, n, gateway) for n in batch), return_exceptions=True)
        for notification, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error("Push for notification %s failed", notification.id, exc_info=result)
            else:
                sent += result
    return sent


async def notify(
    db: Session,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    gateway=None,
    sender_id: Optional[int] = None,
    reference_id: Optional[int] = None,
    dedup_key: Optional[str] = None,
) -> Optional[Notification]:
    """Record the in-app notification, then push it. Push failures never fail the call."""
    notification = create_notification(
        db, user_id, type, title, message, data,
        sender_id=sender_id, reference_id=reference_id, dedup_key=dedup_key,
    )
    if notification is None:
        return None
    try:
        await deliver(db, notification, gateway)
    except Exception:
        logger.exception("Error sending push for notification %s", notification.id)
    return notification

# goforno/services/progress.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..clock import utcnow
from ..config import MAX_ACTIVE_QUESTS
from ..errors import ActiveQuestLimitReached, NotFoundError, PermissionDenied, ValidationError
from ..models import (
    COLLECT_NOS, COLLECT_YES, TAKE_ACTION,
    QUEST_ACTIVE, QUEST_COMPLETED, QUEST_QUEUED,
    DAY_COMPLETED,
    Challenge, ChallengeDayRecord, QuestInstance, QuestTemplate, UserStats,
)
from . import notifications
from .stats import apply_completion_rewards, get_or_create_stats

logger = logging.getLogger(__name__)

ACTIONS = ("NO", "YES", "ACTION")
COUNTER_FOR_ACTION = {"NO": "no_count", "YES": "yes_count", "ACTION": "action_count"}
ACTION_FOR_GOAL = {COLLECT_NOS: "NO", COLLECT_YES: "YES", TAKE_ACTION: "ACTION"}


@dataclass
class ProgressResult:
    instance: QuestInstance
    completed: bool
    no_count: int
    yes_count: int
    action_count: int


def relevant_count(instance: QuestInstance) -> int:
    action = ACTION_FOR_GOAL.get(instance.quest.goal_type, "NO")
    return int(getattr(instance, COUNTER_FOR_ACTION[action]) or 0)


def is_goal_met(instance: QuestInstance) -> bool:
    return relevant_count(instance) >= int(instance.quest.goal_count or 0)


# --- Active quest slots ---

def _active_rows(user_id: int):
    return (
        select(func.count(QuestInstance.id))
        .where(QuestInstance.user_id == user_id, QuestInstance.status == QUEST_ACTIVE)
        .scalar_subquery()
    )


def claim_active_slot(db: Session, user_id: int, enforce_cap: bool = True, cap: int = MAX_ACTIVE_QUESTS) -> None:
    """
    Take one of the user's active quest slots.

    The cap is checked against the user's ACTIVE instance rows, and the
    counter is resynced from them in the same UPDATE. The stats row is locked
    first so concurrent claims for one user run one after the other; each then
    counts rows committed by the claim before it.
    """
    get_or_create_stats(user_id, db)
    db.query(UserStats.id).filter(UserStats.user_id == user_id).with_for_update().one()
    active = _active_rows(user_id)
    query = db.query(UserStats).filter(UserStats.user_id == user_id)
    if enforce_cap:
        query = query.filter(active < cap)
    updated = query.update({UserStats.active_quest_count: active + 1}, synchronize_session="fetch")
    if updated == 0:
        raise ActiveQuestLimitReached(f"You already have {cap} active quests")


def release_active_slot(db: Session, user_id: int) -> None:
    db.query(UserStats).filter(UserStats.user_id == user_id, UserStats.active_quest_count > 0).update(
        {UserStats.active_quest_count: UserStats.active_quest_count - 1}, synchronize_session="fetch"
    )


# --- Creating and starting ---

def _ensure_not_holding(db: Session, user_id: int, quest_id: int) -> None:
    existing = db.query(QuestInstance.id).filter(
        QuestInstance.user_id == user_id, QuestInstance.quest_id == quest_id
    ).first()
    if existing:
        raise ValidationError("You already have this quest")


def queue_quest(db: Session, user_id: int, quest_id: int) -> QuestInstance:
    if db.get(QuestTemplate, quest_id) is None:
        raise NotFoundError("Quest not found")
    _ensure_not_holding(db, user_id, quest_id)
    instance = QuestInstance(user_id=user_id, quest_id=quest_id, status=QUEST_QUEUED)
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def create_active_instance(db: Session, user_id: int, quest_id: int, *, enforce_cap: bool = True,
                           now=None) -> QuestInstance:
    """Create an ACTIVE instance and take a slot. Does not commit."""
    _ensure_not_holding(db, user_id, quest_id)
    claim_active_slot(db, user_id, enforce_cap=enforce_cap)
    instance = QuestInstance(
        user_id=user_id,
        quest_id=quest_id,
        status=QUEST_ACTIVE,
        started_at=now or utcnow(),
    )
    db.add(instance)
    db.flush()
    return instance


def start_quest(db: Session, instance_id: int, user_id: int = None, now=None) -> QuestInstance:
    instance = db.get(QuestInstance, instance_id)
    if instance is None:
        raise NotFoundError("Quest not found")
    if user_id is not None and instance.user_id != user_id:
        raise PermissionDenied("Not your quest")
    if instance.status != QUEST_QUEUED:
        raise ValidationError(f"Quest is {instance.status.lower()}, not queued")
    try:
        claim_active_slot(db, instance.user_id)
        instance.status = QUEST_ACTIVE
        instance.started_at = now or utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    return instance


# --- Completion signal ---

CompletionHandler = Callable[[Session, QuestInstance, object], Optional[object]]
_completion_handlers: List[CompletionHandler] = []


def on_quest_completed(handler: CompletionHandler) -> CompletionHandler:
    """Register a handler run once when an instance reaches its goal. May return a Notification to push."""
    _completion_handlers.append(handler)
    return handler


@on_quest_completed
def award_completion_rewards(db: Session, instance: QuestInstance, now):
    quest = instance.quest
    tokens = max(1, relevant_count(instance))
    apply_completion_rewards(
        instance.user_id, quest.xp_reward, quest.point_reward, quest.difficulty, tokens, db, now=now
    )
    return None


@on_quest_completed
def complete_challenge_day(db: Session, instance: QuestInstance, now):
    record = db.query(ChallengeDayRecord).filter(ChallengeDayRecord.user_quest_id == instance.id).first()
    if record is None or record.status == DAY_COMPLETED:
        return None
    record.status = DAY_COMPLETED
    record.completed_at = now
    challenge = db.get(Challenge, record.challenge_id)
    if challenge is not None:
        challenge.completed_days = (challenge.completed_days or 0) + 1
    return notifications.create_notification(
        db, instance.user_id, notifications.CHALLENGE_DAY_COMPLETED,
        f"🎉 Day {record.day} Complete!",
        f"You completed Day {record.day} of your 100 Day Challenge! Keep the momentum going! 🔥",
        {"challengeId": record.challenge_id, "day": record.day},
        reference_id=record.challenge_id,
    )


@on_quest_completed
def record_completion_notification(db: Session, instance: QuestInstance, now):
    quest = instance.quest
    return notifications.create_notification(
        db, instance.user_id, notifications.QUEST_COMPLETED,
        "🏆 Quest Complete!",
        f'You completed "{quest.title}" and earned {quest.xp_reward} XP!',
        {"userQuestId": instance.id, "questId": quest.id},
        reference_id=instance.id,
    )


async def _signal_completion(db: Session, instance: QuestInstance, now, gateway=None) -> None:
    created = []
    for handler in _completion_handlers:
        try:
            result = handler(db, instance, now)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Completion handler %s failed for user quest %s", handler.__name__, instance.id)
            continue
        if result is not None:
            created.append(result)
    if created:
        try:
            await notifications.deliver_batch(db, created, gateway)
        except Exception:
            logger.exception("Error pushing completion notifications for user quest %s", instance.id)


# --- Recording progress ---

async def record_action(db: Session, instance_id: int, action: str, *, user_id: int = None,
                        gateway=None, now=None) -> ProgressResult:
    """
    Record a NO, YES or ACTION against an active quest instance.

    Every action bumps its own counter; only the counter matching the quest's
    goal type can complete it. Completion is stamped once and then fires the
    completion handlers. Handler failures are logged and never undo the write.
    """
    action = (action or "").upper()
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action {action!r}")
    instance = db.get(QuestInstance, instance_id)
    if instance is None:
        raise NotFoundError("Quest not found")
    if user_id is not None and instance.user_id != user_id:
        raise PermissionDenied("Not your quest")

    if instance.status == QUEST_COMPLETED:
        return ProgressResult(instance, False, instance.no_count, instance.yes_count, instance.action_count)
    if instance.status != QUEST_ACTIVE:
        raise ValidationError("Start the quest before recording progress")

    now = now or utcnow()
    counter = COUNTER_FOR_ACTION[action]
    completed = False
    try:
        setattr(instance, counter, int(getattr(instance, counter) or 0) + 1)
        if is_goal_met(instance):
            instance.status = QUEST_COMPLETED
            instance.completed_at = now
            release_active_slot(db, instance.user_id)
            completed = True
        db.commit()
    except Exception:
        db.rollback()
        raise

    if completed:
        await _signal_completion(db, instance, now, gateway)

    return ProgressResult(instance, completed, instance.no_count, instance.yes_count, instance.action_count)

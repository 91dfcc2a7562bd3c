"""Completion leaderboards and the falling-behind nudge.

Users with stats are ranked by quests completed since the start of the UTC
day, the ISO week (Monday) and the month. A user is falling behind in a
period when they have no completions in it, or sit in the bottom half
without a completion in the last 24 hours.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..clock import utcnow
from ..models import QUEST_COMPLETED, QuestInstance, User, UserStats
from . import notifications
from .results import BatchSummary, Ok, SoftFail

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month")
PERIOD_LABELS = {"day": "daily", "week": "weekly", "month": "monthly"}
RECENT_COMPLETION = timedelta(hours=24)


def period_starts(now: datetime) -> Dict[str, datetime]:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "day": today,
        "week": today - timedelta(days=today.weekday()),
        "month": today.replace(day=1),
    }


def completions_since(db: Session, start: datetime) -> Dict[int, int]:
    rows = (
        db.query(QuestInstance.user_id, func.count(QuestInstance.id))
        .filter(QuestInstance.status == QUEST_COMPLETED, QuestInstance.completed_at >= start)
        .group_by(QuestInstance.user_id)
        .all()
    )
    return dict(rows)


def rank_users(user_ids: Iterable[int], counts: Dict[int, int]) -> Dict[int, Tuple[int, int]]:
    """user_id -> (rank, completions). Most completions first; ties go to the lower user id."""
    ordered = sorted(user_ids, key=lambda uid: (-counts.get(uid, 0), uid))
    return {uid: (rank, counts.get(uid, 0)) for rank, uid in enumerate(ordered, start=1)}


def leaderboard(db: Session, period: str, now=None) -> List[Tuple[int, int, int]]:
    """(rank, user_id, completions) rows for one period, best first."""
    if period not in PERIODS:
        raise ValueError(f"Unknown leaderboard period {period!r}")
    now = now or utcnow()
    counts = completions_since(db, period_starts(now)[period])
    user_ids = [uid for (uid,) in db.query(UserStats.user_id).all()]
    ranks = rank_users(user_ids, counts)
    return sorted((rank, uid, done) for uid, (rank, done) in ranks.items())


def is_falling_behind(rank: int, total: int, completions: int, completed_recently: bool) -> bool:
    return completions == 0 or (rank > total / 2 and not completed_recently)


def _opted_out(user: User) -> bool:
    prefs = (user.notification_preferences if user is not None else None) or {}
    key = notifications.PREFERENCE_KEYS[notifications.LEADERBOARD_FALL_BEHIND]
    return isinstance(prefs, dict) and prefs.get(key) is False


def _nudge(db: Session, user_id: int, period: str, rank: int, total: int, now):
    # One nudge per user per UTC day, whichever period trips first
    return notifications.create_notification(
        db, user_id, notifications.LEADERBOARD_FALL_BEHIND,
        "📉 You're Falling Behind!",
        f"You're ranked #{rank} of {total}. Complete a quest to climb the {PERIOD_LABELS[period]} leaderboard!",
        {"type": "leaderboard_fall_behind", "period": period, "rank": rank, "totalUsers": total},
        dedup_key=notifications.make_dedup_key(
            user_id, notifications.LEADERBOARD_FALL_BEHIND, None, now.strftime("%Y%m%d")
        ),
    )


async def check_leaderboard_fall_behind(db: Session, *, gateway=None, now=None) -> BatchSummary:
    """Rank every user for the day, week and month and nudge the ones falling behind."""
    now = now or utcnow()
    summary = BatchSummary("leaderboard")
    created = []
    user_ids = [uid for (uid,) in db.query(UserStats.user_id).order_by(UserStats.user_id).all()]
    recent = set(completions_since(db, now - RECENT_COMPLETION))
    starts = period_starts(now)
    ranks = {period: rank_users(user_ids, completions_since(db, starts[period])) for period in PERIODS}
    total = len(user_ids)

    for user_id in user_ids:
        try:
            behind = []
            for period in PERIODS:
                rank, done = ranks[period][user_id]
                if is_falling_behind(rank, total, done, user_id in recent):
                    behind.append((period, rank))
            if not behind:
                summary.add(Ok("ahead"))
                continue
            if _opted_out(db.get(User, user_id)):
                summary.add(Ok("opted_out"))
                continue
            period, rank = behind[0]
            notification = _nudge(db, user_id, period, rank, total, now)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Error checking leaderboard position for user %s", user_id, exc_info=True)
            summary.add(SoftFail(str(e), user_id))
            continue
        if notification is None:
            summary.add(Ok("skipped"))
        else:
            created.append(notification)
            summary.add(Ok("sent"))

    try:
        await notifications.deliver_batch(db, created, gateway)
    except Exception:
        logger.exception("Error pushing leaderboard notifications")
    logger.info("Leaderboard: sent %d fall-behind notification(s) to %d users", len(created), total)
    return summary

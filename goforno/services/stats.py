from sqlalchemy.orm import Session
from ..clock import utcnow
from ..models import UserStats

# Confidence meter boost per completed quest, by difficulty
CONFIDENCE_BOOST = {"easy": 5, "medium": 10, "hard": 15, "expert": 20}
CONFIDENCE_MAX = 100


def get_or_create_stats(user_id: int, db: Session) -> UserStats:
    stats = db.query(UserStats).filter(UserStats.user_id == user_id).first()
    if stats is None:
        stats = UserStats(user_id=user_id, active_quest_count=0, diamonds=0)
        db.add(stats)
        db.flush()
    return stats


def apply_completion_rewards(user_id: int, xp_reward: int, point_reward: int, difficulty: str,
                             tokens: int, db: Session, now=None) -> UserStats:
    """Add quest rewards, advance the daily streak and boost the confidence meter."""
    now = now or utcnow()
    stats = get_or_create_stats(user_id, db)

    # Streak: same day keeps it, next day extends it, a gap resets it
    new_streak = 1
    if stats.last_active_at is not None:
        days_diff = (now.date() - stats.last_active_at.date()).days
        if days_diff == 0:
            new_streak = max(1, stats.current_streak or 0)
        elif days_diff == 1:
            new_streak = (stats.current_streak or 0) + 1

    level = (difficulty or "medium").lower()
    boost = CONFIDENCE_BOOST.get(level, 10)

    stats.total_xp = (stats.total_xp or 0) + int(xp_reward or 0)
    stats.total_points = (stats.total_points or 0) + int(point_reward or 0)
    stats.tokens = (stats.tokens or 0) + int(tokens)
    stats.current_streak = new_streak
    stats.longest_streak = max(new_streak, stats.longest_streak or 0)
    stats.last_active_at = now
    stats.last_quest_completed_at = now
    stats.daily_confidence_meter = min(CONFIDENCE_MAX, (stats.daily_confidence_meter or 0) + boost)
    stats.last_confidence_decay_at = now

    if level == "easy":
        stats.easy_zone_count = (stats.easy_zone_count or 0) + 1
    elif level == "medium":
        stats.growth_zone_count = (stats.growth_zone_count or 0) + 1
    elif level in ("hard", "expert"):
        stats.fear_zone_count = (stats.fear_zone_count or 0) + 1

    return stats

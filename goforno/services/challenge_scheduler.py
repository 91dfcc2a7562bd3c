# goforno/services/challenge_scheduler.py
from __future__ import annotations
import asyncio
import logging
import random
from typing import Dict

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..clock import utcnow
from ..errors import CollaboratorError, ValidationError
from ..models import DAY_ACTIVE, DAY_PENDING, Challenge, ChallengeDayRecord
from . import notifications
from .challenge_day import challenge_day, difficulty_for_day, is_finished
from .progress import create_active_instance
from .quest_generator import CATEGORIES, QuestGenerator, save_template
from .results import BatchSummary, Ok, SoftFail

logger = logging.getLogger(__name__)

MILESTONE_DAYS = (7, 14, 21, 30, 50, 75, 90, 100)
EXTRA_MOTIVATION_CHANCE = 0.30

CATEGORY_NAMES = {
    "SALES": "sales",
    "SOCIAL": "social confidence",
    "ENTREPRENEURSHIP": "entrepreneurship",
    "DATING": "dating",
    "CONFIDENCE": "confidence",
    "CAREER": "career growth",
}

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def motivation_messages(day: int, category: str) -> Dict[str, str]:
    name = CATEGORY_NAMES.get(category, "growth")
    daily = [
        f"Your Day {day} challenge is ready! Keep building that {name} confidence! 💪",
        f"Day {day} - You're {day}% closer to your goal! Let's do this! 🎯",
        f"New challenge unlocked for Day {day}! Every NO brings you closer to YES! 🚀",
        f"Day {day} challenge waiting for you! You've got this! 💎",
        f"Ready for Day {day}? Your {name} journey continues! 🌟",
    ]
    motivational = [
        f"You're on Day {day} of 100! That's {day} days of courage. Keep going! 🔥",
        f"{day} days strong! You're building unstoppable {name} skills! 💪",
        f"Day {day} - You're crushing it! Every challenge makes you stronger! 🎯",
        f"Amazing progress! Day {day} shows your commitment to {name} growth! 🌟",
        f"Day {day} complete! You're {100 - day} days away from transformation! 🚀",
        f"Incredible! {day} days of facing your fears. You're unstoppable! 💎",
        f"Day {day} - Look how far you've come! Keep pushing forward! 🌟",
    ]
    return {
        "daily": daily[day % len(daily)],
        "motivational": motivational[day % len(motivational)],
    }


def challenge_prompt(day: int, category: str) -> str:
    return (
        f"Create a Day {day} rejection challenge for a 100 Day Challenge focused on {category}. "
        f"This should be a COLLECT_NOS quest that helps build confidence through rejection. "
        f"Make it appropriate for day {day} of the challenge - progressively challenging but achievable."
    )


def enroll_challenge(db: Session, user_id: int, category: str, now=None) -> Challenge:
    category = (category or "").upper()
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown category {category!r}")
    existing = db.query(Challenge).filter(
        Challenge.user_id == user_id, Challenge.category == category, Challenge.is_active.is_(True)
    ).first()
    if existing:
        raise ValidationError("You already have an active challenge in this category")
    challenge = Challenge(user_id=user_id, category=category, start_date=now or utcnow(), is_active=True)
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    return challenge


def upsert_day_record(db: Session, challenge_id: int, day: int, quest_id: int, now=None) -> ChallengeDayRecord:
    """Create or relink the (challenge, day) record. Never creates a second row for the same day."""
    now = now or utcnow()
    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = (
            insert(ChallengeDayRecord)
            .values(challenge_id=challenge_id, day=day, quest_id=quest_id, status=DAY_PENDING, generated_at=now)
            .on_conflict_do_update(
                index_elements=["challenge_id", "day"],
                set_={"quest_id": quest_id, "generated_at": now},
            )
        )
        db.execute(stmt)
    else:
        record = db.query(ChallengeDayRecord).filter_by(challenge_id=challenge_id, day=day).first()
        if record is None:
            db.add(ChallengeDayRecord(challenge_id=challenge_id, day=day, quest_id=quest_id,
                                      status=DAY_PENDING, generated_at=now))
        else:
            record.quest_id = quest_id
            record.generated_at = now
        db.flush()
    return (
        db.query(ChallengeDayRecord)
        .populate_existing()
        .filter_by(challenge_id=challenge_id, day=day)
        .one()
    )


async def _generate_for_challenge(db: Session, challenge: Challenge, generator, gateway, now, rng):
    if is_finished(challenge.start_date, now):
        challenge.is_active = False
        db.commit()
        logger.info("Challenge %s completed (100 days)", challenge.id)
        return Ok("deactivated")

    day = challenge_day(challenge.start_date, now)
    existing = db.query(ChallengeDayRecord).filter_by(challenge_id=challenge.id, day=day).first()
    if existing is not None and existing.status != DAY_PENDING:
        logger.debug("Quest already exists for challenge %s, day %s", challenge.id, day)
        return Ok("skipped")

    difficulty = difficulty_for_day(day)
    try:
        quest_data = await asyncio.to_thread(
            generator.generate, challenge.category, difficulty, challenge_prompt(day, challenge.category),
            challenge.user_id,
        )
    except Exception as e:
        raise CollaboratorError(f"quest generation failed: {e}") from e

    template = save_template(db, quest_data, ai_generated=True)
    record = upsert_day_record(db, challenge.id, day, template.id, now)
    # The daily quest is a system start: it takes a slot but is not refused by the cap
    instance = create_active_instance(db, challenge.user_id, template.id, enforce_cap=False, now=now)
    record.user_quest_id = instance.id
    record.status = DAY_ACTIVE
    db.commit()

    messages = motivation_messages(day, challenge.category)
    try:
        await notifications.notify(
            db, challenge.user_id, notifications.DAILY_CHALLENGE,
            f"Day {day} Challenge Ready! 🎯", messages["daily"],
            {"challengeId": challenge.id, "day": day, "questId": template.id, "userQuestId": instance.id},
            gateway=gateway, reference_id=challenge.id,
            dedup_key=notifications.make_dedup_key(challenge.user_id, notifications.DAILY_CHALLENGE, challenge.id, day),
        )
        if rng.random() < EXTRA_MOTIVATION_CHANCE:
            await notifications.notify(
                db, challenge.user_id, notifications.CHALLENGE_MOTIVATION,
                "💪 Keep Going!", messages["motivational"],
                {"challengeId": challenge.id, "day": day},
                gateway=gateway, reference_id=challenge.id,
            )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Error sending daily challenge notification for challenge %s", challenge.id)

    logger.info("Generated quest for challenge %s, day %s", challenge.id, day)
    return Ok("generated", {"challengeId": challenge.id, "day": day, "userQuestId": instance.id})


async def generate_daily_challenges(db: Session, *, generator=None, gateway=None, now=None,
                                    rng=random) -> BatchSummary:
    """
    Generate and auto-start today's quest for every active 100 day challenge.

    Challenges are processed one at a time; a failure in one is recorded as a
    SoftFail in the summary and never stops the rest of the batch.
    """
    generator = generator or QuestGenerator()
    now = now or utcnow()
    summary = BatchSummary("daily_generation")
    challenges = db.query(Challenge).filter(Challenge.is_active.is_(True)).order_by(Challenge.id).all()
    logger.info("Starting daily challenge generation for %d active challenges", len(challenges))

    for challenge in challenges:
        challenge_id = challenge.id
        try:
            result = await _generate_for_challenge(db, challenge, generator, gateway, now, rng)
        except Exception as e:
            db.rollback()
            logger.error("Error generating quest for challenge %s", challenge_id, exc_info=True)
            result = SoftFail(str(e), challenge_id)
        summary.add(result)

    logger.info("Daily challenge generation completed: %s", summary.counts)
    return summary


async def send_milestone_motivation(db: Session, *, gateway=None, now=None) -> BatchSummary:
    """Milestone notifications (days 7, 14, ... 100) for every active challenge. No quest generation."""
    now = now or utcnow()
    summary = BatchSummary("motivation")
    created = []
    challenges = db.query(Challenge).filter(Challenge.is_active.is_(True)).order_by(Challenge.id).all()

    for challenge in challenges:
        challenge_id = challenge.id
        try:
            day = challenge_day(challenge.start_date, now)
            if day not in MILESTONE_DAYS:
                summary.add(Ok("skipped"))
                continue
            notification = notifications.create_notification(
                db, challenge.user_id, notifications.CHALLENGE_MOTIVATION,
                f"🎉 Day {day} Milestone!", motivation_messages(day, challenge.category)["motivational"],
                {"challengeId": challenge.id, "day": day, "milestone": True},
                reference_id=challenge.id,
                dedup_key=notifications.make_dedup_key(
                    challenge.user_id, "CHALLENGE_MILESTONE", challenge.id, day
                ),
            )
            db.commit()
            if notification is None:
                summary.add(Ok("skipped"))
                continue
            created.append(notification)
            summary.add(Ok("sent"))
        except Exception as e:
            db.rollback()
            logger.error("Error sending motivation for challenge %s", challenge_id, exc_info=True)
            summary.add(SoftFail(str(e), challenge_id))

    try:
        await notifications.deliver_batch(db, created, gateway)
    except Exception:
        logger.exception("Error pushing milestone notifications")
    logger.info("Motivational notifications sent: %s", summary.counts)
    return summary

from datetime import datetime, timedelta

CHALLENGE_LENGTH_DAYS = 100

# (last day of tier, difficulty)
DIFFICULTY_TIERS = [
    (30, "EASY"),
    (60, "MEDIUM"),
    (80, "HARD"),
    (100, "EXPERT"),
]


def raw_challenge_day(start_date: datetime, now: datetime) -> int:
    """Whole days elapsed since start, 1-indexed, floored and not clamped."""
    elapsed = now - start_date
    return elapsed // timedelta(days=1) + 1


def challenge_day(start_date: datetime, now: datetime) -> int:
    return min(max(1, raw_challenge_day(start_date, now)), CHALLENGE_LENGTH_DAYS)


def difficulty_for_day(day: int) -> str:
    for last_day, difficulty in DIFFICULTY_TIERS:
        if day <= last_day:
            return difficulty
    return DIFFICULTY_TIERS[-1][1]


def is_finished(start_date: datetime, now: datetime) -> bool:
    return raw_challenge_day(start_date, now) > CHALLENGE_LENGTH_DAYS

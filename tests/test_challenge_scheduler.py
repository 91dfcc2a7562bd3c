import asyncio
from datetime import datetime, timedelta

import pytest

from goforno.errors import ValidationError
from goforno.models import (
    DAY_ACTIVE, DAY_PENDING, QUEST_ACTIVE,
    Challenge, ChallengeDayRecord, Notification, QuestInstance, UserStats,
)
from goforno.services import notifications
from goforno.services.challenge_scheduler import (
    enroll_challenge, generate_daily_challenges, send_milestone_motivation, upsert_day_record,
)
from goforno.services.progress import create_active_instance

NOW = datetime(2026, 3, 10, 9, 1)


def _challenge(db, user, days_ago, category="SALES"):
    challenge = Challenge(user_id=user.id, category=category, start_date=NOW - days_ago, is_active=True)
    db.add(challenge)
    db.commit()
    return challenge


def _run(db, generator, gateway, rng, now=NOW):
    return asyncio.run(generate_daily_challenges(db, generator=generator, gateway=gateway, now=now, rng=rng))


def test_generates_and_starts_todays_quest(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user(device=True)
    challenge = _challenge(db, user, timedelta(days=2))
    generator = make_generator()

    summary = _run(db, generator, gateway, fixed_rng(0.9))

    assert summary.count("generated") == 1
    assert generator.calls == [("SALES", "EASY", user.id)]
    record = db.query(ChallengeDayRecord).filter_by(challenge_id=challenge.id).one()
    assert record.day == 3
    assert record.status == DAY_ACTIVE
    instance = db.get(QuestInstance, record.user_quest_id)
    assert instance.status == QUEST_ACTIVE
    assert instance.started_at == NOW
    assert db.query(UserStats).filter_by(user_id=user.id).one().active_quest_count == 1
    daily = db.query(Notification).filter(Notification.type == notifications.DAILY_CHALLENGE).all()
    assert len(daily) == 1
    assert daily[0].reference_id == challenge.id
    assert len(gateway.sent) == 1


def test_second_run_same_day_is_skipped(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user()
    challenge = _challenge(db, user, timedelta(days=2))
    generator = make_generator()

    _run(db, generator, gateway, fixed_rng(0.9))
    summary = _run(db, generator, gateway, fixed_rng(0.9))

    assert summary.count("skipped") == 1
    assert len(generator.calls) == 1
    assert db.query(ChallengeDayRecord).filter_by(challenge_id=challenge.id, day=3).count() == 1
    assert db.query(QuestInstance).filter_by(user_id=user.id).count() == 1
    assert db.query(Notification).filter(Notification.type == notifications.DAILY_CHALLENGE).count() == 1


def test_pending_record_is_filled_in_place(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user()
    challenge = _challenge(db, user, timedelta(days=2))
    db.add(ChallengeDayRecord(challenge_id=challenge.id, day=3, status=DAY_PENDING))
    db.commit()

    summary = _run(db, make_generator(), gateway, fixed_rng(0.9))

    assert summary.count("generated") == 1
    records = db.query(ChallengeDayRecord).filter_by(challenge_id=challenge.id).all()
    assert len(records) == 1
    assert records[0].status == DAY_ACTIVE
    assert records[0].quest_id is not None


def test_upsert_day_record_never_duplicates(db, make_user, make_template):
    user = make_user()
    challenge = _challenge(db, user, timedelta(days=2))
    first, second = make_template(), make_template()

    upsert_day_record(db, challenge.id, 3, first.id, NOW)
    record = upsert_day_record(db, challenge.id, 3, second.id, NOW)
    db.commit()

    assert db.query(ChallengeDayRecord).filter_by(challenge_id=challenge.id, day=3).count() == 1
    assert record.quest_id == second.id


def test_challenge_past_day_100_is_deactivated(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user()
    challenge = _challenge(db, user, timedelta(days=100))
    generator = make_generator()

    summary = _run(db, generator, gateway, fixed_rng(0.9))

    assert summary.count("deactivated") == 1
    db.refresh(challenge)
    assert challenge.is_active is False
    assert generator.calls == []
    assert db.query(ChallengeDayRecord).count() == 0


def test_day_100_uses_expert(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user()
    _challenge(db, user, timedelta(days=99, hours=1))
    generator = make_generator()

    _run(db, generator, gateway, fixed_rng(0.9))

    assert generator.calls == [("SALES", "EXPERT", user.id)]
    assert db.query(ChallengeDayRecord).one().day == 100


def test_failure_is_isolated(db, make_user, make_generator, fixed_rng, gateway):
    broken, healthy = make_user(), make_user()
    failing = _challenge(db, broken, timedelta(days=1))
    working = _challenge(db, healthy, timedelta(days=1))

    summary = _run(db, make_generator(fail_for_users=[broken.id]), gateway, fixed_rng(0.9))

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.count("generated") == 1
    assert summary.failures[0]["item_id"] == failing.id
    assert db.query(ChallengeDayRecord).filter_by(challenge_id=working.id).count() == 1
    assert db.query(ChallengeDayRecord).filter_by(challenge_id=failing.id).count() == 0


def test_daily_quest_ignores_active_cap(db, make_user, make_template, make_generator, fixed_rng, gateway):
    user = make_user()
    create_active_instance(db, user.id, make_template().id, now=NOW)
    create_active_instance(db, user.id, make_template().id, now=NOW)
    db.commit()
    _challenge(db, user, timedelta(days=4))

    summary = _run(db, make_generator(), gateway, fixed_rng(0.9))

    assert summary.count("generated") == 1
    assert db.query(UserStats).filter_by(user_id=user.id).one().active_quest_count == 3


def test_extra_motivation_follows_rng(db, make_user, make_generator, fixed_rng, gateway):
    user = make_user()
    _challenge(db, user, timedelta(days=5))

    _run(db, make_generator(), gateway, fixed_rng(0.1))

    extra = db.query(Notification).filter(Notification.type == notifications.CHALLENGE_MOTIVATION).count()
    assert extra == 1


def test_milestone_motivation(db, make_user, gateway):
    user = make_user(device=True)
    milestone = _challenge(db, user, timedelta(days=6))
    _challenge(db, user, timedelta(days=7), category="SOCIAL")

    summary = asyncio.run(send_milestone_motivation(db, gateway=gateway, now=NOW))
    assert summary.count("sent") == 1
    assert summary.count("skipped") == 1

    again = asyncio.run(send_milestone_motivation(db, gateway=gateway, now=NOW))
    assert again.count("sent") == 0

    sent = db.query(Notification).filter(Notification.type == notifications.CHALLENGE_MOTIVATION).all()
    assert len(sent) == 1
    assert sent[0].reference_id == milestone.id
    assert sent[0].data["day"] == 7
    assert len(gateway.sent) == 1


def test_enroll_rejects_duplicate_category(db, make_user):
    user = make_user()
    enroll_challenge(db, user.id, "sales", now=NOW)
    with pytest.raises(ValidationError):
        enroll_challenge(db, user.id, "SALES", now=NOW)
    with pytest.raises(ValidationError):
        enroll_challenge(db, user.id, "KNITTING", now=NOW)

import threading
import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from goforno.db import Base, set_feature
from goforno.errors import (
    ActiveQuestLimitReached, FeatureUnavailable, InsufficientFunds, PermissionDenied, ValidationError,
)
from goforno.models import (
    QUEST_ACTIVE, SUGGESTION_ACCEPTED, SUGGESTION_DECLINED, SUGGESTION_PENDING,
    LiveSession, Notification, QuestInstance, QuestSuggestion, QuestTemplate, User,
)
from goforno.services import ledger, notifications, suggestions
from goforno.services.progress import create_active_instance
from goforno.services.stats import get_or_create_stats
from goforno.services.suggestions import list_pending, respond, suggest


@pytest.fixture
def streamer(make_user):
    return make_user()


@pytest.fixture
def live(db, streamer):
    session = LiveSession(user_id=streamer.id, is_active=True, viewer_count=3)
    db.add(session)
    db.commit()
    return session


def test_queue_orders_by_boost_then_arrival(db, live, streamer, make_user, make_template):
    boosts = [0, 50, 50, 10]
    made = []
    for boost in boosts:
        viewer = make_user(diamonds=100)
        made.append(suggest(db, live.id, viewer.id, make_template().id, boost)["suggestion"])

    queue = list_pending(db, live.id, streamer.id)

    assert [s.boost_amount for s in queue] == [50, 50, 10, 0]
    assert [s.id for s in queue[:2]] == [made[1].id, made[2].id]


def test_boost_is_debited(db, live, make_user, make_template):
    viewer = make_user(diamonds=100)
    result = suggest(db, live.id, viewer.id, make_template().id, 30, "You got this")

    assert result["new_balance"] == 70
    assert result["suggestion"].status == SUGGESTION_PENDING
    assert ledger.balance(viewer.id, db) == 70


def test_insufficient_funds_creates_nothing(db, live, make_user, make_template):
    viewer = make_user(diamonds=10)
    with pytest.raises(InsufficientFunds):
        suggest(db, live.id, viewer.id, make_template().id, 50)

    assert db.query(QuestSuggestion).count() == 0
    assert ledger.balance(viewer.id, db) == 10


def test_cannot_suggest_to_own_stream(db, live, streamer, make_template):
    with pytest.raises(ValidationError):
        suggest(db, live.id, streamer.id, make_template().id)


def test_negative_boost_rejected(db, live, make_user, make_template):
    with pytest.raises(ValidationError):
        suggest(db, live.id, make_user(diamonds=100).id, make_template().id, -5)


def test_accept_starts_quest(db, live, streamer, make_user, make_template):
    viewer = make_user()
    template = make_template()
    suggestion = suggest(db, live.id, viewer.id, template.id)["suggestion"]

    result = respond(db, live.id, suggestion.id, streamer.id, "accept")

    assert result["status"] == SUGGESTION_ACCEPTED
    instance = db.get(QuestInstance, result["user_quest_id"])
    assert instance.user_id == streamer.id
    assert instance.quest_id == template.id
    assert instance.status == QUEST_ACTIVE
    db.refresh(live)
    assert live.user_quest_id == instance.id
    note = db.query(Notification).filter(Notification.type == notifications.QUEST_SUGGESTION_ACCEPTED).one()
    assert note.user_id == viewer.id
    assert note.sender_id == streamer.id


def test_accept_at_cap_leaves_suggestion_pending(db, live, streamer, make_user, make_template):
    create_active_instance(db, streamer.id, make_template().id)
    create_active_instance(db, streamer.id, make_template().id)
    db.commit()
    template = make_template()
    suggestion = suggest(db, live.id, make_user().id, template.id)["suggestion"]

    with pytest.raises(ActiveQuestLimitReached):
        respond(db, live.id, suggestion.id, streamer.id, "accept")

    db.refresh(suggestion)
    db.refresh(live)
    assert suggestion.status == SUGGESTION_PENDING
    assert live.user_quest_id is None
    assert db.query(QuestInstance).filter_by(user_id=streamer.id, quest_id=template.id).count() == 0


def test_accept_counts_active_rows_not_the_counter(db, live, streamer, make_user, make_template, make_instance):
    make_instance(streamer, make_template())
    make_instance(streamer, make_template())
    assert get_or_create_stats(streamer.id, db).active_quest_count == 0
    suggestion = suggest(db, live.id, make_user().id, make_template().id)["suggestion"]

    with pytest.raises(ActiveQuestLimitReached):
        respond(db, live.id, suggestion.id, streamer.id, "accept")

    db.refresh(suggestion)
    assert suggestion.status == SUGGESTION_PENDING
    assert db.query(QuestInstance).filter_by(user_id=streamer.id, status=QUEST_ACTIVE).count() == 2


def test_accept_quest_already_held(db, live, streamer, make_user, make_template):
    template = make_template()
    create_active_instance(db, streamer.id, template.id)
    db.commit()
    suggestion = suggest(db, live.id, make_user().id, template.id)["suggestion"]

    with pytest.raises(ValidationError):
        respond(db, live.id, suggestion.id, streamer.id, "accept")
    db.refresh(suggestion)
    assert suggestion.status == SUGGESTION_PENDING


def test_decline_keeps_boost_by_default(db, live, streamer, make_user, make_template):
    viewer = make_user(diamonds=100)
    suggestion = suggest(db, live.id, viewer.id, make_template().id, 20)["suggestion"]

    result = respond(db, live.id, suggestion.id, streamer.id, "decline")

    assert result["status"] == SUGGESTION_DECLINED
    assert result["refunded"] == 0
    assert ledger.balance(viewer.id, db) == 80


def test_decline_refunds_when_enabled(db, live, streamer, make_user, make_template, monkeypatch):
    monkeypatch.setattr(suggestions, "REFUND_BOOST_ON_DECLINE", True)
    viewer = make_user(diamonds=100)
    suggestion = suggest(db, live.id, viewer.id, make_template().id, 20)["suggestion"]

    result = respond(db, live.id, suggestion.id, streamer.id, "decline")

    assert result["refunded"] == 20
    assert ledger.balance(viewer.id, db) == 100


def test_respond_only_once(db, live, streamer, make_user, make_template):
    suggestion = suggest(db, live.id, make_user().id, make_template().id)["suggestion"]
    respond(db, live.id, suggestion.id, streamer.id, "decline")
    with pytest.raises(ValidationError):
        respond(db, live.id, suggestion.id, streamer.id, "accept")


def test_only_streamer_can_respond(db, live, make_user, make_template):
    viewer = make_user()
    suggestion = suggest(db, live.id, viewer.id, make_template().id)["suggestion"]
    with pytest.raises(PermissionDenied):
        respond(db, live.id, suggestion.id, viewer.id, "accept")
    with pytest.raises(PermissionDenied):
        list_pending(db, live.id, viewer.id)


def test_feature_unavailable(db, live, streamer, make_user, make_template):
    set_feature("quest_suggestions", False)
    with pytest.raises(FeatureUnavailable):
        suggest(db, live.id, make_user().id, make_template().id)
    assert list_pending(db, live.id, streamer.id) == []


def _seed_stream(session):
    streamer = User(email="streamer@example.com", handle="streamer")
    viewers = [User(email=f"viewer{n}@example.com", handle=f"viewer{n}") for n in (1, 2)]
    session.add_all([streamer, *viewers])
    session.flush()
    for user in (streamer, *viewers):
        get_or_create_stats(user.id, session)
    templates = [
        QuestTemplate(title=f"Ask Bookshops {n}", description="Ask bookshops for a discount.",
                      category="CONFIDENCE", difficulty="EASY", goal_count=3)
        for n in range(3)
    ]
    session.add_all(templates)
    live = LiveSession(user_id=streamer.id, is_active=True)
    session.add(live)
    session.commit()
    create_active_instance(session, streamer.id, templates[0].id)
    session.commit()
    ids = [suggest(session, live.id, viewer.id, template.id)["suggestion"].id
           for viewer, template in zip(viewers, templates[1:])]
    return streamer.id, live.id, ids


def test_concurrent_accepts_respect_cap(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}",
                           connect_args={"check_same_thread": False, "timeout": 15})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as setup:
        streamer_id, live_id, (first_id, second_id) = _seed_stream(setup)

    session_a, session_b = factory(), factory()
    outcome = {}

    def accept_second():
        try:
            outcome["second"] = respond(session_b, live_id, second_id, streamer_id, "accept")
        except ActiveQuestLimitReached as exc:
            outcome["second"] = exc

    def commit_after_second_starts():
        # the second accept runs while this one still holds its uncommitted claim
        other = threading.Thread(target=accept_second)
        other.start()
        time.sleep(0.5)
        Session.commit(session_a)
        other.join(timeout=20)

    session_a.commit = commit_after_second_starts
    try:
        first = respond(session_a, live_id, first_id, streamer_id, "accept")
    finally:
        session_a.close()
        session_b.close()

    assert first["status"] == SUGGESTION_ACCEPTED
    assert isinstance(outcome["second"], ActiveQuestLimitReached)
    with factory() as check:
        active = check.query(QuestInstance).filter_by(user_id=streamer_id, status=QUEST_ACTIVE).count()
        pending = check.get(QuestSuggestion, second_id).status
        counter = get_or_create_stats(streamer_id, check).active_quest_count
    assert active == 2
    assert counter == 2
    assert pending == SUGGESTION_PENDING
    engine.dispose()

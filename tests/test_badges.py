from datetime import datetime, timedelta

import pytest

from goforno.db import set_feature
from goforno.errors import NotFoundError
from goforno.models import (
    QUEST_COMPLETED,
    GroupQuest, GroupQuestParticipant, LiveSession, Post, PostImage, QuestVerification,
)
from goforno.services.badges import _simultaneous_candidates, classify, classify_batch

NOW = datetime(2026, 3, 2, 12, 0)


@pytest.fixture
def completed(make_instance):
    def _make(user, template, completed_at=NOW):
        return make_instance(user, template, status=QUEST_COMPLETED,
                             started_at=completed_at - timedelta(minutes=10), completed_at=completed_at)
    return _make


def _group(db, template, members, status="completed"):
    group = GroupQuest(creator_id=members[0].id, quest_id=template.id)
    db.add(group)
    db.flush()
    for member in members:
        db.add(GroupQuestParticipant(group_quest_id=group.id, user_id=member.id, status=status))
    db.commit()
    return group


def test_no_context_no_badges(db, make_user, make_template, completed):
    instance = completed(make_user(), make_template())
    assert classify(db, instance.id) == {"silver": False, "gold": False, "bronze": False, "blue": False}


def test_two_verifications_give_silver_only(db, make_user, make_template, completed):
    owner, friend_a, friend_b = make_user(), make_user(), make_user()
    instance = completed(owner, make_template())
    db.add_all([
        QuestVerification(user_quest_id=instance.id, verifier_id=friend_a.id),
        QuestVerification(user_quest_id=instance.id, verifier_id=friend_b.id),
    ])
    db.commit()

    assert classify(db, instance.id) == {"silver": True, "gold": False, "bronze": False, "blue": False}


def test_single_verification_needs_a_photo_post(db, make_user, make_template, completed):
    owner, friend = make_user(), make_user()
    with_photo = completed(owner, make_template())
    without_photo = completed(owner, make_template())
    for instance in (with_photo, without_photo):
        db.add(QuestVerification(user_quest_id=instance.id, verifier_id=friend.id))
    photo_post = Post(user_id=owner.id, user_quest_id=with_photo.id, content="Did it!")
    text_post = Post(user_id=owner.id, user_quest_id=without_photo.id, content="Did it too")
    db.add_all([photo_post, text_post])
    db.flush()
    db.add(PostImage(post_id=photo_post.id, url="https://example.com/proof.jpg"))
    db.commit()

    badges = classify_batch(db, [with_photo.id, without_photo.id])
    assert badges[with_photo.id]["silver"] is True
    assert badges[without_photo.id]["silver"] is False


def test_ended_stream_gives_gold(db, make_user, make_template, completed):
    user = make_user()
    instance = completed(user, make_template())
    db.add(LiveSession(user_id=user.id, user_quest_id=instance.id, is_active=False, ended_at=NOW, viewer_count=0))
    db.commit()

    badges = classify(db, instance.id)
    assert badges["gold"] is True
    assert badges["bronze"] is False


def test_watched_stream_gives_bronze(db, make_user, make_template, completed):
    user = make_user()
    instance = completed(user, make_template())
    db.add(LiveSession(user_id=user.id, user_quest_id=instance.id, is_active=True, viewer_count=4))
    db.commit()

    badges = classify(db, instance.id)
    assert badges["gold"] is False
    assert badges["bronze"] is True


def test_group_of_three_gives_blue_and_bronze(db, make_user, make_template, completed):
    members = [make_user(), make_user(), make_user()]
    template = make_template()
    instance = completed(members[0], template)
    _group(db, template, members)

    badges = classify(db, instance.id)
    assert badges["blue"] is True
    assert badges["bronze"] is True
    assert badges["silver"] is False


def test_solo_group_gives_blue_only(db, make_user, make_template, completed):
    user = make_user()
    template = make_template()
    instance = completed(user, template)
    _group(db, template, [user])

    badges = classify(db, instance.id)
    assert badges["blue"] is True
    assert badges["bronze"] is False


def test_group_badges_need_group_quests(db, make_user, make_template, completed):
    members = [make_user(), make_user()]
    template = make_template()
    instance = completed(members[0], template)
    _group(db, template, members)
    set_feature("group_quests", False)

    assert classify(db, instance.id)["blue"] is False


def test_simultaneous_completion_gives_bronze(db, make_user, make_template, completed):
    template = make_template()
    mine = completed(make_user(), template, NOW)
    theirs = completed(make_user(), template, NOW + timedelta(minutes=30))
    late = completed(make_user(), make_template(), NOW)
    completed(make_user(), late.quest, NOW + timedelta(hours=3))

    badges = classify_batch(db, [mine.id, theirs.id, late.id])
    assert badges[mine.id]["bronze"] is True
    assert badges[theirs.id]["bronze"] is True
    assert badges[late.id]["bronze"] is False


def test_batch_includes_unknown_ids(db, make_user, make_template, completed):
    instance = completed(make_user(), make_template())

    badges = classify_batch(db, [instance.id, 9999])
    assert set(badges) == {instance.id, 9999}
    assert not any(badges[9999].values())
    assert classify_batch(db, []) == {}


def test_unknown_instance_raises(db):
    with pytest.raises(NotFoundError):
        classify(db, 9999)


def test_simultaneous_lookup_is_bounded_to_the_window(db, make_user, make_template, completed):
    template = make_template()
    mine = completed(make_user(), template)
    nearby = completed(make_user(), template, completed_at=NOW + timedelta(minutes=30))
    completed(make_user(), template, completed_at=NOW + timedelta(hours=3))
    completed(make_user(), template, completed_at=NOW - timedelta(days=40))

    rows = _simultaneous_candidates(db, [mine])

    assert sorted(user_id for _, user_id, _ in rows) == sorted([mine.user_id, nearby.user_id])

"""Quest badges, derived from completion context on every read and never stored.

silver  verified by 2+ friends, or shared to the community with a photo
gold    live streamed (the stream has ended)
blue    completed as part of a group quest
bronze  performed with others: a group quest with more than one participant,
        otherwise a stream that had viewers, otherwise another user finishing
        the same quest within an hour
"""
from __future__ import annotations
from collections import defaultdict
from datetime import timedelta
from typing import Dict, Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db import feature_enabled
from ..errors import NotFoundError
from ..models import (
    QUEST_COMPLETED,
    GroupQuest, GroupQuestParticipant, LiveSession, Post, PostImage, QuestInstance, QuestVerification,
)

MIN_VERIFICATIONS = 2
SIMULTANEOUS_WINDOW = timedelta(hours=1)
BADGES = ("silver", "gold", "bronze", "blue")


def _empty() -> Dict[str, bool]:
    return {name: False for name in BADGES}


def _silver(db: Session, ids, result) -> None:
    verified = (
        db.query(QuestVerification.user_quest_id, func.count(QuestVerification.id))
        .filter(QuestVerification.user_quest_id.in_(ids))
        .group_by(QuestVerification.user_quest_id)
        .all()
    )
    for uq_id, count in verified:
        if count >= MIN_VERIFICATIONS:
            result[uq_id]["silver"] = True

    remaining = [i for i in ids if not result[i]["silver"]]
    if not remaining:
        return
    with_photos = (
        db.query(Post.user_quest_id)
        .join(PostImage, PostImage.post_id == Post.id)
        .filter(Post.user_quest_id.in_(remaining))
        .distinct()
        .all()
    )
    for (uq_id,) in with_photos:
        result[uq_id]["silver"] = True


def _gold(db: Session, ids, result) -> None:
    streamed = (
        db.query(LiveSession.user_quest_id)
        .filter(
            LiveSession.user_quest_id.in_(ids),
            LiveSession.is_active.is_(False),
            LiveSession.ended_at.isnot(None),
        )
        .distinct()
        .all()
    )
    for (uq_id,) in streamed:
        result[uq_id]["gold"] = True


def _group(db: Session, instances, result) -> None:
    if not instances or not feature_enabled("group_quests"):
        return
    user_ids = {i.user_id for i in instances}
    quest_ids = {i.quest_id for i in instances}
    rows = (
        db.query(GroupQuestParticipant.user_id, GroupQuest.quest_id, GroupQuest.id)
        .join(GroupQuest, GroupQuest.id == GroupQuestParticipant.group_quest_id)
        .filter(
            GroupQuestParticipant.status == "completed",
            GroupQuestParticipant.user_id.in_(user_ids),
            GroupQuest.quest_id.in_(quest_ids),
        )
        .all()
    )
    groups_by_key = defaultdict(set)
    for user_id, quest_id, group_quest_id in rows:
        groups_by_key[(user_id, quest_id)].add(group_quest_id)
    if not groups_by_key:
        return

    group_ids = set().union(*groups_by_key.values())
    sizes = dict(
        db.query(GroupQuestParticipant.group_quest_id, func.count(GroupQuestParticipant.id))
        .filter(GroupQuestParticipant.group_quest_id.in_(group_ids))
        .group_by(GroupQuestParticipant.group_quest_id)
        .all()
    )
    for instance in instances:
        group_quests = groups_by_key.get((instance.user_id, instance.quest_id))
        if not group_quests:
            continue
        result[instance.id]["blue"] = True
        if any(sizes.get(g, 0) > 1 for g in group_quests):
            result[instance.id]["bronze"] = True


def _simultaneous_candidates(db: Session, pending):
    """Completions of the pending quests inside the batch's time span widened by the window."""
    earliest = min(i.completed_at for i in pending) - SIMULTANEOUS_WINDOW
    latest = max(i.completed_at for i in pending) + SIMULTANEOUS_WINDOW
    return (
        db.query(QuestInstance.quest_id, QuestInstance.user_id, QuestInstance.completed_at)
        .filter(
            QuestInstance.quest_id.in_({i.quest_id for i in pending}),
            QuestInstance.status == QUEST_COMPLETED,
            QuestInstance.completed_at.between(earliest, latest),
        )
        .all()
    )


def _bronze_fallback(db: Session, instances, result) -> None:
    need = [i.id for i in instances if not result[i.id]["bronze"]]
    if need:
        watched = (
            db.query(LiveSession.user_quest_id)
            .filter(LiveSession.user_quest_id.in_(need), LiveSession.viewer_count > 0)
            .distinct()
            .all()
        )
        for (uq_id,) in watched:
            result[uq_id]["bronze"] = True

    pending = [
        i for i in instances
        if not result[i.id]["bronze"] and i.status == QUEST_COMPLETED and i.completed_at is not None
    ]
    if not pending:
        return
    completions = _simultaneous_candidates(db, pending)
    by_quest = defaultdict(list)
    for quest_id, user_id, completed_at in completions:
        by_quest[quest_id].append((user_id, completed_at))
    for instance in pending:
        for user_id, completed_at in by_quest[instance.quest_id]:
            if user_id != instance.user_id and abs(completed_at - instance.completed_at) <= SIMULTANEOUS_WINDOW:
                result[instance.id]["bronze"] = True
                break


def classify_batch(db: Session, instance_ids: Iterable[int]) -> Dict[int, Dict[str, bool]]:
    """
    Badges for many quest instances.

    Issues a fixed number of grouped queries per rule regardless of how many
    instances are asked for. Unknown ids come back with every badge false.
    """
    ids = sorted(set(instance_ids))
    result = {i: _empty() for i in ids}
    if not ids:
        return result
    instances = db.query(QuestInstance).filter(QuestInstance.id.in_(ids)).all()

    _silver(db, ids, result)
    _gold(db, ids, result)
    _group(db, instances, result)
    _bronze_fallback(db, instances, result)
    return result


def classify(db: Session, instance_id: int) -> Dict[str, bool]:
    if db.get(QuestInstance, instance_id) is None:
        raise NotFoundError("Quest not found")
    return classify_batch(db, [instance_id])[instance_id]

from sqlalchemy import (
    Column, Integer, String, Boolean, JSON, DateTime, Float, ForeignKey, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .clock import utcnow
from .db import Base

# Quest goal types
COLLECT_NOS = "COLLECT_NOS"
COLLECT_YES = "COLLECT_YES"
TAKE_ACTION = "TAKE_ACTION"
GOAL_TYPES = (COLLECT_NOS, COLLECT_YES, TAKE_ACTION)

# QuestInstance status
QUEST_QUEUED = "QUEUED"
QUEST_ACTIVE = "ACTIVE"
QUEST_COMPLETED = "COMPLETED"

# ChallengeDayRecord status
DAY_PENDING = "PENDING"
DAY_ACTIVE = "ACTIVE"
DAY_COMPLETED = "COMPLETED"

# QuestSuggestion status
SUGGESTION_PENDING = "pending"
SUGGESTION_ACCEPTED = "accepted"
SUGGESTION_DECLINED = "declined"

DIFFICULTIES = ("EASY", "MEDIUM", "HARD", "EXPERT")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    handle = Column(String)
    # Opt-outs keyed by preference name, e.g. {"questReminder": false}
    notification_preferences = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)


class PushDevice(Base):
    __tablename__ = "push_devices"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    token = Column(String, unique=True)
    platform = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class UserStats(Base):
    __tablename__ = "user_stats"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, index=True)
    total_xp = Column(Integer, default=0)
    total_points = Column(Integer, default=0)
    tokens = Column(Integer, default=0)
    diamonds = Column(Integer, default=0)
    current_streak = Column(Integer, default=0)
    longest_streak = Column(Integer, default=0)
    last_active_at = Column(DateTime, nullable=True)
    last_quest_completed_at = Column(DateTime, nullable=True)
    daily_confidence_meter = Column(Float, default=0)
    last_confidence_decay_at = Column(DateTime, nullable=True)
    easy_zone_count = Column(Integer, default=0)
    growth_zone_count = Column(Integer, default=0)
    fear_zone_count = Column(Integer, default=0)
    active_quest_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class QuestTemplate(Base):
    __tablename__ = "quests"
    id = Column(Integer, primary_key=True)
    title = Column(String)
    description = Column(Text)
    category = Column(String)
    difficulty = Column(String, default="EASY")
    goal_type = Column(String, default=COLLECT_NOS)
    goal_count = Column(Integer, default=1)
    xp_reward = Column(Integer, default=100)
    point_reward = Column(Integer, default=200)
    is_ai_generated = Column(Boolean, default=False)
    location = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    time_context = Column(String, nullable=True)
    date_context = Column(String, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class QuestInstance(Base):
    __tablename__ = "user_quests"
    __table_args__ = (UniqueConstraint("user_id", "quest_id", name="uq_user_quest"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    quest_id = Column(Integer, ForeignKey("quests.id"), index=True)
    status = Column(String, default=QUEST_QUEUED, index=True)
    no_count = Column(Integer, default=0)
    yes_count = Column(Integer, default=0)
    action_count = Column(Integer, default=0)
    is_from_friend = Column(Boolean, default=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    quest = relationship("QuestTemplate", lazy="joined")


class Challenge(Base):
    __tablename__ = "challenges"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    category = Column(String)
    start_date = Column(DateTime, default=utcnow)
    is_active = Column(Boolean, default=True, index=True)
    completed_days = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)


class ChallengeDayRecord(Base):
    __tablename__ = "challenge_daily_quests"
    __table_args__ = (UniqueConstraint("challenge_id", "day", name="uq_challenge_day"),)
    id = Column(Integer, primary_key=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), index=True)
    day = Column(Integer)
    quest_id = Column(Integer, ForeignKey("quests.id"), nullable=True)
    user_quest_id = Column(Integer, ForeignKey("user_quests.id"), nullable=True, index=True)
    status = Column(String, default=DAY_PENDING)
    generated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    type = Column(String, index=True)
    title = Column(String)
    message = Column(Text)
    data = Column(JSON, default=dict)
    # The quest instance or challenge this notification is about
    reference_id = Column(Integer, nullable=True, index=True)
    # (recipient, kind, reference, bucket); NULL means no dedup
    dedup_key = Column(String(160), unique=True, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)


class LiveSession(Base):
    __tablename__ = "live_sessions"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    title = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    viewer_count = Column(Integer, default=0)
    user_quest_id = Column(Integer, ForeignKey("user_quests.id"), nullable=True, index=True)
    started_at = Column(DateTime, default=utcnow)
    ended_at = Column(DateTime, nullable=True)


class QuestSuggestion(Base):
    __tablename__ = "quest_suggestions"
    id = Column(Integer, primary_key=True)
    live_session_id = Column(Integer, ForeignKey("live_sessions.id"), index=True)
    suggester_id = Column(Integer, ForeignKey("users.id"))
    quest_id = Column(Integer, ForeignKey("quests.id"))
    boost_amount = Column(Integer, default=0)
    message = Column(Text, nullable=True)
    status = Column(String, default=SUGGESTION_PENDING, index=True)
    created_at = Column(DateTime, default=utcnow)
    responded_at = Column(DateTime, nullable=True)

    quest = relationship("QuestTemplate", lazy="joined")


class QuestVerification(Base):
    __tablename__ = "quest_verifications"
    id = Column(Integer, primary_key=True)
    user_quest_id = Column(Integer, ForeignKey("user_quests.id"), index=True)
    verifier_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)


class Post(Base):
    __tablename__ = "posts"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    user_quest_id = Column(Integer, ForeignKey("user_quests.id"), nullable=True, index=True)
    content = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class PostImage(Base):
    __tablename__ = "post_images"
    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id"), index=True)
    url = Column(String)


class GroupQuest(Base):
    __tablename__ = "group_quests"
    id = Column(Integer, primary_key=True)
    creator_id = Column(Integer, ForeignKey("users.id"))
    quest_id = Column(Integer, ForeignKey("quests.id"), index=True)
    created_at = Column(DateTime, default=utcnow)


class GroupQuestParticipant(Base):
    __tablename__ = "group_quest_participants"
    id = Column(Integer, primary_key=True)
    group_quest_id = Column(Integer, ForeignKey("group_quests.id"), index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    status = Column(String, default="invited")
    completed_at = Column(DateTime, nullable=True)


class SchedulerCheckpoint(Base):
    __tablename__ = "scheduler_checkpoints"
    id = Column(Integer, primary_key=True)
    task_name = Column(String, unique=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    last_summary_json = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

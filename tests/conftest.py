import itertools
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from goforno import db as db_module
from goforno import models
from goforno.db import Base
from goforno.services.push_client import PushResult
from goforno.services.quest_generator import compute_rewards
from goforno.services.stats import get_or_create_stats


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_features():
    db_module._features.clear()
    yield
    db_module._features.clear()


class FakeGateway:
    """Records every push instead of calling Expo."""

    def __init__(self, success=True):
        self.success = success
        self.sent = []
        self._lock = threading.Lock()

    def send(self, token, title, body, data=None):
        with self._lock:
            self.sent.append({"token": token, "title": title, "body": body, "data": data or {}})
        return PushResult(self.success, None if self.success else "rejected")


class FakeGenerator:
    def __init__(self, fail_for_users=()):
        self.fail_for_users = set(fail_for_users)
        self.calls = []
        self._ids = itertools.count(1)

    def generate(self, category, difficulty, prompt=None, user_id=None, location_hints=None):
        self.calls.append((category, difficulty, user_id))
        if user_id in self.fail_for_users:
            raise RuntimeError("model unavailable")
        quest = {
            "title": f"Ask Strangers {next(self._ids)}",
            "description": "Ask 3 strangers for directions.",
            "category": category,
            "difficulty": difficulty,
            "goal_type": models.COLLECT_NOS,
            "goal_count": 3,
        }
        quest.update(compute_rewards(3, difficulty))
        return quest


class FixedRng:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(diamonds=0, prefs=None, device=False):
        n = next(counter)
        user = models.User(email=f"user{n}@example.com", handle=f"user{n}", notification_preferences=prefs or {})
        db.add(user)
        db.flush()
        stats = get_or_create_stats(user.id, db)
        stats.diamonds = diamonds
        if device:
            db.add(models.PushDevice(user_id=user.id, token=f"ExponentPushToken[{n}]"))
        db.commit()
        return user
    return _make


@pytest.fixture
def make_template(db):
    counter = itertools.count(1)

    def _make(goal_type=models.COLLECT_NOS, goal_count=5, difficulty="EASY", title=None):
        n = next(counter)
        rewards = compute_rewards(goal_count, difficulty)
        template = models.QuestTemplate(
            title=title or f"Ask Coffee Shops {n}",
            description="Ask coffee shops for an item that's not on the menu.",
            category="CONFIDENCE",
            difficulty=difficulty,
            goal_type=goal_type,
            goal_count=goal_count,
            **rewards,
        )
        db.add(template)
        db.commit()
        return template
    return _make


@pytest.fixture
def make_instance(db):
    def _make(user, template, status=models.QUEST_ACTIVE, started_at=None, completed_at=None):
        instance = models.QuestInstance(
            user_id=user.id,
            quest_id=template.id,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
        )
        db.add(instance)
        db.commit()
        return instance
    return _make


@pytest.fixture
def make_generator():
    return FakeGenerator


@pytest.fixture
def fixed_rng():
    return FixedRng

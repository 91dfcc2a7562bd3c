import logging

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import DATABASE_URL, PROVISION_OPTIONAL_TABLES

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Optional feature -> tables it needs. These may lag behind a deploy, so
# create_all leaves them alone unless provisioning is switched on; which of
# them exist is checked once at startup.
OPTIONAL_TABLES = {
    "quest_suggestions": ("quest_suggestions",),
    "group_quests": ("group_quests", "group_quest_participants"),
}
_features = {}


def _optional_table_names():
    return {name for tables in OPTIONAL_TABLES.values() for name in tables}


def init_db(bind=None, provision_optional=PROVISION_OPTIONAL_TABLES):
    from . import models
    bind = bind or engine
    tables = None
    if not provision_optional:
        optional = _optional_table_names()
        tables = [t for t in Base.metadata.sorted_tables if t.name not in optional]
    Base.metadata.create_all(bind=bind, tables=tables)
    ensure_schema(bind)
    detect_features(bind)


def ensure_schema(bind=None):
    """Idempotent schema migration: safely add columns if they don't exist."""
    bind = bind or engine
    try:
        with bind.connect() as conn:
            inspector = inspect(bind)

            if inspector.has_table("notifications"):
                cols = [c["name"] for c in inspector.get_columns("notifications")]
                if "reference_id" not in cols:
                    conn.execute(text("ALTER TABLE notifications ADD COLUMN reference_id INTEGER NULL"))
                if "dedup_key" not in cols:
                    conn.execute(text("ALTER TABLE notifications ADD COLUMN dedup_key VARCHAR(160) NULL"))
                    conn.execute(text(
                        "CREATE UNIQUE INDEX IF NOT EXISTS ix_notifications_dedup_key ON notifications (dedup_key)"
                    ))
                conn.commit()

            if inspector.has_table("user_stats"):
                cols = [c["name"] for c in inspector.get_columns("user_stats")]
                if "active_quest_count" not in cols:
                    conn.execute(text("ALTER TABLE user_stats ADD COLUMN active_quest_count INTEGER DEFAULT 0"))
                    conn.execute(text(
                        "UPDATE user_stats SET active_quest_count = ("
                        "SELECT count(*) FROM user_quests "
                        "WHERE user_quests.user_id = user_stats.user_id AND user_quests.status = 'ACTIVE')"
                    ))
                if "diamonds" not in cols:
                    conn.execute(text("ALTER TABLE user_stats ADD COLUMN diamonds INTEGER DEFAULT 0"))
                conn.commit()
    except SQLAlchemyError:
        logger.warning("Schema migration skipped", exc_info=True)


def detect_features(bind=None):
    """Record which optional tables are provisioned. Run once at startup."""
    bind = bind or engine
    inspector = inspect(bind)
    for feature, tables in OPTIONAL_TABLES.items():
        missing = [t for t in tables if not inspector.has_table(t)]
        _features[feature] = not missing
        if missing:
            logger.warning("Tables %s not provisioned; feature %s disabled", ", ".join(missing), feature)
    return dict(_features)


def feature_enabled(name):
    return _features.get(name, True)


def set_feature(name, enabled):
    _features[name] = bool(enabled)

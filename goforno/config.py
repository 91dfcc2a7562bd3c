import logging
import os

logger = logging.getLogger(__name__)


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


def _env_flag(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Get DATABASE_URL, but validate it; fallback to SQLite if invalid
_raw_db_url = os.getenv("DATABASE_URL", "sqlite:///goforno.db")

if _raw_db_url and not _raw_db_url.startswith(("sqlite://", "postgresql://", "postgres://")):
    logger.warning("Invalid DATABASE_URL detected. Using SQLite fallback.")
    DATABASE_URL = "sqlite:///goforno.db"
elif _raw_db_url.startswith("postgres://"):
    # SQLAlchemy expects postgresql://
    DATABASE_URL = _raw_db_url.replace("postgres://", "postgresql://", 1)
else:
    DATABASE_URL = _raw_db_url

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL_ID = os.getenv("GEMINI_MODEL_ID", "gemini-2.0-flash")

PUSH_ENABLED = _env_flag("PUSH_ENABLED", True)
EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_BATCH_SIZE = _env_int("PUSH_BATCH_SIZE", 10)

# Create the optional feature tables at startup. Migrations own them outside local SQLite.
PROVISION_OPTIONAL_TABLES = _env_flag("PROVISION_OPTIONAL_TABLES", DATABASE_URL.startswith("sqlite"))

MAX_ACTIVE_QUESTS = _env_int("MAX_ACTIVE_QUESTS", 2)
# Open product question: boost may be a submission fee. Off keeps current behaviour.
REFUND_BOOST_ON_DECLINE = _env_flag("REFUND_BOOST_ON_DECLINE", False)

DAILY_GENERATION_HOUR_UTC = _env_int("DAILY_GENERATION_HOUR_UTC", 9)
MOTIVATION_HOUR_UTC = _env_int("MOTIVATION_HOUR_UTC", 14)
TRIGGER_WINDOW_MINUTES = _env_int("TRIGGER_WINDOW_MINUTES", 5)
MIN_HOURS_BETWEEN_RUNS = _env_int("MIN_HOURS_BETWEEN_RUNS", 23)

SCHEDULER_TICK_SECONDS = _env_int("SCHEDULER_TICK_SECONDS", 5 * 60)
TIME_WARNING_INTERVAL_SECONDS = _env_int("TIME_WARNING_INTERVAL_SECONDS", 60)
REMINDER_INTERVAL_SECONDS = _env_int("REMINDER_INTERVAL_SECONDS", 2 * 60 * 60)
DECAY_INTERVAL_SECONDS = _env_int("DECAY_INTERVAL_SECONDS", 60 * 60)
LEADERBOARD_INTERVAL_SECONDS = _env_int("LEADERBOARD_INTERVAL_SECONDS", 6 * 60 * 60)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def get_diagnostics():
    return {
        "Database": "SQLite (Default)" if "sqlite" in DATABASE_URL else "Postgres",
        "Google API Key": "Configured" if GOOGLE_API_KEY else "Missing (Predefined Quests)",
        "Model": GEMINI_MODEL_ID,
        "Push": "Enabled" if PUSH_ENABLED else "Disabled (In-App Only)",
        "Max Active Quests": MAX_ACTIVE_QUESTS,
        "Refund Boost On Decline": REFUND_BOOST_ON_DECLINE,
        "Daily Generation (UTC)": f"{DAILY_GENERATION_HOUR_UTC:02d}:00",
        "Motivation (UTC)": f"{MOTIVATION_HOUR_UTC:02d}:00",
        "Provision Optional Tables": PROVISION_OPTIONAL_TABLES,
    }

# goforno/services/quest_generator.py
from __future__ import annotations
import logging
import random
import re
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..models import DIFFICULTIES, GOAL_TYPES, COLLECT_NOS, QuestTemplate
from .gemini_client import call_gemini_json

logger = logging.getLogger(__name__)

CATEGORIES = ["SALES", "SOCIAL", "ENTREPRENEURSHIP", "DATING", "CONFIDENCE", "CAREER"]
REWARD_MULTIPLIER = {"EASY": 1, "MEDIUM": 1.5, "HARD": 2, "EXPERT": 3}

# goalCount range for rejection quests by difficulty
GOAL_COUNT_RANGE = {"EASY": (3, 5), "MEDIUM": (5, 8), "HARD": (8, 12), "EXPERT": (12, 15)}

SYSTEM_PROMPT = (
    "You are a creative motivational coach creating unique rejection challenges. "
    "Each title MUST be exactly 3 words. Be extremely specific: concrete locations, "
    "specific types of people, specific items or services. Never include GPS coordinates "
    "in the description. If the description mentions a number of people or places, "
    "goalCount MUST match it. Only create quests that are safe, legal and respectful, "
    "about overcoming the fear of rejection through harmless social interactions."
)

PREDEFINED_QUESTS = [
    {
        "title": "Coffee Shop Challenge",
        "description": "Ask 5 coffee shops for an item that's not on their menu. "
                       "Practice handling rejection in a low-stakes environment.",
        "category": "CONFIDENCE",
        "difficulty": "EASY",
        "goal_type": COLLECT_NOS,
        "goal_count": 5,
    },
    {
        "title": "Social Connection Quest",
        "description": "Ask 3 strangers for a small favor (time, directions, recommendation). "
                       "Build confidence in social interactions.",
        "category": "SOCIAL",
        "difficulty": "MEDIUM",
        "goal_type": COLLECT_NOS,
        "goal_count": 3,
    },
    {
        "title": "Sales Pitch Practice",
        "description": "Pitch your product or service to 10 people. Focus on the process, "
                       "not the outcome. Every NO is progress.",
        "category": "SALES",
        "difficulty": "HARD",
        "goal_type": COLLECT_NOS,
        "goal_count": 10,
    },
]

_ACTION_WORDS = ("ask", "request", "visit", "pitch", "tell", "compliment", "apply", "send", "contact")


def compute_rewards(goal_count: int, difficulty: str) -> Dict[str, int]:
    multiplier = REWARD_MULTIPLIER.get(difficulty, 1)
    return {
        "xp_reward": round(goal_count * 10 * multiplier + 50),
        "point_reward": round(goal_count * 20 * multiplier + 100),
    }


def time_context(now: datetime) -> Dict[str, str]:
    hour = now.hour
    if 6 <= hour < 12:
        part = "morning"
    elif 12 <= hour < 17:
        part = "afternoon"
    elif 17 <= hour < 21:
        part = "evening"
    else:
        part = "night"
    day_type = "weekend" if now.weekday() >= 5 else "weekday"
    return {
        "time_context": f"{day_type} {part}",
        "date_context": now.strftime("%A, %B ") + str(now.day),
    }


def _three_word_title(title: str) -> str:
    words = (title or "").split()
    if len(words) > 3:
        return " ".join(words[:3])
    while len(words) < 3:
        words.append("Challenge")
    return " ".join(words)


def _goal_count_from_text(text: str) -> Optional[int]:
    """A number tied to an action word ("ask 5 gyms") wins over the model's goalCount."""
    lowered = text.lower()
    for match in re.finditer(r"\b(\d+)\b", lowered):
        number = int(match.group(1))
        if not 1 <= number <= 50:
            continue
        for word in _ACTION_WORDS:
            if f"{word} {number}" in lowered or f"{number} {word}" in lowered:
                return number
    return None


def normalize_quest(raw: Dict[str, Any], category: str, difficulty: str, now: datetime) -> Dict[str, Any]:
    quest_difficulty = str(raw.get("difficulty") or difficulty).upper()
    if quest_difficulty not in DIFFICULTIES:
        quest_difficulty = difficulty
    goal_type = str(raw.get("goalType") or raw.get("goal_type") or COLLECT_NOS).upper()
    if goal_type not in GOAL_TYPES:
        goal_type = COLLECT_NOS
    try:
        goal_count = int(raw.get("goalCount") or raw.get("goal_count") or 0)
    except (TypeError, ValueError):
        goal_count = 0

    title = _three_word_title(raw.get("title", ""))
    description = raw.get("description") or ""
    stated = _goal_count_from_text(f"{title} {description}")
    if stated:
        goal_count = stated
    if goal_count < 1:
        goal_count = GOAL_COUNT_RANGE.get(quest_difficulty, (3, 5))[0]

    quest = {
        "title": title,
        "description": description,
        "category": str(raw.get("category") or category).upper(),
        "difficulty": quest_difficulty,
        "goal_type": goal_type,
        "goal_count": goal_count,
        "location": raw.get("location") or None,
        "latitude": raw.get("latitude") or None,
        "longitude": raw.get("longitude") or None,
    }
    quest.update(compute_rewards(goal_count, quest_difficulty))
    quest.update(time_context(now))
    return quest


def predefined_quest(category: str, difficulty: str, now: datetime, rng=random) -> Dict[str, Any]:
    matching = [q for q in PREDEFINED_QUESTS if q["difficulty"] == difficulty]
    base = dict(rng.choice(matching or PREDEFINED_QUESTS))
    base["category"] = category or base["category"]
    if difficulty in DIFFICULTIES and base["difficulty"] != difficulty:
        base["difficulty"] = difficulty
        base["goal_count"] = GOAL_COUNT_RANGE[difficulty][0]
    quest = dict(base, location=None, latitude=None, longitude=None)
    quest.update(compute_rewards(quest["goal_count"], quest["difficulty"]))
    quest.update(time_context(now))
    return quest


def build_prompt(category: str, difficulty: str, custom_prompt: str = None,
                 location_hints: Optional[Dict[str, Any]] = None) -> str:
    lines = []
    if custom_prompt:
        lines.append(f'Create a "Go for No" rejection challenge based on: {custom_prompt}')
    else:
        lines.append(f'Create a unique "Go for No" rejection challenge for {category} at {difficulty} difficulty.')
    low, high = GOAL_COUNT_RANGE.get(difficulty, (3, 5))
    lines += [
        "REQUIREMENTS:",
        "- Title MUST be exactly 3 words (an action statement, e.g. \"Ask Coffee Shops\")",
        "- Description: 2-3 specific, actionable sentences",
        f"- category: {category}",
        f"- difficulty: {difficulty}",
        "- goalType: COLLECT_NOS (most common), COLLECT_YES, or TAKE_ACTION",
        f"- goalCount: {low}-{high} for COLLECT_NOS/COLLECT_YES unless the description names a number",
    ]
    if location_hints and location_hints.get("location"):
        lines.append(f"- The user is near {location_hints['location']}; pick a specific nearby place")
    lines.append(
        "Return a JSON object with: title, description, category, difficulty, goalType, goalCount, "
        "location, latitude, longitude."
    )
    return "\n".join(lines)


class QuestGenerator:
    """Quest generation collaborator backed by Gemini, with predefined quests as fallback."""

    def __init__(self, caller=call_gemini_json, rng=random):
        self.caller = caller
        self.rng = rng

    def generate(self, category: str, difficulty: str, prompt: str = None, user_id: int = None,
                 location_hints: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = utcnow()
        raw = self.caller(build_prompt(category, difficulty, prompt, location_hints), system=SYSTEM_PROMPT)
        if not raw or not raw.get("title"):
            logger.info("AI generation unavailable for user %s, using predefined quest", user_id)
            return predefined_quest(category, difficulty, now, self.rng)
        return normalize_quest(raw, category, difficulty, now)


def save_template(db: Session, quest_data: Dict[str, Any], *, ai_generated: bool = True,
                  created_by: int = None) -> QuestTemplate:
    fields = {c.name for c in QuestTemplate.__table__.columns} - {"id", "created_at"}
    template = QuestTemplate(**{k: v for k, v in quest_data.items() if k in fields})
    template.is_ai_generated = ai_generated
    template.created_by = created_by
    db.add(template)
    db.flush()
    return template

# goforno/services/suggestions.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..config import REFUND_BOOST_ON_DECLINE
from ..db import feature_enabled
from ..errors import FeatureUnavailable, NotFoundError, PermissionDenied, ValidationError
from ..models import (
    SUGGESTION_ACCEPTED, SUGGESTION_DECLINED, SUGGESTION_PENDING,
    LiveSession, QuestSuggestion, QuestTemplate,
)
from . import ledger
from .notifications import QUEST_SUGGESTION_ACCEPTED, create_notification, make_dedup_key
from .progress import create_active_instance

logger = logging.getLogger(__name__)

FEATURE = "quest_suggestions"
ACCEPT = "accept"
DECLINE = "decline"


def _require_feature() -> None:
    if not feature_enabled(FEATURE):
        raise FeatureUnavailable("Quest suggestions feature coming soon - database migration pending")


def _owned_session(db: Session, live_session_id: int, owner_id: int) -> LiveSession:
    live = db.get(LiveSession, live_session_id)
    if live is None:
        raise NotFoundError("Live stream not found")
    if live.user_id != owner_id:
        raise PermissionDenied("Not your stream")
    return live


def suggest(db: Session, live_session_id: int, suggester_id: int, quest_id: int,
            boost_amount: int = 0, message: Optional[str] = None) -> Dict[str, Any]:
    """
    Suggest a quest to a live streamer, optionally boosted with diamonds.

    The boost is debited in the same transaction that creates the suggestion:
    if the balance is short, nothing is created.

    Returns:
        {"suggestion": QuestSuggestion, "new_balance": int}
    """
    _require_feature()
    try:
        boost_amount = int(boost_amount or 0)
    except (TypeError, ValueError):
        raise ValidationError("Boost amount must be a whole number")
    if boost_amount < 0:
        raise ValidationError("Boost amount cannot be negative")

    live = db.get(LiveSession, live_session_id)
    if live is None or not live.is_active:
        raise NotFoundError("Live stream not found or ended")
    if live.user_id == suggester_id:
        raise ValidationError("Cannot suggest quests to your own stream")
    if db.get(QuestTemplate, quest_id) is None:
        raise NotFoundError("Quest not found")

    try:
        if boost_amount > 0:
            ledger.debit(suggester_id, boost_amount, db)
        suggestion = QuestSuggestion(
            live_session_id=live_session_id,
            suggester_id=suggester_id,
            quest_id=quest_id,
            boost_amount=boost_amount,
            message=message,
            status=SUGGESTION_PENDING,
            created_at=utcnow(),
        )
        db.add(suggestion)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(suggestion)
    return {"suggestion": suggestion, "new_balance": ledger.balance(suggester_id, db)}


def list_pending(db: Session, live_session_id: int, owner_id: int) -> List[QuestSuggestion]:
    """Pending suggestions for the streamer: highest boost first, earliest submission wins ties."""
    _owned_session(db, live_session_id, owner_id)
    if not feature_enabled(FEATURE):
        return []
    return (
        db.query(QuestSuggestion)
        .filter(
            QuestSuggestion.live_session_id == live_session_id,
            QuestSuggestion.status == SUGGESTION_PENDING,
        )
        .order_by(
            QuestSuggestion.boost_amount.desc(),
            QuestSuggestion.created_at.asc(),
            QuestSuggestion.id.asc(),
        )
        .all()
    )


def respond(db: Session, live_session_id: int, suggestion_id: int, owner_id: int, action: str,
            now=None) -> Dict[str, Any]:
    """
    Accept or decline a pending suggestion.

    Accepting starts the quest for the streamer and links it to the stream.
    It fails without changing anything when the streamer is at the active
    quest cap or already holds that quest.
    """
    _require_feature()
    action = (action or "").lower()
    if action not in (ACCEPT, DECLINE):
        raise ValidationError(f"Unknown action {action!r}")

    live = _owned_session(db, live_session_id, owner_id)
    suggestion = db.get(QuestSuggestion, suggestion_id)
    if suggestion is None or suggestion.live_session_id != live_session_id:
        raise NotFoundError("Suggestion not found")
    if suggestion.status != SUGGESTION_PENDING:
        raise ValidationError("Suggestion already responded to")

    now = now or utcnow()
    try:
        if action == ACCEPT:
            instance = create_active_instance(db, owner_id, suggestion.quest_id, now=now)
            suggestion.status = SUGGESTION_ACCEPTED
            suggestion.responded_at = now
            live.user_quest_id = instance.id
            create_notification(
                db, suggestion.suggester_id, QUEST_SUGGESTION_ACCEPTED,
                "Suggestion accepted! 🎉", f"Your quest suggestion \"{suggestion.quest.title}\" is now live.",
                {"liveSessionId": live_session_id, "userQuestId": instance.id},
                sender_id=owner_id, reference_id=suggestion.id,
                dedup_key=make_dedup_key(suggestion.suggester_id, QUEST_SUGGESTION_ACCEPTED, suggestion.id),
            )
            db.commit()
            logger.info("Suggestion %s accepted on stream %s", suggestion_id, live_session_id)
            return {"status": SUGGESTION_ACCEPTED, "user_quest_id": instance.id,
                    "message": "Quest accepted and started!"}

        suggestion.status = SUGGESTION_DECLINED
        suggestion.responded_at = now
        refunded = 0
        if REFUND_BOOST_ON_DECLINE and suggestion.boost_amount:
            ledger.credit(suggestion.suggester_id, suggestion.boost_amount, db)
            refunded = suggestion.boost_amount
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"status": SUGGESTION_DECLINED, "refunded": refunded, "message": "Quest suggestion declined"}

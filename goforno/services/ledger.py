"""Diamond balance used to boost quest suggestions.

Debits are a single conditional UPDATE so two concurrent debits can never
take the balance below zero. Callers own the commit, which lets a debit land
atomically with whatever row it pays for.
"""
from sqlalchemy.orm import Session

from ..errors import InsufficientFunds, ValidationError
from ..models import UserStats
from .stats import get_or_create_stats


def balance(user_id: int, db: Session) -> int:
    stats = db.query(UserStats).filter(UserStats.user_id == user_id).first()
    return int(stats.diamonds or 0) if stats else 0


def debit(user_id: int, amount: int, db: Session) -> int:
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")
    get_or_create_stats(user_id, db)
    updated = (
        db.query(UserStats)
        .filter(UserStats.user_id == user_id, UserStats.diamonds >= amount)
        .update({UserStats.diamonds: UserStats.diamonds - amount}, synchronize_session="fetch")
    )
    if updated == 0:
        raise InsufficientFunds(f"Insufficient diamonds for boost of {amount}")
    return balance(user_id, db)


def credit(user_id: int, amount: int, db: Session) -> int:
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")
    get_or_create_stats(user_id, db)
    db.query(UserStats).filter(UserStats.user_id == user_id).update(
        {UserStats.diamonds: UserStats.diamonds + amount}, synchronize_session="fetch"
    )
    return balance(user_id, db)

import pytest

from goforno.errors import InsufficientFunds, ValidationError
from goforno.services import ledger


def test_balance_without_stats_is_zero(db):
    assert ledger.balance(12345, db) == 0


def test_credit_then_debit(db, make_user):
    user = make_user(diamonds=5)
    assert ledger.credit(user.id, 15, db) == 20
    assert ledger.debit(user.id, 20, db) == 0
    db.commit()
    assert ledger.balance(user.id, db) == 0


def test_overdraw_refused(db, make_user):
    user = make_user(diamonds=10)
    with pytest.raises(InsufficientFunds):
        ledger.debit(user.id, 11, db)
    db.rollback()
    assert ledger.balance(user.id, db) == 10


def test_non_positive_amounts_rejected(db, make_user):
    user = make_user(diamonds=10)
    with pytest.raises(ValidationError):
        ledger.debit(user.id, 0, db)
    with pytest.raises(ValidationError):
        ledger.credit(user.id, -1, db)

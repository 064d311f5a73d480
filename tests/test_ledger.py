from datetime import datetime

import pytest

from legalmarket.errors import Forbidden, InsufficientBalance, NotFound, ValidationError
from legalmarket.models import BalanceType, CreditLedgerEntry, LedgerEntryKind, UserRole


def test_credit_and_debit_update_cached_balance(ledger, make_user):
    user = make_user(UserRole.CLIENT)

    assert ledger.update_balance(user.user_id, 500, LedgerEntryKind.CREDIT, "Top up") == 500
    assert ledger.update_balance(user.user_id, 120, LedgerEntryKind.DEBIT, "Spend") == 380
    assert ledger.get_balance(user.user_id) == 380


def test_entries_are_signed_and_sum_to_balance(db, ledger, make_user):
    user = make_user(UserRole.CLIENT)
    ledger.update_balance(user.user_id, 300, LedgerEntryKind.CREDIT)
    ledger.update_balance(user.user_id, 50, LedgerEntryKind.DEBIT)

    entries = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == user.user_id).all()
    assert sorted(e.amount for e in entries) == [-50, 300]
    assert {e.balance_after for e in entries} == {300, 250}
    assert ledger.ledger_sum(user.user_id) == 250

    check = ledger.verify_balance(user.user_id)
    assert check.consistent


def test_debit_below_zero_is_refused_and_nothing_written(db, ledger, make_user):
    user = make_user(UserRole.CLIENT, credits=40)

    with pytest.raises(InsufficientBalance) as exc_info:
        ledger.update_balance(user.user_id, 41, LedgerEntryKind.DEBIT, "Too much")

    assert exc_info.value.available == 40
    assert exc_info.value.requested == 41
    assert ledger.get_balance(user.user_id) == 40
    assert db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == user.user_id).count() == 1


def test_debit_to_exactly_zero_is_allowed(ledger, make_user):
    user = make_user(UserRole.CLIENT, credits=40)
    assert ledger.update_balance(user.user_id, 40, LedgerEntryKind.DEBIT) == 0


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amount_is_rejected(ledger, make_user, amount):
    user = make_user(UserRole.CLIENT)
    with pytest.raises(ValidationError) as exc_info:
        ledger.update_balance(user.user_id, amount, LedgerEntryKind.CREDIT)
    assert exc_info.value.field == "amount"


def test_unknown_user_is_not_found(ledger):
    with pytest.raises(NotFound):
        ledger.update_balance("missing", 10, LedgerEntryKind.CREDIT)


def test_token_balance_lives_on_lawyer_profile(ledger, lawyer):
    ledger.update_balance(lawyer.user_id, 100, LedgerEntryKind.CREDIT, balance_type=BalanceType.TOKENS)

    assert ledger.get_balance(lawyer.user_id, BalanceType.TOKENS) == 100
    assert ledger.get_balance(lawyer.user_id, BalanceType.CREDITS) == 0
    assert ledger.verify_balance(lawyer.user_id, BalanceType.TOKENS).consistent


def test_token_balance_requires_profile(ledger, make_user):
    user = make_user(UserRole.LAWYER)
    with pytest.raises(NotFound):
        ledger.update_balance(user.user_id, 10, LedgerEntryKind.CREDIT, balance_type=BalanceType.TOKENS)


def test_consume_tokens_refuses_overdraw(ledger, lawyer):
    ledger.update_balance(lawyer.user_id, 100, LedgerEntryKind.CREDIT, balance_type=BalanceType.TOKENS)

    assert ledger.consume_tokens(lawyer.user_id, 30) == 70
    with pytest.raises(InsufficientBalance):
        ledger.consume_tokens(lawyer.user_id, 71)
    assert ledger.get_balance(lawyer.user_id, BalanceType.TOKENS) == 70


def test_set_balance_posts_the_delta(db, ledger, lawyer):
    ledger.update_balance(lawyer.user_id, 80, LedgerEntryKind.CREDIT, balance_type=BalanceType.TOKENS)

    entry = ledger.set_balance(lawyer.user_id, 30, "Reset")
    db.commit()

    assert entry.kind == LedgerEntryKind.DEBIT
    assert entry.amount == -50
    assert ledger.get_balance(lawyer.user_id, BalanceType.TOKENS) == 30
    assert ledger.set_balance(lawyer.user_id, 30, "Reset") is None


def test_set_balance_rejects_negative_target(ledger, lawyer):
    with pytest.raises(ValidationError):
        ledger.set_balance(lawyer.user_id, -1, "Reset")


def test_admin_adjust_is_staff_only(ledger, client, staff):
    with pytest.raises(Forbidden):
        ledger.admin_adjust(client, client.user_id, 10, LedgerEntryKind.CREDIT, "Self service")

    assert ledger.admin_adjust(staff, client.user_id, 10, LedgerEntryKind.CREDIT, "Goodwill") == 1010


def test_history_pages_entries(ledger, make_user):
    user = make_user(UserRole.CLIENT)
    for _ in range(3):
        ledger.update_balance(user.user_id, 10, LedgerEntryKind.CREDIT)

    first = ledger.history(user.user_id, page=1, limit=2)
    second = ledger.history(user.user_id, page=2, limit=2)

    assert first.total_count == 3
    assert first.total_pages == 2
    assert len(first.entries) == 2
    assert len(second.entries) == 1


def test_history_order_is_stable_for_equal_timestamps(db, ledger, make_user):
    user = make_user(UserRole.CLIENT)
    for _ in range(4):
        ledger.update_balance(user.user_id, 5, LedgerEntryKind.CREDIT)

    stamp = datetime(2024, 1, 1, 12, 0, 0)
    db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == user.user_id).update(
        {CreditLedgerEntry.created_at: stamp}, synchronize_session=False
    )
    db.commit()

    first = [entry.id for entry in ledger.history(user.user_id, limit=4).entries]
    paged = [entry.id for page in (1, 2) for entry in ledger.history(user.user_id, page=page, limit=2).entries]

    assert first == sorted(first, reverse=True)
    assert paged == first

from datetime import timedelta
from decimal import Decimal

import pytest

from legalmarket.errors import Conflict, Forbidden, InsufficientBalance, InvalidState, NotFound, ValidationError
from legalmarket.models import CreditLedgerEntry, Transaction, UserRole, utcnow
from legalmarket.services.settlement_service import SettlementService, split_commission


@pytest.fixture
def accepted_proposal(matching, open_request, client, lawyer):
    proposal = matching.submit_proposal(lawyer, open_request.id, 250, "Fixed fee review")
    return matching.decide_proposal(client, open_request.id, proposal.id, "accept")


@pytest.mark.parametrize(
    "price, commission, payout",
    [
        (250, 25, 225),
        (1, 0, 1),
        (5, 1, 4),  # 0.5 rounds up
        (14, 1, 13),
        (15, 2, 13),
        (999, 100, 899),
    ],
)
def test_split_commission(price, commission, payout):
    split = split_commission(price)
    assert (split.commission, split.lawyer_payout) == (commission, payout)
    assert split.commission + split.lawyer_payout == price


def test_split_commission_custom_rate():
    assert split_commission(200, Decimal("0.15")).commission == 30


def test_split_commission_rejects_non_positive_price():
    with pytest.raises(ValidationError):
        split_commission(0)


def test_settle_moves_credits_and_records_transaction(db, settlement, ledger, accepted_proposal, client, lawyer):
    record = settlement.settle(client, accepted_proposal.id)

    assert (record.amount, record.commission, record.lawyer_payout) == (250, 25, 225)
    assert record.client_id == client.user_id
    assert record.lawyer_id == lawyer.user_id
    assert ledger.get_balance(client.user_id) == 750
    assert ledger.get_balance(lawyer.user_id) == 225

    legs = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.reference_id == record.id).all()
    assert sorted(leg.amount for leg in legs) == [-250, 225]
    assert ledger.verify_balance(client.user_id).consistent
    assert ledger.verify_balance(lawyer.user_id).consistent


def test_settle_twice_is_a_conflict(db, settlement, ledger, accepted_proposal, client):
    settlement.settle(client, accepted_proposal.id)

    with pytest.raises(Conflict):
        settlement.settle(client, accepted_proposal.id)

    assert db.query(Transaction).count() == 1
    assert ledger.get_balance(client.user_id) == 750


def test_lost_race_is_caught_by_unique_proposal(db, settlement, ledger, accepted_proposal, client, lawyer, monkeypatch):
    settlement.settle(client, accepted_proposal.id)
    monkeypatch.setattr(SettlementService, "_transaction_for", lambda self, proposal_id: None)

    with pytest.raises(Conflict):
        settlement.settle(client, accepted_proposal.id)

    assert db.query(Transaction).count() == 1
    assert ledger.get_balance(client.user_id) == 750
    assert ledger.get_balance(lawyer.user_id) == 225


def test_insufficient_credits_leave_no_trace(db, settlement, ledger, matching, make_user, lawyer):
    poor_client = make_user(UserRole.CLIENT, credits=100)
    request = matching.submit_request(poor_client, "Contract dispute")
    proposal = matching.submit_proposal(lawyer, request.id, 250, "Litigation support")
    matching.decide_proposal(poor_client, request.id, proposal.id, "accept")

    with pytest.raises(InsufficientBalance):
        settlement.settle(poor_client, proposal.id)

    assert db.query(Transaction).count() == 0
    assert ledger.get_balance(poor_client.user_id) == 100
    assert ledger.get_balance(lawyer.user_id) == 0
    assert ledger.verify_balance(lawyer.user_id).consistent


def test_pending_proposal_cannot_be_settled(settlement, matching, open_request, client, lawyer):
    proposal = matching.submit_proposal(lawyer, open_request.id, 250, "Offer")
    with pytest.raises(InvalidState):
        settlement.settle(client, proposal.id)


def test_only_request_owner_settles(settlement, accepted_proposal, make_user, lawyer):
    with pytest.raises(Forbidden):
        settlement.settle(make_user(UserRole.CLIENT, credits=1000), accepted_proposal.id)
    with pytest.raises(Forbidden):
        settlement.settle(lawyer, accepted_proposal.id)


def test_settle_missing_proposal(settlement, client):
    with pytest.raises(NotFound):
        settlement.settle(client, "missing")


def test_transaction_reads(settlement, accepted_proposal, client, lawyer, staff, make_user):
    record = settlement.settle(client, accepted_proposal.id)

    assert settlement.get_transaction(client, record.id).id == record.id
    assert settlement.get_transaction(lawyer, record.id).id == record.id
    assert settlement.get_transaction(staff, record.id).id == record.id
    with pytest.raises(Forbidden):
        settlement.get_transaction(make_user(UserRole.CLIENT), record.id)

    assert settlement.get_transaction_for_proposal(accepted_proposal.id).id == record.id
    assert [t.id for t in settlement.list_transactions(lawyer)] == [record.id]
    assert settlement.list_transactions(make_user(UserRole.CLIENT)) == []

    stats = settlement.transaction_stats()
    assert (stats.total, stats.total_amount, stats.total_commission) == (1, 250, 25)


def test_settle_full_price_engagement(settlement, ledger, matching, client, lawyer):
    request = matching.submit_request(client, "Incorporate a company")
    proposal = matching.submit_proposal(lawyer, request.id, 500, "Incorporation package")
    matching.decide_proposal(client, request.id, proposal.id, "accept")

    record = settlement.settle(client, proposal.id)

    assert (record.amount, record.commission, record.lawyer_payout) == (500, 50, 450)
    assert ledger.get_balance(client.user_id) == 500
    assert ledger.get_balance(lawyer.user_id) == 450


def test_transaction_stats_average_and_daily_window(db, settlement, matching, accepted_proposal, client, lawyer):
    recent = settlement.settle(client, accepted_proposal.id)

    request = matching.submit_request(client, "Old engagement")
    proposal = matching.submit_proposal(lawyer, request.id, 500, "Earlier work")
    matching.decide_proposal(client, request.id, proposal.id, "accept")
    old = settlement.settle(client, proposal.id)
    db.query(Transaction).filter(Transaction.id == old.id).update(
        {Transaction.created_at: utcnow() - timedelta(days=40)}, synchronize_session=False
    )
    db.commit()

    stats = settlement.transaction_stats()

    assert (stats.total, stats.total_amount, stats.total_commission) == (2, 750, 75)
    assert stats.average_amount == 375.0
    assert len(stats.daily) == 1
    assert stats.daily[0].day == recent.created_at.date()
    assert (stats.daily[0].count, stats.daily[0].amount, stats.daily[0].commission) == (1, 250, 25)

    assert len(settlement.transaction_stats(days=60).daily) == 2
    with pytest.raises(ValidationError):
        settlement.transaction_stats(days=0)


def test_transaction_stats_when_empty(settlement):
    stats = settlement.transaction_stats()
    assert stats.total == 0
    assert stats.average_amount is None
    assert stats.daily == []

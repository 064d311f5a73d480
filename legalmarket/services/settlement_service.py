import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from legalmarket.auth.dependencies import Identity, require_client
from legalmarket.config import settings
from legalmarket.database import transaction
from legalmarket.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from legalmarket.models import LedgerEntryKind, LegalRequest, Proposal, ProposalStatus, Transaction, UserRole, utcnow
from legalmarket.services.ledger_service import LedgerService
from legalmarket.settlement.schemas import CommissionSplit, DailyTransactionTotals, TransactionStats

logger = logging.getLogger(__name__)


def split_commission(price: int, rate: Optional[Decimal] = None) -> CommissionSplit:
    """Platform commission rounded half up to a whole unit; the lawyer gets the rest."""
    if price <= 0:
        raise ValidationError("price must be positive", field="price")
    rate = settings.COMMISSION_RATE if rate is None else rate
    commission = int((Decimal(price) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return CommissionSplit(price=price, commission=commission, lawyer_payout=price - commission)


class SettlementService:
    """Turns one accepted proposal into exactly one paid Transaction."""

    def __init__(self, db: Session, ledger: Optional[LedgerService] = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)

    def settle(self, identity: Identity, proposal_id: str) -> Transaction:
        require_client(identity)

        with transaction(self.db):
            proposal = (
                self.db.query(Proposal)
                .filter(Proposal.id == proposal_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if not proposal:
                raise NotFound("Proposal", proposal_id)

            request = self.db.query(LegalRequest).filter(LegalRequest.id == proposal.request_id).first()
            if not request or request.client_id != identity.user_id:
                raise Forbidden(
                    "Caller does not own the legal request behind this proposal",
                    user_id=identity.user_id,
                    proposal_id=proposal_id,
                )
            if proposal.status != ProposalStatus.ACCEPTED:
                raise InvalidState("Only accepted proposals can be settled", entity="proposal", status=proposal.status)
            if self._transaction_for(proposal_id) is not None:
                raise Conflict("A transaction already exists for this proposal", proposal_id=proposal_id)

            split = split_commission(proposal.price)
            record = Transaction(
                proposal_id=proposal.id,
                client_id=identity.user_id,
                lawyer_id=proposal.lawyer_id,
                amount=split.price,
                commission=split.commission,
                lawyer_payout=split.lawyer_payout,
            )
            self.db.add(record)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise Conflict("A transaction already exists for this proposal", proposal_id=proposal_id) from exc

            # Both legs ride the same unit of work; a failed debit rolls back the insert above
            self.ledger.post(
                identity.user_id,
                split.price,
                LedgerEntryKind.DEBIT,
                f"Payment for proposal {proposal.id}",
                reference_type="transaction",
                reference_id=record.id,
            )
            self.ledger.post(
                proposal.lawyer_id,
                split.lawyer_payout,
                LedgerEntryKind.CREDIT,
                f"Payout for proposal {proposal.id} (commission {split.commission})",
                reference_type="transaction",
                reference_id=record.id,
            )

        logger.info(
            f"Settled proposal {proposal_id}: amount {split.price}, commission {split.commission}, "
            f"payout {split.lawyer_payout}"
        )
        return record

    # -------------------------------------------------
    # Reads
    # -------------------------------------------------

    def get_transaction(self, identity: Identity, transaction_id: str) -> Transaction:
        record = self.db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not record:
            raise NotFound("Transaction", transaction_id)
        if not identity.is_staff and identity.user_id not in (record.client_id, record.lawyer_id):
            raise Forbidden("Caller is not a party to this transaction", user_id=identity.user_id)
        return record

    def get_transaction_for_proposal(self, proposal_id: str) -> Optional[Transaction]:
        return self._transaction_for(proposal_id)

    def list_transactions(self, identity: Identity, page: int = 1, limit: int = 10) -> List[Transaction]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", field="page" if page < 1 else "limit")

        query = self.db.query(Transaction)
        if identity.role == UserRole.CLIENT:
            query = query.filter(Transaction.client_id == identity.user_id)
        elif identity.role == UserRole.LAWYER:
            query = query.filter(Transaction.lawyer_id == identity.user_id)
        return (
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

    def transaction_stats(self, days: int = 30, now: Optional[datetime] = None) -> TransactionStats:
        """Lifetime totals plus per-day totals for the last ``days`` days."""
        if days < 1:
            raise ValidationError("days must be positive", field="days")

        total, total_amount, total_commission, average_amount = self.db.query(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(func.sum(Transaction.commission), 0),
            func.avg(Transaction.amount),
        ).one()

        since = (now or utcnow()) - timedelta(days=days)
        day = func.date(Transaction.created_at)
        rows = (
            self.db.query(
                day,
                func.count(Transaction.id),
                func.sum(Transaction.amount),
                func.sum(Transaction.commission),
            )
            .filter(Transaction.created_at >= since)
            .group_by(day)
            .order_by(day.desc())
            .all()
        )

        return TransactionStats(
            total=int(total),
            total_amount=int(total_amount),
            total_commission=int(total_commission),
            average_amount=float(average_amount) if average_amount is not None else None,
            daily=[
                DailyTransactionTotals(day=row_day, count=count, amount=int(amount), commission=int(commission))
                for row_day, count, amount, commission in rows
            ],
        )

    def _transaction_for(self, proposal_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(Transaction.proposal_id == proposal_id).first()

import logging
import math
from typing import Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from legalmarket.auth.dependencies import Identity, require_staff
from legalmarket.database import transaction
from legalmarket.errors import InsufficientBalance, NotFound, ValidationError
from legalmarket.ledger.schemas import BalanceChange, BalanceCheck, LedgerEntryResponse, LedgerHistory
from legalmarket.models import BalanceType, CreditLedgerEntry, LawyerProfile, LedgerEntryKind, User
from legalmarket.validation import parse

logger = logging.getLogger(__name__)

BalanceHolder = Union[User, LawyerProfile]


class LedgerService:
    """Single write path for credit and token balances.

    Credits are cached on ``users.credit_balance``; AI tokens on
    ``lawyer_profiles.token_balance``. Every change appends an immutable
    CreditLedgerEntry in the same unit of work as the cached balance update.
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------
    # Writes
    # -------------------------------------------------

    def update_balance(
        self,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: Optional[str] = None,
        balance_type: BalanceType = BalanceType.CREDITS,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> int:
        """Apply one credit or debit and commit. Returns the new balance."""
        with transaction(self.db):
            entry = self.post(
                user_id,
                amount,
                kind,
                description,
                balance_type=balance_type,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        return entry.balance_after

    def post(
        self,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: Optional[str] = None,
        balance_type: BalanceType = BalanceType.CREDITS,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> CreditLedgerEntry:
        """Apply one change inside the caller's open unit of work, without committing."""
        change = parse(BalanceChange, amount=amount, kind=kind, description=description, balance_type=balance_type)

        holder, current = self._lock_balance(user_id, change.balance_type)
        signed = change.amount if change.kind == LedgerEntryKind.CREDIT else -change.amount
        new_balance = current + signed

        if change.kind == LedgerEntryKind.DEBIT and new_balance < 0:
            logger.warning(
                f"Refused {change.balance_type.value} debit of {change.amount} for user {user_id}: balance {current}"
            )
            raise InsufficientBalance(user_id, change.balance_type, available=current, requested=change.amount)

        entry = CreditLedgerEntry(
            user_id=user_id,
            balance_type=change.balance_type,
            kind=change.kind,
            amount=signed,
            balance_after=new_balance,
            description=change.description,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        self.db.add(entry)
        self._store_balance(holder, change.balance_type, new_balance)
        self.db.flush()

        logger.info(
            f"Ledger {change.kind.value} {change.amount} {change.balance_type.value} for user {user_id}: "
            f"{current} -> {new_balance}"
        )
        return entry

    def set_balance(
        self,
        user_id: str,
        target: int,
        description: str,
        balance_type: BalanceType = BalanceType.TOKENS,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Optional[CreditLedgerEntry]:
        """Post whatever signed change brings the balance to ``target``.

        Runs inside the caller's unit of work. Returns None when the balance
        already equals the target.
        """
        if target < 0:
            raise ValidationError("Target balance cannot be negative", field="target")

        _, current = self._lock_balance(user_id, balance_type)
        delta = target - current
        if delta == 0:
            return None
        kind = LedgerEntryKind.CREDIT if delta > 0 else LedgerEntryKind.DEBIT
        return self.post(
            user_id,
            abs(delta),
            kind,
            description,
            balance_type=balance_type,
            reference_type=reference_type,
            reference_id=reference_id,
        )

    def consume_tokens(self, lawyer_id: str, tokens: int, description: str = "AI assistant usage") -> int:
        """Debit a lawyer's AI token allowance."""
        return self.update_balance(
            lawyer_id,
            tokens,
            LedgerEntryKind.DEBIT,
            description,
            balance_type=BalanceType.TOKENS,
            reference_type="ai_usage",
        )

    def admin_adjust(
        self,
        identity: Identity,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: str,
        balance_type: BalanceType = BalanceType.CREDITS,
    ) -> int:
        require_staff(identity)
        return self.update_balance(
            user_id,
            amount,
            kind,
            description,
            balance_type=balance_type,
            reference_type="admin_adjustment",
            reference_id=identity.user_id,
        )

    # -------------------------------------------------
    # Reads
    # -------------------------------------------------

    def get_balance(self, user_id: str, balance_type: BalanceType = BalanceType.CREDITS) -> int:
        if balance_type == BalanceType.TOKENS:
            profile = self.db.query(LawyerProfile).filter(LawyerProfile.user_id == user_id).first()
            if not profile:
                raise NotFound("Lawyer profile", user_id)
            return profile.token_balance

        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User", user_id)
        return user.credit_balance

    def ledger_sum(self, user_id: str, balance_type: BalanceType = BalanceType.CREDITS) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(CreditLedgerEntry.amount), 0))
            .filter(CreditLedgerEntry.user_id == user_id, CreditLedgerEntry.balance_type == balance_type)
            .scalar()
        )
        return int(total or 0)

    def verify_balance(self, user_id: str, balance_type: BalanceType = BalanceType.CREDITS) -> BalanceCheck:
        check = BalanceCheck(
            user_id=user_id,
            balance_type=balance_type,
            cached_balance=self.get_balance(user_id, balance_type),
            ledger_sum=self.ledger_sum(user_id, balance_type),
        )
        if not check.consistent:
            logger.error(
                f"Cached {balance_type.value} balance {check.cached_balance} for user {user_id} "
                f"does not match ledger sum {check.ledger_sum}"
            )
        return check

    def history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        balance_type: Optional[BalanceType] = None,
    ) -> LedgerHistory:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", field="page" if page < 1 else "limit")

        query = self.db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == user_id)
        if balance_type is not None:
            query = query.filter(CreditLedgerEntry.balance_type == balance_type)

        total_count = query.count()
        entries = (
            query.order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return LedgerHistory(
            entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
            page=page,
            limit=limit,
            total_count=total_count,
            total_pages=math.ceil(total_count / limit),
        )

    # -------------------------------------------------
    # Internals
    # -------------------------------------------------

    def _lock_balance(self, user_id: str, balance_type: BalanceType) -> Tuple[BalanceHolder, int]:
        """Load the row that caches the balance with a row lock held until commit."""
        # Reloading below would discard unflushed changes on the same row
        self.db.flush()
        if balance_type == BalanceType.TOKENS:
            profile = (
                self.db.query(LawyerProfile)
                .filter(LawyerProfile.user_id == user_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if not profile:
                raise NotFound("Lawyer profile", user_id)
            return profile, profile.token_balance

        user = self.db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
        if not user:
            raise NotFound("User", user_id)
        return user, user.credit_balance

    @staticmethod
    def _store_balance(holder: BalanceHolder, balance_type: BalanceType, value: int) -> None:
        if balance_type == BalanceType.TOKENS:
            holder.token_balance = value
        else:
            holder.credit_balance = value

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Enum, Numeric, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from legalmarket.database import Base
import enum
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())

# =====================================================
# ENUMS
# =====================================================

class UserRole(str, enum.Enum):
    CLIENT = "client"
    LAWYER = "lawyer"
    SUPPORT = "support"
    MANAGER = "manager"

class LegalRequestStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"

class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

class ProposalDecision(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"

class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"

class BalanceType(str, enum.Enum):
    CREDITS = "credits"
    TOKENS = "tokens"

class LedgerEntryKind(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"

class ClientSubscriptionStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"
    TRIAL = "trial"

class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# At most one row per client may hold one of these
LIVE_SUBSCRIPTION_STATUSES = (
    ClientSubscriptionStatus.PENDING_PAYMENT,
    ClientSubscriptionStatus.ACTIVE,
    ClientSubscriptionStatus.TRIAL,
    ClientSubscriptionStatus.PENDING_CANCELLATION,
)

# =====================================================
# USERS & LAWYER PROFILES
# =====================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(Enum(UserRole), nullable=False, index=True)
    credit_balance = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    lawyer_profile = relationship("LawyerProfile", back_populates="user", uselist=False)
    legal_requests = relationship("LegalRequest", back_populates="client")
    proposals = relationship("Proposal", back_populates="lawyer")
    ledger_entries = relationship("CreditLedgerEntry", back_populates="user")
    client_subscriptions = relationship("ClientSubscription", back_populates="user")

class LawyerProfile(Base):
    __tablename__ = "lawyer_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False, index=True)
    specialties = Column(Text)
    experience = Column(Text)
    base_rate = Column(Integer)

    # Embedded subscription: plan name plus consumable AI token allowance
    subscription_plan = Column(String(100), index=True)
    token_balance = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="lawyer_profile")

# =====================================================
# REQUESTS & PROPOSALS
# =====================================================

class LegalRequest(Base):
    __tablename__ = "legal_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255))
    description = Column(Text, nullable=False)
    status = Column(Enum(LegalRequestStatus), nullable=False, default=LegalRequestStatus.OPEN, index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=func.now(), index=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    closed_at = Column(DateTime)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    client = relationship("User", back_populates="legal_requests")
    proposals = relationship("Proposal", back_populates="request", order_by="Proposal.submitted_at")

class Proposal(Base):
    __tablename__ = "proposals"
    __table_args__ = (
        UniqueConstraint("request_id", "lawyer_id", name="uq_proposals_request_lawyer"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    request_id = Column(String(36), ForeignKey("legal_requests.id"), nullable=False, index=True)
    lawyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    price = Column(Integer, nullable=False)
    estimated_duration = Column(String(100))
    status = Column(Enum(ProposalStatus), nullable=False, default=ProposalStatus.PENDING, index=True)
    version = Column(Integer, nullable=False, default=1)
    submitted_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    decided_at = Column(DateTime)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    request = relationship("LegalRequest", back_populates="proposals")
    lawyer = relationship("User", back_populates="proposals")
    transaction = relationship("Transaction", back_populates="proposal", uselist=False)

# =====================================================
# SETTLEMENT & LEDGER
# =====================================================

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    proposal_id = Column(String(36), ForeignKey("proposals.id"), unique=True, nullable=False)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    lawyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    commission = Column(Integer, nullable=False)
    lawyer_payout = Column(Integer, nullable=False)
    status = Column(Enum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    proposal = relationship("Proposal", back_populates="transaction")
    client = relationship("User", foreign_keys=[client_id])
    lawyer = relationship("User", foreign_keys=[lawyer_id])

class CreditLedgerEntry(Base):
    """Immutable record of one signed balance change. No updates, no deletes."""

    __tablename__ = "credit_ledger_entries"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    balance_type = Column(Enum(BalanceType), nullable=False, default=BalanceType.CREDITS, index=True)
    kind = Column(Enum(LedgerEntryKind), nullable=False)
    amount = Column(Integer, nullable=False)  # signed: debits are negative
    balance_after = Column(Integer, nullable=False)
    description = Column(String(255))
    reference_type = Column(String(50))
    reference_id = Column(String(36))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    user = relationship("User", back_populates="ledger_entries")

# =====================================================
# SUBSCRIPTIONS
# =====================================================

class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), unique=True, nullable=False, index=True)
    price = Column(Numeric(10, 2), nullable=False)
    token_limit = Column(Integer, nullable=False, default=0)
    features = Column(JSON)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    client_subscriptions = relationship("ClientSubscription", back_populates="plan")

class ClientSubscription(Base):
    __tablename__ = "client_subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False, index=True)
    status = Column(Enum(ClientSubscriptionStatus), nullable=False, default=ClientSubscriptionStatus.PENDING_PAYMENT, index=True)
    billing_cycle = Column(Enum(BillingCycle))
    start_date = Column(DateTime)
    end_date = Column(DateTime, index=True)
    payment_provider = Column(String(50))
    payment_reference = Column(String(100))
    cancelled_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user = relationship("User", back_populates="client_subscriptions")
    plan = relationship("SubscriptionPlan", back_populates="client_subscriptions")

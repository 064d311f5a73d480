import itertools
from decimal import Decimal

import pytest

from legalmarket.auth.dependencies import Identity
from legalmarket.database import build_engine, build_session_factory, init_db
from legalmarket.models import LawyerProfile, LedgerEntryKind, SubscriptionPlan, User, UserRole
from legalmarket.services.ledger_service import LedgerService
from legalmarket.services.matching_service import MatchingService
from legalmarket.services.plan_service import PlanService
from legalmarket.services.settlement_service import SettlementService
from legalmarket.services.subscription_service import SubscriptionService

_counter = itertools.count(1)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def ledger(db):
    return LedgerService(db)


@pytest.fixture
def matching(db):
    return MatchingService(db)


@pytest.fixture
def settlement(db, ledger):
    return SettlementService(db, ledger)


@pytest.fixture
def plans(db):
    return PlanService(db)


@pytest.fixture
def subscriptions(db, ledger, plans):
    return SubscriptionService(db, ledger, plans)


@pytest.fixture
def make_user(db, ledger):
    """Create a user and return its Identity. Opening credits go through the ledger."""

    def _make(role=UserRole.CLIENT, credits=0):
        n = next(_counter)
        user = User(name=f"{role.value} {n}", email=f"{role.value}{n}@example.com", role=role)
        db.add(user)
        db.commit()
        if credits:
            ledger.update_balance(user.id, credits, LedgerEntryKind.CREDIT, "Opening balance")
        return Identity(user_id=user.id, role=role)

    return _make


@pytest.fixture
def client(make_user):
    return make_user(UserRole.CLIENT, credits=1000)


@pytest.fixture
def lawyer(db, make_user):
    identity = make_user(UserRole.LAWYER)
    db.add(LawyerProfile(user_id=identity.user_id, token_balance=0))
    db.commit()
    return identity


@pytest.fixture
def staff(make_user):
    return make_user(UserRole.MANAGER)


@pytest.fixture
def make_plan(db):
    def _make(name, price, token_limit=0, is_active=True):
        plan = SubscriptionPlan(name=name, price=Decimal(str(price)), token_limit=token_limit, is_active=is_active)
        db.add(plan)
        db.commit()
        return plan

    return _make


@pytest.fixture
def open_request(matching, client):
    return matching.submit_request(client, "Need help drafting a lease", title="Lease review")

from decimal import Decimal

import pytest

from legalmarket.errors import Conflict, Forbidden, NotFound, ValidationError
from legalmarket.models import LawyerProfile


def test_staff_creates_and_lists_plans(plans, staff):
    plans.create_plan(staff, "Premium", Decimal("49.99"), 500, features=["priority support"])
    plans.create_plan(staff, "Basic", Decimal("19.99"), 100)
    plans.create_plan(staff, "Legacy", Decimal("5.00"), 10, is_active=False)

    assert [p.name for p in plans.list_plans()] == ["Basic", "Premium"]
    assert len(plans.list_plans(include_inactive=True)) == 3
    assert plans.get_plan_by_name("Premium").features == ["priority support"]


def test_plan_mutations_are_staff_only(plans, client):
    with pytest.raises(Forbidden):
        plans.create_plan(client, "Basic", Decimal("19.99"), 100)


def test_duplicate_plan_name(plans, staff):
    plans.create_plan(staff, "Basic", Decimal("19.99"), 100)
    with pytest.raises(Conflict):
        plans.create_plan(staff, "Basic", Decimal("29.99"), 200)


def test_plan_input_is_validated(plans, staff):
    with pytest.raises(ValidationError) as exc_info:
        plans.create_plan(staff, "Broken", Decimal("-1"), 100)
    assert exc_info.value.field == "price"


def test_rename_follows_lawyer_profiles(db, plans, subscriptions, staff, lawyer, make_plan):
    basic = make_plan("Basic", "19.99", token_limit=100)
    subscriptions.subscribe_lawyer(lawyer, basic.id)

    plans.update_plan(staff, basic.id, name="Starter", token_limit=150)

    profile = db.query(LawyerProfile).filter(LawyerProfile.user_id == lawyer.user_id).one()
    db.refresh(profile)
    assert profile.subscription_plan == "Starter"
    assert plans.get_plan(basic.id).token_limit == 150
    with pytest.raises(NotFound):
        plans.get_plan_by_name("Basic")


def test_plan_update_input_is_validated(plans, staff, make_plan):
    plan = make_plan("Basic", "19.99", token_limit=100)

    with pytest.raises(ValidationError):
        plans.update_plan(staff, plan.id)
    with pytest.raises(ValidationError) as exc_info:
        plans.update_plan(staff, plan.id, token_limit=-1)
    assert exc_info.value.field == "token_limit"
    assert plans.get_plan(plan.id).token_limit == 100


def test_delete_unused_plan(plans, staff, make_plan):
    plan = make_plan("Temporary", "1.00")
    plans.delete_plan(staff, plan.id)
    with pytest.raises(NotFound):
        plans.get_plan(plan.id)


def test_plan_in_use_cannot_be_deleted(plans, subscriptions, staff, client, lawyer, make_plan):
    lawyer_plan = make_plan("Counsel", "29.99", token_limit=100)
    client_plan = make_plan("Household", "9.99")
    subscriptions.subscribe_lawyer(lawyer, lawyer_plan.id)
    subscriptions.subscribe_client(client, client_plan.id)

    with pytest.raises(Conflict):
        plans.delete_plan(staff, lawyer_plan.id)
    with pytest.raises(Conflict):
        plans.delete_plan(staff, client_plan.id)

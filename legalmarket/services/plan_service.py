import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from legalmarket.auth.dependencies import Identity, require_staff
from legalmarket.database import transaction
from legalmarket.errors import Conflict, NotFound
from legalmarket.models import ClientSubscription, LawyerProfile, SubscriptionPlan
from legalmarket.subscriptions.schemas import PlanCreate, PlanPatch
from legalmarket.validation import parse

logger = logging.getLogger(__name__)


class PlanService:
    """Subscription plan catalog. Reads are open, mutations are staff only."""

    def __init__(self, db: Session):
        self.db = db

    def list_plans(self, include_inactive: bool = False) -> List[SubscriptionPlan]:
        query = self.db.query(SubscriptionPlan)
        if not include_inactive:
            query = query.filter(SubscriptionPlan.is_active.is_(True))
        return query.order_by(SubscriptionPlan.price.asc()).all()

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
        if not plan:
            raise NotFound("Subscription plan", plan_id)
        return plan

    def get_plan_by_name(self, name: str) -> SubscriptionPlan:
        plan = self.db.query(SubscriptionPlan).filter(SubscriptionPlan.name == name).first()
        if not plan:
            raise NotFound("Subscription plan", name)
        return plan

    def create_plan(
        self,
        identity: Identity,
        name: str,
        price: Decimal,
        token_limit: int,
        features: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> SubscriptionPlan:
        require_staff(identity)
        data = parse(PlanCreate, name=name, price=price, token_limit=token_limit, features=features, is_active=is_active)

        with transaction(self.db):
            self._ensure_name_free(data.name)
            plan = SubscriptionPlan(
                name=data.name,
                price=data.price,
                token_limit=data.token_limit,
                features=data.features,
                is_active=data.is_active,
            )
            self.db.add(plan)

        logger.info(f"Plan {plan.name} created at {plan.price} with {plan.token_limit} tokens")
        return plan

    def update_plan(
        self,
        identity: Identity,
        plan_id: str,
        name: Optional[str] = None,
        price: Optional[Decimal] = None,
        token_limit: Optional[int] = None,
        features: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> SubscriptionPlan:
        require_staff(identity)
        patch = parse(
            PlanPatch, name=name, price=price, token_limit=token_limit, features=features, is_active=is_active
        )
        with transaction(self.db):
            plan = self.get_plan(plan_id)

            if patch.name is not None and patch.name != plan.name:
                self._ensure_name_free(patch.name, exclude_id=plan.id)
                # Lawyer profiles reference plans by name
                (
                    self.db.query(LawyerProfile)
                    .filter(LawyerProfile.subscription_plan == plan.name)
                    .update({LawyerProfile.subscription_plan: patch.name}, synchronize_session="fetch")
                )
                plan.name = patch.name
            if patch.price is not None:
                plan.price = patch.price
            if patch.token_limit is not None:
                plan.token_limit = patch.token_limit
            if patch.features is not None:
                plan.features = patch.features
            if patch.is_active is not None:
                plan.is_active = patch.is_active

        logger.info(f"Plan {plan_id} updated")
        return plan

    def delete_plan(self, identity: Identity, plan_id: str) -> None:
        require_staff(identity)
        with transaction(self.db):
            plan = self.get_plan(plan_id)

            lawyers = self.db.query(LawyerProfile).filter(LawyerProfile.subscription_plan == plan.name).count()
            if lawyers:
                raise Conflict("Plan is in use by lawyers and cannot be deleted", plan_id=plan_id, lawyers=lawyers)

            subscriptions = self.db.query(ClientSubscription).filter(ClientSubscription.plan_id == plan_id).count()
            if subscriptions:
                raise Conflict(
                    "Plan is referenced by client subscriptions; deactivate it instead",
                    plan_id=plan_id,
                    subscriptions=subscriptions,
                )

            self.db.delete(plan)

        logger.info(f"Plan {plan_id} deleted")

    def _ensure_name_free(self, name: str, exclude_id: Optional[str] = None) -> None:
        query = self.db.query(SubscriptionPlan.id).filter(SubscriptionPlan.name == name)
        if exclude_id:
            query = query.filter(SubscriptionPlan.id != exclude_id)
        if query.first():
            raise Conflict("A plan with this name already exists", name=name)

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from legalmarket.auth.dependencies import Identity, require_client, require_lawyer, require_staff
from legalmarket.config import settings
from legalmarket.database import transaction
from legalmarket.errors import Forbidden, InvalidState, NotFound
from legalmarket.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    BalanceType,
    BillingCycle,
    ClientSubscription,
    ClientSubscriptionStatus,
    LawyerProfile,
    SubscriptionPlan,
    User,
    utcnow,
)
from legalmarket.services.ledger_service import LedgerService
from legalmarket.services.plan_service import PlanService
from legalmarket.subscriptions.schemas import (
    ExpirySweepResult,
    LawyerSubscriptionResponse,
    PaymentConfirmation,
    PlanResponse,
    TokenResetResult,
    TrialRequest,
)
from legalmarket.validation import parse

logger = logging.getLogger(__name__)

BILLING_PERIODS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}

# Statuses that carry plan benefits and therefore count as the client's current plan
CURRENT_STATUSES = (
    ClientSubscriptionStatus.ACTIVE,
    ClientSubscriptionStatus.TRIAL,
    ClientSubscriptionStatus.PENDING_CANCELLATION,
)


class SubscriptionService:
    """Client subscription lifecycle and lawyer token plans.

    Client rows move pending_payment -> active -> pending_cancellation ->
    cancelled, with trial as an alternate entry state. Lawyer plans are a
    plain replace on the lawyer profile; their token balance is reset through
    the ledger so it stays reconcilable.
    """

    def __init__(self, db: Session, ledger: Optional[LedgerService] = None, plans: Optional[PlanService] = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.plans = plans or PlanService(db)

    # =====================================================
    # CLIENT SUBSCRIPTIONS
    # =====================================================

    def subscribe_client(self, identity: Identity, plan_id: str) -> ClientSubscription:
        """Open a pending_payment subscription, upgrading away from any current one.

        A client already holding benefits (active, trial or
        pending_cancellation) may only move to a strictly more expensive plan,
        trials excepted. The old row is cancelled before the new one is written.
        """
        require_client(identity)
        now = utcnow()

        with transaction(self.db):
            self._lock_user(identity.user_id)
            plan = self._active_plan(plan_id)
            live = self._live_subscriptions(identity.user_id)

            current = next((row for row in live if row.status in CURRENT_STATUSES), None)
            if current is not None and current.status != ClientSubscriptionStatus.TRIAL:
                if plan.price <= current.plan.price:
                    logger.warning(
                        f"Refused plan change for client {identity.user_id}: "
                        f"{current.plan.name} ({current.plan.price}) -> {plan.name} ({plan.price})"
                    )
                    raise InvalidState(
                        "Only upgrades to a more expensive plan are allowed",
                        entity="client_subscription",
                        status=current.status,
                        current_plan=current.plan.name,
                        requested_plan=plan.name,
                    )

            for row in live:
                self._terminate(row, now)
            self.db.flush()

            subscription = ClientSubscription(
                user_id=identity.user_id,
                plan_id=plan.id,
                status=ClientSubscriptionStatus.PENDING_PAYMENT,
                created_at=now,
            )
            self.db.add(subscription)
            self.db.flush()

        if current is not None:
            logger.info(f"Client {identity.user_id} upgrading {current.plan.name} -> {plan.name}")
        logger.info(f"Client {identity.user_id} subscription {subscription.id} awaiting payment for {plan.name}")
        return subscription

    def confirm_payment(
        self,
        identity: Identity,
        subscription_id: str,
        provider: str,
        provider_ref: str,
        duration: Union[BillingCycle, str],
    ) -> ClientSubscription:
        require_client(identity)
        payment = parse(PaymentConfirmation, provider=provider, provider_ref=provider_ref, duration=duration)

        with transaction(self.db):
            subscription = self._lock_subscription(subscription_id)
            if subscription.user_id != identity.user_id:
                raise Forbidden("Caller does not own this subscription", user_id=identity.user_id)
            if subscription.status != ClientSubscriptionStatus.PENDING_PAYMENT:
                raise InvalidState(
                    "Subscription is not awaiting payment",
                    entity="client_subscription",
                    status=subscription.status,
                )

            start = utcnow()
            subscription.status = ClientSubscriptionStatus.ACTIVE
            subscription.billing_cycle = payment.duration
            subscription.start_date = start
            subscription.end_date = start + BILLING_PERIODS[payment.duration]
            subscription.payment_provider = payment.provider
            subscription.payment_reference = payment.provider_ref

        logger.info(
            f"Subscription {subscription_id} active until {subscription.end_date:%Y-%m-%d} "
            f"({payment.provider} {payment.provider_ref})"
        )
        return subscription

    def cancel_client(self, identity: Identity) -> ClientSubscription:
        """Flag the latest active subscription; benefits run until its end date."""
        require_client(identity)
        with transaction(self.db):
            self._lock_user(identity.user_id)
            subscription = (
                self.db.query(ClientSubscription)
                .filter(
                    ClientSubscription.user_id == identity.user_id,
                    ClientSubscription.status == ClientSubscriptionStatus.ACTIVE,
                )
                .order_by(ClientSubscription.created_at.desc(), ClientSubscription.id.desc())
                .with_for_update()
                .populate_existing()
                .first()
            )
            if not subscription:
                raise NotFound("Active subscription", identity.user_id)

            subscription.status = ClientSubscriptionStatus.PENDING_CANCELLATION
            subscription.cancelled_at = utcnow()

        logger.info(f"Client {identity.user_id} cancelled subscription {subscription.id}, ends {subscription.end_date}")
        return subscription

    def start_trial(self, identity: Identity, plan_id: str, days: Optional[int] = None) -> ClientSubscription:
        require_client(identity)
        trial = parse(TrialRequest, days=days if days is not None else settings.TRIAL_DAYS)

        with transaction(self.db):
            self._lock_user(identity.user_id)
            plan = self._active_plan(plan_id)

            if self._live_subscriptions(identity.user_id):
                raise InvalidState("Client already holds a subscription", entity="client_subscription")

            now = utcnow()
            subscription = ClientSubscription(
                user_id=identity.user_id,
                plan_id=plan.id,
                status=ClientSubscriptionStatus.TRIAL,
                start_date=now,
                end_date=now + timedelta(days=trial.days),
                created_at=now,
            )
            self.db.add(subscription)

        logger.info(f"Client {identity.user_id} started a {trial.days}-day trial of {plan.name}")
        return subscription

    def get_client_subscription(self, identity: Identity) -> Optional[ClientSubscription]:
        require_client(identity)
        live = self._live_subscriptions(identity.user_id, lock=False)
        return live[0] if live else None

    def expire_subscriptions(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        """Scheduler sweep: cancel rows past their end date and abandoned checkouts."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=settings.PENDING_PAYMENT_TTL_HOURS)

        with transaction(self.db):
            ended = (
                self.db.query(ClientSubscription)
                .filter(
                    ClientSubscription.status.in_(CURRENT_STATUSES),
                    ClientSubscription.end_date.isnot(None),
                    ClientSubscription.end_date <= now,
                )
                .with_for_update()
                .all()
            )
            for row in ended:
                row.status = ClientSubscriptionStatus.CANCELLED
                row.cancelled_at = row.cancelled_at or now

            abandoned = (
                self.db.query(ClientSubscription)
                .filter(
                    ClientSubscription.status == ClientSubscriptionStatus.PENDING_PAYMENT,
                    ClientSubscription.created_at <= cutoff,
                )
                .with_for_update()
                .all()
            )
            for row in abandoned:
                row.status = ClientSubscriptionStatus.CANCELLED
                row.cancelled_at = now

        result = ExpirySweepResult(expired=len(ended), abandoned=len(abandoned))
        logger.info(f"Subscription sweep at {now:%Y-%m-%d %H:%M}: {result.expired} expired, {result.abandoned} abandoned")
        return result

    # =====================================================
    # LAWYER SUBSCRIPTIONS
    # =====================================================

    def subscribe_lawyer(self, identity: Identity, plan_id: str) -> LawyerProfile:
        require_lawyer(identity)
        with transaction(self.db):
            plan = self._active_plan(plan_id)
            profile = (
                self.db.query(LawyerProfile)
                .filter(LawyerProfile.user_id == identity.user_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if not profile:
                self._lock_user(identity.user_id)
                profile = LawyerProfile(user_id=identity.user_id, token_balance=0)
                self.db.add(profile)

            profile.subscription_plan = plan.name
            self.ledger.set_balance(
                identity.user_id,
                plan.token_limit,
                f"Token allowance for plan {plan.name}",
                balance_type=BalanceType.TOKENS,
                reference_type="subscription_plan",
                reference_id=plan.id,
            )

        logger.info(f"Lawyer {identity.user_id} subscribed to {plan.name} with {plan.token_limit} tokens")
        return profile

    def reset_token_balances(self, plan_name: str, identity: Optional[Identity] = None) -> TokenResetResult:
        """Refill every lawyer on ``plan_name`` to the plan's token limit."""
        if identity is not None:
            require_staff(identity)

        with transaction(self.db):
            plan = self.plans.get_plan_by_name(plan_name)
            lawyer_ids = [
                row[0]
                for row in self.db.query(LawyerProfile.user_id)
                .filter(LawyerProfile.subscription_plan == plan.name)
                .order_by(LawyerProfile.user_id)
                .all()
            ]
            for lawyer_id in lawyer_ids:
                self.ledger.set_balance(
                    lawyer_id,
                    plan.token_limit,
                    f"Token reset for plan {plan.name}",
                    balance_type=BalanceType.TOKENS,
                    reference_type="token_reset",
                    reference_id=plan.id,
                )

        logger.info(f"Reset {len(lawyer_ids)} lawyers on {plan.name} to {plan.token_limit} tokens")
        return TokenResetResult(plan_name=plan.name, token_limit=plan.token_limit, users_updated=len(lawyer_ids))

    def get_lawyer_subscription(self, identity: Identity) -> LawyerSubscriptionResponse:
        require_lawyer(identity)
        profile = self.db.query(LawyerProfile).filter(LawyerProfile.user_id == identity.user_id).first()
        if not profile:
            return LawyerSubscriptionResponse()

        plan = None
        if profile.subscription_plan:
            plan = (
                self.db.query(SubscriptionPlan)
                .filter(SubscriptionPlan.name == profile.subscription_plan)
                .first()
            )
        return LawyerSubscriptionResponse(
            plan=PlanResponse.model_validate(plan) if plan else None,
            token_balance=profile.token_balance,
        )

    # =====================================================
    # HELPERS
    # =====================================================

    def _active_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.plans.get_plan(plan_id)
        if not plan.is_active:
            raise InvalidState("Subscription plan is not available", entity="subscription_plan", plan_id=plan_id)
        return plan

    def _lock_user(self, user_id: str) -> User:
        # Per-client serialization point for subscription changes
        user = (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not user:
            raise NotFound("User", user_id)
        return user

    def _lock_subscription(self, subscription_id: str) -> ClientSubscription:
        subscription = (
            self.db.query(ClientSubscription)
            .filter(ClientSubscription.id == subscription_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not subscription:
            raise NotFound("Subscription", subscription_id)
        return subscription

    def _live_subscriptions(self, user_id: str, lock: bool = True):
        query = (
            self.db.query(ClientSubscription)
            .filter(
                ClientSubscription.user_id == user_id,
                ClientSubscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(ClientSubscription.created_at.desc(), ClientSubscription.id.desc())
        )
        if lock:
            query = query.with_for_update()
        return query.all()

    @staticmethod
    def _terminate(row: ClientSubscription, now: datetime) -> None:
        row.status = ClientSubscriptionStatus.CANCELLED
        row.cancelled_at = now
        if row.end_date is None or row.end_date > now:
            row.end_date = now

#!/usr/bin/env python3
"""
Legal marketplace batch CLI, run by the scheduler
"""

import argparse
import logging
import sys
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from legalmarket.config import settings
from legalmarket.database import build_engine, build_session_factory, init_db, session_scope
from legalmarket.errors import Conflict, MarketplaceError
from legalmarket.models import BalanceType
from legalmarket.services.ledger_service import LedgerService
from legalmarket.services.subscription_service import SubscriptionService

logger = logging.getLogger("marketplace_cli")

T = TypeVar("T")


def run_with_retry(factory: sessionmaker, job: Callable[[Session], T]) -> T:
    """Run ``job`` in a fresh session, retrying when a concurrent writer wins."""

    @retry(
        stop=stop_after_attempt(settings.SCHEDULER_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(Conflict),
        reraise=True,
    )
    def attempt() -> T:
        with session_scope(factory) as db:
            return job(db)

    return attempt()


def expire_subscriptions(factory: sessionmaker):
    result = run_with_retry(factory, lambda db: SubscriptionService(db).expire_subscriptions())
    print(f"✅ Expired {result.expired} subscriptions, abandoned {result.abandoned} checkouts")
    return result


def reset_tokens(factory: sessionmaker, plan_name: str):
    result = run_with_retry(factory, lambda db: SubscriptionService(db).reset_token_balances(plan_name))
    print(f"✅ Reset {result.users_updated} lawyers on '{result.plan_name}' to {result.token_limit} tokens")
    return result


def verify_balance(factory: sessionmaker, user_id: str, balance_type: BalanceType):
    with session_scope(factory) as db:
        check = LedgerService(db).verify_balance(user_id, balance_type)

    status = "✅ consistent" if check.consistent else "❌ MISMATCH"
    print(f"{status}: cached {check.cached_balance}, ledger {check.ledger_sum} ({balance_type.value})")
    return check


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Legal marketplace maintenance CLI")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create all tables")
    subparsers.add_parser("expire-subscriptions", help="Cancel ended and abandoned client subscriptions")

    reset_parser = subparsers.add_parser("reset-tokens", help="Refill lawyer tokens for a plan")
    reset_parser.add_argument("plan_name", help="Subscription plan name")

    verify_parser = subparsers.add_parser("verify-balance", help="Compare a cached balance with its ledger")
    verify_parser.add_argument("user_id", help="User id")
    verify_parser.add_argument("--tokens", action="store_true", help="Check the AI token balance instead of credits")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = build_engine(args.database_url)
    factory = build_session_factory(engine)

    try:
        if args.command == "init-db":
            init_db(engine)
            print("✅ Database tables created")
        elif args.command == "expire-subscriptions":
            expire_subscriptions(factory)
        elif args.command == "reset-tokens":
            reset_tokens(factory, args.plan_name)
        elif args.command == "verify-balance":
            balance_type = BalanceType.TOKENS if args.tokens else BalanceType.CREDITS
            check = verify_balance(factory, args.user_id, balance_type)
            if not check.consistent:
                return 1
    except MarketplaceError as e:
        logger.exception(f"Command {args.command} failed")
        print(f"❌ {e.code}: {e.message}")
        return 1
    finally:
        engine.dispose()

    return 0


if __name__ == "__main__":
    sys.exit(main())

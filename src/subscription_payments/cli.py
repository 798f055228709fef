#!/usr/bin/env python3
"""Command-line interface for operating the subscription ledger.

Usage:
    subscription-payments init-db
    subscription-payments seed-plans
    subscription-payments list-plans
    subscription-payments sweep --warn-days 3
    subscription-payments payme-link --plan-id <uuid> --user-id <uuid> --amount 777700
    subscription-payments click-link --plan-id <uuid> --user-id <uuid> --amount 777700 --return-url https://t.me/bot
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .checkout import generate_click_link, generate_payme_link
from .config import Settings
from .database import Plan, PlanRepository, close_db, get_db_context, init_db
from .money import AmountError, Money
from .subscriptions.notifications import LoggingChannelMembership, LoggingNotifier
from .subscriptions.sweeper import SubscriptionSweeper

logger = logging.getLogger(__name__)

# (name, price in minor units, duration in days)
DEFAULT_PLANS = [
    ("Basic", 7777, 30),
    ("Standard", 5000, 90),
    ("Premium", 15000, 360),
]


def _print_plan(plan: Plan, suffix: str = "") -> None:
    line = f"{plan.id}\t{plan.name}\t{plan.price_money}\t{plan.duration_days}d"
    print(f"{line}\t{suffix}" if suffix else line)


async def init_db_async(settings: Settings) -> int:
    """Create all ledger tables that do not exist yet."""
    try:
        await init_db(settings.database_url)
        return 0
    finally:
        await close_db()


async def seed_plans_async(settings: Settings) -> int:
    """Insert the default plans, skipping any that already exist by name."""
    await init_db(settings.database_url)
    try:
        async with get_db_context() as session:
            plans = PlanRepository(session)
            for name, price, duration_days in DEFAULT_PLANS:
                plan, created = await plans.ensure(name, price, duration_days)
                _print_plan(plan, "created" if created else "exists")
        return 0
    finally:
        await close_db()


async def list_plans_async(settings: Settings) -> int:
    """Print every plan, cheapest first."""
    await init_db(settings.database_url, create_tables=False)
    try:
        async with get_db_context() as session:
            for plan in await PlanRepository(session).list_all():
                _print_plan(plan)
        return 0
    finally:
        await close_db()


async def sweep_async(settings: Settings, warn_days: Optional[int] = None) -> int:
    """Run one expiry sweep, optionally warning users about upcoming expiry first.

    Returns:
        Exit code: 0 if every lapsed user was removed from the channel, 1 otherwise.
    """
    await init_db(settings.database_url, create_tables=False)
    try:
        async with get_db_context() as session:
            sweeper = SubscriptionSweeper(
                session,
                channel=LoggingChannelMembership(),
                notifier=LoggingNotifier(),
            )
            if warn_days is not None:
                await sweeper.warn_expiring(within_days=warn_days)
            report = await sweeper.sweep()
        print(json.dumps(report.to_dict(), indent=2))
        return 1 if report.failed_removals else 0
    finally:
        await close_db()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="subscription-payments",
        description="Operate the subscription payment ledger.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("seed-plans", help="Insert the default subscription plans")
    subparsers.add_parser("list-plans", help="Print plan ids, prices and durations")

    sweep_parser = subparsers.add_parser("sweep", help="Deactivate lapsed subscriptions")
    sweep_parser.add_argument(
        "--warn-days",
        type=int,
        default=None,
        help="Also warn users whose subscription ends within this many days",
    )

    for name, gateway in (("payme-link", "Payme"), ("click-link", "Click")):
        link_parser = subparsers.add_parser(name, help=f"Print a {gateway} checkout link")
        link_parser.add_argument("--plan-id", required=True, help="Plan id")
        link_parser.add_argument("--user-id", required=True, help="User id")
        link_parser.add_argument(
            "--amount",
            required=True,
            type=int,
            help="Amount in minor units",
        )
        if name == "click-link":
            link_parser.add_argument("--return-url", default=None, help="URL to return to after payment")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if parsed_args.command == "init-db":
        return asyncio.run(init_db_async(settings))

    if parsed_args.command == "seed-plans":
        return asyncio.run(seed_plans_async(settings))

    if parsed_args.command == "list-plans":
        return asyncio.run(list_plans_async(settings))

    if parsed_args.command == "sweep":
        return asyncio.run(sweep_async(settings, warn_days=parsed_args.warn_days))

    if parsed_args.command in ("payme-link", "click-link"):
        if parsed_args.amount <= 0:
            logger.error("Amount must be positive")
            return 1
        amount = Money(minor=parsed_args.amount)
        try:
            if parsed_args.command == "payme-link":
                link = generate_payme_link(settings.payme, parsed_args.plan_id, parsed_args.user_id, amount)
            else:
                link = generate_click_link(
                    settings.click,
                    parsed_args.plan_id,
                    parsed_args.user_id,
                    amount,
                    return_url=parsed_args.return_url,
                )
        except AmountError as e:
            logger.error(str(e))
            return 1
        print(link)
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Operator command line for the credit ledger.

  credit-ledger seed-plans
  credit-ledger show <uid> [--limit N]
  credit-ledger switch-plan <uid> <plan>
  credit-ledger grant <uid> <entry-id> <amount> [--reason R]
  credit-ledger reroll <uid>
  credit-ledger reconcile <uid>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Sequence

from .config import settings
from .services.credit_service import CreditService
from .services.factory import create_credit_service


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credit-ledger", description="Inspect and administer credit balances."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-plans", help="Write the built-in plan table to storage.")

    show = sub.add_parser("show", help="Show balance, plan and recent ledger entries.")
    show.add_argument("user_id")
    show.add_argument("--limit", type=int, default=10)

    switch = sub.add_parser("switch-plan", help="Move a user to a plan (resets the balance).")
    switch.add_argument("user_id")
    switch.add_argument("plan_code")

    grant = sub.add_parser("grant", help="Add manual credits on top of the balance.")
    grant.add_argument("user_id")
    grant.add_argument("entry_id", help="Unique id for this grant; re-running is a no-op.")
    grant.add_argument("amount", type=int)
    grant.add_argument("--reason", default="support.manual_grant")

    reroll = sub.add_parser("reroll", help="Apply this month's plan reset if not yet applied.")
    reroll.add_argument("user_id")

    reconcile = sub.add_parser("reconcile", help="Recompute the balance from the ledger.")
    reconcile.add_argument("user_id")

    return parser


async def run(args: argparse.Namespace, service: CreditService) -> Any:
    if args.command == "seed-plans":
        plans = await service.seed_plans()
        return [p.model_dump(mode="json") for p in plans]

    if args.command == "show":
        state = await service.ensure_user_init(args.user_id)
        entries = await service.list_recent_entries(args.user_id, limit=args.limit)
        return {
            "user_id": args.user_id,
            **state.model_dump(),
            "entries": [e.model_dump(mode="json") for e in entries],
        }

    if args.command == "switch-plan":
        state = await service.switch_plan(args.user_id, args.plan_code)
        return {"user_id": args.user_id, **state.model_dump()}

    if args.command == "grant":
        result = await service.grant_manual_credits(
            args.user_id, args.entry_id, args.amount, reason=args.reason
        )
        return result.model_dump(mode="json")

    if args.command == "reroll":
        await service.ensure_user_init(args.user_id)
        result = await service.ensure_monthly_reroll(args.user_id)
        return result.model_dump(mode="json")

    if args.command == "reconcile":
        result = await service.reconcile(args.user_id)
        return result.model_dump(mode="json")

    raise ValueError(f"unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL)

    service = create_credit_service(settings)
    output = asyncio.run(run(args, service))
    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()

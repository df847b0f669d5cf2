from __future__ import annotations

import argparse
import asyncio
import sys

from creditmeter.core.logging import configure_logging
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.audit import record_event
from creditmeter.services.credits.ledger import MANUAL_ADJUSTMENT, get_credit_ledger


def _build_parser() -> argparse.ArgumentParser:
    # Manual grants are support tooling; every one leaves a ledger row and an audit event.
    parser = argparse.ArgumentParser(description="Grant credits to an account as a manual adjustment")
    parser.add_argument("--account", required=True, help="Credit account identifier")
    parser.add_argument("--credits", required=True, type=int, help="Credits to add (> 0)")
    parser.add_argument("--reason", required=True, help="Reason recorded on the ledger row")
    parser.add_argument("--operator", default="grant_credits", help="Operator id for the audit trail")
    return parser


async def _grant(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        result = await get_credit_ledger().grant(
            session=session,
            account_id=args.account,
            amount=args.credits,
            type=MANUAL_ADJUSTMENT,
            description=args.reason,
        )
        await record_event(
            session=session,
            account_id=args.account,
            actor_type="system",
            actor_id=args.operator,
            actor_role="admin",
            event_type="billing.credits.manual_grant",
            outcome="success",
            resource_type="credit_account",
            resource_id=args.account,
            metadata={"credits": args.credits, "balance": result.balance, "reason": args.reason},
            commit=True,
            best_effort=False,
        )
    print(f"account_id={args.account} granted={args.credits} balance={result.balance}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_grant(args))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"grant_credits failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

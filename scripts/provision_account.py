from __future__ import annotations

import argparse
import asyncio
import sys

from creditmeter.core.logging import configure_logging
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.accounts import on_account_created


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision a credit account with its signup grant")
    parser.add_argument("account_id", help="Credit account identifier")
    return parser


async def _provision(account_id: str) -> int:
    async with SessionLocal() as session:
        granted = await on_account_created(session, account_id)
    print(f"account_id={account_id} credits_granted={granted}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_provision(args.account_id))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"provision_account failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import sys

from creditmeter.core.logging import configure_logging
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.auth.api_keys import ROLE_ORDER, issue_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue an API key bound to a credit account")
    parser.add_argument("--account", required=True, help="Credit account the key acts for")
    parser.add_argument("--role", required=True, choices=sorted(ROLE_ORDER), help="Role granted to the key")
    parser.add_argument("--name", required=True, help="Label recorded in the audit log")
    parser.add_argument("--user-id", default=None, help="Attach to an existing user instead of creating one")
    parser.add_argument("--email", default=None, help="Email for a newly created user")
    return parser


async def _issue(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        issued = await issue_api_key(
            session,
            account_id=args.account,
            role=args.role,
            name=args.name,
            user_id=args.user_id,
            email=args.email,
            actor_id="create_api_key",
        )
    print(f"key_id={issued.key_id} user_id={issued.user_id} key_prefix={issued.key_prefix}")
    # The raw key cannot be recovered later.
    print(issued.raw_key)
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_issue(args))
    except Exception as exc:  # noqa: BLE001 - report and exit non-zero
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

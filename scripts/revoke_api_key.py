from __future__ import annotations

import argparse
import asyncio
import sys

from creditmeter.core.logging import configure_logging
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.auth.api_keys import revoke_api_key


async def _revoke(key_id: str) -> int:
    async with SessionLocal() as session:
        revoked = await revoke_api_key(session, key_id, actor_id="revoke_api_key")
    print(f"key_id={key_id} {'revoked' if revoked else 'already_revoked'}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Revoke an API key; the row is kept for audit history")
    parser.add_argument("key_id")
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_revoke(args.key_id))
    except Exception as exc:  # noqa: BLE001 - report and exit non-zero
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

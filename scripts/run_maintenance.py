from __future__ import annotations

import argparse
import asyncio
from typing import get_args

from creditmeter.core.logging import configure_logging
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.maintenance import MaintenanceTask, run_maintenance_task


def _build_parser() -> argparse.ArgumentParser:
    # Intended for cron: the daily credential reset runs at midnight UTC.
    parser = argparse.ArgumentParser(description="Run one maintenance task")
    parser.add_argument("task", choices=list(get_args(MaintenanceTask)))
    return parser


async def _run(task: MaintenanceTask) -> None:
    async with SessionLocal() as session:
        count = await run_maintenance_task(session, task)
    print(f"{task}={count}")


def main() -> None:
    args = _build_parser().parse_args()
    configure_logging()
    asyncio.run(_run(args.task))


if __name__ == "__main__":
    main()

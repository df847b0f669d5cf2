from __future__ import annotations

import argparse

import uvicorn

from creditmeter.apps.api.main import create_app
from creditmeter.core.config import get_settings
from creditmeter.core.logging import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the creditmeter API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    return parser


def main() -> None:
    # Single-process server for local runs.
    args = _build_parser().parse_args()
    configure_logging()
    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=get_settings().log_level.lower())


if __name__ == "__main__":
    main()

from __future__ import annotations

import json
import logging
import sys

from creditmeter.core.config import get_settings


_configured = False


class _JsonFormatter(logging.Formatter):
    # Render one JSON object per line for log shippers.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(*, force: bool = False) -> None:
    # Configure root logging once per process; later calls are no-ops unless forced.
    global _configured
    if _configured and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root = logging.getLogger()
    # Respect handlers installed by the host (uvicorn, pytest) and only add ours when none exist.
    if force:
        root.handlers = [handler]
    elif not root.handlers:
        root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # Keep SQL echo and HTTP client chatter out of service logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True

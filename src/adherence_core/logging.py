"""Structured logging for the adherence core.

Modules only log through `logging.getLogger(__name__)` and attach context
as `adherence_*` extras (subject id, cache scope, mutation id and kind).
The embedding process installs a handler once, normally through
bootstrap.create_gateway(), choosing "json" or "text" output via
ADHERENCE_LOG_FORMAT.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone

EXTRA_PREFIX = "adherence_"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line; adherence_* extras become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key.startswith(EXTRA_PREFIX)
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(payload, default=str)


def setup_logging(log_format: str, level: int | str = logging.INFO) -> None:
    """Replace the root logger's handlers with a single stderr handler."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)

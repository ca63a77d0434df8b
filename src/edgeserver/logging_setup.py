"""
Logging configuration for the edgeserver process.

Two formats:

    text   2026-10-19 10:55:36 [INFO] edgeserver.server: Proxying to http://...
    json   {"time": "2026-10-19T10:55:36", "level": "INFO", "logger": ..., "message": ...}

Every module logs through `logging.getLogger(__name__)`, so everything
lands under the "edgeserver" logger tree. Access lines use
"edgeserver.access".
"""

import json
import logging
from datetime import datetime, timezone


TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """
    Install a stream handler on the root logger.

    Replaces handlers installed by an earlier call, so calling it twice
    does not duplicate every line.

    Args:
        level: Level name, e.g. "DEBUG" or "INFO".
        fmt: "text" or "json".
    """
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, handlers=[handler], force=True)
    logging.getLogger("edgeserver").setLevel(numeric_level)

    # httpx logs every request at INFO; that is the beacon and proxy traffic
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

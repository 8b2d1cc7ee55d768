import json
import logging
import sys
from typing import Any


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # we log our own request lines, uvicorn's access log just doubles them
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def log_fields(logger: logging.Logger, level: int, msg: str, **fields: Any) -> None:
    """
    One log line with a JSON payload appended, so request/deck logs stay greppable:
      2026-01-01 10:00:00 | INFO | backend.app.main | request {"route": "GET /v1/deck", ...}
    """
    if not logger.isEnabledFor(level):
        return
    logger.log(level, "%s %s", msg, json.dumps(fields, default=str, sort_keys=True))

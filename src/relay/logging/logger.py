"""Central logger configuration.

Why this exists:
- One stdout handler shared by every relay module (API, workers, dispatcher)
- Level driven by settings.app_log_level
- Every line carries the pid, since several worker processes read the same
  streams and their logs interleave
- Messages are pipe-delimited key=value pairs, e.g.
  "Inbound event published | instance=I1 | event_id=E1"
"""

import logging
import sys
from typing import Optional

from src.relay.config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | pid=%(process)d | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handler: Optional[logging.Handler] = None


def _shared_handler() -> logging.Handler:
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stdout)
        _handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return _handler


def resolve_level(value: Optional[str]) -> int:
    level = logging.getLevelName((value or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str = "relay") -> logging.Logger:
    """Create and return a configured logger.

    NOTE:
    - Every module should do: `logger = setup_logger(__name__)`.
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers in reload environments (uvicorn --reload)
    if logger.handlers:
        return logger

    logger.setLevel(resolve_level(settings.app_log_level))
    logger.addHandler(_shared_handler())

    # Avoid propagating to root and double-printing
    logger.propagate = False
    return logger

"""
LangSmith / LangChain tracing setup for the completion backend.

LangChain reads the standard `LANGCHAIN_*` environment variables; Settings is
the source of truth and is mirrored into the process environment here.
"""

from __future__ import annotations

import os

from src.relay.config.settings import Settings
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

_TRACING_VARS = (
    "LANGCHAIN_TRACING_V2",
    "LANGCHAIN_API_KEY",
    "LANGCHAIN_PROJECT",
    "LANGCHAIN_ENDPOINT",
)


def setup_langsmith_tracing(settings: Settings) -> bool:
    """
    Apply tracing settings to the environment. Safe to call multiple times.

    Returns whether tracing is enabled.
    """
    if not settings.langchain_tracing_v2:
        for name in _TRACING_VARS:
            os.environ.pop(name, None)
        logger.debug("LangSmith tracing disabled")
        return False

    values = {
        "LANGCHAIN_TRACING_V2": "true",
        "LANGCHAIN_API_KEY": settings.langchain_api_key,
        "LANGCHAIN_PROJECT": settings.langchain_project,
        "LANGCHAIN_ENDPOINT": settings.langchain_endpoint,
    }
    for name, value in values.items():
        if value:
            os.environ[name] = value

    logger.info("LangSmith tracing enabled | project=%s", settings.langchain_project or "(default)")
    return True

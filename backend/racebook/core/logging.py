from __future__ import annotations

import sys

from loguru import logger

from .config import settings

_CONFIGURED = False


def configure_logging(*, level: str | None = None, serialize: bool | None = None) -> None:
    """Install the single stderr sink used by the API and scripts."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if serialize is None else serialize,
        backtrace=settings.debug,
        diagnose=settings.debug,
    )
    _CONFIGURED = True

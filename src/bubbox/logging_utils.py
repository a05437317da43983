"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from typing import Literal

from loguru import logger

LogProfile = Literal["host", "worker"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "host": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {extra[conversation]} | {message}",
    "worker": "[worker] {level} | {extra[conversation]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None


def configure_logging(*, profile: LogProfile = "host", level: str | None = None) -> None:
    """Configure process-level logging once.

    Both profiles write to stderr. Inside a worker, stdout carries result
    frames and must never receive log lines.
    """

    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved_level = (level or os.getenv("BUBBOX_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.configure(extra={"conversation": "-"})
    logger.add(
        sys.stderr,
        level=resolved_level,
        format=_PROFILE_FORMATS[profile],
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED_PROFILE = profile

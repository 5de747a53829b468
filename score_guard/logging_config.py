from __future__ import annotations

import logging
import sys
from typing import Optional

from loguru import logger


_configured = False


class _InterceptHandler(logging.Handler):
    """Forward standard logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    *,
    level: str = "INFO",
    force: bool = False,
    events_only: bool = False,
    serialize: bool = False,
    fmt: Optional[str] = None,
) -> None:
    """
    Configure a single global loguru sink for score_guard and everything it imports.

    Parameters:
    - level: minimum level for normal logs.
    - force: reconfigure even if already configured.
    - events_only: keep only breaker event records (LoguruEventLogger) + warning/error.
    - serialize: emit JSON lines instead of the colored text format, so the
      structured fields bound on breaker events reach the sink.
    - fmt: optional custom format (ignored when serialize=True).
    """
    global _configured

    if _configured and not force:
        return

    logger.remove()

    if events_only:
        def _filter(record) -> bool:
            if record["extra"].get("channel") == "score_guard.events":
                return True
            return record["level"].name in ("WARNING", "ERROR", "CRITICAL")
    else:
        def _filter(record) -> bool:
            return record["level"].no >= logger.level(level.upper()).no

    if serialize:
        logger.add(sys.stderr, level=level.upper(), filter=_filter, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level.upper(),
            colorize=True,
            filter=_filter,
            format=(
                fmt
                or "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                   "<level>{level: <8}</level> | "
                   "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
                   "<level>{message}</level>"
            ),
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    _configured = True

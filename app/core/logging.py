"""
Loguru setup.

Call sites log a snake_case event name and bind their context:

    logger.bind(switch_id=str(switch.id), attempts=3).warning("delivery_failed")

The context is rendered as `key=value` pairs after the event name.
"""

import logging
import sys
from typing import Any

from loguru import logger

from app.config import get_settings

# stdlib loggers whose output should go through loguru
INTERCEPTED = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "sqlalchemy.engine",
    "apscheduler",
    "httpx",
)

_PLAIN = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"
_COLOR = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _format_extra(record: dict[str, Any], base: str = _PLAIN) -> str:
    """Format string for one record: base line plus bound context."""
    context = {k: v for k, v in record["extra"].items() if k not in ("name", "_context")}
    record["extra"]["_context"] = " ".join(f"{k}={v}" for k, v in context.items())
    return base + " {extra[_context]}\n{exception}"


def _drop_health_checks(record: dict[str, Any]) -> bool:
    # Load balancers hit /health every few seconds
    return "/health" not in record["message"]


def setup_logging() -> None:
    """Configure loguru for the API process, the CLI and the tick job."""
    debug = get_settings().debug

    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=(lambda r: _format_extra(r, _COLOR)) if debug else _format_extra,
        filter=None if debug else _drop_health_checks,
        colorize=debug,
        backtrace=True,
        diagnose=debug,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED:
        logging.getLogger(name).handlers = [InterceptHandler()]


def get_logger(name: str) -> Any:
    """Module logger; `name` shows up in the formatted line."""
    return logger.bind(name=name)

"""
logging_config.py — Loguru setup for LeadSync

Every module logs through logging.getLogger("leadsync.<component>") with
%-style arguments; routers and main.py use loguru's logger directly. This
module makes both land in the same Loguru sinks.

Business Rules:
- CRM credentials travel as an api_token query parameter or a bearer header,
  so every record is scrubbed of both before it reaches a sink
- APP_ENV=production → JSON lines on stdout, plus a rotating file when
  LOG_FILE is set (50 MB, kept 7 days)
- anything else → colored console lines tagged with the component name
- httpx / sqlalchemy chatter is held at WARNING

Called by: leadsync/main.py (import time)
Depends on: nothing (reads LOG_LEVEL, APP_ENV, LOG_FILE from the environment)
"""

import logging
import os
import re
import sys

from loguru import logger

_SECRET_PATTERNS = (
    (re.compile(r"(api_token=)[^&\s\"']+"), r"\1***"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"), r"\1***"),
)

_DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | "
    "{message}"
)

_QUIET = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def redact(message: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def _scrub(record) -> None:
    record["message"] = redact(record["message"])


def setup_logging() -> None:
    """Route loguru and stdlib logging into one set of sinks. Safe to call twice."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    production = os.getenv("APP_ENV", "").lower() == "production"

    logger.remove()
    logger.configure(patcher=_scrub, extra={"component": "leadsync"})

    if production:
        logger.add(sys.stdout, level=level, format="{message}", serialize=True)
        log_file = os.getenv("LOG_FILE")
        if log_file:
            logger.add(
                log_file,
                level=level,
                rotation="50 MB",
                retention="7 days",
                compression="gz",
                serialize=True,
            )
    else:
        logger.add(sys.stdout, level=level, format=_DEV_FORMAT, colorize=True)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging ready (level={}, production={})", level, production)


class _InterceptHandler(logging.Handler):
    """Hand stdlib records to loguru, keeping the caller's frame and logger name."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.bind(component=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )

"""
ScanMaster - Logging Setup

Single loguru sink for the whole process. Request-scoped fields
(request_id, client_ip) are attached by the gateway middleware through
logger.contextualize and rendered on every line.
"""

import sys

from loguru import logger

from scanmaster.config import settings


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
    "req={extra[request_id]} ip={extra[client_ip]} | "
    "<level>{message}</level>"
)


def configure_logging(level: str = None, json_output: bool = None) -> None:
    """
    Replace loguru's default handler with the ScanMaster sink.

    Args:
        level: Minimum level, defaults to settings.LOG_LEVEL
        json_output: Emit serialized JSON lines instead of text
    """
    level = level or settings.LOG_LEVEL
    if json_output is None:
        json_output = settings.LOG_JSON

    logger.remove()
    logger.configure(extra={"request_id": "-", "client_ip": "-"})
    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        serialize=json_output,
        backtrace=False,
        diagnose=False,
    )


def token_prefix(token: str) -> str:
    """Loggable prefix of a bearer credential (never log the whole token)."""
    if not token:
        return ""
    return token[:10] + "..."

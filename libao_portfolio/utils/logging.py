"""Console logging for the ledger, oracle and CLI.

Ledger audit events have their own JSON-line files (see ledger_log); this
module only configures the human-readable stream.
"""

import logging
import sys
from typing import Any

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# HTTP libraries log every relay attempt at DEBUG
NOISY_LOGGERS = ("urllib3", "requests")


def setup_logging(level: str = "INFO", log_format: str | None = None) -> None:
    """Configure the root logger on stdout.

    Unknown level names fall back to INFO. The HTTP client loggers are
    held at WARNING or above whatever the level.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=log_format or DEFAULT_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: Any,
) -> None:
    """Log message with key=value context appended after " | ".

    Fields whose value is None are left out, so optional ids such as a
    missing lot or transaction do not clutter the line:

        Order executed | symbol=2330 action=BUY shares=1000
    """
    fields = " ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    getattr(logger, level.lower())(f"{message} | {fields}" if fields else message)

#!/usr/bin/env python3
"""
LOG SETUP — Logging for the position monitor, custody ledger and payouts.

Usage in any module:
    from log_setup import get_logger
    logger = get_logger(__name__)
    logger.info("Deposit %s credited", signature)

Per-position loggers prefix every line with the position id, so one
position's buy, ticks and exit can be grepped out of a busy daemon log:
    log = position_logger(logger, 7)
    log.info("Trailing activated")   # -> "[T7] Trailing activated"

Outputs:
  - Console: INFO+ (override with LOG_LEVEL)
  - File: DEBUG+ to $LOG_DIR/trail_custody.log (default ./logs), 5 MB x 5 backups

The signer API key never reaches a handler: any record that contains it
is masked before formatting.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
LOG_DIR = Path(os.getenv("LOG_DIR", str(PROJECT_ROOT / "logs")))
LOG_FILE = LOG_DIR / "trail_custody.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB
BACKUP_COUNT = 5

# HTTP client chatter; payout and swap outcomes are logged by our own modules
QUIET_LOGGERS = ("aiohttp", "asyncio", "urllib3")

__all__ = ["setup_logging", "get_logger", "position_logger", "PositionLogAdapter", "SecretMaskFilter"]

_initialized = False


class SecretMaskFilter(logging.Filter):
    """Replaces configured secret values in log records with "***"."""

    def __init__(self, secrets=None):
        super().__init__()
        if secrets is None:
            secrets = [os.getenv("SIGNER_API_KEY", "")]
        self.secrets = [s for s in secrets if s and len(s) >= 8]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self.secrets:
            masked = masked.replace(secret, "***")
        if masked != message:
            record.msg, record.args = masked, None
        return True


def setup_logging(level: int = logging.DEBUG):
    """
    Attach console and rotating-file handlers to the root logger.

    Runs once per process; later calls are no-ops.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    mask = SecretMaskFilter()

    console_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(formatter)
    console.addFilter(mask)
    root.addHandler(console)

    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(mask)
    root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Named logger; the first call in a process sets up the handlers."""
    setup_logging()
    return logging.getLogger(name)


class PositionLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the owning position id, e.g. "[T12] ..."."""

    def process(self, msg, kwargs):
        return f"[T{self.extra['position_id']}] {msg}", kwargs


def position_logger(logger: logging.Logger, position_id) -> PositionLogAdapter:
    return PositionLogAdapter(logger, {"position_id": position_id})

#!/usr/bin/env python3
"""
TRADE EVENTS — Structured JSONL audit stream for positions and custody.

Emits machine-parseable events to logs/trade_events.jsonl for every
money-moving action: position entries and exits, take-profit fills,
deposit credits, withdrawal settlements, fee entries.

  - Append-only JSONL (one JSON object per line) for grep/jq analysis
  - Every event has: timestamp, event type, source module, and payload
  - Rotates at 10 MB, keeps 10 backups
  - Never raises into the caller

Usage:
    from trade_events import log_event, TradeEvent

    log_event(TradeEvent.TP_EXECUTED, "position_monitor", {
        "position_id": 3, "stage": 0, "raw_sold": 5000, "txid": "5x...",
    })

Querying:
    # Every full exit with realized PnL
    jq 'select(.event | startswith("exit_"))' logs/trade_events.jsonl

    # Withdrawals that need reconciliation
    jq 'select(.event == "withdrawal_unconfirmed")' logs/trade_events.jsonl
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
LOG_DIR = PROJECT_ROOT / "logs"
EVENT_LOG_FILE = LOG_DIR / "trade_events.jsonl"

MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 10

__all__ = ["TradeEvent", "log_event"]


class TradeEvent(str, Enum):
    """Canonical event types for positions and custody."""

    # ── Position lifecycle ──
    POSITION_STARTED = "position_started"
    POSITION_RUNNING = "position_running"
    BUY_FAILED = "buy_failed"
    POSITION_CANCELED = "position_canceled"
    POSITION_ERROR = "position_error"
    TRAILING_ACTIVATED = "trailing_activated"
    TP_EXECUTED = "tp_executed"

    # ── Position exits ──
    EXIT_STOP_LOSS = "exit_stop_loss"
    EXIT_BREAK_EVEN = "exit_break_even"
    EXIT_TRAILING_STOP = "exit_trailing_stop"
    EXIT_MANUAL = "exit_manual"
    EXIT_TAKE_PROFIT = "exit_take_profit"       # ladder sold everything
    EXIT_FAILED = "exit_failed"
    SELL_UNCONFIRMED = "sell_unconfirmed"
    SELL_RECONCILED = "sell_reconciled"

    # ── Deposits ──
    DEPOSIT_DETECTED = "deposit_detected"
    DEPOSIT_CREDITED = "deposit_credited"
    DEPOSIT_UNRESOLVED = "deposit_unresolved"

    # ── Withdrawals ──
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_SENT = "withdrawal_sent"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    WITHDRAWAL_UNCONFIRMED = "withdrawal_unconfirmed"
    WITHDRAWAL_RECONCILED = "withdrawal_reconciled"

    # ── Fees ──
    FEE_RECORDED = "fee_recorded"
    FEES_SWEPT = "fees_swept"

    # ── Safety / system ──
    KILL_SWITCH_ACTIVE = "kill_switch_active"
    PREFLIGHT_FAILED = "preflight_failed"
    ERROR = "error"


_event_logger: logging.Logger | None = None


def _get_event_logger() -> logging.Logger:
    """Get or initialize the JSONL event logger.

    Separate from the main application logger; writes raw JSON lines
    without the standard log format prefix.
    """
    global _event_logger
    if _event_logger is not None:
        return _event_logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("trade_events")
    logger.setLevel(logging.INFO)
    logger.propagate = False  # Don't bubble to root (would double-log)

    if not logger.handlers:
        handler = RotatingFileHandler(
            EVENT_LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    _event_logger = logger
    return logger


def log_event(
    event: TradeEvent,
    source: str,
    payload: dict | None = None,
) -> None:
    """Emit a structured event to the JSONL log.

    Parameters
    ----------
    event : TradeEvent
        The event type (e.g., TradeEvent.DEPOSIT_CREDITED).
    source : str
        The module name emitting the event (e.g., "custody_ledger").
    payload : dict, optional
        Key-value data for the event. Non-JSON values are stringified.
    """
    record = {
        "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "event": event.value,
        "source": source,
        **(payload or {}),
    }
    try:
        line = json.dumps(record, default=str, separators=(",", ":"))
        _get_event_logger().info(line)
    except Exception:
        # Event logging must never break a trade or a payout
        pass

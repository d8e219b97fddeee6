#!/usr/bin/env python3
"""
TRADING GUARDS — Pre-trade safety checks.

Pure functions, no side effects. Each check returns (allowed: bool, reason: str).
Used by trade_engine.start_position() before any balance is debited.

Emergency stop: touch PAUSE_TRADING to block every new position.
Open positions keep being monitored; only entries are blocked.
"""

from pathlib import Path

from config import (
    MIN_TRADE_SOL,
    MAX_TRADE_SOL,
    MAX_OPEN_POSITIONS_PER_WALLET,
    MAX_TP_STAGES,
)

PROJECT_ROOT = Path(__file__).resolve().parent
KILL_SWITCH_FILE = PROJECT_ROOT / "PAUSE_TRADING"


def check_kill_switch() -> tuple[bool, str]:
    """Check if PAUSE_TRADING file exists. Touch this file to halt new entries."""
    if KILL_SWITCH_FILE.exists():
        return False, f"Kill switch active: {KILL_SWITCH_FILE} exists. Remove to resume."
    return True, "OK"


def check_trade_size(size_sol: float) -> tuple[bool, str]:
    if size_sol < MIN_TRADE_SOL:
        return False, f"Trade size {size_sol} SOL below minimum {MIN_TRADE_SOL}"
    if size_sol > MAX_TRADE_SOL:
        return False, f"Trade size {size_sol} SOL above maximum {MAX_TRADE_SOL}"
    return True, "OK"


def check_exit_params(
    stop_loss_pct: float,
    trailing_trigger_pct: float,
    trailing_distance_pct: float,
) -> tuple[bool, str]:
    """Stop-loss in (0, 100]; trailing trigger > 0; trailing distance in (0, 100)."""
    if not 0 < abs(stop_loss_pct) <= 100:
        return False, f"Stop-loss {stop_loss_pct}% must be within (0, 100]"
    if abs(trailing_trigger_pct) <= 0:
        return False, "Trailing trigger must be > 0%"
    if not 0 < abs(trailing_distance_pct) < 100:
        return False, f"Trailing distance {trailing_distance_pct}% must be within (0, 100)"
    return True, "OK"


def check_take_profit_ladder(stages) -> tuple[bool, str]:
    """Stages need positive triggers, sell fractions in (0, 100] and distinct triggers."""
    if len(stages) > MAX_TP_STAGES:
        return False, f"Too many take-profit stages ({len(stages)} > {MAX_TP_STAGES})"
    triggers = set()
    for stage in stages:
        if stage.trigger_pct <= 0:
            return False, f"Take-profit trigger {stage.trigger_pct}% must be > 0"
        if not 0 < stage.sell_pct <= 100:
            return False, f"Take-profit sell {stage.sell_pct}% must be within (0, 100]"
        if stage.trigger_pct in triggers:
            return False, f"Duplicate take-profit trigger {stage.trigger_pct}%"
        triggers.add(stage.trigger_pct)
    return True, "OK"


def check_max_open_positions(open_positions: list) -> tuple[bool, str]:
    count = len(open_positions)
    if count >= MAX_OPEN_POSITIONS_PER_WALLET:
        return False, f"Open position limit reached ({count}/{MAX_OPEN_POSITIONS_PER_WALLET})"
    return True, f"OK ({count}/{MAX_OPEN_POSITIONS_PER_WALLET} open)"


def run_all_pre_trade_checks(position, open_positions: list) -> tuple[bool, list[str]]:
    """Run every guard for a new position. Returns (allowed, failure reasons)."""
    checks = [
        check_kill_switch(),
        check_trade_size(position.trade_size_sol),
        check_exit_params(
            position.stop_loss_pct,
            position.trailing_trigger_pct,
            position.trailing_distance_pct,
        ),
        check_take_profit_ladder(position.take_profits),
        check_max_open_positions(open_positions),
    ]
    failures = [reason for ok, reason in checks if not ok]
    return not failures, failures

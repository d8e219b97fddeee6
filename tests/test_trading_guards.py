#!/usr/bin/env python3
"""Tests for trading_guards.py — pure function tests, no mocking needed."""

import pytest

from position_monitor import Position, TakeProfitStage
from trading_guards import (
    check_exit_params,
    check_kill_switch,
    check_max_open_positions,
    check_take_profit_ladder,
    check_trade_size,
    run_all_pre_trade_checks,
)


@pytest.fixture(autouse=True)
def _no_kill_switch(tmp_path, monkeypatch):
    """Point the kill switch at a file that does not exist."""
    import trading_guards
    monkeypatch.setattr(trading_guards, "KILL_SWITCH_FILE", tmp_path / "PAUSE_TRADING")


# ── Kill switch ──

def test_kill_switch_off():
    """No PAUSE_TRADING file → allowed."""
    ok, reason = check_kill_switch()
    assert ok
    assert reason == "OK"


def test_kill_switch_on(tmp_path):
    """PAUSE_TRADING file exists → blocked."""
    (tmp_path / "PAUSE_TRADING").touch()
    ok, reason = check_kill_switch()
    assert not ok
    assert "Kill switch" in reason


# ── Trade size ──

@pytest.mark.parametrize("size,allowed", [
    (0.001, False),
    (0.01, True),
    (0.5, True),
    (50, True),
    (50.1, False),
])
def test_trade_size(size, allowed):
    assert check_trade_size(size)[0] is allowed


# ── Exit parameters ──

def test_default_exit_params():
    assert check_exit_params(20, 10, 5) == (True, "OK")


def test_stop_loss_out_of_range():
    assert not check_exit_params(0, 10, 5)[0]
    assert not check_exit_params(120, 10, 5)[0]


def test_negative_stop_loss_accepted():
    """Stop-loss is read as a magnitude."""
    assert check_exit_params(-20, 10, 5)[0]


def test_trailing_distance_out_of_range():
    assert not check_exit_params(20, 10, 0)[0]
    assert not check_exit_params(20, 10, 100)[0]


def test_trailing_trigger_zero():
    assert not check_exit_params(20, 0, 5)[0]


# ── Take-profit ladder ──

def test_empty_ladder():
    assert check_take_profit_ladder([])[0]


def test_valid_ladder():
    stages = [TakeProfitStage(20, 50), TakeProfitStage(50, 100)]
    assert check_take_profit_ladder(stages) == (True, "OK")


def test_sell_pct_over_100():
    ok, reason = check_take_profit_ladder([TakeProfitStage(20, 150)])
    assert not ok
    assert "150" in reason


def test_duplicate_trigger():
    ok, reason = check_take_profit_ladder([TakeProfitStage(20, 50), TakeProfitStage(20, 50)])
    assert not ok
    assert "Duplicate" in reason


def test_too_many_stages():
    stages = [TakeProfitStage(10 * (i + 1), 10) for i in range(6)]
    assert not check_take_profit_ladder(stages)[0]


# ── Open positions ──

def test_open_position_limit():
    assert check_max_open_positions([object()] * 9)[0]
    ok, reason = check_max_open_positions([object()] * 10)
    assert not ok
    assert "10/10" in reason


# ── Combined ──

def test_all_checks_pass():
    position = Position(wallet="w", token_mint="m", trade_size_sol=0.5, take_profits=["20:50"])
    ok, failures = run_all_pre_trade_checks(position, [])
    assert ok
    assert failures == []


def test_all_failures_reported(tmp_path):
    (tmp_path / "PAUSE_TRADING").touch()
    position = Position(wallet="w", token_mint="m", trade_size_sol=100, trailing_distance_pct=0)
    ok, failures = run_all_pre_trade_checks(position, [])
    assert not ok
    assert len(failures) == 3

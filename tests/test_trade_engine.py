#!/usr/bin/env python3
"""Tests for trade_engine.py — entry guards, full position lifecycle, sell reconciliation."""

import asyncio

import pytest

from conftest import MINT, WALLET
from jupiter_client import NoRoute
from trade_engine import TradeEngine, TradeRejected


def _available(ledger):
    return ledger.get_account(WALLET)["availableBalance"]


@pytest.fixture
def engine(funded_ledger, gateway, signer):
    return TradeEngine(funded_ledger, gateway, signer,
                       poll_interval=0, settle_delay=0, balance_attempts=2, balance_delay=0)


async def _until_running(engine, position_id):
    while engine.registry.get(position_id) and engine.registry.get(position_id).status == "starting":
        await asyncio.sleep(0)


# =============================================================================
# REJECTIONS
# =============================================================================

class TestStartPositionRejections:
    """Rejected requests never move money."""

    def test_kill_switch(self, engine, funded_ledger, tmp_path, monkeypatch, events):
        import trading_guards
        kill_file = tmp_path / "PAUSE_TRADING"
        kill_file.touch()
        monkeypatch.setattr(trading_guards, "KILL_SWITCH_FILE", kill_file)

        with pytest.raises(TradeRejected, match="Kill switch"):
            asyncio.run(engine.start_position(WALLET, MINT, 0.5))
        assert _available(funded_ledger) == 10.0
        assert events[-1]["event"] == "kill_switch_active"

    def test_insufficient_balance(self, engine, funded_ledger):
        with pytest.raises(TradeRejected, match="Insufficient"):
            asyncio.run(engine.start_position(WALLET, MINT, 12.0))
        assert _available(funded_ledger) == 10.0
        assert len(engine.registry) == 0

    def test_unknown_account(self, ledger, gateway, signer):
        engine = TradeEngine(ledger, gateway, signer)
        with pytest.raises(TradeRejected):
            asyncio.run(engine.start_position(WALLET, MINT, 0.5))

    def test_bad_take_profit(self, engine, funded_ledger):
        with pytest.raises(TradeRejected, match="Invalid"):
            asyncio.run(engine.start_position(WALLET, MINT, 0.5, take_profits=["abc"]))
        assert _available(funded_ledger) == 10.0

    def test_trade_too_small(self, engine, funded_ledger):
        with pytest.raises(TradeRejected, match="below minimum"):
            asyncio.run(engine.start_position(WALLET, MINT, 0.001))
        assert _available(funded_ledger) == 10.0

    def test_duplicate_position(self, engine, funded_ledger):
        """Second position on the same mint is rejected; shutdown before entry refunds the first."""
        async def scenario():
            await engine.start_position(WALLET, MINT, 0.5)
            with pytest.raises(TradeRejected, match="already open"):
                await engine.start_position(WALLET, MINT, 0.5)
            assert _available(funded_ledger) == 9.5
            await engine.shutdown()

        asyncio.run(scenario())
        assert _available(funded_ledger) == 10.0
        assert len(engine.registry) == 0


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestPositionLifecycle:

    def test_buy_trail_and_exit(self, engine, funded_ledger, gateway, events):
        """0.5 SOL in, 0.2% buy fee, 1,000,000 raw received: entry 499 lamports/raw."""
        gateway.metrics = [499.0, 560.0, 600.0, 580.0, 560.0]

        async def scenario():
            position_id = await engine.start_position(WALLET, MINT, 0.5)
            await engine.wait(position_id)
            return position_id

        asyncio.run(scenario())

        trade = funded_ledger.list_trades(wallet=WALLET)[0]
        assert trade["entryMetric"] == 499.0
        assert trade["rawReceived"] == 1_000_000
        assert trade["status"] == "closed"
        assert trade["exitReason"] == "trailing_stop"

        fees = {f["type"]: f["amountSol"] for f in funded_ledger.list_fees()}
        assert fees == {"buy_fee": 0.001, "sell_fee": 0.001}
        # 10 - 0.5 debit + (0.1 proceeds - 1% exit fee)
        assert _available(funded_ledger) == 9.599

        names = [e["event"] for e in events]
        for expected in ("position_started", "position_running", "trailing_activated", "exit_trailing_stop"):
            assert expected in names
        assert engine.active_positions() == []

    def test_buy_failure_refunds(self, engine, funded_ledger, gateway, events):
        gateway.execute_errors = [NoRoute("could not find any route")]

        async def scenario():
            position_id = await engine.start_position(WALLET, MINT, 0.5)
            await engine.wait(position_id)

        asyncio.run(scenario())
        assert _available(funded_ledger) == 10.0
        assert funded_ledger.list_fees() == []
        assert "buy_failed" in [e["event"] for e in events]
        assert len(engine.registry) == 0

    def test_entry_without_visible_tokens_uses_quote(self, engine, funded_ledger, gateway):
        """No tokens arrive: entry comes from the quote and the exit finds nothing to sell."""
        gateway.deliver_tokens = False
        gateway.metrics = [300.0]

        async def scenario():
            position_id = await engine.start_position(WALLET, MINT, 0.5)
            await engine.wait(position_id)

        asyncio.run(scenario())
        trade = funded_ledger.list_trades()[0]
        assert trade["entryMetric"] == 499.0
        assert trade["rawReceived"] is None
        assert trade["status"] == "error"

    def test_manual_sell_by_id(self, engine, funded_ledger, gateway):
        gateway.metric = 499.0

        async def scenario():
            position_id = await engine.start_position(WALLET, MINT, 0.5)
            await _until_running(engine, position_id)
            assert engine.active_positions()[0]["status"] == "running"
            sold = await engine.sell_now(position_id)
            await engine.wait(position_id)
            return sold

        assert asyncio.run(scenario()) is True
        assert funded_ledger.list_trades()[0]["exitReason"] == "manual"
        assert asyncio.run(engine.sell_now(999)) is False

    def test_cancel_keeps_tokens(self, engine, funded_ledger, gateway):
        gateway.metric = 499.0

        async def scenario():
            position_id = await engine.start_position(WALLET, MINT, 0.5)
            await _until_running(engine, position_id)
            assert engine.cancel_position(position_id) is True
            await engine.wait(position_id)

        asyncio.run(scenario())
        trade = funded_ledger.list_trades()[0]
        assert trade["status"] == "canceled"
        assert trade["remainingRaw"] == 1_000_000
        assert gateway.sells() == []
        assert _available(funded_ledger) == 9.5


# =============================================================================
# RECONCILIATION
# =============================================================================

class TestReconcileTrade:

    def _unconfirmed_trade(self, ledger):
        return ledger.save_trade_record({
            "walletAddress": WALLET,
            "tokenMint": MINT,
            "status": "sell_unconfirmed",
            "sells": [{"label": "exit", "txid": "sell-sig", "rawSold": 1_000_000,
                       "proceedsLamports": 100_000_000, "status": "unconfirmed"}],
        })

    def test_confirmed_sell_is_credited(self, engine, funded_ledger, gateway, events):
        trade_id = self._unconfirmed_trade(funded_ledger)
        gateway.statuses["sell-sig"] = "confirmed"

        assert asyncio.run(engine.reconcile_trade(trade_id)) == "closed"
        assert _available(funded_ledger) == 10.099
        assert funded_ledger.get_trade(trade_id)["status"] == "closed"
        assert funded_ledger.get_trade(trade_id)["sells"][0]["credited"] is True
        assert [f["type"] for f in funded_ledger.list_fees()] == ["sell_fee"]
        assert "sell_reconciled" in [e["event"] for e in events]

        # Second pass finds nothing unconfirmed and credits nothing
        assert asyncio.run(engine.reconcile_trade(trade_id)) == "closed"
        assert _available(funded_ledger) == 10.099

    def test_failed_sell(self, engine, funded_ledger, gateway):
        trade_id = self._unconfirmed_trade(funded_ledger)
        gateway.statuses["sell-sig"] = "failed"

        assert asyncio.run(engine.reconcile_trade(trade_id)) == "sell_failed"
        assert funded_ledger.get_trade(trade_id)["status"] == "sell_failed"
        assert _available(funded_ledger) == 10.0

    def test_unknown_status_stays_pending(self, engine, funded_ledger):
        trade_id = self._unconfirmed_trade(funded_ledger)
        assert asyncio.run(engine.reconcile_trade(trade_id)) == "pending"
        assert funded_ledger.get_trade(trade_id)["status"] == "sell_unconfirmed"

    def test_overlapping_runs_credit_once(self, engine, funded_ledger, gateway):
        trade_id = self._unconfirmed_trade(funded_ledger)

        async def slow_status(tx_id):
            await asyncio.sleep(0)
            return "confirmed"

        gateway.signature_status = slow_status

        async def both():
            return await asyncio.gather(engine.reconcile_trade(trade_id), engine.reconcile_trade(trade_id))

        assert asyncio.run(both()) == ["closed", "closed"]
        assert _available(funded_ledger) == 10.099
        assert len(funded_ledger.list_fees(fee_type="sell_fee")) == 1

#!/usr/bin/env python3
"""
TRADE ENGINE — Caller-facing surface for positions.

Owns the PositionRegistry and one PositionMonitor per open position.
Callers (chat bot, HTTP API, trade_daemon.py) hold a TradeEngine and refer
to positions by id:

    engine = TradeEngine(ledger, gateway, signer)
    pid = await engine.start_position(wallet, mint, 0.5, take_profits=["20:50", "50:100"])
    await engine.sell_now(pid)
    engine.cancel_position(pid)

start_position() debits the trade size synchronously, so a rejected
request (kill switch, bad parameters, duplicate position, insufficient
balance) never leaves money moved.
"""

import asyncio

from config import (
    LAMPORTS_PER_SOL,
    DEFAULT_STOP_LOSS_PCT,
    DEFAULT_TRAILING_TRIGGER_PCT,
    DEFAULT_TRAILING_DISTANCE_PCT,
)
from custody_ledger import AccountNotFound, BalanceRaceLost, InsufficientBalance, RecordNotFound
from log_setup import get_logger
from position_monitor import Position, PositionMonitor, record_sale_fee, sale_fee_lamports
from position_registry import DuplicatePosition, PositionRegistry
from trade_events import TradeEvent, log_event
from trading_guards import run_all_pre_trade_checks

logger = get_logger(__name__)

__all__ = ["TradeEngine", "TradeRejected"]

SOURCE = "trade_engine"


class TradeRejected(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TradeEngine:
    def __init__(self, ledger, gateway, signer, registry: PositionRegistry | None = None, **monitor_options):
        self.ledger = ledger
        self.gateway = gateway
        self.signer = signer
        self.registry = registry or PositionRegistry()
        self.monitor_options = monitor_options
        self._monitors: dict[int, PositionMonitor] = {}

    async def start_position(
        self,
        wallet: str,
        token_mint: str,
        trade_size_sol: float,
        stop_loss_pct: float = DEFAULT_STOP_LOSS_PCT,
        trailing_trigger_pct: float = DEFAULT_TRAILING_TRIGGER_PCT,
        trailing_distance_pct: float = DEFAULT_TRAILING_DISTANCE_PCT,
        take_profits=(),
    ) -> int:
        """Debit the trade size, register the position and start its monitor. Returns the id."""
        try:
            position = Position(
                wallet=wallet,
                token_mint=token_mint,
                trade_size_sol=float(trade_size_sol),
                stop_loss_pct=float(stop_loss_pct),
                trailing_trigger_pct=float(trailing_trigger_pct),
                trailing_distance_pct=float(trailing_distance_pct),
                take_profits=take_profits,
            )
        except (TypeError, ValueError) as e:
            raise TradeRejected(f"Invalid trade parameters: {e}") from e

        allowed, failures = run_all_pre_trade_checks(position, self.registry.active(wallet))
        if not allowed:
            if any(f.startswith("Kill switch") for f in failures):
                log_event(TradeEvent.KILL_SWITCH_ACTIVE, SOURCE, {"wallet": wallet, "token": token_mint})
            raise TradeRejected("; ".join(failures))
        if self.registry.find(wallet, token_mint) is not None:
            raise TradeRejected(f"Position already open for {token_mint}")

        # No await between the debit and register(): the duplicate check above still holds
        try:
            self.ledger.debit_for_trade(wallet, position.trade_size_sol)
        except (InsufficientBalance, AccountNotFound, BalanceRaceLost) as e:
            raise TradeRejected(str(e)) from e
        try:
            position_id = self.registry.register(position)
        except DuplicatePosition as e:
            self.ledger.refund_trade(wallet, position.trade_size_sol)
            raise TradeRejected(str(e)) from e

        monitor = PositionMonitor(position, self.registry, self.ledger, self.gateway, self.signer,
                                  **self.monitor_options)
        self._monitors[position_id] = monitor
        task = monitor.start()
        task.add_done_callback(lambda _t, pid=position_id: self._monitors.pop(pid, None))

        logger.info("T%d started: %s %.4f SOL on %s (SL %s%%, trail %s/%s%%, %d TP stages)",
                    position_id, wallet, position.trade_size_sol, token_mint, stop_loss_pct,
                    trailing_trigger_pct, trailing_distance_pct, len(position.take_profits))
        log_event(TradeEvent.POSITION_STARTED, SOURCE, {
            "position_id": position_id, "wallet": wallet, "token": token_mint,
            "amount_sol": position.trade_size_sol, "stop_loss_pct": stop_loss_pct,
            "trailing_trigger_pct": trailing_trigger_pct, "trailing_distance_pct": trailing_distance_pct,
            "take_profits": [(s.trigger_pct, s.sell_pct) for s in position.take_profits],
        })
        return position_id

    def monitor(self, position_id: int) -> PositionMonitor | None:
        return self._monitors.get(position_id)

    def cancel_position(self, position_id: int) -> bool:
        monitor = self._monitors.get(position_id)
        if monitor is None:
            return False
        return monitor.cancel()

    async def sell_now(self, position_id: int) -> bool:
        monitor = self._monitors.get(position_id)
        if monitor is None:
            return False
        return await monitor.sell_now()

    def active_positions(self, wallet: str | None = None) -> list[dict]:
        return [p.snapshot() for p in self.registry.active(wallet)]

    async def wait(self, position_id: int):
        """Wait for a position's monitor task to end."""
        monitor = self._monitors.get(position_id)
        if monitor and monitor.task:
            await asyncio.gather(monitor.task, return_exceptions=True)

    async def shutdown(self):
        """Stop every monitor task. Positions keep their status; nothing is sold."""
        tasks = [m.task for m in self._monitors.values() if m.task and not m.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Trade engine stopped (%d monitors)", len(tasks))

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile_trade(self, trade_id: str) -> str:
        """Resolve sells whose confirmation timed out.

        Confirmed sells are credited (net of the exit fee); failed ones are
        marked failed. Each sale is flipped and credited in one ledger
        transaction, so overlapping runs credit it once. Safe while the
        position is still open. Returns "pending", "sell_failed", "open"
        (position still running) or "closed".
        """
        record = self.ledger.get_trade(trade_id)
        if record is None:
            raise RecordNotFound(f"Trade {trade_id} not found")
        wallet = record["walletAddress"]
        for sale in record.get("sells") or []:
            if sale.get("status") != "unconfirmed":
                continue
            status = await self.gateway.signature_status(sale["txid"])
            if status not in ("confirmed", "failed"):
                continue
            proceeds = int(sale["proceedsLamports"])
            fee = sale_fee_lamports(proceeds)
            applied, _ = self.ledger.resolve_trade_sale(
                trade_id, sale["txid"], status,
                credit_sol=(proceeds - fee) / LAMPORTS_PER_SOL, fee_lamports=fee,
            )
            if not applied:
                logger.info("Trade %s sell %s already reconciled", trade_id, sale["txid"])
                continue
            if status == "confirmed":
                record_sale_fee(self.ledger, wallet, trade_id, sale["txid"], fee)
            logger.info("Trade %s sell %s reconciled: %s", trade_id, sale["txid"], status)
            log_event(TradeEvent.SELL_RECONCILED, SOURCE, {
                "trade_id": trade_id, "txid": sale["txid"], "status": status,
            })

        record = self.ledger.get_trade(trade_id)
        sells = record.get("sells") or []
        if any(s.get("status") == "unconfirmed" for s in sells):
            return "pending"
        if any(s.get("status") == "failed" for s in sells):
            return "sell_failed"
        return "open" if record.get("status") == "open" else "closed"

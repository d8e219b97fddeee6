#!/usr/bin/env python3
"""
POSITION MONITOR — Stop-loss, trailing-stop and take-profit engine.

One PositionMonitor owns one position from entry to exit and runs as its
own asyncio task, so a stalled quote or swap never blocks other positions.

PRICE METRIC:
  metric = lamports per raw token unit. Each tick quotes 1 SOL -> token and
  uses 1 SOL / outAmount. The entry metric is net lamports spent / raw
  tokens received.

EXIT RULES (evaluated in this order every tick):
  1. STOP-LOSS:    change <= -stop_loss_pct                  -> full exit
     BREAK-EVEN:   once the first TP has filled, metric <= that TP's metric -> full exit
  2. TRAILING:     arms at change >= trailing_trigger_pct, tracks the peak,
                   exits on a drop >= trailing_distance_pct from the peak
  3. TAKE-PROFIT:  each stage sells its fraction of the CURRENT remaining
                   balance once metric >= entry * (1 + trigger/100)

Exits and manual sells race through PositionRegistry.transition(); only the
caller that moves running -> closing gets to sell.
"""

import asyncio
import math
from dataclasses import asdict, dataclass, field
from typing import Optional

from config import (
    SOL_MINT,
    LAMPORTS_PER_SOL,
    PRICE_REFERENCE_LAMPORTS,
    BUY_FEE_PCT,
    SELL_FEE_PCT,
    POLL_INTERVAL_SEC,
    ENTRY_SETTLE_DELAY_SEC,
    BALANCE_READ_ATTEMPTS,
    BALANCE_READ_DELAY_SEC,
    DEFAULT_STOP_LOSS_PCT,
    DEFAULT_TRAILING_TRIGGER_PCT,
    DEFAULT_TRAILING_DISTANCE_PCT,
)
from jupiter_client import ConfirmTimeout, MintNotTradable, QuoteUnavailable, RouteTooLarge
from ledger_store import utc_now
from log_setup import get_logger, position_logger
from position_registry import TERMINAL_STATES
from trade_events import TradeEvent, log_event

logger = get_logger(__name__)

__all__ = [
    "TakeProfitStage", "Position", "TickDecision", "PositionMonitor",
    "evaluate_tick", "parse_take_profits", "collect_sale_proceeds", "record_sale_fee",
    "sale_fee_lamports", "NothingToSell",
]

SOURCE = "position_monitor"

EXIT_EVENTS = {
    "stop_loss": TradeEvent.EXIT_STOP_LOSS,
    "break_even": TradeEvent.EXIT_BREAK_EVEN,
    "trailing_stop": TradeEvent.EXIT_TRAILING_STOP,
    "manual": TradeEvent.EXIT_MANUAL,
    "take_profit": TradeEvent.EXIT_TAKE_PROFIT,
}


class NothingToSell(Exception):
    """Full exit found no tokens to sell."""


@dataclass
class TakeProfitStage:
    trigger_pct: float
    sell_pct: float
    executed: bool = False

    def target_metric(self, entry_metric: float) -> float:
        return entry_metric * (1 + self.trigger_pct / 100)


def parse_take_profits(ladder) -> list[TakeProfitStage]:
    """Build a TP ladder sorted by trigger.

    Accepts TakeProfitStage objects, (trigger_pct, sell_pct) pairs, or
    "trigger:sell" strings such as "20:50".
    """
    stages = []
    for item in ladder or ():
        if isinstance(item, TakeProfitStage):
            stages.append(item)
        elif isinstance(item, str):
            trigger, _, sell = item.partition(":")
            if not sell:
                raise ValueError(f"Take-profit stage must look like 'trigger:sell', got {item!r}")
            stages.append(TakeProfitStage(float(trigger), float(sell)))
        else:
            trigger, sell = item
            stages.append(TakeProfitStage(float(trigger), float(sell)))
    return sorted(stages, key=lambda s: s.trigger_pct)


@dataclass
class Position:
    wallet: str
    token_mint: str
    trade_size_sol: float
    stop_loss_pct: float = DEFAULT_STOP_LOSS_PCT
    trailing_trigger_pct: float = DEFAULT_TRAILING_TRIGGER_PCT
    trailing_distance_pct: float = DEFAULT_TRAILING_DISTANCE_PCT
    take_profits: list = field(default_factory=list)

    # ── Set by the registry / monitor ──
    id: Optional[int] = None
    status: str = "starting"
    entry_metric: Optional[float] = None
    remaining_raw: Optional[int] = None
    decimals: Optional[int] = None
    trailing_active: bool = False
    peak_metric: Optional[float] = None
    break_even_metric: Optional[float] = None
    buy_tx_id: Optional[str] = None
    net_lamports: int = 0
    trade_id: Optional[str] = None
    opened_at: str = field(default_factory=utc_now)

    # ── Realized sells (TP fills + final exit) ──
    raw_sold: int = 0
    proceeds_lamports: int = 0
    sells: list = field(default_factory=list)

    def __post_init__(self):
        self.take_profits = parse_take_profits(self.take_profits)

    @property
    def pnl_sol(self) -> float:
        if not self.entry_metric:
            return 0.0
        return (self.proceeds_lamports - self.entry_metric * self.raw_sold) / LAMPORTS_PER_SOL

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "wallet": self.wallet,
            "token_mint": self.token_mint,
            "trade_size_sol": self.trade_size_sol,
            "status": self.status,
            "entry_metric": self.entry_metric,
            "remaining_raw": self.remaining_raw,
            "trailing_active": self.trailing_active,
            "peak_metric": self.peak_metric,
            "break_even_metric": self.break_even_metric,
            "take_profits": [asdict(s) for s in self.take_profits],
            "buy_tx_id": self.buy_tx_id,
            "opened_at": self.opened_at,
        }


@dataclass
class TickDecision:
    metric: float
    change_pct: float
    exit_reason: Optional[str] = None
    trailing_activated: bool = False
    new_peak: bool = False
    take_profit_stages: list = field(default_factory=list)


def evaluate_tick(position: Position, metric: float) -> TickDecision:
    """Apply one price tick to the position's exit rules.

    Updates the trailing state (activation, peak) in place. Returns what the
    caller must do: a full exit reason, or the TP stage indexes that
    triggered. No I/O.
    """
    entry = position.entry_metric
    change_pct = (metric - entry) / entry * 100
    decision = TickDecision(metric=metric, change_pct=change_pct)

    if position.break_even_metric is None:
        if change_pct <= -abs(position.stop_loss_pct):
            decision.exit_reason = "stop_loss"
            return decision
    elif metric <= position.break_even_metric:
        decision.exit_reason = "break_even"
        return decision

    if not position.trailing_active and change_pct >= abs(position.trailing_trigger_pct):
        position.trailing_active = True
        position.peak_metric = metric
        decision.trailing_activated = True

    if position.trailing_active:
        if metric > position.peak_metric:
            position.peak_metric = metric
            decision.new_peak = True
        drop_pct = (position.peak_metric - metric) / position.peak_metric * 100
        if drop_pct >= abs(position.trailing_distance_pct):
            decision.exit_reason = "trailing_stop"
            return decision

    decision.take_profit_stages = [
        i for i, stage in enumerate(position.take_profits)
        if not stage.executed and metric >= stage.target_metric(entry)
    ]
    return decision


def sale_fee_lamports(proceeds_lamports: int) -> int:
    return math.floor(proceeds_lamports * SELL_FEE_PCT / 100)


def record_sale_fee(ledger, wallet: str, trade_id: Optional[str], txid: str, fee_lamports: int, log=logger):
    """Append the sell_fee entry for a credited sale. Failures are logged only."""
    if fee_lamports <= 0:
        return
    try:
        ledger.record_fee({
            "type": "sell_fee",
            "amountSol": fee_lamports / LAMPORTS_PER_SOL,
            "walletAddress": wallet,
            "tradeId": trade_id,
            "txSignature": txid,
        })
    except Exception as e:
        log.error("Sell fee entry failed for %s: %s", txid, e)


def collect_sale_proceeds(ledger, wallet: str, trade_id: Optional[str], sale: dict, log=logger) -> bool:
    """Credit a confirmed sale to the wallet, net of the exit fee, then record the fee.

    The credit and the fee entry are separate steps; a failed fee entry
    never undoes the credit. Returns True if the wallet was credited.
    """
    proceeds = int(sale["proceedsLamports"])
    fee = sale_fee_lamports(proceeds)
    sale["feeLamports"] = fee
    try:
        ledger.credit_trade_proceeds(wallet, (proceeds - fee) / LAMPORTS_PER_SOL)
    except Exception as e:
        sale["credited"] = False
        log.critical("Proceeds credit failed for %s (%d lamports): %s", sale["txid"], proceeds - fee, e)
        log_event(TradeEvent.ERROR, SOURCE, {
            "what": "proceeds_credit_failed", "wallet": wallet, "trade_id": trade_id,
            "txid": sale["txid"], "lamports": proceeds - fee, "error": str(e),
        })
        return False
    sale["credited"] = True
    record_sale_fee(ledger, wallet, trade_id, sale["txid"], fee, log)
    return True


class PositionMonitor:
    """Lifecycle of one position: buy, poll, take profits, exit."""

    def __init__(
        self,
        position: Position,
        registry,
        ledger,
        gateway,
        signer,
        poll_interval: float = POLL_INTERVAL_SEC,
        settle_delay: float = ENTRY_SETTLE_DELAY_SEC,
        balance_attempts: int = BALANCE_READ_ATTEMPTS,
        balance_delay: float = BALANCE_READ_DELAY_SEC,
    ):
        self.position = position
        self.registry = registry
        self.ledger = ledger
        self.gateway = gateway
        self.signer = signer
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.balance_attempts = balance_attempts
        self.balance_delay = balance_delay
        self.log = position_logger(logger, position.id)

        self._task: Optional[asyncio.Task] = None
        self._swap_lock = asyncio.Lock()
        self._swap_in_flight = False
        self._buy_submitted = False
        self._refunded = False
        self._canceled_recorded = False
        self._last_quote = None

    # =========================================================================
    # Task control
    # =========================================================================

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name=f"position-T{self.position.id}")
        self._task.add_done_callback(self._on_task_done)
        return self._task

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def run(self):
        try:
            if await self._enter():
                await self._poll_loop()
        except Exception as e:
            self.log.error("Monitor crashed: %s", e, exc_info=True)
            log_event(TradeEvent.POSITION_ERROR, SOURCE, {"position_id": self.position.id, "error": str(e)})
            self.registry.finish(self.position.id, "error")

    def _stop_timer(self):
        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _on_task_done(self, task: asyncio.Task):
        # Also runs for a task cancelled before its first step, when run() never started
        if not task.cancelled():
            return
        pos = self.position
        if not self._buy_submitted:
            self._refund("canceled before buy")
            self.registry.finish(pos.id, "canceled", expected=("starting",))
        elif pos.status == "canceled":
            self._record_canceled()

    def cancel(self) -> bool:
        """Stop monitoring without selling. False if already closing or closed."""
        pos = self.position
        if not self.registry.finish(pos.id, "canceled", expected=("starting", "running")):
            self.log.info("Cancel ignored: status is %s", pos.status)
            return False
        self.log.warning("Canceled by request (no sell)")
        log_event(TradeEvent.POSITION_CANCELED, SOURCE, {
            "position_id": pos.id, "wallet": pos.wallet, "token": pos.token_mint,
            "remaining_raw": pos.remaining_raw, "buy_submitted": self._buy_submitted,
        })
        # An in-flight swap is left to finish; the loop exits once it sees "canceled"
        if not self._swap_in_flight:
            self._stop_timer()
        return True

    async def sell_now(self) -> bool:
        """Immediate full exit. False if another exit or a cancel got there first."""
        return await self.full_exit("manual")

    # =========================================================================
    # Entry
    # =========================================================================

    async def _enter(self) -> bool:
        pos = self.position
        trade_lamports = round(pos.trade_size_sol * LAMPORTS_PER_SOL)
        fee_lamports = math.floor(trade_lamports * BUY_FEE_PCT / 100)
        pos.net_lamports = trade_lamports - fee_lamports

        before = await self._balance_or_zero()
        self.log.info("Buying %s with %d lamports (fee %d)", pos.token_mint, pos.net_lamports, fee_lamports)

        confirmed = True
        try:
            quote = await self.gateway.quote(SOL_MINT, pos.token_mint, pos.net_lamports)
            if quote is None:
                raise QuoteUnavailable(f"No buy quote for {pos.token_mint}")
            result = await self._execute(quote, is_buy=True)
            pos.buy_tx_id = result.tx_id
        except ConfirmTimeout as e:
            confirmed = False
            pos.buy_tx_id = e.tx_id
            self.log.warning("Buy %s not confirmed in time, checking balance anyway", e.tx_id)
        except Exception as e:
            self.log.error("Buy failed: %s", e)
            log_event(TradeEvent.BUY_FAILED, SOURCE, {
                "position_id": pos.id, "wallet": pos.wallet, "token": pos.token_mint,
                "error": str(e), "error_type": type(e).__name__,
            })
            self._refund(f"buy failed: {e}")
            self.registry.finish(pos.id, "error")
            return False

        self._persist({
            "positionId": pos.id,
            "walletAddress": pos.wallet,
            "tokenMint": pos.token_mint,
            "amountSol": pos.trade_size_sol,
            "buyTxid": pos.buy_tx_id,
            "buyConfirmed": confirmed,
            "stopLossPercent": pos.stop_loss_pct,
            "trailingPercent": pos.trailing_trigger_pct,
            "distancePercent": pos.trailing_distance_pct,
            "takeProfits": [asdict(s) for s in pos.take_profits],
            "status": "open",
            "openedAt": pos.opened_at,
        })
        if confirmed:
            self._record_buy_fee(fee_lamports)

        received, decimals = await self._await_tokens(before)
        if received:
            pos.remaining_raw = received
            pos.decimals = decimals
            pos.entry_metric = pos.net_lamports / received
            if not confirmed:
                self._record_buy_fee(fee_lamports)
        else:
            quoted_out = self._last_quote.out_amount if self._last_quote else 0
            pos.entry_metric = pos.net_lamports / quoted_out if quoted_out else None
            self.log.warning("No tokens visible after %d reads; monitoring without a balance",
                             self.balance_attempts)
        self._persist({"entryMetric": pos.entry_metric, "rawReceived": received})

        if pos.status == "canceled":
            self._record_canceled()
            return False
        if pos.entry_metric is None:
            self.log.error("No entry metric (no tokens and no quote); stopping")
            self.registry.finish(pos.id, "error", expected=("starting",))
            log_event(TradeEvent.POSITION_ERROR, SOURCE, {"position_id": pos.id, "error": "no entry metric"})
            return False
        if not self.registry.transition(pos.id, ("starting",), "running"):
            return False

        self.log.info("Running: entry metric %.6f lamports/raw, %s raw held", pos.entry_metric, pos.remaining_raw)
        log_event(TradeEvent.POSITION_RUNNING, SOURCE, {
            "position_id": pos.id, "wallet": pos.wallet, "token": pos.token_mint,
            "entry_metric": pos.entry_metric, "raw_received": received, "buy_txid": pos.buy_tx_id,
        })
        return True

    async def _await_tokens(self, before: int) -> tuple[Optional[int], Optional[int]]:
        """Bounded wait for the bought tokens to show up. Returns (raw received, decimals)."""
        pos = self.position
        await asyncio.sleep(self.settle_delay)
        for attempt in range(1, self.balance_attempts + 1):
            try:
                balance = await self.gateway.token_balance(self.signer.public_key, pos.token_mint)
            except MintNotTradable as e:
                self.log.error("Mint not tradable, giving up on balance reads: %s", e)
                break
            except Exception as e:
                self.log.warning("Balance read %d/%d failed: %s", attempt, self.balance_attempts, e)
            else:
                if balance and balance.raw > before:
                    return balance.raw - before, balance.decimals
                self.log.debug("Balance read %d/%d: no tokens yet", attempt, self.balance_attempts)
            if attempt < self.balance_attempts:
                await asyncio.sleep(self.balance_delay)
        return None, None

    async def _balance_or_zero(self) -> int:
        try:
            balance = await self.gateway.token_balance(self.signer.public_key, self.position.token_mint)
        except Exception as e:
            self.log.debug("Pre-buy balance read failed: %s", e)
            return 0
        return balance.raw if balance else 0

    def _record_buy_fee(self, fee_lamports: int):
        if fee_lamports <= 0:
            return
        pos = self.position
        try:
            self.ledger.record_fee({
                "type": "buy_fee",
                "amountSol": fee_lamports / LAMPORTS_PER_SOL,
                "walletAddress": pos.wallet,
                "tradeId": pos.trade_id,
                "txSignature": pos.buy_tx_id,
            })
        except Exception as e:
            self.log.error("Buy fee entry failed: %s", e)

    def _refund(self, why: str):
        if self._refunded:
            return
        self._refunded = True
        pos = self.position
        try:
            self.ledger.refund_trade(pos.wallet, pos.trade_size_sol)
        except Exception as e:
            self.log.critical("Refund of %.9f SOL to %s failed (%s): %s", pos.trade_size_sol, pos.wallet, why, e)
            log_event(TradeEvent.ERROR, SOURCE, {
                "what": "refund_failed", "position_id": pos.id, "wallet": pos.wallet,
                "amount_sol": pos.trade_size_sol, "error": str(e),
            })
            return
        self.log.info("Refunded %.9f SOL (%s)", pos.trade_size_sol, why)

    # =========================================================================
    # Polling
    # =========================================================================

    async def _poll_loop(self):
        self.log.info("Monitoring every %ss", self.poll_interval)
        while self.position.status in ("running", "closing"):
            await asyncio.sleep(self.poll_interval)
            if self.position.status != "running":
                continue
            try:
                await self.tick()
            except Exception as e:
                self.log.error("Polling error: %s", e, exc_info=True)
        if self.position.status == "canceled":
            self._record_canceled()

    async def _fetch_metric(self) -> Optional[float]:
        quote = await self.gateway.quote(SOL_MINT, self.position.token_mint, PRICE_REFERENCE_LAMPORTS)
        if quote is None or quote.out_amount <= 0:
            return None
        return PRICE_REFERENCE_LAMPORTS / quote.out_amount

    async def tick(self):
        metric = await self._fetch_metric()
        if metric is None:
            self.log.info("Price tick unavailable (no quote)")
            return
        await self.on_metric(metric)

    async def on_metric(self, metric: float):
        pos = self.position
        if pos.status != "running":
            return
        decision = evaluate_tick(pos, metric)
        self.log.debug("metric=%.9f change=%.2f%%", metric, decision.change_pct)

        if decision.trailing_activated:
            self.log.info("Trailing activated at %.9f (+%.2f%%)", metric, decision.change_pct)
            log_event(TradeEvent.TRAILING_ACTIVATED, SOURCE, {
                "position_id": pos.id, "metric": metric, "change_pct": round(decision.change_pct, 4),
            })
        elif decision.new_peak:
            self.log.info("New peak %.9f", metric)

        if decision.exit_reason:
            await self.full_exit(decision.exit_reason, decision)
            return

        for index in decision.take_profit_stages:
            if pos.status != "running":
                return
            await self._take_profit(index, metric)

        if pos.remaining_raw == 0 and pos.status == "running":
            if self.registry.transition(pos.id, ("running",), "closing"):
                self._close("finished", "take_profit", exit_sale=pos.sells[-1] if pos.sells else None)

    # =========================================================================
    # Selling
    # =========================================================================

    async def _execute(self, quote, is_buy: bool = False):
        """Execute a quote, retrying once on a direct route if it is too large."""
        self._last_quote = quote
        self._swap_in_flight = True
        try:
            if is_buy:
                self._buy_submitted = True
            try:
                return await self.gateway.execute(quote, self.signer)
            except RouteTooLarge as e:
                if self.position.status in TERMINAL_STATES:
                    self.log.warning("Route too large (%s); position is %s, not retrying", e, self.position.status)
                    raise
                self.log.warning("Route too large (%s), retrying with direct routes", e)
                direct = await self.gateway.quote(
                    quote.input_mint, quote.output_mint, quote.in_amount, only_direct_routes=True,
                )
                if direct is None:
                    raise
                self._last_quote = direct
                return await self.gateway.execute(direct, self.signer)
        finally:
            self._swap_in_flight = False

    async def _sell(self, raw_amount: int, label: str) -> dict:
        """Sell raw_amount tokens for SOL. Returns the sale record.

        A confirmation timeout counts as submitted: the sale is recorded
        as unconfirmed and its proceeds wait for reconciliation.
        """
        pos = self.position
        quote = await self.gateway.quote(
            pos.token_mint, SOL_MINT, raw_amount, restrict_intermediate_tokens=True,
        )
        if quote is None:
            raise QuoteUnavailable(f"No sell quote for {raw_amount} raw")
        sale = {"label": label, "rawSold": raw_amount, "at": utc_now()}
        try:
            result = await self._execute(quote)
            sale.update(txid=result.tx_id, proceedsLamports=result.out_amount, status="confirmed")
        except ConfirmTimeout as e:
            proceeds = self._last_quote.out_amount if self._last_quote else quote.out_amount
            sale.update(txid=e.tx_id, proceedsLamports=proceeds, status="unconfirmed")
            self.log.warning("Sell %s not confirmed in time; left for reconciliation", e.tx_id)
            log_event(TradeEvent.SELL_UNCONFIRMED, SOURCE, {
                "position_id": pos.id, "trade_id": pos.trade_id, "txid": e.tx_id, "label": label,
            })

        pos.raw_sold += raw_amount
        pos.proceeds_lamports += sale["proceedsLamports"]
        if pos.remaining_raw is not None:
            pos.remaining_raw = max(pos.remaining_raw - raw_amount, 0)
        pos.sells.append(sale)
        if sale["status"] == "confirmed":
            collect_sale_proceeds(self.ledger, pos.wallet, pos.trade_id, sale, self.log)
        return sale

    async def _take_profit(self, index: int, metric: float):
        pos = self.position
        stage = pos.take_profits[index]
        async with self._swap_lock:
            if pos.status != "running" or stage.executed:
                return
            held = pos.remaining_raw
            if held is None:
                try:
                    balance = await self.gateway.token_balance(self.signer.public_key, pos.token_mint)
                    held = balance.raw if balance else 0
                except Exception as e:
                    self.log.warning("TP%d balance read failed: %s", index + 1, e)
                    return
            raw_to_sell = math.floor(held * min(stage.sell_pct / 100, 1))
            if raw_to_sell <= 0:
                self.log.info("TP%d: nothing to sell (computed 0), marking executed", index + 1)
                stage.executed = True
                return

            self.log.info("TP%d reached (+%s%%): selling %d raw of %d", index + 1, stage.trigger_pct, raw_to_sell, held)
            if pos.remaining_raw is None:
                pos.remaining_raw = held
            try:
                sale = await self._sell(raw_to_sell, f"tp{index + 1}")
            except Exception as e:
                self.log.error("TP%d sell failed: %s", index + 1, e)
                return

        stage.executed = True
        first_fill = pos.break_even_metric is None
        if first_fill:
            pos.break_even_metric = stage.target_metric(pos.entry_metric)
            self.log.info("Break-even armed at %.9f", pos.break_even_metric)
        log_event(TradeEvent.TP_EXECUTED, SOURCE, {
            "position_id": pos.id, "stage": index + 1, "trigger_pct": stage.trigger_pct,
            "sell_pct": stage.sell_pct, "raw_sold": raw_to_sell, "txid": sale["txid"],
            "metric": metric, "remaining_raw": pos.remaining_raw,
            "break_even_metric": pos.break_even_metric,
        })
        self._persist({"takeProfits": [asdict(s) for s in pos.take_profits], "sells": pos.sells})

    async def full_exit(self, reason: str, decision: Optional[TickDecision] = None) -> bool:
        """Sell everything and close. Only the caller that wins running -> closing proceeds."""
        pos = self.position
        if not self.registry.transition(pos.id, ("running",), "closing"):
            self.log.info("Exit (%s) skipped: status is %s", reason, pos.status)
            return False
        if decision is not None:
            self.log.warning("%s triggered at %.9f (%.2f%%)", reason, decision.metric, decision.change_pct)
        else:
            self.log.warning("%s exit requested", reason)

        try:
            async with self._swap_lock:
                balance = await self.gateway.token_balance(self.signer.public_key, pos.token_mint)
                live = balance.raw if balance else 0
                raw = live if pos.remaining_raw is None else min(live, pos.remaining_raw)
                if raw <= 0:
                    raise NothingToSell(f"No tokens to sell (live={live}, tracked={pos.remaining_raw})")
                sale = await self._sell(raw, "exit")
        except NothingToSell as e:
            self.log.error("%s", e)
            self._close("error", reason, error=str(e))
            return False
        except Exception as e:
            self.log.error("Exit sell failed (%s): %s", reason, e)
            log_event(TradeEvent.EXIT_FAILED, SOURCE, {
                "position_id": pos.id, "reason": reason, "error": str(e), "error_type": type(e).__name__,
            })
            self.registry.transition(pos.id, ("closing",), "running")
            return False

        self._close("finished", reason, exit_sale=sale)
        return True

    # =========================================================================
    # Closing & persistence
    # =========================================================================

    def _close(self, status: str, reason: str, exit_sale: Optional[dict] = None, error: Optional[str] = None):
        pos = self.position
        self.registry.finish(pos.id, status, expected=("closing",))
        self._stop_timer()

        unconfirmed = any(s["status"] == "unconfirmed" for s in pos.sells)
        exit_metric = None
        if exit_sale and exit_sale["rawSold"]:
            exit_metric = exit_sale["proceedsLamports"] / exit_sale["rawSold"]
        record = {
            "status": "error" if status == "error" else ("sell_unconfirmed" if unconfirmed else "closed"),
            "exitReason": reason,
            "exitMetric": exit_metric,
            "rawSold": pos.raw_sold,
            "proceedsLamports": pos.proceeds_lamports,
            "pnlSol": round(pos.pnl_sol, 9),
            "sellTxid": exit_sale["txid"] if exit_sale else None,
            "remainingRaw": pos.remaining_raw,
            "takeProfits": [asdict(s) for s in pos.take_profits],
            "sells": pos.sells,
            "closedAt": utc_now(),
        }
        if error:
            record["error"] = error
        self._persist(record)

        payload = {
            "position_id": pos.id, "trade_id": pos.trade_id, "wallet": pos.wallet,
            "token": pos.token_mint, "reason": reason, "entry_metric": pos.entry_metric,
            "exit_metric": exit_metric, "raw_sold": pos.raw_sold,
            "pnl_sol": record["pnlSol"], "sell_txid": record["sellTxid"],
        }
        if status == "error":
            log_event(TradeEvent.POSITION_ERROR, SOURCE, {**payload, "error": error})
        else:
            log_event(EXIT_EVENTS.get(reason, TradeEvent.EXIT_MANUAL), SOURCE, payload)
            self.log.info("Closed (%s): sold %d raw, PnL %.6f SOL", reason, pos.raw_sold, pos.pnl_sol)

    def _record_canceled(self):
        if self._canceled_recorded:
            return
        self._canceled_recorded = True
        pos = self.position
        self._persist({
            "positionId": pos.id,
            "walletAddress": pos.wallet,
            "tokenMint": pos.token_mint,
            "amountSol": pos.trade_size_sol,
            "buyTxid": pos.buy_tx_id,
            "status": "canceled",
            "remainingRaw": pos.remaining_raw,
            "sells": pos.sells,
            "closedAt": utc_now(),
        })

    def _persist(self, fields: dict):
        """Write trade history. Failures are logged, never raised."""
        pos = self.position
        try:
            if pos.trade_id:
                self.ledger.update_trade_record(pos.trade_id, **fields)
            else:
                pos.trade_id = self.ledger.save_trade_record({
                    "positionId": pos.id,
                    "walletAddress": pos.wallet,
                    "tokenMint": pos.token_mint,
                    **fields,
                })
        except Exception as e:
            self.log.error("Trade record write failed: %s", e)

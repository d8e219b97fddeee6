#!/usr/bin/env python3
"""
TRADE DAEMON — Command-line entry point for positions and custody.

Usage:
    python3 trade_daemon.py trade <wallet> <mint> 0.5 --sl 20 --trail 10 --distance 5 --tp 20:50 --tp 50:100
    python3 trade_daemon.py open-account <wallet>
    python3 trade_daemon.py credit-deposits --limit 20        # cron: */1 * * * *
    python3 trade_daemon.py withdraw <wallet> 0.3
    python3 trade_daemon.py reconcile                         # pending withdrawals + unconfirmed sells
    python3 trade_daemon.py fees [--sweep]
    python3 trade_daemon.py status [<wallet>]

Emergency stop: touch PAUSE_TRADING (blocks new positions).
"""

import argparse
import asyncio
import json
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from config import (
    DEFAULT_STOP_LOSS_PCT,
    DEFAULT_TRAILING_TRIGGER_PCT,
    DEFAULT_TRAILING_DISTANCE_PCT,
    DEPOSIT_BATCH_LIMIT,
)
from custody_ledger import CustodialLedger, LedgerError
from deposits import DepositProcessor
from jupiter_client import GatewayError, JupiterClient
from log_setup import get_logger
from preflight import preflight_check
from signer import RemoteSigner
from trade_engine import TradeEngine, TradeRejected
from withdrawals import FeeSweeper, WithdrawalProcessor

logger = get_logger(__name__)


async def _with_clients(work, *signer_keys: str):
    """Start the gateway and the named signers, run work(gateway, *signers), stop them."""
    gateway = JupiterClient(rpc_url=os.getenv("RPC_URL", ""))
    signers = [RemoteSigner(key) for key in signer_keys]
    await gateway.start()
    try:
        for s in signers:
            await s.start()
        return await work(gateway, *signers)
    finally:
        for s in signers:
            await s.stop()
        await gateway.stop()


async def cmd_trade(args, ledger: CustodialLedger) -> int:
    async def work(gateway, signer):
        engine = TradeEngine(ledger, gateway, signer)
        try:
            position_id = await engine.start_position(
                args.wallet, args.mint, args.size,
                stop_loss_pct=args.sl,
                trailing_trigger_pct=args.trail,
                trailing_distance_pct=args.distance,
                take_profits=args.tp or (),
            )
        except TradeRejected as e:
            print(f"  ✗ Trade rejected: {e.reason}")
            return 1
        print(f"  ✓ Position T{position_id} started; monitoring until exit (Ctrl-C stops monitoring, no sell)")
        try:
            await engine.wait(position_id)
        finally:
            await engine.shutdown()
        return 0

    return await _with_clients(work, "trading")


async def cmd_withdraw(args, ledger: CustodialLedger) -> int:
    async def work(gateway, signer):
        processor = WithdrawalProcessor(ledger, gateway, signer)
        try:
            result = await processor.request_withdrawal(args.wallet, args.amount)
        except (LedgerError, GatewayError) as e:
            print(f"  ✗ Withdrawal failed: {type(e).__name__}: {e}")
            return 1
        print(f"  ✓ Withdrawal {result['withdrawal_id']} {result['status']}: "
              f"net {result['net']} SOL (fee {result['fee']}), tx {result['tx_id']}")
        return 0

    return await _with_clients(work, "payout")


async def cmd_reconcile(args, ledger: CustodialLedger) -> int:
    async def work(gateway, payout_signer, trading_signer):
        withdrawals = await WithdrawalProcessor(ledger, gateway, payout_signer).reconcile_pending()
        engine = TradeEngine(ledger, gateway, trading_signer)
        trades = {}
        for record in ledger.list_trades(status="sell_unconfirmed"):
            trades[record["id"]] = await engine.reconcile_trade(record["id"])
        print(json.dumps({"withdrawals": withdrawals, "trades": trades}, indent=2))
        return 0

    return await _with_clients(work, "payout", "trading")


async def cmd_fees(args, ledger: CustodialLedger) -> int:
    print(json.dumps(ledger.fee_summary(), indent=2))
    if not args.sweep:
        return 0

    async def work(gateway, signer):
        result = await FeeSweeper(ledger, gateway, signer).sweep()
        print(f"  Sweep: {result or 'nothing to sweep'}")
        return 0

    return await _with_clients(work, "trading")


def cmd_status(args, ledger: CustodialLedger) -> int:
    if args.wallet:
        report = {
            "account": ledger.get_account(args.wallet),
            "withdrawals": ledger.list_withdrawals(wallet=args.wallet)[-5:],
            "trades": ledger.list_trades(wallet=args.wallet)[-10:],
        }
    else:
        report = {
            "pending_withdrawals": ledger.list_withdrawals(status="pending"),
            "detected_deposits": ledger.list_deposits(status="detected"),
            "unconfirmed_trades": ledger.list_trades(status="sell_unconfirmed"),
            "fees": ledger.fee_summary(),
        }
    print(json.dumps(report, indent=2, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Trail Custody: trailing-stop trading on custodial balances",
        epilog="Example: python3 trade_daemon.py trade <wallet> <mint> 0.5 --tp 20:50",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    trade = sub.add_parser("trade", help="Open a position and monitor it until exit")
    trade.add_argument("wallet", help="Custody wallet paying for the trade")
    trade.add_argument("mint", help="Token mint to buy")
    trade.add_argument("size", type=float, help="Trade size in SOL")
    trade.add_argument("--sl", type=float, default=DEFAULT_STOP_LOSS_PCT, help="Stop-loss %%")
    trade.add_argument("--trail", type=float, default=DEFAULT_TRAILING_TRIGGER_PCT, help="Trailing trigger %%")
    trade.add_argument("--distance", type=float, default=DEFAULT_TRAILING_DISTANCE_PCT, help="Trailing distance %%")
    trade.add_argument("--tp", action="append", metavar="TRIGGER:SELL",
                       help="Take-profit stage, e.g. 20:50 (repeatable)")

    account = sub.add_parser("open-account", help="Create a custody account")
    account.add_argument("wallet")

    deposits = sub.add_parser("credit-deposits", help="Credit detected deposits")
    deposits.add_argument("--limit", type=int, default=DEPOSIT_BATCH_LIMIT)

    withdraw = sub.add_parser("withdraw", help="Withdraw SOL to the wallet")
    withdraw.add_argument("wallet")
    withdraw.add_argument("amount", type=float, help="Amount in SOL (fee is deducted from it)")

    sub.add_parser("reconcile", help="Resolve unconfirmed payouts and sells")

    fees = sub.add_parser("fees", help="Fee ledger summary")
    fees.add_argument("--sweep", action="store_true", help="Transfer recorded fees to FEE_WALLET")

    status = sub.add_parser("status", help="Ledger overview or one wallet's history")
    status.add_argument("wallet", nargs="?")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    ledger = CustodialLedger()

    if args.command == "open-account":
        print(json.dumps(ledger.open_account(args.wallet), indent=2))
        return 0
    if args.command == "status":
        return cmd_status(args, ledger)
    if args.command == "credit-deposits":
        counts = DepositProcessor(ledger).process_pending(limit=args.limit)
        print(json.dumps(counts))
        return 0
    if args.command == "fees" and not args.sweep:
        print(json.dumps(ledger.fee_summary(), indent=2))
        return 0

    preflight_check()
    handlers = {
        "trade": cmd_trade,
        "withdraw": cmd_withdraw,
        "reconcile": cmd_reconcile,
        "fees": cmd_fees,
    }
    try:
        return asyncio.run(handlers[args.command](args, ledger))
    except KeyboardInterrupt:
        logger.warning("Interrupted; open positions were left as they are")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())

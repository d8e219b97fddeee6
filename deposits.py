#!/usr/bin/env python3
"""
DEPOSITS — Credit deposits found by the chain watcher, exactly once each.

The watcher reports each incoming transfer with its memo. A deposit is
attributed to a wallet only when the memo reads "DEPOSIT:<wallet>" AND the
sender is that same wallet. Anything else is kept as "detected" with no
owner, for manual reconciliation. It is never dropped and never guessed.
A wallet is not credited past MAX_DEPOSIT_SOL of total custody balance;
the deposit that would cross it is held back whole.

Run a batch from cron or the daemon:
    python3 trade_daemon.py credit-deposits --limit 20
"""

from config import DEPOSIT_BATCH_LIMIT, DEPOSIT_MEMO_PREFIX, MAX_DEPOSIT_SOL
from custody_ledger import AccountNotFound, BalanceRaceLost, DepositMismatch, DepositOverCap
from log_setup import get_logger
from trade_events import TradeEvent, log_event

logger = get_logger(__name__)

__all__ = ["DepositProcessor", "parse_deposit_memo"]

SOURCE = "deposits"


def parse_deposit_memo(memo: str | None) -> str | None:
    """Wallet address from a "DEPOSIT:<wallet>" memo, or None."""
    if not memo:
        return None
    memo = memo.strip()
    if not memo.startswith(DEPOSIT_MEMO_PREFIX):
        return None
    wallet = memo[len(DEPOSIT_MEMO_PREFIX):].strip()
    return wallet or None


class DepositProcessor:
    def __init__(self, ledger, max_balance: float | None = MAX_DEPOSIT_SOL):
        self.ledger = ledger
        self.max_balance = max_balance

    def record_detected_deposit(
        self,
        tx_signature: str,
        from_wallet: str,
        amount_sol: float,
        memo: str | None = None,
        slot: int | None = None,
        block_time: int | None = None,
    ) -> bool:
        """Store a newly seen deposit as "detected". Returns False for a known signature."""
        wallet = parse_deposit_memo(memo)
        if wallet is None:
            logger.warning("Deposit %s has no valid memo (%r); left unattributed", tx_signature, memo)
        elif wallet != from_wallet:
            logger.warning("Deposit %s memo wallet %s does not match sender %s; left unattributed",
                           tx_signature, wallet, from_wallet)
            wallet = None

        is_new = self.ledger.record_detected_deposit(
            tx_signature,
            amount_sol,
            from_wallet=from_wallet,
            credited_wallet=wallet,
            memo=memo,
            slot=slot,
            block_time=block_time,
        )
        if is_new:
            log_event(TradeEvent.DEPOSIT_DETECTED, SOURCE, {
                "tx_signature": tx_signature, "from": from_wallet, "wallet": wallet, "amount_sol": amount_sol,
            })
        return is_new

    def credit(self, tx_signature: str, wallet: str, amount_sol: float) -> bool:
        """Credit one deposit. True if credited by this call; False if already credited or unresolved.

        A deposit that cannot be credited as recorded stays "detected"
        for manual review.
        """
        try:
            credited = self.ledger.credit_deposit(tx_signature, wallet, amount_sol, max_balance=self.max_balance)
        except (AccountNotFound, DepositMismatch, DepositOverCap) as e:
            logger.warning("Deposit %s unresolved: %s", tx_signature, e)
            log_event(TradeEvent.DEPOSIT_UNRESOLVED, SOURCE, {
                "tx_signature": tx_signature, "wallet": wallet, "amount_sol": amount_sol,
                "reason": type(e).__name__,
            })
            return False
        if credited:
            log_event(TradeEvent.DEPOSIT_CREDITED, SOURCE, {
                "tx_signature": tx_signature, "wallet": wallet, "amount_sol": amount_sol,
            })
        else:
            logger.debug("Deposit %s already credited", tx_signature)
        return credited

    def process_pending(self, limit: int = DEPOSIT_BATCH_LIMIT) -> dict:
        """Credit up to `limit` attributable detected deposits.

        Returns counts: credited, skipped (already credited or lost a race),
        unresolved (no owner, or owner has no custody account).
        """
        counts = {"credited": 0, "skipped": 0, "unresolved": 0}
        detected = self.ledger.list_deposits(status="detected")
        attributable = [d for d in detected if d.get("creditedWallet")]
        counts["unresolved"] = len(detected) - len(attributable)

        for deposit in attributable[:limit]:
            signature = deposit["txSignature"]
            try:
                if self.credit(signature, deposit["creditedWallet"], deposit["amountSol"]):
                    counts["credited"] += 1
                elif self.ledger.get_deposit(signature)["status"] == "detected":
                    counts["unresolved"] += 1
                else:
                    counts["skipped"] += 1
            except BalanceRaceLost as e:
                # Still "detected"; the next batch picks it up
                logger.warning("Deposit %s not credited this run: %s", signature, e)
                counts["skipped"] += 1

        logger.info("Deposit batch: %d credited, %d skipped, %d unresolved",
                    counts["credited"], counts["skipped"], counts["unresolved"])
        return counts

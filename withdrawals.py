#!/usr/bin/env python3
"""
WITHDRAWALS — Withdrawal settlement state machine and fee sweeps.

    pending ──transfer confirmed──> sent      (lock settled, withdrawal_fee recorded)
       │
       ├──transfer failed─────────> failed    (full lock rolled back)
       │
       └──confirmation timeout────> pending   (tx signature kept; reconcile_withdrawal() decides)

The requested amount is locked, the payout sends amount - fee, and the
fee stays with the platform. The pending-withdrawal check, the cooldown
check and the balance lock run in one ledger transaction, so concurrent
requests for the same wallet are rejected rather than queued.
"""

from config import (
    LAMPORTS_PER_SOL,
    MIN_WITHDRAW_SOL,
    WITHDRAW_COOLDOWN_SEC,
    WITHDRAW_FEE_MIN_SOL,
    WITHDRAW_FEE_PCT,
    FEE_WALLET,
)
from custody_ledger import (
    AccountNotFound,
    BelowMinimum,
    LedgerError,
    RecordNotFound,
    round_sol,
)
from jupiter_client import ConfirmTimeout, TransferFailed
from log_setup import get_logger
from trade_events import TradeEvent, log_event

logger = get_logger(__name__)

__all__ = ["WithdrawalProcessor", "FeeSweeper", "compute_withdrawal_fee"]

SOURCE = "withdrawals"


def compute_withdrawal_fee(
    amount: float,
    fee_pct: float = WITHDRAW_FEE_PCT,
    min_fee: float = WITHDRAW_FEE_MIN_SOL,
) -> tuple[float, float]:
    """Return (fee, net) for a withdrawal: fee = max(amount * pct, floor)."""
    fee = round_sol(max(amount * fee_pct / 100, min_fee))
    return fee, round_sol(amount - fee)


def _lamports(sol: float) -> int:
    return round(sol * LAMPORTS_PER_SOL)


class WithdrawalProcessor:
    def __init__(
        self,
        ledger,
        gateway,
        signer,
        min_amount: float = MIN_WITHDRAW_SOL,
        cooldown_sec: int = WITHDRAW_COOLDOWN_SEC,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.signer = signer
        self.min_amount = min_amount
        self.cooldown_sec = cooldown_sec

    def _reject(self, wallet: str, amount: float, error: LedgerError):
        logger.warning("Withdrawal rejected for %s (%.9f SOL): %s", wallet, amount, error)
        log_event(TradeEvent.WITHDRAWAL_REJECTED, SOURCE, {
            "wallet": wallet, "amount_sol": amount, "reason": type(error).__name__, "error": str(error),
        })
        return error

    async def request_withdrawal(self, wallet: str, amount: float) -> dict:
        """
        Lock, pay out and settle a withdrawal.

        Returns {"withdrawal_id", "tx_id", "fee", "net", "status"}. Raises
        BelowMinimum, InsufficientBalance, WithdrawalCooldown or
        WithdrawalPending without touching any balance, and TransferFailed
        after rolling the lock back. A payout whose outcome is unknown, or
        that went out but could not be settled yet, returns status "pending"
        for reconcile_withdrawal().
        """
        amount = round_sol(amount)
        if amount < self.min_amount:
            raise self._reject(wallet, amount, BelowMinimum(f"Minimum withdrawal is {self.min_amount} SOL"))
        fee, net = compute_withdrawal_fee(amount)
        if net <= 0:
            raise self._reject(wallet, amount, BelowMinimum("withdraw_amount_too_small_after_fee"))
        if self.ledger.get_account(wallet) is None:
            raise self._reject(wallet, amount, AccountNotFound(f"No custody account for {wallet}"))

        try:
            withdrawal_id = self.ledger.lock_for_withdrawal(
                wallet,
                amount,
                withdrawal={"amountSol": amount, "feeSol": fee, "netAmountSol": net},
                cooldown_sec=self.cooldown_sec,
            )
        except LedgerError as e:
            raise self._reject(wallet, amount, e)

        logger.info("Withdrawal %s: %.9f SOL locked for %s (fee %.9f, net %.9f)",
                    withdrawal_id, amount, wallet, fee, net)
        log_event(TradeEvent.WITHDRAWAL_REQUESTED, SOURCE, {
            "withdrawal_id": withdrawal_id, "wallet": wallet, "amount_sol": amount,
            "fee_sol": fee, "net_sol": net,
        })

        try:
            tx_id = await self.gateway.transfer(self.signer, wallet, _lamports(net))
        except ConfirmTimeout as e:
            self._keep_signature(withdrawal_id, e.tx_id)
            logger.warning("Withdrawal %s payout %s unconfirmed; left pending", withdrawal_id, e.tx_id)
            log_event(TradeEvent.WITHDRAWAL_UNCONFIRMED, SOURCE, {
                "withdrawal_id": withdrawal_id, "wallet": wallet, "tx_id": e.tx_id,
            })
            return {"withdrawal_id": withdrawal_id, "tx_id": e.tx_id, "fee": fee, "net": net, "status": "pending"}
        except Exception as e:
            self._fail(withdrawal_id, wallet, amount, str(e))
            if isinstance(e, TransferFailed):
                raise
            raise TransferFailed(str(e)) from e

        try:
            self._settle(withdrawal_id, wallet, amount, fee, tx_id)
        except LedgerError as e:
            # Paid out but not settled: keep the signature so reconcile_withdrawal() can finish
            logger.error("Withdrawal %s paid (%s) but not settled: %s", withdrawal_id, tx_id, e)
            self._keep_signature(withdrawal_id, tx_id)
            return {"withdrawal_id": withdrawal_id, "tx_id": tx_id, "fee": fee, "net": net, "status": "pending"}
        return {"withdrawal_id": withdrawal_id, "tx_id": tx_id, "fee": fee, "net": net, "status": "sent"}

    def _fail(self, withdrawal_id: str, wallet: str, amount: float, error: str):
        """Roll the lock back after a payout that never went out."""
        try:
            self.ledger.rollback_withdrawal(wallet, amount, withdrawal_id, error=error)
        except LedgerError as e:
            logger.error("Withdrawal %s rollback failed, left pending for reconciliation: %s", withdrawal_id, e)
            try:
                self.ledger.mark_payout_failed(withdrawal_id, error)
            except LedgerError as mark_error:
                logger.critical("Withdrawal %s: payout failed (%s) and the lock of %.9f SOL for %s "
                                "could not be released or marked: %s",
                                withdrawal_id, error, amount, wallet, mark_error)
        else:
            logger.error("Withdrawal %s failed, %.9f SOL returned to %s: %s", withdrawal_id, amount, wallet, error)
        log_event(TradeEvent.WITHDRAWAL_FAILED, SOURCE, {
            "withdrawal_id": withdrawal_id, "wallet": wallet, "amount_sol": amount, "error": error,
        })

    def _keep_signature(self, withdrawal_id: str, tx_id: str):
        try:
            self.ledger.attach_withdrawal_signature(withdrawal_id, tx_id)
        except LedgerError as e:
            logger.critical("Withdrawal %s: payout %s went out but its signature could not be recorded: %s",
                            withdrawal_id, tx_id, e)

    def _settle(self, withdrawal_id: str, wallet: str, amount: float, fee: float, tx_id: str) -> bool:
        if not self.ledger.settle_withdrawal(wallet, amount, withdrawal_id, tx_signature=tx_id):
            return False
        try:
            self.ledger.record_fee({
                "type": "withdrawal_fee",
                "amountSol": fee,
                "walletAddress": wallet,
                "withdrawalId": withdrawal_id,
                "txSignature": tx_id,
            })
        except Exception as e:
            logger.error("Withdrawal fee entry failed for %s: %s", withdrawal_id, e)
        logger.info("Withdrawal %s sent: %s", withdrawal_id, tx_id)
        log_event(TradeEvent.WITHDRAWAL_SENT, SOURCE, {
            "withdrawal_id": withdrawal_id, "wallet": wallet, "amount_sol": amount,
            "fee_sol": fee, "tx_id": tx_id,
        })
        return True

    async def reconcile_withdrawal(self, withdrawal_id: str) -> str:
        """Settle or roll back a pending withdrawal from its payout signature status."""
        record = self.ledger.get_withdrawal(withdrawal_id)
        if record is None:
            raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
        if record["status"] != "pending":
            return record["status"]
        tx_id = record.get("txSignature")
        wallet, amount = record["walletAddress"], record["amountSol"]
        if not tx_id and record.get("payoutFailed"):
            self.ledger.rollback_withdrawal(wallet, amount, withdrawal_id, error=record.get("error"))
            log_event(TradeEvent.WITHDRAWAL_RECONCILED, SOURCE, {
                "withdrawal_id": withdrawal_id, "tx_id": None, "status": "failed",
            })
            return "failed"
        if not tx_id:
            logger.warning("Withdrawal %s is pending with no payout signature; needs manual review", withdrawal_id)
            return "pending"

        status = await self.gateway.signature_status(tx_id)
        if status == "confirmed":
            self._settle(withdrawal_id, wallet, amount, record["feeSol"], tx_id)
            outcome = "sent"
        elif status == "failed":
            self.ledger.rollback_withdrawal(wallet, amount, withdrawal_id, error=f"payout {tx_id} failed on-chain")
            outcome = "failed"
        else:
            return "pending"
        log_event(TradeEvent.WITHDRAWAL_RECONCILED, SOURCE, {
            "withdrawal_id": withdrawal_id, "tx_id": tx_id, "status": outcome,
        })
        return outcome

    async def reconcile_pending(self) -> dict:
        results = {}
        for record in self.ledger.list_withdrawals(status="pending"):
            results[record["id"]] = await self.reconcile_withdrawal(record["id"])
        return results


class FeeSweeper:
    """Moves recorded platform fees to the fee wallet and marks them withdrawn."""

    def __init__(self, ledger, gateway, signer, fee_wallet: str = FEE_WALLET):
        self.ledger = ledger
        self.gateway = gateway
        self.signer = signer
        self.fee_wallet = fee_wallet

    async def sweep(self) -> dict | None:
        if not self.fee_wallet:
            raise ValueError("FEE_WALLET is not configured")
        fees = self.ledger.list_fees(status="recorded")
        total = round_sol(sum(f["amountSol"] for f in fees))
        if total <= 0:
            logger.info("No recorded fees to sweep")
            return None

        confirmed = True
        try:
            tx_id = await self.gateway.transfer(self.signer, self.fee_wallet, _lamports(total))
        except ConfirmTimeout as e:
            # Marked anyway: a later sweep must not send the same fees twice
            tx_id, confirmed = e.tx_id, False
            logger.warning("Fee sweep %s unconfirmed; fees marked withdrawn, check the transaction", tx_id)
        count, marked = self.ledger.mark_fees_withdrawn(tx_id, fee_ids=[f["id"] for f in fees])
        logger.info("Swept %d fee entries (%.9f SOL) to %s: %s", count, marked, self.fee_wallet, tx_id)
        log_event(TradeEvent.FEES_SWEPT, SOURCE, {
            "count": count, "amount_sol": marked, "fee_wallet": self.fee_wallet, "tx_id": tx_id,
            "confirmed": confirmed,
        })
        return {"tx_id": tx_id, "count": count, "amount_sol": marked, "confirmed": confirmed}

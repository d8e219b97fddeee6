#!/usr/bin/env python3
"""
CUSTODY LEDGER — The only writer of custodial balance fields.

Every operation here is one guarded write: the condition (balance high
enough, deposit still "detected", withdrawal still "pending") is checked
and applied inside a single ledger transaction, so two callers can never
interleave a read and a write on the same wallet.

Balance operations:
  credit_deposit       detected -> credited, available += amount (exactly once per signature)
  lock_for_withdrawal  available -= total, locked += total (guard: available >= total)
  settle_withdrawal    locked -= total
  rollback_withdrawal  locked -= total, available += total
  debit_for_trade      available -= size (guard: available >= size)
  refund_trade         available += size (buy never went out)
  credit_trade_proceeds available += proceeds net of exit fee

Fee ledger:
  record_fee, fee_summary, mark_fees_withdrawn
"""

from datetime import datetime, timezone

from config import SOL_DECIMALS
from ledger_store import LedgerStore, LockTimeoutError, utc_now
from log_setup import get_logger
from trade_events import TradeEvent, log_event

logger = get_logger(__name__)

__all__ = [
    "CustodialLedger", "round_sol",
    "LedgerError", "InsufficientBalance", "BalanceRaceLost", "AccountNotFound",
    "BelowMinimum", "WithdrawalCooldown", "WithdrawalPending", "RecordNotFound",
    "DepositMismatch", "DepositOverCap",
    "FEE_TYPES",
]

FEE_TYPES = ("withdrawal_fee", "buy_fee", "sell_fee")

# Withdrawal statuses that start (or extend) the per-wallet cooldown
COOLDOWN_STATUSES = ("pending", "sent")


class LedgerError(Exception):
    """Base class for custody ledger rejections."""


class InsufficientBalance(LedgerError):
    def __init__(self, wallet: str, requested: float, available: float):
        self.wallet = wallet
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for {wallet}: requested {requested}, available {available}"
        )


class BalanceRaceLost(LedgerError):
    """The guarded write could not be applied. Safe to retry the whole request."""


class AccountNotFound(LedgerError):
    """No custody account exists for the wallet."""


class BelowMinimum(LedgerError):
    """Amount is below the minimum, or nothing is left after fees."""


class WithdrawalCooldown(LedgerError):
    def __init__(self, wallet: str, retry_after_sec: int):
        self.wallet = wallet
        self.retry_after_sec = retry_after_sec
        super().__init__(f"Withdrawal cooldown active for {wallet}, retry in {retry_after_sec}s")


class WithdrawalPending(LedgerError):
    """The wallet already has a withdrawal in flight."""


class RecordNotFound(LedgerError):
    pass


class DepositMismatch(LedgerError):
    """Credit request does not match the recorded owner or amount of the deposit."""


class DepositOverCap(LedgerError):
    """Crediting the deposit would exceed the per-wallet custody cap."""


def round_sol(value: float) -> float:
    """Round a SOL amount to lamport precision."""
    return round(float(value), SOL_DECIMALS)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class CustodialLedger:
    """Guarded balance, deposit, withdrawal, fee and trade-history operations."""

    def __init__(self, store: LedgerStore | None = None):
        self.store = store or LedgerStore()

    def _transaction(self):
        return _GuardedTransaction(self.store)

    @staticmethod
    def _account(doc: dict, wallet: str) -> dict:
        account = doc["accounts"].get(wallet)
        if account is None:
            raise AccountNotFound(f"No custody account for {wallet}")
        return account

    # =========================================================================
    # Accounts
    # =========================================================================

    def open_account(self, wallet: str) -> dict:
        """Create a zero-balance account. Returns the existing one if present."""
        with self._transaction() as doc:
            account = doc["accounts"].get(wallet)
            if account is None:
                now = utc_now()
                account = {
                    "walletAddress": wallet,
                    "availableBalance": 0.0,
                    "lockedBalance": 0.0,
                    "createdAt": now,
                    "updatedAt": now,
                }
                doc["accounts"][wallet] = account
                logger.info("Opened custody account for %s", wallet)
            return dict(account)

    def get_account(self, wallet: str) -> dict | None:
        account = self.store.load()["accounts"].get(wallet)
        return dict(account) if account else None

    def _increment_available(self, wallet: str, amount: float, reason: str) -> float:
        if amount < 0:
            raise ValueError(f"{reason}: amount must be non-negative, got {amount}")
        with self._transaction() as doc:
            account = self._account(doc, wallet)
            account["availableBalance"] = round_sol(account["availableBalance"] + amount)
            account["updatedAt"] = utc_now()
            balance = account["availableBalance"]
        logger.info("%s: +%.9f SOL to %s (available %.9f)", reason, amount, wallet, balance)
        return balance

    # =========================================================================
    # Deposits
    # =========================================================================

    def record_detected_deposit(
        self,
        tx_signature: str,
        amount: float,
        from_wallet: str | None = None,
        credited_wallet: str | None = None,
        memo: str | None = None,
        slot: int | None = None,
        block_time: int | None = None,
    ) -> bool:
        """Insert a "detected" deposit. Returns False if the signature is already known."""
        with self._transaction() as doc:
            if tx_signature in doc["deposits"]:
                return False
            doc["deposits"][tx_signature] = {
                "txSignature": tx_signature,
                "fromWallet": from_wallet,
                "creditedWallet": credited_wallet,
                "amountSol": round_sol(amount),
                "slot": slot,
                "blockTime": block_time,
                "memo": memo,
                "status": "detected",
                "detectedAt": utc_now(),
            }
        return True

    def credit_deposit(
        self,
        tx_signature: str,
        wallet: str,
        amount: float,
        max_balance: float | None = None,
    ) -> bool:
        """
        Credit a deposit exactly once.

        Returns True if this call applied the credit, False if the deposit
        was already credited (idempotent no-op). A signature seen for the
        first time is recorded as "detected" before crediting. A known
        deposit is only credited to the wallet and amount it was recorded
        with; anything else raises DepositMismatch. If the wallet has no
        custody account, or the credit would take its total balance past
        max_balance, the deposit stays "detected" and AccountNotFound or
        DepositOverCap is raised.
        """
        if amount <= 0:
            raise ValueError(f"Deposit amount must be positive, got {amount}")
        amount = round_sol(amount)
        rejection = None
        with self._transaction() as doc:
            deposit = doc["deposits"].get(tx_signature)
            if deposit is None:
                deposit = {
                    "txSignature": tx_signature,
                    "creditedWallet": wallet,
                    "amountSol": amount,
                    "status": "detected",
                    "detectedAt": utc_now(),
                }
                doc["deposits"][tx_signature] = deposit
            if deposit["status"] != "detected":
                return False

            account = doc["accounts"].get(wallet)
            if deposit.get("creditedWallet") != wallet or deposit.get("amountSol") != amount:
                rejection = DepositMismatch(
                    f"Deposit {tx_signature} is recorded as {deposit.get('amountSol')} SOL for "
                    f"{deposit.get('creditedWallet')}, not {amount} SOL for {wallet}"
                )
            elif account is None:
                rejection = AccountNotFound(f"Deposit {tx_signature}: no custody account for {wallet}")
            elif max_balance is not None and (
                account["availableBalance"] + account["lockedBalance"] + amount > max_balance
            ):
                rejection = DepositOverCap(
                    f"Deposit {tx_signature}: {amount} SOL would take {wallet} past the "
                    f"{max_balance} SOL custody cap"
                )
            else:
                account["availableBalance"] = round_sol(account["availableBalance"] + amount)
                account["updatedAt"] = utc_now()
                deposit["status"] = "credited"
                deposit["creditedAt"] = utc_now()

        if rejection is not None:
            raise rejection
        logger.info("Deposit %s credited: +%.9f SOL to %s", tx_signature, amount, wallet)
        return True

    def get_deposit(self, tx_signature: str) -> dict | None:
        deposit = self.store.load()["deposits"].get(tx_signature)
        return dict(deposit) if deposit else None

    def list_deposits(self, status: str | None = None, wallet: str | None = None,
                      limit: int | None = None) -> list[dict]:
        """Deposits in detection order, optionally filtered."""
        deposits = [
            dict(d) for d in self.store.load()["deposits"].values()
            if (status is None or d.get("status") == status)
            and (wallet is None or d.get("creditedWallet") == wallet)
        ]
        deposits.sort(key=lambda d: d.get("detectedAt", ""))
        return deposits[:limit] if limit is not None else deposits

    # =========================================================================
    # Withdrawals
    # =========================================================================

    def lock_for_withdrawal(
        self,
        wallet: str,
        total_debit: float,
        withdrawal: dict | None = None,
        cooldown_sec: int = 0,
        now: datetime | None = None,
    ) -> str | None:
        """
        Move total_debit from available to locked in one guarded write.

        When a withdrawal record is given it is inserted as "pending" in the
        same transaction, after checking that the wallet has no pending
        withdrawal and is outside the cooldown window. Returns the new
        withdrawal id (None when no record was given).
        """
        total_debit = round_sol(total_debit)
        if total_debit <= 0:
            raise ValueError(f"Lock amount must be positive, got {total_debit}")
        now = now or datetime.now(timezone.utc)

        with self._transaction() as doc:
            account = self._account(doc, wallet)

            if withdrawal is not None:
                history = [w for w in doc["withdrawals"].values() if w["walletAddress"] == wallet]
                if any(w["status"] == "pending" for w in history):
                    raise WithdrawalPending(f"Withdrawal already pending for {wallet}")
                recent = [w for w in history if w["status"] in COOLDOWN_STATUSES and w.get("createdAt")]
                if recent and cooldown_sec > 0:
                    last = max(_parse_ts(w["createdAt"]) for w in recent)
                    elapsed = (now - last).total_seconds()
                    if elapsed < cooldown_sec:
                        raise WithdrawalCooldown(wallet, int(cooldown_sec - elapsed) + 1)

            available = account["availableBalance"]
            if available < total_debit:
                raise InsufficientBalance(wallet, total_debit, available)

            account["availableBalance"] = round_sol(available - total_debit)
            account["lockedBalance"] = round_sol(account["lockedBalance"] + total_debit)
            account["updatedAt"] = utc_now()

            withdrawal_id = None
            if withdrawal is not None:
                withdrawal_id = LedgerStore.next_id(doc, "withdrawal")
                doc["withdrawals"][withdrawal_id] = {
                    **withdrawal,
                    "id": withdrawal_id,
                    "walletAddress": wallet,
                    "totalDebit": total_debit,
                    "status": "pending",
                    "txSignature": None,
                    "error": None,
                    "createdAt": now.isoformat(),
                }

        logger.info("Locked %.9f SOL for %s (withdrawal %s)", total_debit, wallet, withdrawal_id)
        return withdrawal_id

    def settle_withdrawal(
        self,
        wallet: str,
        total_debit: float,
        withdrawal_id: str | None = None,
        tx_signature: str | None = None,
    ) -> bool:
        """Release a lock after a confirmed payout. False if already settled or failed."""
        total_debit = round_sol(total_debit)
        with self._transaction() as doc:
            if withdrawal_id is not None:
                record = doc["withdrawals"].get(withdrawal_id)
                if record is None:
                    raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
                if record["status"] != "pending":
                    return False
            account = self._account(doc, wallet)
            if account["lockedBalance"] < total_debit:
                raise BalanceRaceLost(
                    f"Locked balance {account['lockedBalance']} < settle amount {total_debit} for {wallet}"
                )
            account["lockedBalance"] = round_sol(account["lockedBalance"] - total_debit)
            account["updatedAt"] = utc_now()
            if withdrawal_id is not None:
                record["status"] = "sent"
                record["txSignature"] = tx_signature
                record["sentAt"] = utc_now()
        logger.info("Settled %.9f SOL for %s (tx %s)", total_debit, wallet, tx_signature)
        return True

    def rollback_withdrawal(
        self,
        wallet: str,
        total_debit: float,
        withdrawal_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Return a lock to available. False if the withdrawal is no longer pending."""
        total_debit = round_sol(total_debit)
        with self._transaction() as doc:
            if withdrawal_id is not None:
                record = doc["withdrawals"].get(withdrawal_id)
                if record is None:
                    raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
                if record["status"] != "pending":
                    return False
            account = self._account(doc, wallet)
            if account["lockedBalance"] < total_debit:
                raise BalanceRaceLost(
                    f"Locked balance {account['lockedBalance']} < rollback amount {total_debit} for {wallet}"
                )
            account["lockedBalance"] = round_sol(account["lockedBalance"] - total_debit)
            account["availableBalance"] = round_sol(account["availableBalance"] + total_debit)
            account["updatedAt"] = utc_now()
            if withdrawal_id is not None:
                record["status"] = "failed"
                record["error"] = error
                record["failedAt"] = utc_now()
        logger.warning("Rolled back %.9f SOL for %s: %s", total_debit, wallet, error)
        return True

    def attach_withdrawal_signature(self, withdrawal_id: str, tx_signature: str):
        """Remember the payout signature of a still-pending withdrawal."""
        with self._transaction() as doc:
            record = doc["withdrawals"].get(withdrawal_id)
            if record is None:
                raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
            record["txSignature"] = tx_signature

    def mark_payout_failed(self, withdrawal_id: str, error: str):
        """Note on a still-pending withdrawal that its payout never went out."""
        with self._transaction() as doc:
            record = doc["withdrawals"].get(withdrawal_id)
            if record is None:
                raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
            if record["status"] == "pending":
                record["payoutFailed"] = True
                record["error"] = error

    def get_withdrawal(self, withdrawal_id: str) -> dict | None:
        record = self.store.load()["withdrawals"].get(withdrawal_id)
        return dict(record) if record else None

    def list_withdrawals(self, wallet: str | None = None, status: str | None = None) -> list[dict]:
        records = [
            dict(w) for w in self.store.load()["withdrawals"].values()
            if (wallet is None or w["walletAddress"] == wallet)
            and (status is None or w["status"] == status)
        ]
        records.sort(key=lambda w: w.get("createdAt", ""))
        return records

    # =========================================================================
    # Trade funding
    # =========================================================================

    def debit_for_trade(self, wallet: str, amount: float) -> float:
        """Spend available balance on a new position. Returns the new available balance."""
        amount = round_sol(amount)
        if amount <= 0:
            raise ValueError(f"Trade size must be positive, got {amount}")
        with self._transaction() as doc:
            account = self._account(doc, wallet)
            available = account["availableBalance"]
            if available < amount:
                raise InsufficientBalance(wallet, amount, available)
            account["availableBalance"] = round_sol(available - amount)
            account["updatedAt"] = utc_now()
            balance = account["availableBalance"]
        logger.info("Trade debit: -%.9f SOL from %s (available %.9f)", amount, wallet, balance)
        return balance

    def refund_trade(self, wallet: str, amount: float) -> float:
        return self._increment_available(wallet, round_sol(amount), "Trade refund")

    def credit_trade_proceeds(self, wallet: str, amount: float) -> float:
        return self._increment_available(wallet, round_sol(amount), "Trade proceeds")

    # =========================================================================
    # Fee ledger
    # =========================================================================

    def record_fee(self, entry: dict) -> str:
        """Append a fee entry with status "recorded". Returns its id."""
        fee_type = entry.get("type")
        if fee_type not in FEE_TYPES:
            raise ValueError(f"Unknown fee type: {fee_type!r}")
        amount = round_sol(entry.get("amountSol", 0))
        if amount <= 0:
            raise ValueError(f"Fee amount must be positive, got {amount}")

        with self._transaction() as doc:
            fee_id = LedgerStore.next_id(doc, "fee")
            doc["fees"][fee_id] = {
                "withdrawalId": None,
                "tradeId": None,
                "txSignature": None,
                **entry,
                "id": fee_id,
                "amountSol": amount,
                "status": "recorded",
                "createdAt": utc_now(),
            }
        log_event(TradeEvent.FEE_RECORDED, "custody_ledger", {
            "fee_id": fee_id, "type": fee_type, "amount_sol": amount,
            "wallet": entry.get("walletAddress"),
            "withdrawal_id": entry.get("withdrawalId"), "trade_id": entry.get("tradeId"),
        })
        return fee_id

    def list_fees(self, status: str | None = None, fee_type: str | None = None) -> list[dict]:
        return [
            dict(f) for f in self.store.load()["fees"].values()
            if (status is None or f["status"] == status)
            and (fee_type is None or f["type"] == fee_type)
        ]

    def fee_summary(self) -> dict:
        """Totals per fee type and status, plus the unswept ("recorded") total."""
        summary = {t: {"recorded": 0.0, "withdrawn": 0.0, "count": 0} for t in FEE_TYPES}
        for fee in self.store.load()["fees"].values():
            bucket = summary.setdefault(fee["type"], {"recorded": 0.0, "withdrawn": 0.0, "count": 0})
            bucket[fee["status"]] = round_sol(bucket.get(fee["status"], 0.0) + fee["amountSol"])
            bucket["count"] += 1
        summary["total_recorded"] = round_sol(sum(summary[t]["recorded"] for t in FEE_TYPES))
        summary["total_withdrawn"] = round_sol(sum(summary[t]["withdrawn"] for t in FEE_TYPES))
        return summary

    def mark_fees_withdrawn(self, tx_signature: str, fee_ids: list[str] | None = None) -> tuple[int, float]:
        """Flip recorded fee entries to withdrawn. Returns (count, total SOL)."""
        count, total = 0, 0.0
        with self._transaction() as doc:
            for fee_id, fee in doc["fees"].items():
                if fee["status"] != "recorded":
                    continue
                if fee_ids is not None and fee_id not in fee_ids:
                    continue
                fee["status"] = "withdrawn"
                fee["txSignature"] = tx_signature
                fee["withdrawnAt"] = utc_now()
                count += 1
                total += fee["amountSol"]
        return count, round_sol(total)

    # =========================================================================
    # Trade history
    # =========================================================================

    def save_trade_record(self, record: dict) -> str:
        """Persist a trade record. Returns its id."""
        with self._transaction() as doc:
            trade_id = record.get("id") or LedgerStore.next_id(doc, "trade")
            doc["trades"][trade_id] = {**record, "id": trade_id}
        return trade_id

    def update_trade_record(self, trade_id: str, **fields) -> dict:
        """Merge fields into a trade record.

        Sales already resolved by reconciliation keep their status when a
        stale copy of the sale list is written back.
        """
        with self._transaction() as doc:
            record = doc["trades"].get(trade_id)
            if record is None:
                raise RecordNotFound(f"Trade {trade_id} not found")
            if "sells" in fields:
                fields["sells"] = _merge_sells(record.get("sells") or [], fields["sells"])
                if fields.get("status") == "sell_unconfirmed":
                    fields["status"] = _sale_outcome(fields["sells"], "sell_unconfirmed")
            record.update(fields)
            return dict(record)

    def resolve_trade_sale(
        self,
        trade_id: str,
        txid: str,
        status: str,
        credit_sol: float = 0.0,
        fee_lamports: int = 0,
    ) -> tuple[bool, dict]:
        """
        Settle an unconfirmed sale of a trade record.

        The sale's status flip and, for a confirmed sale, the proceeds credit
        happen in one transaction. Returns (applied, record); applied is
        False when the sale was already resolved, and nothing is credited.
        """
        if status not in ("confirmed", "failed"):
            raise ValueError(f"Sale can only resolve to confirmed or failed, got {status!r}")
        with self._transaction() as doc:
            record = doc["trades"].get(trade_id)
            if record is None:
                raise RecordNotFound(f"Trade {trade_id} not found")
            sells = record.get("sells") or []
            sale = next((s for s in sells if s.get("txid") == txid), None)
            if sale is None:
                raise RecordNotFound(f"Trade {trade_id} has no sale {txid}")
            applied = sale.get("status") == "unconfirmed"
            if applied:
                now = utc_now()
                if status == "confirmed":
                    account = self._account(doc, record["walletAddress"])
                    account["availableBalance"] = round_sol(account["availableBalance"] + round_sol(credit_sol))
                    account["updatedAt"] = now
                    sale["credited"] = True
                    sale["feeLamports"] = fee_lamports
                sale["status"] = status
                sale["reconciledAt"] = now
                if record.get("status") == "sell_unconfirmed":
                    record["status"] = _sale_outcome(sells, "sell_unconfirmed")
            result = dict(record)
        if applied and status == "confirmed":
            logger.info("Trade %s sale %s confirmed: +%.9f SOL to %s",
                        trade_id, txid, credit_sol, result["walletAddress"])
        return applied, result

    def get_trade(self, trade_id: str) -> dict | None:
        record = self.store.load()["trades"].get(trade_id)
        return dict(record) if record else None

    def list_trades(self, wallet: str | None = None, status: str | None = None) -> list[dict]:
        return [
            dict(t) for t in self.store.load()["trades"].values()
            if (wallet is None or t["walletAddress"] == wallet)
            and (status is None or t["status"] == status)
        ]


class _GuardedTransaction:
    """Ledger transaction that reports lock contention as BalanceRaceLost."""

    def __init__(self, store: LedgerStore):
        self._cm = store.transaction()

    def __enter__(self) -> dict:
        try:
            return self._cm.__enter__()
        except LockTimeoutError as e:
            raise BalanceRaceLost(str(e)) from e

    def __exit__(self, exc_type, exc, tb):
        return self._cm.__exit__(exc_type, exc, tb)


def _merge_sells(stored: list, incoming: list) -> list:
    """Overlay incoming sales on stored ones, keeping resolved statuses by txid."""
    resolved = {
        s["txid"]: s for s in stored
        if s.get("txid") and s.get("status") in ("confirmed", "failed")
    }
    merged = []
    for sale in incoming:
        prior = resolved.get(sale.get("txid"))
        if prior is not None and sale.get("status") == "unconfirmed":
            sale = {**sale, **{k: prior[k] for k in ("status", "credited", "feeLamports", "reconciledAt") if k in prior}}
        merged.append(sale)
    return merged


def _sale_outcome(sells: list, pending: str = "pending") -> str:
    """Trade outcome implied by its sales: pending, sell_failed or closed."""
    if any(s.get("status") == "unconfirmed" for s in sells):
        return pending
    if any(s.get("status") == "failed" for s in sells):
        return "sell_failed"
    return "closed"

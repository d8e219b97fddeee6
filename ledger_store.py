#!/usr/bin/env python3
"""
LEDGER STORE — Atomic, locked custody ledger file operations.

Durable home of custody accounts, deposits, withdrawals, fee entries and
closed-trade records. Every balance mutation in custody_ledger.py runs
inside LedgerStore.transaction(), so the guard check and the write happen under
one exclusive lock with no read-modify-write window.

Features:
  - fcntl file locking, acquired non-blocking with a deadline so it is
    safe from worker threads as well as from separate processes
  - Atomic writes (write to temp file, fsync, then os.rename)
  - Schema validation on load (malformed records are reported, never
    silently dropped: a dropped account would erase a balance)
"""

import errno
import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TypedDict

from config import LEDGER_FILE, LOCK_TIMEOUT_SEC
from log_setup import get_logger

logger = get_logger(__name__)

__all__ = [
    "AccountDict", "DepositDict", "WithdrawalDict", "FeeEntryDict", "TradeRecordDict",
    "LedgerStore", "LockTimeoutError", "LedgerCorruptError", "utc_now",
]

LOCK_RETRY_INTERVAL_SEC = 0.02


class AccountDict(TypedDict):
    """One custody account per wallet."""
    walletAddress: str
    availableBalance: float
    lockedBalance: float
    createdAt: str
    updatedAt: str


class DepositDict(TypedDict, total=False):
    txSignature: str        # Idempotency key
    fromWallet: str
    creditedWallet: str | None
    amountSol: float
    slot: int
    blockTime: int
    memo: str
    status: str             # "detected" or "credited"
    detectedAt: str
    creditedAt: str


class WithdrawalDict(TypedDict, total=False):
    id: str
    walletAddress: str
    amountSol: float        # What the user asked for (and what gets locked)
    feeSol: float
    netAmountSol: float     # What the payout transfer sends
    totalDebit: float
    status: str             # "pending", "sent" or "failed"
    txSignature: str | None
    error: str | None
    createdAt: str
    sentAt: str
    failedAt: str


class FeeEntryDict(TypedDict, total=False):
    id: str
    type: str               # "withdrawal_fee", "buy_fee" or "sell_fee"
    amountSol: float
    walletAddress: str
    withdrawalId: str | None
    tradeId: str | None
    status: str             # "recorded" or "withdrawn"
    txSignature: str | None
    createdAt: str
    withdrawnAt: str


class TradeRecordDict(TypedDict, total=False):
    id: str
    positionId: int
    walletAddress: str
    tokenMint: str
    amountSol: float
    entryMetric: float
    exitMetric: float
    rawSold: int
    proceedsLamports: int
    pnlSol: float
    exitReason: str
    buyTxid: str
    sellTxid: str
    stopLossPercent: float
    trailingPercent: float
    distancePercent: float
    takeProfits: list
    status: str             # "closed", "sell_unconfirmed" or "sell_failed"
    openedAt: str
    closedAt: str


REQUIRED_KEYS = {
    "accounts": {"walletAddress", "availableBalance", "lockedBalance"},
    "deposits": {"txSignature", "amountSol", "status"},
    "withdrawals": {"id", "walletAddress", "amountSol", "status"},
    "fees": {"id", "type", "amountSol", "status"},
    "trades": {"id", "walletAddress", "tokenMint", "status"},
}


class LockTimeoutError(Exception):
    """Raised when the ledger lock is not acquired within the timeout."""


class LedgerCorruptError(Exception):
    """Raised when the ledger file cannot be parsed. The file is preserved as a backup."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_document() -> dict:
    return {
        "accounts": {},
        "deposits": {},
        "withdrawals": {},
        "fees": {},
        "trades": {},
        "seq": {},
    }


class LedgerStore:
    """JSON-document ledger guarded by an exclusive file lock.

    Usage:
        store = LedgerStore(tmp_path / "ledger.json")
        with store.transaction() as doc:
            doc["accounts"][wallet]["availableBalance"] += 1.5
        # saved atomically on exit; an exception discards every change
    """

    def __init__(self, path: Path | str | None = None, lock_timeout: float = LOCK_TIMEOUT_SEC):
        self.path = Path(path) if path is not None else LEDGER_FILE
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")
        self.lock_timeout = lock_timeout

    @contextmanager
    def _file_lock(self):
        """Acquire the exclusive ledger lock or raise LockTimeoutError."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_fd = open(self.lock_path, "w")
        deadline = time.monotonic() + self.lock_timeout
        try:
            while True:
                try:
                    fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise
                    if time.monotonic() >= deadline:
                        logger.error("Ledger lock not acquired within %ss (%s)",
                                     self.lock_timeout, self.lock_path)
                        raise LockTimeoutError(
                            f"Ledger lock acquisition timed out after {self.lock_timeout}s"
                        )
                    time.sleep(LOCK_RETRY_INTERVAL_SEC)
            yield
        finally:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            except (ValueError, OSError):
                pass  # never acquired
            lock_fd.close()

    def _read_unlocked(self) -> dict:
        """Read and validate the ledger. Caller MUST hold the lock."""
        if not self.path.exists():
            return _empty_document()
        raw = self.path.read_text().strip()
        if not raw:
            return _empty_document()
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            backup = self.path.with_suffix(f".corrupted.{int(time.time())}")
            self.path.rename(backup)
            logger.critical("Ledger %s is corrupted (%s), saved as %s", self.path, e, backup)
            raise LedgerCorruptError(f"Ledger file corrupted, backup at {backup}") from e
        if not isinstance(doc, dict):
            raise LedgerCorruptError(f"Ledger root is {type(doc).__name__}, expected object")

        for collection, template in _empty_document().items():
            doc.setdefault(collection, template)
        for collection, required in REQUIRED_KEYS.items():
            for key, record in doc[collection].items():
                if not isinstance(record, dict) or not required.issubset(record):
                    logger.warning("Malformed %s record %s: missing %s",
                                   collection, key, sorted(required - set(record or {})))
        return doc

    def _write_unlocked(self, doc: dict):
        """Atomically write the ledger. Caller MUST hold the lock."""
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.stem}_",
                suffix=".tmp",
            )
            with os.fdopen(fd, "w") as f:
                json.dump(doc, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.rename(tmp_path, self.path)
        except Exception as e:
            logger.error(f"Failed to save ledger: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def load(self) -> dict:
        """Consistent snapshot of the whole ledger (read-only use)."""
        with self._file_lock():
            return self._read_unlocked()

    @contextmanager
    def transaction(self):
        """
        Transactional read-modify-write with a SINGLE lock held throughout.

        The document is saved only if the block exits normally. Raising
        inside the block (e.g. a failed balance guard) leaves the file
        untouched.
        """
        with self._file_lock():
            doc = self._read_unlocked()
            yield doc
            self._write_unlocked(doc)

    @staticmethod
    def next_id(doc: dict, kind: str) -> str:
        """Allocate the next sequential id for a collection (call inside a transaction)."""
        n = int(doc["seq"].get(kind, 0)) + 1
        doc["seq"][kind] = n
        return f"{kind[0].upper()}{n}"

"""Shared test configuration — adds project root to sys.path, plus ledger/gateway fakes."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure project root is importable from all test files
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import SOL_MINT, PRICE_REFERENCE_LAMPORTS  # noqa: E402
from custody_ledger import CustodialLedger  # noqa: E402
from jupiter_client import Quote, SwapResult, TokenBalance  # noqa: E402
from ledger_store import LedgerStore  # noqa: E402

WALLET = "Wa11etAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
MINT = "M1ntBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"


@pytest.fixture(autouse=True)
def events(monkeypatch):
    """Capture trade events instead of writing logs/trade_events.jsonl."""
    import trade_events
    captured = []
    sink = MagicMock()
    sink.info.side_effect = lambda line: captured.append(json.loads(line))
    monkeypatch.setattr(trade_events, "_event_logger", sink)
    return captured


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger.json", lock_timeout=2)


@pytest.fixture
def ledger(store):
    return CustodialLedger(store)


@pytest.fixture
def funded_ledger(ledger):
    """Ledger with WALLET holding 10 SOL available."""
    ledger.open_account(WALLET)
    ledger.credit_deposit("seed-deposit", WALLET, 10.0)
    return ledger


class FakeSigner:
    public_key = "TradingKeyCCCCCCCCCCCCCCCCCCCCCCCCCCCCCCCCC"

    async def sign_transaction(self, unsigned_tx_b64: str) -> str:
        return unsigned_tx_b64

    async def build_transfer(self, to: str, lamports: int) -> str:
        return f"transfer:{to}:{lamports}"


class FakeGateway:
    """In-memory stand-in for JupiterClient.

    Price reference quotes (SOL -> token for PRICE_REFERENCE_LAMPORTS) answer from
    `metric`, or from `metrics` while that queue lasts. Buys add the quoted
    tokens to `balance`; sells remove them and pay `sell_price` lamports
    per raw unit.
    """

    def __init__(self):
        self.metric = 100.0
        self.metrics = []
        self.buy_out = 1_000_000
        self.sell_price = 100.0
        self.balance = 0
        self.decimals = 6
        self.deliver_tokens = True
        self.execute_errors = []
        self.transfer_error = None
        self.statuses = {}
        self.quotes = []
        self.executed = []
        self.transfers = []
        self._tx = 0

    async def quote(self, input_mint, output_mint, amount, only_direct_routes=False,
                    restrict_intermediate_tokens=False):
        self.quotes.append({
            "input": input_mint, "output": output_mint, "amount": amount,
            "direct": only_direct_routes, "restrict": restrict_intermediate_tokens,
        })
        if input_mint == SOL_MINT and amount == PRICE_REFERENCE_LAMPORTS:
            metric = self.metrics.pop(0) if self.metrics else self.metric
            if metric is None:
                return None
            self.metric = metric
            out = round(PRICE_REFERENCE_LAMPORTS / metric)
        elif input_mint == SOL_MINT:
            out = self.buy_out
        else:
            out = int(amount * self.sell_price)
        return Quote(input_mint, output_mint, int(amount), out, only_direct_routes)

    async def execute(self, quote, signer):
        if self.execute_errors:
            raise self.execute_errors.pop(0)
        self._tx += 1
        self.executed.append(quote)
        if quote.input_mint == SOL_MINT:
            if self.deliver_tokens:
                self.balance += quote.out_amount
        else:
            self.balance -= quote.in_amount
        return SwapResult(f"swap-tx-{self._tx}", quote.in_amount, quote.out_amount)

    async def token_balance(self, owner, mint):
        if not self.balance:
            return None
        return TokenBalance(self.balance, self.decimals)

    async def transfer(self, signer, to, lamports):
        if self.transfer_error:
            raise self.transfer_error
        self._tx += 1
        self.transfers.append((to, lamports))
        return f"transfer-tx-{self._tx}"

    async def signature_status(self, tx_id):
        return self.statuses.get(tx_id, "unknown")

    def sells(self):
        return [q for q in self.executed if q.input_mint != SOL_MINT]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def signer():
    return FakeSigner()

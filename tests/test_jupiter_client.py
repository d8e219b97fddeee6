#!/usr/bin/env python3
"""
Tests for the Jupiter / Solana RPC client.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock

import base58
import pytest

from config import SOL_MINT
from jupiter_client import (
    ConfirmTimeout,
    JupiterAPIError,
    JupiterClient,
    MintNotTradable,
    NoRoute,
    Quote,
    RouteTooLarge,
    SubmitFailed,
    TransferFailed,
    _classify_swap_error,
    transaction_signature,
)

MINT = "M1ntBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def client():
    """A JupiterClient whose HTTP layer is replaced per test."""
    c = JupiterClient(rpc_url="https://rpc.test", api_url="https://jup.test/swap/v1/", slippage_bps=50)
    c._req = AsyncMock()
    return c


def _signer():
    signer = MagicMock()
    signer.public_key = "Signer1111"
    signer.sign_transaction = AsyncMock(return_value="signed-b64")
    signer.build_transfer = AsyncMock(return_value="signed-transfer-b64")
    return signer


def _rpc_result(value):
    return {"jsonrpc": "2.0", "id": 1, "result": value}


def _status(confirmation="confirmed", err=None):
    return _rpc_result({"value": [{"confirmationStatus": confirmation, "err": err}]})


SIGNATURE = bytes(range(1, 65))
SIGNED_TX = base64.b64encode(bytes([1]) + SIGNATURE + b"\x80message").decode()


# =============================================================================
# INITIALIZATION
# =============================================================================

class TestInitialization:

    def test_trailing_slash_stripped(self, client):
        assert client.api_url == "https://jup.test/swap/v1"

    def test_default_urls(self):
        c = JupiterClient()
        assert c.rpc_url.startswith("https://")
        assert c.api_url.startswith("https://")


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class TestErrors:

    @pytest.mark.parametrize("message,expected", [
        ("Transaction too large: 1300 > 1232", RouteTooLarge),
        ("encoded transaction exceeds max size", RouteTooLarge),
        ("Could not find any route", NoRoute),
        ("NO_ROUTES_FOUND: no route", NoRoute),
        ("Slippage tolerance exceeded", SubmitFailed),
    ])
    def test_classify(self, message, expected):
        assert isinstance(_classify_swap_error(message), expected)

    def test_api_error(self):
        error = JupiterAPIError(400, "Bad request")
        assert error.status == 400
        assert "400" in str(error)

    def test_confirm_timeout_carries_tx(self):
        error = ConfirmTimeout("sig123", 61)
        assert error.tx_id == "sig123"
        assert "sig123" in str(error)


# =============================================================================
# QUOTES
# =============================================================================

class TestQuote:

    def test_quote_parsed(self, client):
        client._req.return_value = {"inAmount": "1000000000", "outAmount": "2500000", "routePlan": []}

        quote = asyncio.run(client.quote(SOL_MINT, MINT, 1_000_000_000))

        assert quote.in_amount == 1_000_000_000
        assert quote.out_amount == 2_500_000
        assert quote.raw["routePlan"] == []
        method, url = client._req.call_args.args[:2]
        params = client._req.call_args.kwargs["params"]
        assert (method, url) == ("GET", "https://jup.test/swap/v1/quote")
        assert params["amount"] == "1000000000"
        assert params["slippageBps"] == 50
        assert "onlyDirectRoutes" not in params

    def test_quote_flags(self, client):
        client._req.return_value = {"inAmount": "10", "outAmount": "5"}
        quote = asyncio.run(client.quote(MINT, SOL_MINT, 10, only_direct_routes=True,
                                         restrict_intermediate_tokens=True))
        params = client._req.call_args.kwargs["params"]
        assert params["onlyDirectRoutes"] == "true"
        assert params["restrictIntermediateTokens"] == "true"
        assert quote.only_direct_routes is True

    def test_api_error_means_no_quote(self, client):
        client._req.side_effect = JupiterAPIError(400, "TOKEN_NOT_TRADABLE")
        assert asyncio.run(client.quote(SOL_MINT, MINT, 1000)) is None

    def test_timeout_means_no_quote(self, client):
        client._req.side_effect = asyncio.TimeoutError()
        assert asyncio.run(client.quote(SOL_MINT, MINT, 1000)) is None

    def test_empty_out_amount(self, client):
        client._req.return_value = {"inAmount": "1000", "outAmount": "0"}
        assert asyncio.run(client.quote(SOL_MINT, MINT, 1000)) is None


# =============================================================================
# EXECUTION
# =============================================================================

class TestExecute:

    def _quote(self):
        return Quote(SOL_MINT, MINT, 1000, 500, raw={"outAmount": "500"})

    def test_swap_signed_sent_and_confirmed(self, client):
        client._req.side_effect = [
            {"swapTransaction": "unsigned-b64"},   # POST /swap
            _rpc_result("tx-sig"),                 # sendTransaction
            _status("confirmed"),                  # getSignatureStatuses
        ]
        signer = _signer()

        result = asyncio.run(client.execute(self._quote(), signer))

        assert result.tx_id == "tx-sig"
        assert result.out_amount == 500
        signer.sign_transaction.assert_awaited_once_with("unsigned-b64")
        swap_body = client._req.call_args_list[0].kwargs["data"]
        assert swap_body["userPublicKey"] == "Signer1111"
        assert swap_body["wrapAndUnwrapSol"] is True
        send_body = client._req.call_args_list[1].kwargs["data"]
        assert send_body["method"] == "sendTransaction"
        assert send_body["params"][0] == "signed-b64"

    def test_swap_build_rejected_too_large(self, client):
        client._req.side_effect = JupiterAPIError(400, "transaction too large")
        with pytest.raises(RouteTooLarge):
            asyncio.run(client.execute(self._quote(), _signer()))

    def test_send_rejected(self, client):
        client._req.side_effect = [
            {"swapTransaction": "unsigned-b64"},
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32002, "message": "Blockhash not found"}},
        ]
        with pytest.raises(SubmitFailed, match="Blockhash"):
            asyncio.run(client.execute(self._quote(), _signer()))

    def test_failed_on_chain(self, client):
        client._req.side_effect = [
            {"swapTransaction": "unsigned-b64"},
            _rpc_result("tx-sig"),
            _status("confirmed", err={"InstructionError": [2, "Custom"]}),
        ]
        with pytest.raises(SubmitFailed, match="failed on-chain"):
            asyncio.run(client.execute(self._quote(), _signer()))


class TestTransfer:

    def test_transfer(self, client):
        client._req.side_effect = [_rpc_result("payout-sig"), _status("finalized")]
        signer = _signer()
        assert asyncio.run(client.transfer(signer, "Dest111", 295_000_000)) == "payout-sig"
        signer.build_transfer.assert_awaited_once_with("Dest111", 295_000_000)

    def test_build_failure(self, client):
        signer = _signer()
        signer.build_transfer.side_effect = RuntimeError("signer unreachable")
        with pytest.raises(TransferFailed):
            asyncio.run(client.transfer(signer, "Dest111", 1000))
        client._req.assert_not_called()


class TestUnknownSubmitOutcome:
    """A send that dies in transit may still land: it is unknown, not failed."""

    def test_signature_read_from_signed_bytes(self):
        assert transaction_signature(SIGNED_TX) == base58.b58encode(SIGNATURE).decode()

    @pytest.mark.parametrize("blob", [
        "not base64!",
        base64.b64encode(bytes([0]) + bytes(64)).decode(),
        base64.b64encode(bytes([1]) + bytes(64)).decode(),
        base64.b64encode(bytes([1, 2, 3])).decode(),
    ])
    def test_unreadable_transactions(self, blob):
        with pytest.raises(ValueError):
            transaction_signature(blob)

    def test_transfer_timeout_is_unconfirmed(self, client):
        client._req.side_effect = asyncio.TimeoutError()
        signer = _signer()
        signer.build_transfer.return_value = SIGNED_TX

        with pytest.raises(ConfirmTimeout) as exc:
            asyncio.run(client.transfer(signer, "Dest111", 1000))
        assert exc.value.tx_id == base58.b58encode(SIGNATURE).decode()

    def test_swap_send_dropped_is_unconfirmed(self, client):
        import aiohttp
        client._req.side_effect = [
            {"swapTransaction": "unsigned-b64"},
            aiohttp.ClientConnectionError("connection reset"),
        ]
        signer = _signer()
        signer.sign_transaction.return_value = SIGNED_TX

        with pytest.raises(ConfirmTimeout):
            asyncio.run(client.execute(Quote(SOL_MINT, MINT, 1000, 500), signer))

    def test_rejected_send_is_still_a_failure(self, client):
        client._req.side_effect = JupiterAPIError(400, "invalid transaction")
        signer = _signer()
        signer.build_transfer.return_value = SIGNED_TX
        with pytest.raises(TransferFailed):
            asyncio.run(client.transfer(signer, "Dest111", 1000))

    def test_unreadable_transaction_is_a_failure(self, client):
        client._req.side_effect = asyncio.TimeoutError()
        with pytest.raises(TransferFailed):
            asyncio.run(client.transfer(_signer(), "Dest111", 1000))


# =============================================================================
# STATUS / CONFIRMATION
# =============================================================================

class TestSignatureStatus:

    @pytest.mark.parametrize("response,expected", [
        (_status("confirmed"), "confirmed"),
        (_status("finalized"), "confirmed"),
        (_status("processed"), "unknown"),
        (_status("confirmed", err={"x": 1}), "failed"),
        (_rpc_result({"value": [None]}), "unknown"),
    ])
    def test_status(self, client, response, expected):
        client._req.return_value = response
        assert asyncio.run(client.signature_status("sig")) == expected

    def test_confirm_times_out(self, client, monkeypatch):
        import jupiter_client
        monkeypatch.setattr(jupiter_client, "CONFIRM_POLL_INTERVAL_SEC", 0)
        client._req.return_value = _status("processed")
        with pytest.raises(ConfirmTimeout) as exc:
            asyncio.run(client.confirm("sig", timeout=0.05))
        assert exc.value.tx_id == "sig"


# =============================================================================
# BALANCES
# =============================================================================

class TestTokenBalance:

    def _account(self, amount, decimals=6):
        return {"account": {"data": {"parsed": {"info": {"tokenAmount": {
            "amount": str(amount), "decimals": decimals,
        }}}}}}

    def test_sums_token_accounts(self, client):
        client._req.return_value = _rpc_result({"value": [self._account(700), self._account(300)]})
        balance = asyncio.run(client.token_balance("Owner", MINT))
        assert balance.raw == 1000
        assert balance.decimals == 6

    def test_no_account(self, client):
        client._req.return_value = _rpc_result({"value": []})
        assert asyncio.run(client.token_balance("Owner", MINT)) is None

    def test_unknown_mint(self, client):
        client._req.return_value = {"error": {"code": -32602, "message": "Invalid param: could not find mint"}}
        with pytest.raises(MintNotTradable):
            asyncio.run(client.token_balance("Owner", MINT))

#!/usr/bin/env python3
"""Jupiter + Solana RPC client - quotes, swap execution, transfers and balance reads."""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
import base58
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import (
    JUPITER_API_URL,
    DEFAULT_RPC_URL,
    SLIPPAGE_BPS,
    CONFIRM_TIMEOUT_SEC,
    CONFIRM_POLL_INTERVAL_SEC,
    API_MIN_REQUEST_INTERVAL,
    API_RETRY_ATTEMPTS,
    API_RETRY_MIN_WAIT_SEC,
    API_RETRY_MAX_WAIT_SEC,
    API_RETRY_MULTIPLIER,
    HTTP_TIMEOUT_TOTAL_SEC,
    HTTP_TIMEOUT_CONNECT_SEC,
    CONNECTION_POOL_LIMIT,
    DNS_CACHE_TTL_SEC,
    KEEPALIVE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

__all__ = [
    "JupiterClient", "Quote", "SwapResult", "TokenBalance",
    "GatewayError", "JupiterAPIError", "QuoteUnavailable", "RouteTooLarge", "NoRoute",
    "SubmitFailed", "ConfirmTimeout", "TransferFailed", "MintNotTradable",
    "transaction_signature",
]

class GatewayError(Exception):
    """Base class for quote/swap/transfer failures."""


class JupiterAPIError(GatewayError):
    """Non-retryable HTTP error from Jupiter or the RPC node."""
    def __init__(self, status: int, message: str = ""):
        self.status = status
        self.message = message
        super().__init__(f"API error {status}: {message}")


class _TransientHTTPError(JupiterAPIError):
    """429 / 5xx, retried with backoff."""


class QuoteUnavailable(GatewayError):
    """No usable quote this time. Callers treat it as "no data" and move on."""


class RouteTooLarge(GatewayError):
    """Route/transaction too large. Retry once with onlyDirectRoutes."""


class NoRoute(GatewayError):
    pass


class SubmitFailed(GatewayError):
    pass


class ConfirmTimeout(GatewayError):
    """Submitted but not confirmed in time. Outcome unknown, not a failure."""
    def __init__(self, tx_id: str, waited_sec: float = 0):
        self.tx_id = tx_id
        self.waited_sec = waited_sec
        super().__init__(f"Transaction {tx_id} not confirmed after {waited_sec:.0f}s")


class TransferFailed(GatewayError):
    pass


class MintNotTradable(GatewayError):
    """The RPC node does not recognize the mint. Retrying will not help."""


@dataclass
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    only_direct_routes: bool = False
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class SwapResult:
    tx_id: str
    in_amount: int
    out_amount: int     # Quoted output; the chain balance is authoritative
    confirmation: str = "confirmed"


@dataclass
class TokenBalance:
    raw: int
    decimals: int


def _classify_swap_error(message: str) -> GatewayError:
    text = message.lower()
    if "too large" in text or ("exceeds" in text and "size" in text):
        return RouteTooLarge(message)
    if "no route" in text or "could not find any route" in text:
        return NoRoute(message)
    return SubmitFailed(message)


def transaction_signature(signed_tx_b64: str) -> str:
    """
    Signature (transaction id) of a serialized signed transaction.

    Wire format: compact-u16 signature count, then 64-byte signatures;
    the first one identifies the transaction. Raises ValueError if the
    bytes are not a signed transaction.
    """
    raw = base64.b64decode(signed_tx_b64, validate=True)
    count, offset = 0, 0
    for shift in (0, 7, 14):
        if offset >= len(raw):
            raise ValueError("truncated transaction")
        byte = raw[offset]
        offset += 1
        count |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
    if count < 1 or len(raw) < offset + 64:
        raise ValueError("transaction carries no signature")
    signature = raw[offset:offset + 64]
    if not any(signature):
        raise ValueError("transaction is not signed")
    return base58.b58encode(signature).decode("ascii")


class JupiterClient:
    """Async client for the Jupiter swap API and a Solana JSON-RPC node, with retry logic."""

    def __init__(self, rpc_url: str = "", api_url: str = "", slippage_bps: int = SLIPPAGE_BPS):
        self.rpc_url = rpc_url or DEFAULT_RPC_URL
        self.api_url = (api_url or JUPITER_API_URL).rstrip("/")
        self.slippage_bps = slippage_bps
        self.session: Optional[aiohttp.ClientSession] = None
        self.last_request_time = 0.0
        self._rpc_id = 0
        self._request_count = 0
        self._error_count = 0

    async def start(self):
        """Initialize the HTTP session."""
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(
                limit=CONNECTION_POOL_LIMIT,
                ttl_dns_cache=DNS_CACHE_TTL_SEC,
                keepalive_timeout=KEEPALIVE_TIMEOUT_SEC,
            ),
            timeout=aiohttp.ClientTimeout(
                total=HTTP_TIMEOUT_TOTAL_SEC,
                connect=HTTP_TIMEOUT_CONNECT_SEC,
            ),
        )
        logger.info("Jupiter client started (api=%s, rpc=%s)", self.api_url, self.rpc_url)

    async def stop(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            logger.info(f"Jupiter client stopped. Requests: {self._request_count}, Errors: {self._error_count}")

    async def _rate_limit(self):
        """Enforce minimum interval between requests."""
        elapsed = time.time() - self.last_request_time
        if elapsed < API_MIN_REQUEST_INTERVAL:
            await asyncio.sleep(API_MIN_REQUEST_INTERVAL - elapsed)
        self.last_request_time = time.time()

    @retry(
        stop=stop_after_attempt(API_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=API_RETRY_MULTIPLIER,
            min=API_RETRY_MIN_WAIT_SEC,
            max=API_RETRY_MAX_WAIT_SEC,
        ),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, _TransientHTTPError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _req(self, method: str, url: str, params: dict = None, data: dict = None) -> dict:
        """Make an HTTP request with automatic retry on transient failures."""
        await self._rate_limit()
        self._request_count += 1
        try:
            async with self.session.request(method, url, params=params, json=data) as resp:
                if resp.status == 429 or resp.status >= 500:
                    self._error_count += 1
                    body = await resp.text()
                    logger.warning(f"Transient error {resp.status} on {method} {url}: {body[:200]}")
                    raise _TransientHTTPError(resp.status, body[:200])
                if resp.status not in (200, 201):
                    self._error_count += 1
                    body = await resp.text()
                    logger.warning(f"API error {resp.status} on {method} {url}: {body[:200]}")
                    raise JupiterAPIError(resp.status, body[:500])
                return await resp.json()
        except asyncio.TimeoutError:
            self._error_count += 1
            logger.error(f"Timeout on {method} {url}")
            raise
        except aiohttp.ClientError as e:
            self._error_count += 1
            logger.error(f"HTTP error on {method} {url}: {e}")
            raise

    async def _rpc(self, method: str, params: list) -> dict:
        """Solana JSON-RPC call. Returns the full response (caller inspects "error")."""
        self._rpc_id += 1
        return await self._req("POST", self.rpc_url, data={
            "jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params,
        })

    # =========================================================================
    # Quotes
    # =========================================================================

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        only_direct_routes: bool = False,
        restrict_intermediate_tokens: bool = False,
    ) -> Optional[Quote]:
        """Best-effort ExactIn quote. Returns None when no quote is available."""
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": self.slippage_bps,
        }
        if only_direct_routes:
            params["onlyDirectRoutes"] = "true"
        if restrict_intermediate_tokens:
            params["restrictIntermediateTokens"] = "true"
        try:
            data = await self._req("GET", f"{self.api_url}/quote", params=params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Quote request failed after retries: {e}")
            return None
        except JupiterAPIError as e:
            logger.info(f"No quote {input_mint[:6]}->{output_mint[:6]}: {e.message[:120]}")
            return None
        if not data or "error" in data or not data.get("outAmount"):
            return None
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data["outAmount"]),
            only_direct_routes=only_direct_routes,
            raw=data,
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, quote: Quote, signer) -> SwapResult:
        """
        Build, sign, submit and confirm a swap for a quote.

        Raises RouteTooLarge / NoRoute / SubmitFailed on rejection, and
        ConfirmTimeout (carrying the tx id) when the outcome is unknown.
        """
        try:
            data = await self._req("POST", f"{self.api_url}/swap", data={
                "quoteResponse": quote.raw,
                "userPublicKey": signer.public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
            })
        except JupiterAPIError as e:
            raise _classify_swap_error(e.message) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubmitFailed(f"Swap build failed: {e}") from e

        unsigned = data.get("swapTransaction")
        if not unsigned:
            raise _classify_swap_error(str(data.get("error", "swap transaction missing from response")))

        signed = await signer.sign_transaction(unsigned)
        tx_id = await self._send(signed, _classify_swap_error)
        logger.info(f"Swap submitted: {tx_id} ({quote.input_mint[:6]}->{quote.output_mint[:6]})")
        await self.confirm(tx_id, SubmitFailed)
        return SwapResult(tx_id=tx_id, in_amount=quote.in_amount, out_amount=quote.out_amount)

    async def transfer(self, signer, to: str, lamports: int) -> str:
        """Send SOL from the signer's wallet. Raises TransferFailed or ConfirmTimeout."""
        try:
            signed = await signer.build_transfer(to, int(lamports))
        except GatewayError:
            raise
        except Exception as e:
            raise TransferFailed(f"Transfer build failed: {e}") from e
        tx_id = await self._send(signed, TransferFailed)
        logger.info(f"Transfer submitted: {tx_id} ({lamports} lamports -> {to})")
        await self.confirm(tx_id, TransferFailed)
        return tx_id

    async def _send(self, signed_tx_b64: str, error_cls) -> str:
        """
        Submit a signed transaction. Returns its signature.

        A node that answers with an error rejected the transaction
        (error_cls). A transport failure leaves it unknown whether the
        transaction was broadcast, so ConfirmTimeout is raised with the
        signature read from the signed bytes for later reconciliation.
        """
        try:
            data = await self._rpc("sendTransaction", [
                signed_tx_b64,
                {"encoding": "base64", "preflightCommitment": "confirmed"},
            ])
        except (_TransientHTTPError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            try:
                tx_id = transaction_signature(signed_tx_b64)
            except ValueError:
                # Unparseable bytes cannot have been accepted by the cluster
                raise error_cls(f"sendTransaction failed: {e}") from e
            logger.warning(f"sendTransaction outcome unknown for {tx_id}: {e}")
            raise ConfirmTimeout(tx_id) from e
        except JupiterAPIError as e:
            raise error_cls(f"sendTransaction failed: {e}") from e
        if "error" in data:
            message = data["error"].get("message", "unknown error")
            raise error_cls(message)
        tx_id = data.get("result")
        if not tx_id:
            raise error_cls("sendTransaction returned no signature")
        return tx_id

    async def signature_status(self, tx_id: str) -> str:
        """"confirmed", "failed" or "unknown" for a submitted transaction."""
        data = await self._rpc("getSignatureStatuses", [[tx_id], {"searchTransactionHistory": True}])
        statuses = (data.get("result") or {}).get("value") or []
        status = statuses[0] if statuses else None
        if not status:
            return "unknown"
        if status.get("err"):
            return "failed"
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return "confirmed"
        return "unknown"

    async def confirm(self, tx_id: str, error_cls=SubmitFailed, timeout: float = CONFIRM_TIMEOUT_SEC):
        """Poll until confirmed. Raises error_cls on chain failure, ConfirmTimeout on timeout."""
        start = time.monotonic()
        while time.monotonic() - start < timeout:
            try:
                status = await self.signature_status(tx_id)
            except (JupiterAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Status check failed for {tx_id}: {e}")
                status = "unknown"
            if status == "confirmed":
                return
            if status == "failed":
                raise error_cls(f"Transaction {tx_id} failed on-chain")
            await asyncio.sleep(CONFIRM_POLL_INTERVAL_SEC)
        raise ConfirmTimeout(tx_id, time.monotonic() - start)

    # =========================================================================
    # Balances
    # =========================================================================

    async def token_balance(self, owner: str, mint: str) -> Optional[TokenBalance]:
        """Raw token balance of owner for mint, summed over token accounts. None if no account."""
        data = await self._rpc("getTokenAccountsByOwner", [
            owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"},
        ])
        if "error" in data:
            message = data["error"].get("message", "")
            if "could not find mint" in message.lower() or "mint could not be" in message.lower():
                raise MintNotTradable(message)
            raise GatewayError(f"getTokenAccountsByOwner failed: {message}")

        accounts = (data.get("result") or {}).get("value") or []
        if not accounts:
            return None
        raw, decimals = 0, 0
        for acct in accounts:
            info = acct["account"]["data"]["parsed"]["info"]["tokenAmount"]
            raw += int(info["amount"])
            decimals = int(info["decimals"])
        return TokenBalance(raw=raw, decimals=decimals)

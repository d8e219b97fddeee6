#!/usr/bin/env python3
"""
SIGNER — Custody signing service client.

Private keys never live in this process. Every transaction is signed by an
external custody service that holds the trading and payout keys:

    POST {SIGNER_URL}/keys/{key_id}/sign       {"transaction": <b64>}           -> {"signedTransaction": <b64>}
    POST {SIGNER_URL}/keys/{key_id}/transfer   {"to": <addr>, "lamports": <n>}  -> {"signedTransaction": <b64>}
    GET  {SIGNER_URL}/keys/{key_id}                                              -> {"publicKey": <addr>}

Anything with the same three members satisfies the Signer protocol.
"""

import asyncio
import logging
import os
from typing import Optional, Protocol

import aiohttp
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import (
    API_RETRY_ATTEMPTS,
    API_RETRY_MIN_WAIT_SEC,
    API_RETRY_MAX_WAIT_SEC,
    API_RETRY_MULTIPLIER,
    HTTP_TIMEOUT_TOTAL_SEC,
    HTTP_TIMEOUT_CONNECT_SEC,
)

logger = logging.getLogger(__name__)

__all__ = ["Signer", "RemoteSigner", "SignerError"]


class SignerError(Exception):
    """The signing service refused or failed to sign."""


class Signer(Protocol):
    public_key: str

    async def sign_transaction(self, unsigned_tx_b64: str) -> str:
        ...

    async def build_transfer(self, to: str, lamports: int) -> str:
        ...


class RemoteSigner:
    """Signer backed by the custody signing service."""

    def __init__(self, key_id: str, base_url: str = "", api_key: str = "", public_key: str = ""):
        self.key_id = key_id
        self.base_url = (base_url or os.getenv("SIGNER_URL", "")).rstrip("/")
        self.api_key = api_key or os.getenv("SIGNER_API_KEY", "")
        self.public_key = public_key
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        self.session = aiohttp.ClientSession(
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=aiohttp.ClientTimeout(
                total=HTTP_TIMEOUT_TOTAL_SEC,
                connect=HTTP_TIMEOUT_CONNECT_SEC,
            ),
        )
        if not self.public_key:
            data = await self._req("GET", f"/keys/{self.key_id}")
            self.public_key = data["publicKey"]
        logger.info("Signer %s ready (%s)", self.key_id, self.public_key)

    async def stop(self):
        if self.session:
            await self.session.close()

    @retry(
        stop=stop_after_attempt(API_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=API_RETRY_MULTIPLIER,
            min=API_RETRY_MIN_WAIT_SEC,
            max=API_RETRY_MAX_WAIT_SEC,
        ),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _req(self, method: str, path: str, data: dict = None) -> dict:
        async with self.session.request(method, f"{self.base_url}{path}", json=data) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise SignerError(f"Signer {self.key_id} {method} {path} -> {resp.status}: {body[:200]}")
            return await resp.json()

    async def sign_transaction(self, unsigned_tx_b64: str) -> str:
        data = await self._req("POST", f"/keys/{self.key_id}/sign", {"transaction": unsigned_tx_b64})
        return data["signedTransaction"]

    async def build_transfer(self, to: str, lamports: int) -> str:
        data = await self._req("POST", f"/keys/{self.key_id}/transfer", {"to": to, "lamports": int(lamports)})
        return data["signedTransaction"]

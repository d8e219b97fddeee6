#!/usr/bin/env python3
"""Tests for signer.py — RemoteSigner request shapes."""

import asyncio
from unittest.mock import AsyncMock

from signer import RemoteSigner


def _signer():
    s = RemoteSigner("trading", base_url="https://signer.test/", api_key="k" * 32, public_key="Pub111")
    s._req = AsyncMock(return_value={"signedTransaction": "signed"})
    return s


class TestRemoteSigner:

    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("SIGNER_URL", "https://signer.env/")
        monkeypatch.setenv("SIGNER_API_KEY", "env-key")
        s = RemoteSigner("payout")
        assert s.base_url == "https://signer.env"
        assert s.api_key == "env-key"

    def test_sign_transaction(self):
        s = _signer()
        assert asyncio.run(s.sign_transaction("unsigned")) == "signed"
        s._req.assert_awaited_once_with("POST", "/keys/trading/sign", {"transaction": "unsigned"})

    def test_build_transfer(self):
        s = _signer()
        assert asyncio.run(s.build_transfer("Dest", 1000.0)) == "signed"
        s._req.assert_awaited_once_with("POST", "/keys/trading/transfer", {"to": "Dest", "lamports": 1000})

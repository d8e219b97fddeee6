#!/usr/bin/env python3
"""Tests for deposits.py — memo attribution and exactly-once crediting."""

import pytest

from conftest import WALLET
from deposits import DepositProcessor, parse_deposit_memo

STRANGER = "StrangerEEEEEEEEEEEEEEEEEEEEEEEEEEEEEEEEEEE"


@pytest.fixture
def processor(ledger):
    ledger.open_account(WALLET)
    return DepositProcessor(ledger)


class TestParseMemo:

    @pytest.mark.parametrize("memo,expected", [
        (f"DEPOSIT:{WALLET}", WALLET),
        (f"  DEPOSIT: {WALLET} ", WALLET),
        ("DEPOSIT:", None),
        ("deposit:abc", None),
        ("hello", None),
        ("", None),
        (None, None),
    ])
    def test_parse(self, memo, expected):
        assert parse_deposit_memo(memo) == expected


class TestRecordDetected:

    def test_memo_matching_sender_is_attributed(self, processor, ledger, events):
        assert processor.record_detected_deposit("sig1", WALLET, 1.25, memo=f"DEPOSIT:{WALLET}", slot=42)
        deposit = ledger.get_deposit("sig1")
        assert deposit["creditedWallet"] == WALLET
        assert deposit["status"] == "detected"
        assert deposit["slot"] == 42
        assert events[-1]["event"] == "deposit_detected"

    def test_memo_for_other_wallet_is_not_attributed(self, processor, ledger):
        processor.record_detected_deposit("sig1", STRANGER, 1.0, memo=f"DEPOSIT:{WALLET}")
        assert ledger.get_deposit("sig1")["creditedWallet"] is None

    def test_missing_memo_is_not_attributed(self, processor, ledger):
        processor.record_detected_deposit("sig1", WALLET, 1.0)
        assert ledger.get_deposit("sig1")["creditedWallet"] is None

    def test_known_signature_is_ignored(self, processor, events):
        memo = f"DEPOSIT:{WALLET}"
        assert processor.record_detected_deposit("sig1", WALLET, 1.0, memo=memo) is True
        assert processor.record_detected_deposit("sig1", WALLET, 1.0, memo=memo) is False
        assert [e["event"] for e in events].count("deposit_detected") == 1


class TestCredit:

    def test_credit_once(self, processor, ledger, events):
        assert processor.credit("sig1", WALLET, 2.5) is True
        assert processor.credit("sig1", WALLET, 2.5) is False
        assert ledger.get_account(WALLET)["availableBalance"] == 2.5
        assert [e["event"] for e in events].count("deposit_credited") == 1

    def test_no_account_is_unresolved(self, processor, ledger, events):
        assert processor.credit("sig1", STRANGER, 1.0) is False
        assert ledger.get_deposit("sig1")["status"] == "detected"
        assert events[-1]["event"] == "deposit_unresolved"

    def test_unattributed_deposit_cannot_be_claimed(self, processor, ledger, events):
        processor.record_detected_deposit("sig1", STRANGER, 1.0, memo="gift")
        assert processor.credit("sig1", WALLET, 5.0) is False
        assert processor.credit("sig1", WALLET, 1.0) is False
        assert ledger.get_account(WALLET)["availableBalance"] == 0.0
        assert ledger.get_deposit("sig1")["status"] == "detected"
        assert events[-1]["reason"] == "DepositMismatch"

    def test_custody_cap_holds_deposit_back(self, processor, ledger, events):
        assert processor.credit("sig1", WALLET, 45.0) is True
        assert processor.credit("sig2", WALLET, 6.0) is False
        assert ledger.get_account(WALLET)["availableBalance"] == 45.0
        assert ledger.get_deposit("sig2")["status"] == "detected"
        assert events[-1]["reason"] == "DepositOverCap"


class TestProcessPending:

    def test_batch_credits_attributable_deposits(self, processor, ledger):
        memo = f"DEPOSIT:{WALLET}"
        processor.record_detected_deposit("sig1", WALLET, 1.0, memo=memo)
        processor.record_detected_deposit("sig2", WALLET, 0.5, memo=memo)
        processor.record_detected_deposit("sig3", STRANGER, 9.0, memo="gift")

        counts = processor.process_pending()

        assert counts == {"credited": 2, "skipped": 0, "unresolved": 1}
        assert ledger.get_account(WALLET)["availableBalance"] == 1.5
        assert ledger.get_deposit("sig3")["status"] == "detected"

    def test_second_run_credits_nothing(self, processor, ledger):
        processor.record_detected_deposit("sig1", WALLET, 1.0, memo=f"DEPOSIT:{WALLET}")
        processor.process_pending()
        counts = processor.process_pending()
        assert counts["credited"] == 0
        assert ledger.get_account(WALLET)["availableBalance"] == 1.0

    def test_owner_without_account_stays_detected(self, processor, ledger):
        processor.record_detected_deposit("sig1", STRANGER, 1.0, memo=f"DEPOSIT:{STRANGER}")
        counts = processor.process_pending()
        assert counts == {"credited": 0, "skipped": 0, "unresolved": 1}
        assert ledger.get_deposit("sig1")["status"] == "detected"

    def test_limit(self, processor, ledger):
        memo = f"DEPOSIT:{WALLET}"
        for i in range(5):
            processor.record_detected_deposit(f"sig{i}", WALLET, 0.1, memo=memo)
        assert processor.process_pending(limit=2)["credited"] == 2
        assert len(ledger.list_deposits(status="detected")) == 3

#!/usr/bin/env python3
"""
PREFLIGHT — Startup environment validation.

Call preflight_check() before any money moves to catch misconfiguration
early. Validates:
  1. .env file exists
  2. RPC_URL is set and looks like an http(s) URL
  3. SIGNER_URL and SIGNER_API_KEY are set (custody signing service)
  4. The ledger file (LEDGER_PATH) is writable
  5. FEE_WALLET is set (warning-only: only fee sweeps need it)
  6. Kill switch is not engaged (warning-only)

Usage:
    from preflight import preflight_check
    preflight_check()  # Raises SystemExit on critical failure

    # Or non-fatal:
    ok, issues = preflight_check(fatal=False)
"""

import os
from pathlib import Path

from config import LEDGER_FILE
from log_setup import get_logger
from trade_events import TradeEvent, log_event
from trading_guards import check_kill_switch

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent


def preflight_check(fatal: bool = True, ledger_path: Path | None = None) -> tuple:
    """Validate environment before trading or paying out.

    Args:
        fatal: If True (default), raises SystemExit on critical failure.
               If False, returns (ok: bool, issues: list[str]).

    Returns:
        (True, [warnings]) if all checks pass.
        (False, [issues + warnings]) if any check fails.
    """
    issues = []
    warnings = []

    # ── 1. .env file exists ──
    env_path = PROJECT_ROOT / ".env"
    if not env_path.exists():
        issues.append(f".env file not found at {env_path}")

    # ── 2. RPC endpoint ──
    rpc_url = os.getenv("RPC_URL", "")
    if not rpc_url:
        issues.append("RPC_URL not set in environment")
    elif not rpc_url.startswith(("http://", "https://")):
        issues.append(f"RPC_URL does not look like an http(s) URL: {rpc_url[:40]}")

    # ── 3. Signing service ──
    if not os.getenv("SIGNER_URL", ""):
        issues.append("SIGNER_URL not set in environment")
    api_key = os.getenv("SIGNER_API_KEY", "")
    if not api_key:
        issues.append("SIGNER_API_KEY not set in environment")
    elif len(api_key) < 16:
        warnings.append(f"SIGNER_API_KEY looks short ({len(api_key)} chars)")

    # ── 4. Ledger writable ──
    ledger_file = Path(ledger_path) if ledger_path else LEDGER_FILE
    if not os.access(ledger_file.parent, os.W_OK):
        issues.append(f"Cannot write to ledger directory: {ledger_file.parent}")
    elif ledger_file.exists() and not os.access(ledger_file, os.W_OK):
        issues.append(f"{ledger_file.name} exists but is not writable")

    # ── 5. Fee wallet (warning only) ──
    if not os.getenv("FEE_WALLET", ""):
        warnings.append("FEE_WALLET not set, fee sweeps are disabled")

    # ── 6. Kill switch (warning only) ──
    ok, reason = check_kill_switch()
    if not ok:
        warnings.append(reason)

    if warnings:
        for w in warnings:
            logger.warning(f"PREFLIGHT WARNING: {w}")

    if issues:
        for issue in issues:
            logger.error(f"PREFLIGHT FAILED: {issue}")
        log_event(TradeEvent.PREFLIGHT_FAILED, "preflight", {"issues": issues})
        if fatal:
            print(f"\n  ✗ PREFLIGHT CHECK FAILED ({len(issues)} issue(s)):")
            for issue in issues:
                print(f"    • {issue}")
            for w in warnings:
                print(f"    ⚠ {w}")
            raise SystemExit(1)
        return False, issues + [f"WARNING: {w}" for w in warnings]

    logger.info("Preflight check passed (%d warnings)", len(warnings))
    return True, [f"WARNING: {w}" for w in warnings]


if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv(PROJECT_ROOT / ".env")

    ok, issues = preflight_check(fatal=False)
    print(f"\n  PREFLIGHT CHECK {'PASSED ✓' if ok else 'FAILED ✗'}")
    if issues:
        for i in issues:
            print(f"    • {i}")
    else:
        print("    All checks passed")

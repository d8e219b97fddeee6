#!/usr/bin/env python3
"""
TRAIL CUSTODY v1.0 - Configuration Constants

Centralized configuration for fees, custody limits, monitor timing and
HTTP settings. Single source of truth for every module.

Deployment values (RPC endpoint, signer service, slippage) come from the
environment; entry scripts call load_dotenv() before importing clients.
"""

import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent

# =============================================================================
# SOLANA / JUPITER
# =============================================================================

SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000

JUPITER_API_URL = os.getenv("JUPITER_API_URL", "https://lite-api.jup.ag/swap/v1")
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"

# Slippage tolerance for every swap quote (100 bps = 1%)
SLIPPAGE_BPS = int(os.getenv("SLIPPAGE_BPS", "100"))

# Price reference quote: metric = PRICE_REFERENCE_LAMPORTS / outAmount
PRICE_REFERENCE_LAMPORTS = LAMPORTS_PER_SOL

# Confirmation polling for submitted transactions
CONFIRM_TIMEOUT_SEC = 60
CONFIRM_POLL_INTERVAL_SEC = 2

# =============================================================================
# FEES
# =============================================================================

BUY_FEE_PCT = 0.2             # Entry fee, % of trade size
SELL_FEE_PCT = 1.0            # Exit fee, % of sell proceeds
WITHDRAW_FEE_PCT = 1.0        # Withdrawal fee, % of requested amount
WITHDRAW_FEE_MIN_SOL = 0.005  # Withdrawal fee floor

# Wallet that receives swept platform fees
FEE_WALLET = os.getenv("FEE_WALLET", "")

# =============================================================================
# CUSTODY LIMITS
# =============================================================================

MIN_WITHDRAW_SOL = 0.02
WITHDRAW_COOLDOWN_SEC = 3600  # One withdrawal per wallet per hour
MAX_DEPOSIT_SOL = 50.0        # Deposits are not credited past this total balance per wallet

# SOL amounts are rounded to lamport precision on every ledger mutation
SOL_DECIMALS = 9

DEPOSIT_MEMO_PREFIX = "DEPOSIT:"
DEPOSIT_BATCH_LIMIT = 20

# =============================================================================
# POSITION MONITOR
# =============================================================================

POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "15"))

# After the buy lands, wait before the first balance read
ENTRY_SETTLE_DELAY_SEC = 5
BALANCE_READ_ATTEMPTS = 6
BALANCE_READ_DELAY_SEC = 3

# =============================================================================
# TRADE DEFAULTS & GUARDS
# =============================================================================

DEFAULT_STOP_LOSS_PCT = 20.0
DEFAULT_TRAILING_TRIGGER_PCT = 10.0
DEFAULT_TRAILING_DISTANCE_PCT = 5.0

MIN_TRADE_SOL = 0.01
MAX_TRADE_SOL = 50.0
MAX_OPEN_POSITIONS_PER_WALLET = 10
MAX_TP_STAGES = 5

# =============================================================================
# API SETTINGS
# =============================================================================

# Minimum seconds between API requests
API_MIN_REQUEST_INTERVAL = 0.1  # 10 requests/sec max

# Retry configuration
API_RETRY_ATTEMPTS = 3
API_RETRY_MIN_WAIT_SEC = 1
API_RETRY_MAX_WAIT_SEC = 10
API_RETRY_MULTIPLIER = 2  # Exponential backoff multiplier

# HTTP timeouts
HTTP_TIMEOUT_TOTAL_SEC = 15
HTTP_TIMEOUT_CONNECT_SEC = 3

# Connection pool settings
CONNECTION_POOL_LIMIT = 10
DNS_CACHE_TTL_SEC = 300
KEEPALIVE_TIMEOUT_SEC = 120

# =============================================================================
# FILE PATHS
# =============================================================================

LEDGER_FILE = Path(os.getenv("LEDGER_PATH", str(PROJECT_ROOT / "ledger.json")))
LOCK_TIMEOUT_SEC = 10  # Max seconds to wait for the ledger file lock

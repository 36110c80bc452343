"""
Policy constants shared across smaug components.
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# Ledger amounts are expressed in millisatoshis
MSAT_PER_SAT = 1000

# Address lookahead kept beyond the highest used index on each chain
DEFAULT_GAP_LIMIT = 20

# Upper bounds accepted for user supplied parameters
MAX_BIRTHDAY = 4_294_967_295
MAX_GAP_LIMIT = 2_147_483_647

# Spent UTXOs are dropped once their spend is buried this deep
DEFAULT_CONFIRMATION_DEPTH = 6

# Number of recent block deltas kept for reorg rewinds
DEFAULT_REORG_SAFETY_DEPTH = 100

# Seconds between chain tip polls
DEFAULT_POLL_INTERVAL = 10.0

# Block ranges longer than this are narrowed with compact block filters
DEFAULT_FILTER_SCAN_THRESHOLD = 12

# Exponential backoff for retried chain source failures
BACKOFF_BASE_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0

# Subdirectory of the per-network data directory holding wallet stores
SMAUG_DATADIR = ".smaug"
STORE_SUFFIX = ".db"

ACCOUNT_PREFIX = "smaug:"
EXTERNAL_ACCOUNT = "external"

# Maximum height range handed to a single compact-filter scan
FILTER_SCAN_CHUNK = 10_000

# Blocks without wallet activity are persisted at most this often
CHECKPOINT_INTERVAL = 100

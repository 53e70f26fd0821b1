GAS_BUFFER_MULTIPLIER = 1.2
SUGGESTED_PRIORITY_FEE_MULTIPLIER = 1.5
SUGGESTED_GAS_PRICE_MULTIPLIER = 1.5
MAX_BASE_FEE_GROWTH_MULTIPLIER = 2

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Timeout constants (seconds)
DEFAULT_HTTP_TIMEOUT = 30.0
# Receipt waits escalate per attempt; a slow transaction is not a failed one.
DEFAULT_CONFIRMATION_TIMEOUTS = (60, 120, 240)
DEFAULT_RECEIPT_POLL_INTERVAL = 2.0

BASIS_POINTS_DENOMINATOR = 10_000
DEFAULT_FEE_BASIS_POINTS = 50

# Market data
DEFAULT_YIELDS_API_URL = "https://yields.llama.fi"
DEFAULT_MARKET_CHAIN = "Ethereum"
DEX_MIN_TVL_USD = 1_000_000
LOW_TVL_THRESHOLD_USD = 1_000_000
HIGH_TVL_THRESHOLD_USD = 100_000_000

# Chain event watcher
WATCHER_RECONNECT_DELAY_S = 5.0
WATCHER_POLL_INTERVAL_S = 4.0
WATCHER_MAX_BLOCK_RANGE = 2_000
WATCHER_LOG_CONCURRENCY = 8

OPTIONS_SYNC_INTERVAL_S = 5 * 60

UNKNOWN_PROTOCOL = "Unknown"
UNKNOWN_TOKEN_SYMBOL = "UNKNOWN"
DEFAULT_TOKEN_DECIMALS = 18

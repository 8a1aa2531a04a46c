CHAIN_IDS = {
    "ethereum": 1,
    "polygon": 137,
    "base": 8453,
}

DEFAULT_CHAIN = "polygon"

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

CHAIN_SCAN_KEY_ENVS = {
    "ethereum": "ETHERSCAN_API_KEY",
    "polygon": "POLYGONSCAN_API_KEY",
    "base": "BASESCAN_API_KEY",
}

CHAIN_SCAN_BASE_ENVS = {
    "ethereum": "ETHERSCAN_API_BASE_URL",
    "polygon": "POLYGONSCAN_API_BASE_URL",
    "base": "BASESCAN_API_BASE_URL",
}

CHAIN_SCAN_BASE_DEFAULTS = {
    "ethereum": "https://api.etherscan.io/api",
    "polygon": "https://api.polygonscan.com/api",
    "base": "https://api.basescan.org/api",
}

ETHERSCAN_V2_API_URL = "https://api.etherscan.io/v2/api"

# (list env, single-url envs...) per chain, in failover order
CHAIN_RPC_ENVS = {
    "ethereum": ("ETHEREUM_RPC_LIST", "ETHEREUM_RPC", "ETH_RPC"),
    "polygon": ("POLYGON_RPC_LIST", "POLYGON_RPC"),
    "base": ("BASE_RPC_LIST", "BASE_RPC"),
}

PUBLIC_RPC_FALLBACKS = {
    "base": ("https://mainnet.base.org",),
}

DEFAULT_STABLE_TOKEN = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"  # USDC.e on Polygon
DEFAULT_PAIR_ADDRESS = "0xd093a031df30f186976a1e2936b16d95ca7919d6"
DEFAULT_TOKEN_DECIMALS = 6

INDEXER_PAGE_SIZE = 1_000
RUN_HISTORY_LIMIT = 500

POOL_FILE = "pool_volume.json"
CHECKPOINT_FILE = "pool_volume_checkpoint.json"
RUNS_FILE = "pool_volume_runs.json"
ALERT_FILE = "pool_volume_alert.json"

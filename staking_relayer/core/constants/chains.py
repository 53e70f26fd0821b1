CHAIN_ID_ETHEREUM = 1
CHAIN_ID_SEPOLIA = 11155111
CHAIN_ID_HARDHAT = 31337

NETWORK_TO_CHAIN_ID = {
    "ethereum": CHAIN_ID_ETHEREUM,
    "mainnet": CHAIN_ID_ETHEREUM,
    "sepolia": CHAIN_ID_SEPOLIA,
    "localhost": CHAIN_ID_HARDHAT,
    "hardhat": CHAIN_ID_HARDHAT,
}

DEFAULT_NETWORK = "sepolia"

# Chains that still price gas with a legacy gasPrice field.
PRE_EIP_1559_CHAIN_IDS: set[int] = {CHAIN_ID_HARDHAT}


def chain_id_for_network(network: str) -> int:
    key = str(network).strip().lower()
    if key not in NETWORK_TO_CHAIN_ID:
        raise ValueError(f"Unknown network: {network}")
    return NETWORK_TO_CHAIN_ID[key]

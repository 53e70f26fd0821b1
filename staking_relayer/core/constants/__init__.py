from staking_relayer.core.constants.base import ZERO_ADDRESS
from staking_relayer.core.constants.chains import (
    CHAIN_ID_SEPOLIA,
    DEFAULT_NETWORK,
    chain_id_for_network,
)

__all__ = [
    "CHAIN_ID_SEPOLIA",
    "DEFAULT_NETWORK",
    "ZERO_ADDRESS",
    "chain_id_for_network",
]

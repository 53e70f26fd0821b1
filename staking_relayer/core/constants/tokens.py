from __future__ import annotations

from dataclasses import dataclass

from staking_relayer.core.constants.base import ZERO_ADDRESS


@dataclass(frozen=True)
class TokenMetadata:
    symbol: str
    decimals: int


NATIVE_TOKEN_SYMBOL = "ETH"
WRAPPED_NATIVE_SYMBOL = "WETH"

# Test tokens deployed alongside the Sepolia router.
SEPOLIA_TOKENS: dict[str, TokenMetadata] = {
    ZERO_ADDRESS: TokenMetadata(NATIVE_TOKEN_SYMBOL, 18),
    "0x0fe44892c3279c09654f3590cf6cedac3fc3ccdc": TokenMetadata("WETH", 18),
    "0x8762c93f84dcb6f9782602d842a587409b7cf6cd": TokenMetadata("WBTC", 8),
    "0xd28824f4515fa0fedd052ea70369ea6175a4e18b": TokenMetadata("USDC", 6),
}

TOKENS_BY_NETWORK: dict[str, dict[str, TokenMetadata]] = {
    "sepolia": SEPOLIA_TOKENS,
}

# Used when a configured token address is missing from the static table.
KNOWN_SYMBOL_DECIMALS: dict[str, int] = {
    "ETH": 18,
    "WETH": 18,
    "WBTC": 8,
    "USDC": 6,
}

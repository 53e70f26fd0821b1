from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from staking_relayer.core.constants.base import (
    DEFAULT_TOKEN_DECIMALS,
    UNKNOWN_TOKEN_SYMBOL,
    ZERO_ADDRESS,
)
from staking_relayer.core.constants.tokens import (
    KNOWN_SYMBOL_DECIMALS,
    NATIVE_TOKEN_SYMBOL,
    TOKENS_BY_NETWORK,
    TokenMetadata,
)

NATIVE_TOKEN_ADDRESSES: set[str] = {
    ZERO_ADDRESS,
    "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
}

UNKNOWN_TOKEN = TokenMetadata(UNKNOWN_TOKEN_SYMBOL, DEFAULT_TOKEN_DECIMALS)


def is_native_token(token_address: str | None) -> bool:
    if token_address is None:
        return True
    normalized = str(token_address).strip().lower()
    if normalized in ("", "native"):
        return True
    return normalized in NATIVE_TOKEN_ADDRESSES


def is_native_symbol(symbol: str) -> bool:
    return str(symbol).strip().upper() == NATIVE_TOKEN_SYMBOL


class TokenTable:
    """Static address -> (symbol, decimals) lookup for one network.

    Seeded from the built-in table and extended with configured token
    addresses. Lookups never fail: unknown addresses resolve to
    ``UNKNOWN``/18 so an event is still recorded.
    """

    def __init__(
        self, network: str, configured: Mapping[str, str] | None = None
    ) -> None:
        self.network = network
        self._by_address: dict[str, TokenMetadata] = dict(
            TOKENS_BY_NETWORK.get(network, {})
        )
        self._by_address.setdefault(
            ZERO_ADDRESS, TokenMetadata(NATIVE_TOKEN_SYMBOL, 18)
        )
        for symbol, address in (configured or {}).items():
            addr = str(address or "").strip().lower()
            if not addr or addr in self._by_address:
                continue
            sym = str(symbol).strip().upper()
            decimals = KNOWN_SYMBOL_DECIMALS.get(sym)
            if decimals is None:
                logger.warning(
                    f"Configured token {sym} ({addr}) on {network} has no known "
                    "decimals; its router events will be recorded as "
                    f"{UNKNOWN_TOKEN_SYMBOL}"
                )
                continue
            self._by_address[addr] = TokenMetadata(sym, decimals)

    def resolve(self, token_address: str | None) -> TokenMetadata:
        if is_native_token(token_address):
            return self._by_address[ZERO_ADDRESS]
        return self._by_address.get(str(token_address).strip().lower(), UNKNOWN_TOKEN)

    def decimals_for(self, token_address: str | None) -> int | None:
        meta = self.resolve(token_address)
        return None if meta is UNKNOWN_TOKEN else meta.decimals

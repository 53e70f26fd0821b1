from loguru import logger

from staking_relayer.core.constants.base import ZERO_ADDRESS
from staking_relayer.core.utils.tokens import (
    UNKNOWN_TOKEN,
    TokenTable,
    is_native_symbol,
    is_native_token,
)

SEPOLIA_WBTC = "0x8762c93f84dcB6f9782602D842a587409b7Cf6cd"


def test_is_native_token():
    assert is_native_token(None)
    assert is_native_token(ZERO_ADDRESS)
    assert is_native_token("native")
    assert not is_native_token(SEPOLIA_WBTC)


def test_is_native_symbol():
    assert is_native_symbol("eth")
    assert not is_native_symbol("WETH")


def test_static_table_resolves_case_insensitively():
    table = TokenTable("sepolia")
    meta = table.resolve(SEPOLIA_WBTC)
    assert meta.symbol == "WBTC"
    assert meta.decimals == 8
    assert table.resolve(ZERO_ADDRESS).symbol == "ETH"


def test_unknown_token_defaults_to_18_decimals():
    table = TokenTable("sepolia")
    meta = table.resolve("0x9999999999999999999999999999999999999999")
    assert meta is UNKNOWN_TOKEN
    assert meta.symbol == "UNKNOWN"
    assert meta.decimals == 18
    assert table.decimals_for("0x9999999999999999999999999999999999999999") is None


def test_configured_tokens_extend_table():
    usdc = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
    table = TokenTable("ethereum", {"usdc": usdc})
    assert table.resolve(usdc.lower()).symbol == "USDC"
    assert table.resolve(usdc).decimals == 6


def test_configured_token_without_known_decimals_warns():
    dai = "0x4444444444444444444444444444444444444444"
    messages = []
    sink_id = logger.add(messages.append, level="WARNING")
    try:
        table = TokenTable("sepolia", {"DAI": dai})
    finally:
        logger.remove(sink_id)

    assert table.resolve(dai) is UNKNOWN_TOKEN
    assert table.decimals_for(dai) is None
    assert any("DAI" in str(m) for m in messages)

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from eth_utils import is_address, to_checksum_address

from staking_relayer.core.constants.base import (
    DEFAULT_MARKET_CHAIN,
    DEFAULT_YIELDS_API_URL,
    ZERO_ADDRESS,
)
from staking_relayer.core.constants.chains import (
    CHAIN_ID_SEPOLIA,
    DEFAULT_NETWORK,
    chain_id_for_network,
)
from staking_relayer.core.errors import ConfigurationError

_CONFIG_ENV_KEYS = ("STAKING_RELAYER_CONFIG_PATH", "STAKING_RELAYER_CONFIG")
_DEFAULT_CONFIG_FILENAME = "config.json"
_DEFAULT_DATA_DIR = ".relayer"
_ADAPTER_ENV_PREFIX = "ADAPTER_"
_TOKEN_ENV_SUFFIX = "_TOKEN"


def _find_project_root(start: Path) -> Path | None:
    cur = start.resolve()
    for parent in [cur, *cur.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return None


def _project_root() -> Path | None:
    return _find_project_root(Path.cwd()) or _find_project_root(Path(__file__).parent)


def resolve_config_path(
    path: str | Path | None = None, *, env: Mapping[str, str] | None = None
) -> Path:
    if path is not None:
        return Path(path).expanduser()

    env = os.environ if env is None else env
    env_path = next(
        (env.get(k, "").strip() for k in _CONFIG_ENV_KEYS if env.get(k)), ""
    )
    if env_path:
        p = Path(env_path).expanduser()
        if p.is_absolute():
            return p
        root = _project_root()
        return (root / p) if root else p

    root = _project_root()
    return (root / _DEFAULT_CONFIG_FILENAME) if root else Path(_DEFAULT_CONFIG_FILENAME)


def load_config_json(
    path: str | Path | None = None,
    *,
    require_exists: bool = False,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    cfg_path = resolve_config_path(path, env=env)
    if not cfg_path.exists():
        if require_exists:
            raise FileNotFoundError(f"Config file not found: {cfg_path}")
        return {}
    try:
        data = json.loads(cfg_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {cfg_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be an object: {cfg_path}")
    return data


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_address(value: Any) -> str | None:
    """Checksum an address, treating blanks and the zero address as absent."""
    text = _clean(value)
    if text is None or not is_address(text):
        return None
    if text.lower() == ZERO_ADDRESS:
        return None
    return to_checksum_address(text)


@dataclass(frozen=True)
class RelayerConfig:
    network: str = DEFAULT_NETWORK
    chain_id: int = CHAIN_ID_SEPOLIA
    rpc_url: str | None = None
    router_address: str | None = None
    relayer_private_key: str | None = field(default=None, repr=False)
    # adapter key (e.g. "uniswap") -> raw configured address, possibly blank
    adapters: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    # token symbol (upper case) -> ERC-20 address on the active network
    tokens: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    data_dir: Path = Path(_DEFAULT_DATA_DIR)
    yields_api_url: str = DEFAULT_YIELDS_API_URL
    market_chain: str = DEFAULT_MARKET_CHAIN

    @property
    def ledger_db_path(self) -> Path:
        return self.data_dir / "ledger.db"

    @property
    def queue_db_path(self) -> Path:
        return self.data_dir / "queue.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    def token_address(self, symbol: str) -> str | None:
        return normalize_address(self.tokens.get(str(symbol).strip().upper()))

    def require_rpc_url(self) -> str:
        if not self.rpc_url:
            raise ConfigurationError(
                f"No RPC URL configured for network {self.network} "
                f"(set RPC_URL_{self.network.upper()} or rpc_urls.{self.network})"
            )
        return self.rpc_url

    def require_router_address(self) -> str:
        address = normalize_address(self.router_address)
        if address is None:
            raise ConfigurationError(
                "STAKING_ROUTER_ADDRESS is missing or not a valid address"
            )
        return address

    def require_private_key(self) -> str:
        if not self.relayer_private_key:
            raise ConfigurationError(
                "No relayer signing key configured (PRIVATE_KEY_RELAYER)"
            )
        return self.relayer_private_key


def _adapters_from(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, str]:
    adapters = {
        str(k).strip().lower(): str(v or "").strip()
        for k, v in (raw.get("adapters") or {}).items()
    }
    for key, value in env.items():
        if key.startswith(_ADAPTER_ENV_PREFIX) and len(key) > len(_ADAPTER_ENV_PREFIX):
            adapters[key[len(_ADAPTER_ENV_PREFIX) :].lower()] = value.strip()
    return adapters


def _tokens_from(
    raw: dict[str, Any], env: Mapping[str, str], network: str
) -> dict[str, str]:
    by_network = raw.get("tokens") or {}
    tokens = {
        str(sym).strip().upper(): str(addr or "").strip()
        for sym, addr in (by_network.get(network) or {}).items()
    }
    prefix = f"{network.upper()}_"
    for key, value in env.items():
        if key.startswith(prefix) and key.endswith(_TOKEN_ENV_SUFFIX):
            symbol = key[len(prefix) : -len(_TOKEN_ENV_SUFFIX)]
            if symbol:
                tokens[symbol.upper()] = value.strip()
    return tokens


def load_relayer_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    require_exists: bool = False,
) -> RelayerConfig:
    """Build the immutable relayer configuration.

    ``config.json`` supplies defaults; environment variables win. The result is
    captured once and passed explicitly to every component.
    """
    env = dict(os.environ if env is None else env)
    raw = load_config_json(path, require_exists=require_exists, env=env)

    network = (
        _clean(env.get("ACTIVE_NETWORK")) or _clean(raw.get("network")) or DEFAULT_NETWORK
    ).lower()
    try:
        chain_id = int(raw.get("chain_id") or chain_id_for_network(network))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

    rpc_urls = raw.get("rpc_urls") or {}
    rpc_url = (
        _clean(env.get(f"RPC_URL_{network.upper()}"))
        or _clean(env.get("RPC_URL"))
        or _clean(rpc_urls.get(network))
    )
    data_dir = (
        _clean(env.get("STAKING_RELAYER_DATA_DIR"))
        or _clean(raw.get("data_dir"))
        or _DEFAULT_DATA_DIR
    )

    return RelayerConfig(
        network=network,
        chain_id=chain_id,
        rpc_url=rpc_url,
        router_address=_clean(env.get("STAKING_ROUTER_ADDRESS"))
        or _clean(raw.get("router_address")),
        relayer_private_key=_clean(env.get("PRIVATE_KEY_RELAYER"))
        or _clean(env.get("PRIVATE_KEY"))
        or _clean(raw.get("relayer_private_key")),
        adapters=MappingProxyType(_adapters_from(raw, env)),
        tokens=MappingProxyType(_tokens_from(raw, env, network)),
        data_dir=Path(data_dir).expanduser(),
        yields_api_url=_clean(raw.get("yields_api_url")) or DEFAULT_YIELDS_API_URL,
        market_chain=_clean(raw.get("market_chain")) or DEFAULT_MARKET_CHAIN,
    )

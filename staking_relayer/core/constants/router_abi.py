from __future__ import annotations

from typing import Any

# Minimal ABI for the StakingRouter (events consumed by the watcher, calls made
# by the execution gateway).

STAKING_ROUTER_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "Staked",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "adapter", "type": "address", "indexed": True},
            {"name": "fee", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Unstaked",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "adapter", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "function",
        "name": "stake",
        "stateMutability": "payable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "adapter", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "unstake",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "adapter", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "feeBasisPoints",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"type": "uint256"}],
    },
    {
        "type": "function",
        "name": "feeRecipient",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"type": "address"}],
    },
    {
        "type": "function",
        "name": "supportedAdapters",
        "stateMutability": "view",
        "inputs": [{"name": "adapter", "type": "address"}],
        "outputs": [{"type": "bool"}],
    },
]

STAKED_EVENT = "Staked"
UNSTAKED_EVENT = "Unstaked"

"""Entry point for the staking relayer.

Usage:
  python -m staking_relayer.relayerd start
  python -m staking_relayer.relayerd options
"""

from __future__ import annotations

from staking_relayer.relayer.cli import relayer_cli


def main() -> None:
    relayer_cli(standalone_mode=True)


if __name__ == "__main__":
    main()

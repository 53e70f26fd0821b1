from __future__ import annotations


class RelayerError(Exception):
    """Base class for errors surfaced to a caller of the relayer."""


class ValidationError(RelayerError):
    pass


class OptionNotFoundError(RelayerError):
    def __init__(self, option_id: str):
        self.option_id = option_id
        super().__init__(f"Staking option not found or inactive: {option_id}")


class ConfigurationError(RelayerError):
    pass


class UnsupportedAdapterError(RelayerError):
    def __init__(self, adapter_address: str):
        self.adapter_address = adapter_address
        super().__init__(f"Adapter not supported by router: {adapter_address}")


class SubmissionError(RelayerError):
    """The transaction could not be built or broadcast; nothing was mined."""


class ConfirmationTimeoutError(RelayerError):
    def __init__(self, txn_hash: str, waited_s: float):
        self.txn_hash = txn_hash
        self.waited_s = waited_s
        super().__init__(
            f"Could not confirm transaction {txn_hash} within budget "
            f"({waited_s:.0f}s); it may still be mined"
        )


class ChainReadError(RelayerError):
    """A read needed before broadcasting failed; nothing was sent."""

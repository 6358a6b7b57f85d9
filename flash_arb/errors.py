"""
Exception types raised by the flash loan arbitrage bot.

Transient failures (quotes, submissions, single extend batches) are logged and
reported through return values. The exceptions here are either fatal
preconditions or the final error of an exhausted retry.
"""
from typing import Optional


class FlashArbError(Exception):
    """Base class for all bot errors."""


class MissingLookupTableError(FlashArbError):
    """A lookup table is required but the cache has none, or it is gone on chain."""


class AccountNotFoundError(FlashArbError):
    """An account that must already exist on chain was not found."""

    def __init__(self, address: str, kind: str = "account"):
        self.address = address
        self.kind = kind
        super().__init__(f"{kind} {address} does not exist")


class RetryExhaustedError(FlashArbError):
    """Raised by with_retry once every attempt has failed."""

    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException] = None):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


class TransactionTooLargeError(FlashArbError):
    """Compiled transaction exceeds the ledger size ceiling."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"transaction is {size} bytes (max {limit})")


class LookupTableCreationError(RetryExhaustedError):
    """Every attempt to create a lookup table failed."""

"""Error taxonomy for filpay operations.

Every error raised by the services derives from FilpayError so callers
(the CLI, the batch orchestrator) can catch the family at one boundary.

- ValidationError / InsufficientFundsError: fail fast, nothing submitted.
- ChainCallError: a read or submission could not complete.
- AlreadySettledOrInactiveError: benign race, the rail was already advanced
  or is no longer active on-chain.
- TransactionRevertedError: mined with failure status.
- RailNotFoundError: no such rail for the token.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from filpay.types import TransactionReceipt


class FilpayError(Exception):
    """Base class for all filpay errors."""


class ConfigurationError(FilpayError):
    """Invalid or missing configuration."""


class ValidationError(FilpayError):
    """Missing or malformed user input (amount, key, address)."""


class InsufficientFundsError(FilpayError):
    """Local pre-check found fewer funds than requested."""

    def __init__(self, message: str, *, required: int, available: int):
        super().__init__(message)
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class ChainCallError(FilpayError):
    """A chain read or submission could not complete."""


class AlreadySettledOrInactiveError(ChainCallError):
    """The contract rejected the call because the rail is inactive or settled."""

    def __init__(self, message: str, *, rail_id: int | None = None):
        super().__init__(message)
        self.rail_id = rail_id


class RailNotFoundError(FilpayError):
    """The rail id does not exist for the given token."""

    def __init__(self, rail_id: int, token_symbol: str):
        super().__init__(f"Rail #{rail_id} not found for token {token_symbol}")
        self.rail_id = rail_id
        self.token_symbol = token_symbol


class TransactionRevertedError(FilpayError):
    """A submitted transaction confirmed with failure status."""

    def __init__(self, message: str, receipt: TransactionReceipt):
        super().__init__(message)
        self.receipt = receipt

"""Core data types for rail accounting and settlement.

All amounts are integer base units of the token (arbitrary precision).
Conversion to human-readable decimals happens only in filpay.formatting.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Sentinel returned for fundedUntilEpoch when no lockup constrains the funds
UNBOUNDED_EPOCH = 2**256 - 1


class RailRole(str, Enum):
    """Which side of a rail a party is on."""

    PAYER = "payer"
    PAYEE = "payee"


class RailStatus(str, Enum):
    """Rail lifecycle as observed by the client."""

    ACTIVE = "active"
    TERMINATED = "terminated"


class NoncePolicy(str, Enum):
    """How the gateway picks the nonce for the next transaction.

    PENDING orders by the latest pending nonce: faster back-to-back
    submission, but a failed submission can leave a gap. LATEST counts
    only confirmed transactions.
    """

    PENDING = "pending"
    LATEST = "latest"


class ReceiptStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class TokenDescriptor:
    """A fungible token resolved once at the boundary."""

    symbol: str
    address: str
    decimals: int = 18

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValueError("symbol is required")
        if not self.address:
            raise ValueError("address is required")
        if not 0 <= self.decimals <= 36:
            raise ValueError("decimals must be between 0 and 36")


@dataclass(frozen=True)
class Account:
    """A party's funds under the payments contract for one token."""

    address: str
    funded_until_epoch: int
    current_funds: int
    available_funds: int
    current_lockup_rate: int

    def __post_init__(self) -> None:
        if min(self.current_funds, self.available_funds, self.current_lockup_rate) < 0:
            raise ValueError("account amounts cannot be negative")
        if self.available_funds > self.current_funds:
            raise ValueError(
                f"available funds {self.available_funds} exceed current funds {self.current_funds}"
            )

    @property
    def locked_amount(self) -> int:
        """Funds reserved against rail obligations."""
        return self.current_funds - self.available_funds

    @property
    def fully_withdrawable(self) -> bool:
        """No active lockup rate, so every deposited unit can be withdrawn."""
        return self.current_lockup_rate == 0

    @property
    def funding_unbounded(self) -> bool:
        return self.funded_until_epoch == UNBOUNDED_EPOCH


@dataclass(frozen=True)
class Rail:
    """A rate-based payment stream from payer to payee."""

    id: int
    token: str
    payer: str
    payee: str
    operator: str | None
    validator: str | None
    payment_rate: int
    lockup_period: int
    settled_up_to: int
    end_epoch: int
    lockup_fixed: int = 0
    commission_rate_bps: int = 0

    @property
    def status(self) -> RailStatus:
        return RailStatus.TERMINATED if self.end_epoch != 0 else RailStatus.ACTIVE

    @property
    def is_terminated(self) -> bool:
        return self.status is RailStatus.TERMINATED


@dataclass(frozen=True)
class SettlementAmounts:
    """What settling a (payer, payee) pair would realize right now."""

    payment_amount: int
    settlement_fee: int

    def __post_init__(self) -> None:
        if self.payment_amount < 0 or self.settlement_fee < 0:
            raise ValueError("settlement amounts cannot be negative")
        if self.settlement_fee > self.payment_amount:
            raise ValueError(
                f"settlement fee {self.settlement_fee} exceeds payment {self.payment_amount}"
            )

    @property
    def net_amount(self) -> int:
        """Amount the payee receives."""
        return self.payment_amount - self.settlement_fee

    @property
    def is_zero(self) -> bool:
        return self.payment_amount == 0


@dataclass(frozen=True)
class TransactionHandle:
    """A submitted, not yet confirmed, transaction."""

    tx_hash: str
    action: str  # settle, withdraw, deposit, approve
    sender: str
    nonce: int | None = None


@dataclass(frozen=True)
class TransactionReceipt:
    """Confirmation of a mined transaction."""

    tx_hash: str
    status: ReceiptStatus
    block_number: int
    gas_used: int

    @property
    def succeeded(self) -> bool:
        return self.status is ReceiptStatus.SUCCESS


def normalize_optional_address(address: str | None) -> str | None:
    """Map the zero address (unset role) to None."""
    if not address or int(address, 16) == 0:
        return None
    return address

"""Base protocol for chain gateways.

All gateway adapters must implement the ChainGateway protocol. The services
use a gateway without knowing how it reaches the chain.

Error contract:
    - Read failures raise ChainCallError.
    - A contract rejection meaning "rail inactive or already settled" raises
      AlreadySettledOrInactiveError, decided by the gateway from the revert
      data, never by callers inspecting messages.
    - read_rail raises RailNotFoundError for ids unknown to the token.
    - Write calls without a signing identity raise ValidationError.
"""

from __future__ import annotations

from typing import Protocol

from filpay.types import (
    Account,
    Rail,
    RailRole,
    SettlementAmounts,
    TokenDescriptor,
    TransactionHandle,
    TransactionReceipt,
)


class ChainGateway(Protocol):
    """Protocol for payments contract gateways."""

    @property
    def signer_address(self) -> str | None:
        """Address of the signing identity, or None for read-only use."""
        ...

    async def read_account_info(self, token: TokenDescriptor, address: str) -> Account:
        """Read the settled account info of `address` under the payments contract."""
        ...

    async def read_token_balance(self, token: TokenDescriptor, address: str) -> int:
        """Read the wallet balance of `address` for the token."""
        ...

    async def read_allowance(self, token: TokenDescriptor, owner: str) -> int:
        """Read how much the payments contract may pull from `owner`."""
        ...

    async def list_rail_ids(
        self, role: RailRole, token: TokenDescriptor, address: str
    ) -> list[int]:
        """List rail ids where `address` is on the given side, in chain order."""
        ...

    async def read_rail(self, rail_id: int, token: TokenDescriptor) -> Rail:
        """Read a full rail record."""
        ...

    async def preview_settlement(
        self,
        payer: str,
        payee: str,
        token: TokenDescriptor,
        *,
        rail_id: int | None = None,
    ) -> SettlementAmounts:
        """Compute what one settlement transaction would realize now, without side effects.

        With `rail_id` the rail must link `payer` to `payee` (RailNotFoundError
        otherwise). Without it, the target is the pair's first rail that owes
        anything; submit_settlement picks the same rail.
        """
        ...

    async def submit_settlement(
        self, payer: str, token: TokenDescriptor, *, rail_id: int | None = None
    ) -> TransactionHandle:
        """Submit a settlement of one rail from `payer` to the signing identity."""
        ...

    async def submit_withdraw(
        self, amount: int, token: TokenDescriptor, to: str | None = None
    ) -> TransactionHandle:
        """Withdraw available funds to the signer or to `to`."""
        ...

    async def submit_deposit(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        """Deposit wallet funds into the signer's payments account."""
        ...

    async def submit_approve(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        """Approve the payments contract to pull `amount` of the token."""
        ...

    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        """Wait for the transaction to be mined and return its receipt."""
        ...

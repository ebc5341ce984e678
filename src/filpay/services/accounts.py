"""Account balance tracking under the payments contract.

Balances are read fresh on every call; nothing is cached between calls.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from filpay.errors import ChainCallError, ValidationError
from filpay.gateway.base import ChainGateway
from filpay.types import Account, TokenDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceOverview:
    """Contract account plus, optionally, the wallet balance of the same party."""

    token: TokenDescriptor
    account: Account
    wallet_balance: int | None = None

    @property
    def locked_amount(self) -> int:
        return self.account.locked_amount

    @property
    def total_holdings(self) -> int | None:
        """Wallet plus contract funds, when the wallet was read."""
        if self.wallet_balance is None:
            return None
        return self.wallet_balance + self.account.current_funds


class AccountBalanceTracker:
    """Resolves funded, locked and available balances for a party."""

    def __init__(self, gateway: ChainGateway):
        self.gateway = gateway

    def _resolve_address(self, address: str | None) -> str:
        resolved = address or self.gateway.signer_address
        if not resolved:
            raise ValidationError("An account address or a signing key is required")
        return resolved

    async def get_account_info(self, token: TokenDescriptor, address: str | None = None) -> Account:
        """Read the settled account info in a single contract call.

        Args:
            token: Token the account is denominated in
            address: Party address (defaults to the signing identity)

        Returns:
            Account as of the queried chain state

        Raises:
            ChainCallError: the read failed or returned an inconsistent record
        """
        address = self._resolve_address(address)
        logger.debug("Reading account info for %s (%s)", address, token.symbol)
        try:
            return await self.gateway.read_account_info(token, address)
        except ValueError as e:
            raise ChainCallError(f"Inconsistent account info for {address}: {e}") from e

    async def get_wallet_balance(self, token: TokenDescriptor, address: str | None = None) -> int:
        """Read the party's token balance outside the payments contract."""
        address = self._resolve_address(address)
        return await self.gateway.read_token_balance(token, address)

    async def get_overview(
        self,
        token: TokenDescriptor,
        address: str | None = None,
        *,
        include_wallet: bool = False,
    ) -> BalanceOverview:
        """Read the account and, if asked, the wallet balance concurrently."""
        address = self._resolve_address(address)
        if not include_wallet:
            account = await self.get_account_info(token, address)
            return BalanceOverview(token=token, account=account)

        account, wallet = await asyncio.gather(
            self.get_account_info(token, address),
            self.get_wallet_balance(token, address),
        )
        return BalanceOverview(token=token, account=account, wallet_balance=wallet)

"""Rail enumeration and lookup.

Enumeration order is whatever the chain returns; it is preserved so that
listings and batch reports index rails consistently within one invocation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from filpay.errors import ValidationError
from filpay.gateway.base import ChainGateway
from filpay.types import Rail, RailRole, RailStatus, TokenDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartyRails:
    """A party's rails on both sides, in enumeration order."""

    address: str
    token: TokenDescriptor
    as_payer: list[Rail]
    as_payee: list[Rail]

    @property
    def total(self) -> int:
        return len(self.as_payer) + len(self.as_payee)

    def active(self, role: RailRole) -> list[Rail]:
        rails = self.as_payer if role is RailRole.PAYER else self.as_payee
        return [r for r in rails if r.status is RailStatus.ACTIVE]


class RailRegistry:
    """Enumerates a party's rails and fetches rail records."""

    def __init__(self, gateway: ChainGateway):
        self.gateway = gateway

    def _resolve_address(self, address: str | None) -> str:
        resolved = address or self.gateway.signer_address
        if not resolved:
            raise ValidationError("An address or a signing key is required to list rails")
        return resolved

    async def list_rails_as_payer(self, token: TokenDescriptor, address: str | None = None) -> list[int]:
        """Rail ids where the party pays."""
        return await self._list(RailRole.PAYER, token, address)

    async def list_rails_as_payee(self, token: TokenDescriptor, address: str | None = None) -> list[int]:
        """Rail ids where the party is paid."""
        return await self._list(RailRole.PAYEE, token, address)

    async def _list(self, role: RailRole, token: TokenDescriptor, address: str | None) -> list[int]:
        address = self._resolve_address(address)
        rail_ids = await self.gateway.list_rail_ids(role, token, address)
        logger.debug("%s has %d %s rail(s) for %s", address, len(rail_ids), role.value, token.symbol)
        return list(rail_ids)

    async def get_rail(self, rail_id: int, token: TokenDescriptor) -> Rail:
        """Fetch one rail.

        Raises:
            ValidationError: negative rail id
            RailNotFoundError: no such rail for the token
            ChainCallError: transport failure
        """
        if rail_id < 0:
            raise ValidationError(f"Rail id must be non-negative, got {rail_id}")
        return await self.gateway.read_rail(rail_id, token)

    async def get_rails(self, rail_ids: Sequence[int], token: TokenDescriptor) -> list[Rail]:
        """Fetch several rails; results keep the order of `rail_ids`."""
        return list(await asyncio.gather(*(self.get_rail(i, token) for i in rail_ids)))

    async def list_party_rails(self, token: TokenDescriptor, address: str | None = None) -> PartyRails:
        """Both sides of a party's rails with their records."""
        address = self._resolve_address(address)
        payer_ids, payee_ids = await asyncio.gather(
            self.list_rails_as_payer(token, address),
            self.list_rails_as_payee(token, address),
        )
        as_payer = await self.get_rails(payer_ids, token)
        as_payee = await self.get_rails(payee_ids, token)
        return PartyRails(address=address, token=token, as_payer=as_payer, as_payee=as_payee)

"""Tests for RailRegistry."""

import pytest

from conftest import OUTSIDER, PAYEE, PAYER_A, PAYER_B, UNIT
from filpay.errors import ChainCallError, RailNotFoundError, ValidationError
from filpay.services import RailRegistry
from filpay.types import RailRole, RailStatus

pytestmark = pytest.mark.asyncio


class TestListing:
    async def test_payee_rails_in_enumeration_order(self, gateway, token, three_rails):
        ids = await RailRegistry(gateway).list_rails_as_payee(token)

        assert ids == list(three_rails)

    async def test_payer_rails(self, gateway, token):
        rail_id = gateway.add_rail(token, PAYEE, OUTSIDER, payment_rate=UNIT)

        registry = RailRegistry(gateway)

        assert await registry.list_rails_as_payer(token) == [rail_id]
        assert await registry.list_rails_as_payee(token) == []

    async def test_explicit_address(self, gateway, token, three_rails):
        ids = await RailRegistry(gateway).list_rails_as_payer(token, PAYER_B)

        assert ids == [three_rails[1]]

    async def test_requires_address_or_signer(self, readonly_gateway, token):
        with pytest.raises(ValidationError):
            await RailRegistry(readonly_gateway).list_rails_as_payee(token)

    async def test_enumeration_failure_propagates(self, gateway, token):
        gateway.simulate_read_error("list_rail_ids", PAYEE, ChainCallError("timeout"))

        with pytest.raises(ChainCallError):
            await RailRegistry(gateway).list_rails_as_payee(token)


class TestLookup:
    async def test_get_rail(self, gateway, token, three_rails):
        rail = await RailRegistry(gateway).get_rail(three_rails[1], token)

        assert rail.payer == PAYER_B
        assert rail.payee == PAYEE
        assert rail.settled_up_to == 100
        assert rail.status is RailStatus.ACTIVE

    async def test_unknown_rail(self, gateway, token):
        with pytest.raises(RailNotFoundError) as exc_info:
            await RailRegistry(gateway).get_rail(99, token)

        assert exc_info.value.rail_id == 99

    async def test_negative_id(self, gateway, token):
        with pytest.raises(ValidationError):
            await RailRegistry(gateway).get_rail(-1, token)

    async def test_get_rails_keeps_order(self, gateway, token, three_rails):
        wanted = [three_rails[2], three_rails[0]]

        rails = await RailRegistry(gateway).get_rails(wanted, token)

        assert [r.id for r in rails] == wanted


class TestPartyRails:
    async def test_both_sides(self, gateway, token, three_rails):
        outgoing = gateway.add_rail(token, PAYEE, OUTSIDER, payment_rate=UNIT)
        gateway.terminate_rail(three_rails[0])

        party = await RailRegistry(gateway).list_party_rails(token)

        assert party.address == PAYEE
        assert [r.id for r in party.as_payer] == [outgoing]
        assert [r.id for r in party.as_payee] == list(three_rails)
        assert party.total == 4
        assert [r.id for r in party.active(RailRole.PAYEE)] == list(three_rails[1:])

    async def test_party_with_no_rails(self, gateway, token):
        party = await RailRegistry(gateway).list_party_rails(token, PAYER_A)

        assert party.total == 0

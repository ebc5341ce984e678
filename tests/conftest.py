"""Pytest fixtures for filpay tests."""

from __future__ import annotations

import pytest

from filpay.config import FILECOIN_PAY_V1, USDFC, BatchConfig, Settings
from filpay.events import DomainEvent, EventEmitter
from filpay.gateway import InMemoryChainGateway
from filpay.types import NoncePolicy, TokenDescriptor

UNIT = 10**18

PAYEE = "0x" + "a1" * 20
PAYER_A = "0x" + "b2" * 20
PAYER_B = "0x" + "c3" * 20
PAYER_C = "0x" + "d4" * 20
OUTSIDER = "0x" + "e5" * 20

CURRENT_EPOCH = 110
FEE_BPS = 200  # 2%


class EventRecorder:
    """Collects every emitted event."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type for e in self.events]

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def token() -> TokenDescriptor:
    return USDFC


@pytest.fixture
def gateway() -> InMemoryChainGateway:
    """Stub gateway signing as PAYEE at epoch 110 with a 2% settlement fee."""
    return InMemoryChainGateway(
        PAYEE,
        current_epoch=CURRENT_EPOCH,
        settlement_fee_bps=FEE_BPS,
    )


@pytest.fixture
def readonly_gateway() -> InMemoryChainGateway:
    return InMemoryChainGateway(None, current_epoch=CURRENT_EPOCH, settlement_fee_bps=FEE_BPS)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def emitter(recorder: EventRecorder) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter


@pytest.fixture
def three_rails(gateway: InMemoryChainGateway, token: TokenDescriptor) -> tuple[int, int, int]:
    """Three rails paying PAYEE.

    - rail 1 (PAYER_A): already settled up to the current epoch, owes 0
    - rail 2 (PAYER_B): 10 epochs behind at 1.0/epoch, owes 10.0 (fee 0.2)
    - rail 3 (PAYER_C): 5 epochs behind; its settlement transaction reverts
    """
    for payer in (PAYER_A, PAYER_B, PAYER_C):
        gateway.fund_account(token, payer, 100 * UNIT)
    rail_1 = gateway.add_rail(token, PAYER_A, PAYEE, payment_rate=UNIT, settled_up_to=CURRENT_EPOCH)
    rail_2 = gateway.add_rail(token, PAYER_B, PAYEE, payment_rate=UNIT, settled_up_to=100)
    rail_3 = gateway.add_rail(token, PAYER_C, PAYEE, payment_rate=UNIT, settled_up_to=105)
    gateway.simulate_revert("settle", payer=PAYER_C)
    return rail_1, rail_2, rail_3


@pytest.fixture
def settings() -> Settings:
    return Settings(
        rpc_url="http://localhost:8545",
        chain_id=314,
        payments_contract=FILECOIN_PAY_V1,
        token="USDFC",
        private_key=None,
        nonce_policy=NoncePolicy.PENDING,
        confirmation_timeout_seconds=30,
        journal_url=None,
        log_level="WARNING",
        batch=BatchConfig(),
    )

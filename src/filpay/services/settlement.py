"""Settlement amounts and single-pair settlement.

SettlementCalculator only quantifies: it is a read with no side effects and
can be called any number of times. SettlementService is the single-rail
command path: preview, confirm, submit, await.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from uuid import UUID, uuid4

from filpay.errors import TransactionRevertedError, ValidationError
from filpay.events.emitter import EventEmitter
from filpay.events.types import EventMetadata, RailSettled
from filpay.gateway.base import ChainGateway
from filpay.services.transactions import TransactionOutcome, TransactionRunner
from filpay.types import SettlementAmounts, TokenDescriptor

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[SettlementAmounts], Awaitable[bool]]


class SettleStatus(str, Enum):
    """Result of SettlementService.settle."""

    SETTLED = "settled"  # Transaction confirmed successfully
    NOTHING_TO_SETTLE = "nothing_to_settle"  # Payment amount was zero
    CANCELLED = "cancelled"  # Confirmation declined, nothing submitted


@dataclass(frozen=True)
class SettleResult:
    """Result of settling one (payer, payee) pair."""

    status: SettleStatus
    payer: str
    payee: str
    amounts: SettlementAmounts
    transaction: TransactionOutcome | None = None


class SettlementCalculator:
    """Computes what is currently owed on a (payer, payee, token) triple."""

    def __init__(self, gateway: ChainGateway):
        self.gateway = gateway

    async def compute_settlement(
        self,
        payer: str,
        payee: str | None = None,
        token: TokenDescriptor | None = None,
        *,
        rail_id: int | None = None,
    ) -> SettlementAmounts:
        """Preview settlement amounts without advancing settledUpTo.

        A zero payment amount means there is nothing to settle; it is not
        an error.

        Args:
            payer: Paying party
            payee: Receiving party (defaults to the signing identity)
            token: Token of the rail
            rail_id: Settle this rail of the pair; by default the first
                rail that owes anything

        Returns:
            SettlementAmounts with payment amount and protocol fee
        """
        if not payer:
            raise ValidationError("A payer address is required")
        if token is None:
            raise ValidationError("A token is required")
        payee = payee or self.gateway.signer_address
        if not payee:
            raise ValidationError("A payee address or a signing key is required")

        amounts = await self.gateway.preview_settlement(payer, payee, token, rail_id=rail_id)
        logger.debug(
            "Settlement preview %s -> %s (rail %s): payment=%d fee=%d",
            payer, payee, rail_id, amounts.payment_amount, amounts.settlement_fee,
        )
        return amounts


class SettlementService:
    """Settles one rail at a time between a payer and the signing identity."""

    def __init__(
        self,
        gateway: ChainGateway,
        calculator: SettlementCalculator | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.gateway = gateway
        self.calculator = calculator or SettlementCalculator(gateway)
        self.emitter = emitter or EventEmitter()
        self.runner = TransactionRunner(gateway, self.emitter)

    async def settle(
        self,
        payer: str,
        token: TokenDescriptor,
        *,
        confirm: ConfirmCallback | None = None,
        correlation_id: UUID | None = None,
    ) -> SettleResult:
        """Preview, optionally confirm, then settle.

        Raises:
            ValidationError: no signing identity or payer
            TransactionRevertedError: the settlement transaction failed
        """
        payee = self.gateway.signer_address
        if not payee:
            raise ValidationError("A signing key is required to settle")
        correlation_id = correlation_id or uuid4()

        amounts = await self.calculator.compute_settlement(payer, payee, token)
        if amounts.is_zero:
            return SettleResult(SettleStatus.NOTHING_TO_SETTLE, payer, payee, amounts)

        if confirm is not None and not await confirm(amounts):
            logger.info("Settlement with %s declined", payer)
            return SettleResult(SettleStatus.CANCELLED, payer, payee, amounts)

        outcome = await self.runner.run(
            self.gateway.submit_settlement(payer, token),
            correlation_id=correlation_id,
        )
        if not outcome.succeeded:
            raise TransactionRevertedError("Settlement transaction failed", outcome.receipt)

        self.emitter.emit(
            RailSettled(
                metadata=EventMetadata.create(correlation_id=correlation_id),
                rail_id=None,
                payer=payer,
                payment_amount=amounts.payment_amount,
                settlement_fee=amounts.settlement_fee,
                tx_hash=outcome.tx_hash,
                block_number=outcome.receipt.block_number,
            )
        )
        return SettleResult(SettleStatus.SETTLED, payer, payee, amounts, outcome)

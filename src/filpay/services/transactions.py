"""Submit-and-confirm helper shared by every write path.

A transaction is submitted, announced, awaited and announced again. The
runner never raises on a failure receipt; callers decide whether a failed
receipt is fatal (single commands) or a report entry (batch settlement).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from uuid import UUID

from filpay.events.emitter import EventEmitter
from filpay.events.types import EventMetadata, TransactionConfirmed, TransactionSubmitted
from filpay.gateway.base import ChainGateway
from filpay.types import TransactionHandle, TransactionReceipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionOutcome:
    """A transaction and its confirmation."""

    handle: TransactionHandle
    receipt: TransactionReceipt

    @property
    def succeeded(self) -> bool:
        return self.receipt.succeeded

    @property
    def tx_hash(self) -> str:
        return self.handle.tx_hash


class TransactionRunner:
    """Runs one transaction to confirmation, emitting transaction events."""

    def __init__(self, gateway: ChainGateway, emitter: EventEmitter | None = None):
        self.gateway = gateway
        self.emitter = emitter or EventEmitter()

    async def run(
        self,
        submission: Awaitable[TransactionHandle],
        *,
        correlation_id: UUID | None = None,
    ) -> TransactionOutcome:
        """Await the submission, then its confirmation.

        Args:
            submission: Pending gateway submit_* call
            correlation_id: Links the emitted events to the calling command

        Returns:
            TransactionOutcome with handle and receipt
        """
        handle = await submission
        self.emitter.emit(
            TransactionSubmitted(
                metadata=EventMetadata.create(correlation_id=correlation_id),
                action=handle.action,
                tx_hash=handle.tx_hash,
                sender=handle.sender,
                nonce=handle.nonce,
            )
        )

        receipt = await self.gateway.await_confirmation(handle)
        self.emitter.emit(
            TransactionConfirmed(
                metadata=EventMetadata.create(correlation_id=correlation_id),
                action=handle.action,
                tx_hash=handle.tx_hash,
                succeeded=receipt.succeeded,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
            )
        )

        if not receipt.succeeded:
            logger.warning("%s tx %s failed in block %s", handle.action, handle.tx_hash, receipt.block_number)
        return TransactionOutcome(handle=handle, receipt=receipt)

"""Batch settlement of every rail where a party is the payee.

Each rail goes Pending -> Skipped | PreviewedSettleable | Settled | Failed
exactly once per run. Per-rail errors are converted into report entries;
only enumeration of the payee's rails can fail the run as a whole.

Execute mode is strictly sequential: a rail's settlement transaction is
confirmed (or fails) before the next rail is touched, so transactions from
the single signing identity are submitted in nonce order. Preview mode
only reads and may overlap rails up to BatchConfig.preview_concurrency.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID, uuid4

from filpay.config import BatchConfig
from filpay.errors import (
    AlreadySettledOrInactiveError,
    ChainCallError,
    RailNotFoundError,
    ValidationError,
)
from filpay.events.emitter import EventEmitter
from filpay.events.types import (
    BatchSettlementCompleted,
    BatchSettlementStarted,
    EventMetadata,
    RailSettled,
    RailSettlementFailed,
    RailSettlementPreviewed,
    RailSkipped,
)
from filpay.gateway.base import ChainGateway
from filpay.services.rails import RailRegistry
from filpay.services.settlement import SettlementCalculator
from filpay.services.transactions import TransactionRunner
from filpay.types import TokenDescriptor

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Why a rail ended up in the failed list."""

    ALREADY_SETTLED = "already_settled"  # Benign race with another settler
    RAIL_NOT_FOUND = "rail_not_found"
    CHAIN_CALL = "chain_call"
    TRANSACTION_FAILED = "transaction_failed"  # Mined with failure status
    CANCELLED = "cancelled"  # Run stopped before the rail was started
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class SettledRail:
    """A rail settled (or, in preview mode, settleable) in this run."""

    rail_id: int
    payer: str
    amount: int
    fee: int
    tx_hash: str | None = None  # None in preview mode
    block_number: int | None = None

    @property
    def net(self) -> int:
        return self.amount - self.fee


@dataclass(frozen=True)
class SkippedRail:
    """Nothing was owed on the rail."""

    rail_id: int
    payer: str


@dataclass(frozen=True)
class FailedRail:
    """A rail that could not be settled in this run."""

    rail_id: int
    payer: str | None  # None when the rail record could not be read
    kind: FailureKind
    message: str
    tx_hash: str | None = None

    @property
    def benign(self) -> bool:
        """Another actor already settled or deactivated the rail."""
        return self.kind is FailureKind.ALREADY_SETTLED


RailOutcome = SettledRail | SkippedRail | FailedRail


@dataclass(frozen=True)
class BatchSettlementReport:
    """Per-rail outcomes of one batch run plus aggregates.

    Every enumerated rail id appears in exactly one of settled, skipped or
    failed.
    """

    run_id: UUID
    payee: str
    token: TokenDescriptor
    preview: bool
    rail_ids: tuple[int, ...]
    settled: tuple[SettledRail, ...]
    skipped: tuple[SkippedRail, ...]
    failed: tuple[FailedRail, ...]
    interrupted: bool = False

    @property
    def total_amount(self) -> int:
        return sum(r.amount for r in self.settled)

    @property
    def total_fees(self) -> int:
        return sum(r.fee for r in self.settled)

    @property
    def total_net(self) -> int:
        return self.total_amount - self.total_fees

    @property
    def processed_count(self) -> int:
        return len(self.settled) + len(self.skipped) + len(self.failed)

    @property
    def has_failures(self) -> bool:
        """True if any rail failed for a reason other than a benign race."""
        return any(not f.benign for f in self.failed)

    def outcome_for(self, rail_id: int) -> RailOutcome:
        for entry in (*self.settled, *self.skipped, *self.failed):
            if entry.rail_id == rail_id:
                return entry
        raise KeyError(rail_id)

    def outcomes(self) -> list[RailOutcome]:
        """All outcomes in enumeration order."""
        return [self.outcome_for(rail_id) for rail_id in self.rail_ids]


class BatchSettlementOrchestrator:
    """Settles (or previews) every rail where a party is the payee."""

    def __init__(
        self,
        gateway: ChainGateway,
        emitter: EventEmitter | None = None,
        config: BatchConfig | None = None,
    ):
        self.gateway = gateway
        self.emitter = emitter or EventEmitter()
        self.config = config or BatchConfig()
        self.registry = RailRegistry(gateway)
        self.calculator = SettlementCalculator(gateway)
        self.runner = TransactionRunner(gateway, self.emitter)

    async def run(
        self,
        token: TokenDescriptor,
        *,
        preview: bool = False,
        payee: str | None = None,
        stop: asyncio.Event | None = None,
    ) -> BatchSettlementReport:
        """Process every rail where `payee` is the payee.

        Args:
            token: Token whose rails are processed
            preview: Compute only; never submit a transaction
            payee: Payee address (defaults to the signing identity). Execute
                mode can only settle as the signing identity.
            stop: When set, rails not yet started are recorded as cancelled

        Returns:
            BatchSettlementReport covering every enumerated rail id

        Raises:
            ValidationError: no payee, or execute mode for a foreign payee
            ChainCallError: the payee's rails could not be enumerated
        """
        payee = self._resolve_payee(payee, preview)
        run_id = uuid4()

        rail_ids = tuple(await self.registry.list_rails_as_payee(token, payee))
        logger.info(
            "Batch %s: %d rail(s) for payee %s (%s)",
            "preview" if preview else "settlement", len(rail_ids), payee, token.symbol,
        )
        self.emitter.emit(
            BatchSettlementStarted(
                metadata=EventMetadata.create(correlation_id=run_id),
                payee=payee,
                token=token.symbol,
                rail_ids=rail_ids,
                preview=preview,
            )
        )

        if preview and self.config.preview_concurrency > 1:
            outcomes = await self._run_overlapped(rail_ids, payee, token, run_id, stop)
        else:
            outcomes = []
            for rail_id in rail_ids:
                if stop is not None and stop.is_set():
                    outcomes.append(self._cancelled(rail_id, run_id))
                    continue
                outcomes.append(await self._process_rail(rail_id, payee, token, preview, run_id))

        report = BatchSettlementReport(
            run_id=run_id,
            payee=payee,
            token=token,
            preview=preview,
            rail_ids=rail_ids,
            settled=tuple(o for o in outcomes if isinstance(o, SettledRail)),
            skipped=tuple(o for o in outcomes if isinstance(o, SkippedRail)),
            failed=tuple(o for o in outcomes if isinstance(o, FailedRail)),
            interrupted=any(
                isinstance(o, FailedRail) and o.kind is FailureKind.CANCELLED for o in outcomes
            ),
        )

        self.emitter.emit(
            BatchSettlementCompleted(
                metadata=EventMetadata.create(correlation_id=run_id),
                payee=payee,
                token=token.symbol,
                preview=preview,
                settled_count=len(report.settled),
                skipped_count=len(report.skipped),
                failed_count=len(report.failed),
                total_amount=report.total_amount,
                total_fees=report.total_fees,
                interrupted=report.interrupted,
            )
        )
        return report

    def _resolve_payee(self, payee: str | None, preview: bool) -> str:
        signer = self.gateway.signer_address
        resolved = payee or signer
        if not resolved:
            raise ValidationError("A payee address or a signing key is required")
        if not preview and (signer is None or resolved.lower() != signer.lower()):
            raise ValidationError("Settling requires the payee's signing key")
        return resolved

    async def _run_overlapped(
        self,
        rail_ids: tuple[int, ...],
        payee: str,
        token: TokenDescriptor,
        run_id: UUID,
        stop: asyncio.Event | None,
    ) -> list[RailOutcome]:
        semaphore = asyncio.Semaphore(self.config.preview_concurrency)

        async def bounded(rail_id: int) -> RailOutcome:
            async with semaphore:
                if stop is not None and stop.is_set():
                    return self._cancelled(rail_id, run_id)
                return await self._process_rail(rail_id, payee, token, True, run_id)

        # gather keeps results in rail_ids order
        return list(await asyncio.gather(*(bounded(rail_id) for rail_id in rail_ids)))

    async def _process_rail(
        self,
        rail_id: int,
        payee: str,
        token: TokenDescriptor,
        preview: bool,
        run_id: UUID,
    ) -> RailOutcome:
        payer: str | None = None
        try:
            rail = await self.registry.get_rail(rail_id, token)
            payer = rail.payer
            amounts = await self.calculator.compute_settlement(
                payer, payee, token, rail_id=rail_id
            )

            if amounts.is_zero:
                logger.debug("Rail #%d: nothing to settle", rail_id)
                self.emitter.emit(
                    RailSkipped(
                        metadata=EventMetadata.create(correlation_id=run_id),
                        rail_id=rail_id,
                        payer=payer,
                    )
                )
                return SkippedRail(rail_id=rail_id, payer=payer)

            if preview:
                self.emitter.emit(
                    RailSettlementPreviewed(
                        metadata=EventMetadata.create(correlation_id=run_id),
                        rail_id=rail_id,
                        payer=payer,
                        payment_amount=amounts.payment_amount,
                        settlement_fee=amounts.settlement_fee,
                    )
                )
                return SettledRail(
                    rail_id=rail_id,
                    payer=payer,
                    amount=amounts.payment_amount,
                    fee=amounts.settlement_fee,
                )

            outcome = await self.runner.run(
                self.gateway.submit_settlement(payer, token, rail_id=rail_id),
                correlation_id=run_id,
            )
            if not outcome.succeeded:
                return self._failed(
                    rail_id, payer, FailureKind.TRANSACTION_FAILED, "transaction failed",
                    run_id, tx_hash=outcome.tx_hash,
                )

            logger.info("Rail #%d settled in block %d", rail_id, outcome.receipt.block_number)
            self.emitter.emit(
                RailSettled(
                    metadata=EventMetadata.create(correlation_id=run_id),
                    rail_id=rail_id,
                    payer=payer,
                    payment_amount=amounts.payment_amount,
                    settlement_fee=amounts.settlement_fee,
                    tx_hash=outcome.tx_hash,
                    block_number=outcome.receipt.block_number,
                )
            )
            return SettledRail(
                rail_id=rail_id,
                payer=payer,
                amount=amounts.payment_amount,
                fee=amounts.settlement_fee,
                tx_hash=outcome.tx_hash,
                block_number=outcome.receipt.block_number,
            )

        except AlreadySettledOrInactiveError as e:
            return self._failed(rail_id, payer, FailureKind.ALREADY_SETTLED, str(e), run_id)
        except RailNotFoundError as e:
            return self._failed(rail_id, payer, FailureKind.RAIL_NOT_FOUND, str(e), run_id)
        except ChainCallError as e:
            return self._failed(rail_id, payer, FailureKind.CHAIN_CALL, str(e), run_id)
        except Exception as e:
            logger.exception("Unexpected error settling rail #%d", rail_id)
            return self._failed(rail_id, payer, FailureKind.UNEXPECTED, str(e) or type(e).__name__, run_id)

    def _failed(
        self,
        rail_id: int,
        payer: str | None,
        kind: FailureKind,
        message: str,
        run_id: UUID,
        *,
        tx_hash: str | None = None,
    ) -> FailedRail:
        if kind is FailureKind.ALREADY_SETTLED:
            logger.info("Rail #%d already settled or inactive: %s", rail_id, message)
        elif kind is not FailureKind.CANCELLED:
            logger.warning("Rail #%d failed (%s): %s", rail_id, kind.value, message)
        self.emitter.emit(
            RailSettlementFailed(
                metadata=EventMetadata.create(correlation_id=run_id),
                rail_id=rail_id,
                payer=payer,
                failure_kind=kind.value,
                message=message,
            )
        )
        return FailedRail(rail_id=rail_id, payer=payer, kind=kind, message=message, tx_hash=tx_hash)

    def _cancelled(self, rail_id: int, run_id: UUID) -> FailedRail:
        return self._failed(rail_id, None, FailureKind.CANCELLED, "run stopped before this rail", run_id)

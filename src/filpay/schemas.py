"""Pydantic schemas for --json output.

Raw integer amounts are emitted as decimal strings so consumers without
big-integer support keep full precision; each has a *_formatted companion.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from filpay.formatting import format_units
from filpay.services.accounts import BalanceOverview
from filpay.services.batch import BatchSettlementReport, FailedRail, SettledRail, SkippedRail
from filpay.services.funds import DepositOutcome
from filpay.services.rails import PartyRails
from filpay.services.settlement import SettleResult
from filpay.services.transactions import TransactionOutcome
from filpay.types import Rail, SettlementAmounts, TokenDescriptor


def _units(amount: int, token: TokenDescriptor) -> dict[str, str]:
    return {"raw": str(amount), "formatted": format_units(amount, token.decimals)}


# ============================================================================
# Base schemas
# ============================================================================


class OutputModel(BaseModel):
    """Base output schema."""

    model_config = ConfigDict(frozen=True)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)


class TokenAmount(OutputModel):
    raw: str
    formatted: str


class TokenInfo(OutputModel):
    symbol: str
    address: str
    decimals: int

    @classmethod
    def from_token(cls, token: TokenDescriptor) -> TokenInfo:
        return cls(symbol=token.symbol, address=token.address, decimals=token.decimals)


# ============================================================================
# Account schemas
# ============================================================================


class BalanceResponse(OutputModel):
    """Schema for the balance command."""

    address: str
    token: TokenInfo
    funded_until_epoch: str = Field(serialization_alias="fundedUntilEpoch")
    current_funds: TokenAmount = Field(serialization_alias="currentFunds")
    available_funds: TokenAmount = Field(serialization_alias="availableFunds")
    current_lockup_rate: TokenAmount = Field(serialization_alias="currentLockupRate")
    locked_amount: TokenAmount = Field(serialization_alias="lockedAmount")
    fully_withdrawable: bool = Field(serialization_alias="fullyWithdrawable")
    wallet_balance: TokenAmount | None = Field(default=None, serialization_alias="walletBalance")

    @classmethod
    def from_overview(cls, overview: BalanceOverview) -> BalanceResponse:
        account, token = overview.account, overview.token
        wallet = None
        if overview.wallet_balance is not None:
            wallet = TokenAmount(**_units(overview.wallet_balance, token))
        return cls(
            address=account.address,
            token=TokenInfo.from_token(token),
            funded_until_epoch=str(account.funded_until_epoch),
            current_funds=TokenAmount(**_units(account.current_funds, token)),
            available_funds=TokenAmount(**_units(account.available_funds, token)),
            current_lockup_rate=TokenAmount(**_units(account.current_lockup_rate, token)),
            locked_amount=TokenAmount(**_units(account.locked_amount, token)),
            fully_withdrawable=account.fully_withdrawable,
            wallet_balance=wallet,
        )


class WalletBalanceResponse(OutputModel):
    """Schema for the wallet-balance command."""

    address: str
    token: TokenInfo
    balance: TokenAmount
    contract: BalanceResponse | None = None


# ============================================================================
# Rail schemas
# ============================================================================


class RailResponse(OutputModel):
    """Schema for one rail record."""

    id: int
    payer: str
    payee: str
    operator: str | None
    validator: str | None
    payment_rate: TokenAmount = Field(serialization_alias="paymentRate")
    lockup_period: int = Field(serialization_alias="lockupPeriod")
    settled_up_to: int = Field(serialization_alias="settledUpTo")
    end_epoch: int = Field(serialization_alias="endEpoch")
    status: str

    @classmethod
    def from_rail(cls, rail: Rail, token: TokenDescriptor) -> RailResponse:
        return cls(
            id=rail.id,
            payer=rail.payer,
            payee=rail.payee,
            operator=rail.operator,
            validator=rail.validator,
            payment_rate=TokenAmount(**_units(rail.payment_rate, token)),
            lockup_period=rail.lockup_period,
            settled_up_to=rail.settled_up_to,
            end_epoch=rail.end_epoch,
            status=rail.status.value,
        )


class RailListResponse(OutputModel):
    """Schema for the rails list command."""

    address: str
    token: TokenInfo
    as_payer: list[RailResponse] = Field(serialization_alias="asPayer")
    as_payee: list[RailResponse] = Field(serialization_alias="asPayee")
    total: int

    @classmethod
    def from_party(cls, party: PartyRails) -> RailListResponse:
        return cls(
            address=party.address,
            token=TokenInfo.from_token(party.token),
            as_payer=[RailResponse.from_rail(r, party.token) for r in party.as_payer],
            as_payee=[RailResponse.from_rail(r, party.token) for r in party.as_payee],
            total=party.total,
        )


# ============================================================================
# Settlement schemas
# ============================================================================


class SettlementAmountsResponse(OutputModel):
    """Schema for a settlement preview."""

    payer: str
    payee: str
    token: TokenInfo
    payment_amount: TokenAmount = Field(serialization_alias="paymentAmount")
    settlement_fee: TokenAmount = Field(serialization_alias="settlementFee")
    net_amount: TokenAmount = Field(serialization_alias="netAmount")

    @classmethod
    def from_amounts(
        cls, payer: str, payee: str, token: TokenDescriptor, amounts: SettlementAmounts
    ) -> SettlementAmountsResponse:
        return cls(
            payer=payer,
            payee=payee,
            token=TokenInfo.from_token(token),
            payment_amount=TokenAmount(**_units(amounts.payment_amount, token)),
            settlement_fee=TokenAmount(**_units(amounts.settlement_fee, token)),
            net_amount=TokenAmount(**_units(amounts.net_amount, token)),
        )


class TransactionResponse(OutputModel):
    """Schema for a confirmed (or failed) transaction."""

    action: str
    tx_hash: str = Field(serialization_alias="txHash")
    status: str
    block_number: int = Field(serialization_alias="blockNumber")
    gas_used: int = Field(serialization_alias="gasUsed")

    @classmethod
    def from_outcome(cls, outcome: TransactionOutcome) -> TransactionResponse:
        return cls(
            action=outcome.handle.action,
            tx_hash=outcome.tx_hash,
            status=outcome.receipt.status.value,
            block_number=outcome.receipt.block_number,
            gas_used=outcome.receipt.gas_used,
        )


class FundsResponse(OutputModel):
    """Schema for withdraw and deposit."""

    amount: TokenAmount
    token: TokenInfo
    recipient: str | None = None
    approval: TransactionResponse | None = None
    transaction: TransactionResponse

    @classmethod
    def from_outcome(
        cls,
        amount: int,
        token: TokenDescriptor,
        outcome: TransactionOutcome,
        recipient: str | None = None,
    ) -> FundsResponse:
        approval = None
        if isinstance(outcome, DepositOutcome) and outcome.approval is not None:
            approval = TransactionResponse.from_outcome(outcome.approval)
        return cls(
            amount=TokenAmount(**_units(amount, token)),
            token=TokenInfo.from_token(token),
            recipient=recipient,
            approval=approval,
            transaction=TransactionResponse.from_outcome(outcome),
        )


class SettleResponse(OutputModel):
    """Schema for single-pair settlement."""

    status: str
    settlement: SettlementAmountsResponse
    transaction: TransactionResponse | None = None

    @classmethod
    def from_result(cls, result: SettleResult, token: TokenDescriptor) -> SettleResponse:
        tx = None
        if result.transaction is not None:
            tx = TransactionResponse.from_outcome(result.transaction)
        return cls(
            status=result.status.value,
            settlement=SettlementAmountsResponse.from_amounts(
                result.payer, result.payee, token, result.amounts
            ),
            transaction=tx,
        )


# ============================================================================
# Batch schemas
# ============================================================================


class RailOutcomeResponse(OutputModel):
    """Schema for one rail's outcome in a batch run."""

    rail_id: int = Field(serialization_alias="railId")
    outcome: str
    payer: str | None = None
    amount: TokenAmount | None = None
    fee: TokenAmount | None = None
    net: TokenAmount | None = None
    tx_hash: str | None = Field(default=None, serialization_alias="txHash")
    block_number: int | None = Field(default=None, serialization_alias="blockNumber")
    failure_kind: str | None = Field(default=None, serialization_alias="failureKind")
    message: str | None = None

    @classmethod
    def from_entry(
        cls, entry: SettledRail | SkippedRail | FailedRail, token: TokenDescriptor
    ) -> RailOutcomeResponse:
        if isinstance(entry, SettledRail):
            return cls(
                rail_id=entry.rail_id,
                outcome="settled",
                payer=entry.payer,
                amount=TokenAmount(**_units(entry.amount, token)),
                fee=TokenAmount(**_units(entry.fee, token)),
                net=TokenAmount(**_units(entry.net, token)),
                tx_hash=entry.tx_hash,
                block_number=entry.block_number,
            )
        if isinstance(entry, SkippedRail):
            return cls(rail_id=entry.rail_id, outcome="skipped", payer=entry.payer)
        return cls(
            rail_id=entry.rail_id,
            outcome="failed",
            payer=entry.payer,
            tx_hash=entry.tx_hash,
            failure_kind=entry.kind.value,
            message=entry.message,
        )


class BatchReportResponse(OutputModel):
    """Schema for rails settle-all."""

    run_id: UUID = Field(serialization_alias="runId")
    payee: str
    token: TokenInfo
    preview: bool
    interrupted: bool
    rail_ids: list[int] = Field(serialization_alias="railIds")
    settled: list[RailOutcomeResponse]
    skipped: list[RailOutcomeResponse]
    failed: list[RailOutcomeResponse]
    total_amount: TokenAmount = Field(serialization_alias="totalAmount")
    total_fees: TokenAmount = Field(serialization_alias="totalFees")
    total_net: TokenAmount = Field(serialization_alias="totalNet")

    @classmethod
    def from_report(cls, report: BatchSettlementReport) -> BatchReportResponse:
        token = report.token
        return cls(
            run_id=report.run_id,
            payee=report.payee,
            token=TokenInfo.from_token(token),
            preview=report.preview,
            interrupted=report.interrupted,
            rail_ids=list(report.rail_ids),
            settled=[RailOutcomeResponse.from_entry(e, token) for e in report.settled],
            skipped=[RailOutcomeResponse.from_entry(e, token) for e in report.skipped],
            failed=[RailOutcomeResponse.from_entry(e, token) for e in report.failed],
            total_amount=TokenAmount(**_units(report.total_amount, token)),
            total_fees=TokenAmount(**_units(report.total_fees, token)),
            total_net=TokenAmount(**_units(report.total_net, token)),
        )


# ============================================================================
# Journal schemas
# ============================================================================


class JournalEntryResponse(OutputModel):
    """Schema for one journal entry."""

    event_id: UUID = Field(serialization_alias="eventId")
    event_type: str = Field(serialization_alias="eventType")
    category: str
    correlation_id: UUID = Field(serialization_alias="correlationId")
    timestamp: str
    payload: dict[str, Any]


class JournalResponse(OutputModel):
    entries: list[JournalEntryResponse]
    total: int

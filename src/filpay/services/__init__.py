"""Settlement services package."""

from filpay.services.accounts import AccountBalanceTracker, BalanceOverview
from filpay.services.batch import (
    BatchSettlementOrchestrator,
    BatchSettlementReport,
    FailedRail,
    FailureKind,
    SettledRail,
    SkippedRail,
)
from filpay.services.funds import DepositOutcome, FundsService
from filpay.services.rails import PartyRails, RailRegistry
from filpay.services.settlement import (
    SettlementCalculator,
    SettlementService,
    SettleResult,
    SettleStatus,
)
from filpay.services.transactions import TransactionOutcome, TransactionRunner

__all__ = [
    # Accounts
    "AccountBalanceTracker",
    "BalanceOverview",
    # Rails
    "RailRegistry",
    "PartyRails",
    # Settlement
    "SettlementCalculator",
    "SettlementService",
    "SettleResult",
    "SettleStatus",
    # Batch
    "BatchSettlementOrchestrator",
    "BatchSettlementReport",
    "SettledRail",
    "SkippedRail",
    "FailedRail",
    "FailureKind",
    # Funds
    "FundsService",
    "DepositOutcome",
    # Transactions
    "TransactionRunner",
    "TransactionOutcome",
]

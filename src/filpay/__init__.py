"""filpay: inspect and settle payment rails under a Filecoin payments contract.

This package contains:
- Chain gateway adapters (web3 and in-memory)
- Account balance tracking
- Rail enumeration and settlement
- Batch settlement with per-rail failure isolation
- Domain events and an optional settlement journal
"""

from filpay.errors import (
    AlreadySettledOrInactiveError,
    ChainCallError,
    ConfigurationError,
    FilpayError,
    InsufficientFundsError,
    RailNotFoundError,
    TransactionRevertedError,
    ValidationError,
)
from filpay.services import (
    AccountBalanceTracker,
    BatchSettlementOrchestrator,
    BatchSettlementReport,
    FailureKind,
    FundsService,
    RailRegistry,
    SettlementCalculator,
    SettlementService,
)
from filpay.types import (
    Account,
    NoncePolicy,
    Rail,
    RailRole,
    RailStatus,
    SettlementAmounts,
    TokenDescriptor,
)

__version__ = "0.3.0"

__all__ = [
    "__version__",
    # Types
    "Account",
    "Rail",
    "RailRole",
    "RailStatus",
    "SettlementAmounts",
    "TokenDescriptor",
    "NoncePolicy",
    # Services
    "AccountBalanceTracker",
    "RailRegistry",
    "SettlementCalculator",
    "SettlementService",
    "BatchSettlementOrchestrator",
    "BatchSettlementReport",
    "FailureKind",
    "FundsService",
    # Errors
    "FilpayError",
    "ConfigurationError",
    "ValidationError",
    "InsufficientFundsError",
    "ChainCallError",
    "AlreadySettledOrInactiveError",
    "RailNotFoundError",
    "TransactionRevertedError",
]

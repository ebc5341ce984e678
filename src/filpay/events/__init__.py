"""Domain events for settlement operations.

Events are emitted by the services as work happens:
- Batch events: a settle-all run started / completed
- Rail events: a rail was skipped, previewed, settled or failed
- Transaction events: a transaction was submitted / confirmed

Presentation and the settlement journal subscribe through EventEmitter.
"""

from filpay.events.emitter import EventEmitter, EventHandler
from filpay.events.store import SettlementJournal, StoredEvent
from filpay.events.types import (
    BatchSettlementCompleted,
    BatchSettlementStarted,
    DomainEvent,
    EventCategory,
    EventMetadata,
    RailSettled,
    RailSettlementFailed,
    RailSettlementPreviewed,
    RailSkipped,
    TransactionConfirmed,
    TransactionSubmitted,
)

__all__ = [
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    "EventEmitter",
    "EventHandler",
    "SettlementJournal",
    "StoredEvent",
    "BatchSettlementStarted",
    "BatchSettlementCompleted",
    "RailSkipped",
    "RailSettlementPreviewed",
    "RailSettled",
    "RailSettlementFailed",
    "TransactionSubmitted",
    "TransactionConfirmed",
]

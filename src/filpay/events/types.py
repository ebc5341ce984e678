"""Domain event types for settlement operations.

Every event is:
- A frozen dataclass
- Explicit about its payload fields
- Traceable via metadata (one correlation id per command or batch run)
- Serializable for the settlement journal

Presentation subscribes to these events instead of being interleaved with
the settlement algorithm.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Coarse grouping used by subscribers that want a whole area."""

    BATCH = "batch"
    RAIL = "rail"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links events of one command / batch run
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        source_service: str = "filpay",
    ) -> EventMetadata:
        """Fresh id and UTC timestamp; a new correlation id unless one is given."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Class name; what `EventEmitter.on` filters on."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError(f"{type(self).__name__} has no category")

    def to_dict(self) -> dict[str, Any]:
        """Plain-JSON view of the event, metadata included."""
        return _jsonable(asdict(self))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _jsonable(obj: Any) -> Any:
    """Convert nested event data into JSON-safe values.

    Integers stay integers except those beyond 2**53, which are stringified
    so JSON consumers without big-int support keep full precision.
    """
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, int) and not isinstance(obj, bool) and abs(obj) > 2**53:
        return str(obj)
    return obj


# =============================================================================
# Batch Events
# =============================================================================


@dataclass(frozen=True)
class BatchSettlementStarted(DomainEvent):
    """A batch run enumerated the payee's rails and is about to process them."""

    payee: str
    token: str
    rail_ids: tuple[int, ...]
    preview: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.BATCH


@dataclass(frozen=True)
class BatchSettlementCompleted(DomainEvent):
    """A batch run finished (possibly interrupted)."""

    payee: str
    token: str
    preview: bool
    settled_count: int
    skipped_count: int
    failed_count: int
    total_amount: int
    total_fees: int
    interrupted: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.BATCH


# =============================================================================
# Rail Events
# =============================================================================


@dataclass(frozen=True)
class RailSkipped(DomainEvent):
    """Nothing was owed on the rail."""

    rail_id: int
    payer: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RAIL


@dataclass(frozen=True)
class RailSettlementPreviewed(DomainEvent):
    """Preview mode found an amount that would be settled."""

    rail_id: int
    payer: str
    payment_amount: int
    settlement_fee: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.RAIL


@dataclass(frozen=True)
class RailSettled(DomainEvent):
    """A settlement transaction for the rail confirmed successfully."""

    rail_id: int | None
    payer: str
    payment_amount: int
    settlement_fee: int
    tx_hash: str
    block_number: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.RAIL


@dataclass(frozen=True)
class RailSettlementFailed(DomainEvent):
    """The rail could not be settled in this run."""

    rail_id: int | None
    payer: str | None
    failure_kind: str
    message: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RAIL


# =============================================================================
# Transaction Events
# =============================================================================


@dataclass(frozen=True)
class TransactionSubmitted(DomainEvent):
    """A signed transaction was accepted by the node."""

    action: str
    tx_hash: str
    sender: str
    nonce: int | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.TRANSACTION


@dataclass(frozen=True)
class TransactionConfirmed(DomainEvent):
    """A submitted transaction was mined."""

    action: str
    tx_hash: str
    succeeded: bool
    block_number: int
    gas_used: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.TRANSACTION

"""Settlement journal: persistent, append-only record of domain events.

The journal provides:
- Persistent storage of emitted events (any SQLAlchemy URL, SQLite by default)
- Replay-safe appends: an event_id already present is ignored
- Lookup by correlation id (one batch run / command) and recency

It is an audit trail only. The settlement engine never reads it back, so a
stale journal can never influence what gets settled.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    bindparam,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from filpay.events.types import DomainEvent

metadata = MetaData()

settlement_event_table = Table(
    "filpay_settlement_event",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(36), nullable=False, unique=True),
    Column("event_type", String(64), nullable=False),
    Column("category", String(32), nullable=False),
    Column("correlation_id", String(36), nullable=False, index=True),
    Column("timestamp", String(40), nullable=False, index=True),
    Column("payload", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

_SELECT_COLUMNS = """
    SELECT event_id, event_type, category, correlation_id,
           timestamp, payload, version
    FROM filpay_settlement_event
"""


@dataclass
class StoredEvent:
    """One journal row, decoded."""

    event_id: UUID
    event_type: str
    category: str
    correlation_id: UUID
    timestamp: str
    payload: dict[str, Any]
    version: int

    @classmethod
    def from_event(cls, event: DomainEvent) -> StoredEvent:
        """Flatten a domain event into its journal form."""
        return cls(
            event_id=event.metadata.event_id,
            event_type=event.event_type,
            category=event.category.value,
            correlation_id=event.metadata.correlation_id,
            timestamp=event.metadata.timestamp.isoformat(),
            payload=event.to_dict(),
            version=event.metadata.version,
        )

    def as_params(self) -> dict[str, Any]:
        params = dict(self.__dict__)
        params["event_id"] = str(self.event_id)
        params["correlation_id"] = str(self.correlation_id)
        params["payload"] = json.dumps(self.payload, default=str)
        return params


class SettlementJournal:
    """Event journal backed by SQL.

    Appends are synchronous: each event is one short transaction committed
    on the emitting thread, inside the event loop when emitted from a
    service. That suits a local SQLite file under the CLI; a remote
    database would stall the batch for a round trip per event.
    Rows carry an insertion sequence so events sharing a timestamp read
    back in emission order.

    Usage:
        journal = SettlementJournal.connect("sqlite:///filpay.db")
        emitter.on_all(journal.append)

        for stored in journal.get_by_correlation(report.run_id):
            ...
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        metadata.create_all(engine)

    @classmethod
    def connect(cls, url: str) -> SettlementJournal:
        """Open (and create if needed) a journal at a database URL."""
        return cls(create_engine(url, echo=False))

    def append(self, event: DomainEvent) -> bool:
        """Record `event`.

        False means the event_id was already journaled and nothing changed.
        """
        stored = StoredEvent.from_event(event)
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    INSERT INTO filpay_settlement_event (
                        event_id, event_type, category, correlation_id,
                        timestamp, payload, version
                    ) VALUES (
                        :event_id, :event_type, :category, :correlation_id,
                        :timestamp, :payload, :version
                    )
                    ON CONFLICT (event_id) DO NOTHING
                """),
                stored.as_params(),
            )
        return result.rowcount > 0

    def get_by_correlation(self, correlation_id: UUID) -> list[StoredEvent]:
        """Get all events of one run, oldest first."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(_SELECT_COLUMNS + """
                    WHERE correlation_id = :correlation_id
                    ORDER BY timestamp ASC, seq ASC
                """),
                {"correlation_id": str(correlation_id)},
            ).fetchall()
        return [self._row_to_stored(row) for row in rows]

    def recent(
        self,
        limit: int = 50,
        event_types: list[str] | None = None,
    ) -> list[StoredEvent]:
        """Get the most recent events, newest first."""
        params: dict[str, Any] = {"limit": limit}
        query = _SELECT_COLUMNS
        if event_types:
            query += " WHERE event_type IN :event_types"
            params["event_types"] = event_types
        query += " ORDER BY timestamp DESC, seq DESC LIMIT :limit"

        statement = text(query)
        if event_types:
            statement = statement.bindparams(bindparam("event_types", expanding=True))

        with self._engine.connect() as conn:
            rows = conn.execute(statement, params).fetchall()
        return [self._row_to_stored(row) for row in rows]

    def count(self) -> int:
        with self._engine.connect() as conn:
            return conn.execute(text("SELECT COUNT(*) FROM filpay_settlement_event")).scalar() or 0

    def close(self) -> None:
        self._engine.dispose()

    @staticmethod
    def _row_to_stored(row: Any) -> StoredEvent:
        return StoredEvent(
            event_id=UUID(str(row[0])),
            event_type=row[1],
            category=row[2],
            correlation_id=UUID(str(row[3])),
            timestamp=row[4],
            payload=json.loads(row[5]),
            version=row[6],
        )

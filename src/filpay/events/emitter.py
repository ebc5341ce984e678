"""Event emitter for settlement progress.

Services publish as they work; subscribers (terminal progress, the
settlement journal, tests) register by event type, by category, or for
everything. A subscriber that raises is logged and skipped so that a
broken display can never abort a settlement run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, TypeVar, runtime_checkable

from filpay.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)


@runtime_checkable
class EventHandler(Protocol):
    """Anything callable with a single event."""

    def __call__(self, event: DomainEvent) -> None: ...


@dataclass(frozen=True)
class HandlerRegistration:
    """A subscriber and the filter it was registered with."""

    handler: EventHandler
    event_types: frozenset[str] | None = None  # None = any type
    categories: frozenset[EventCategory] | None = None  # None = any category

    def matches(self, event: DomainEvent) -> bool:
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        if self.categories is not None and event.category not in self.categories:
            return False
        return True


class EventEmitter:
    """Synchronous, in-process event emitter.

    Usage:
        emitter = EventEmitter()
        emitter.on(RailSettled, show_settled)
        emitter.on_category(EventCategory.TRANSACTION, show_tx)
        emitter.on_all(journal.append)

        emitter.emit(event)
    """

    def __init__(self) -> None:
        self._registrations: list[HandlerRegistration] = []

    def _register(self, registration: HandlerRegistration) -> None:
        self._registrations.append(registration)

    def on(self, event_type: type[E] | list[type[E]], handler: EventHandler) -> None:
        """Subscribe to one event class or a list of them."""
        classes = event_type if isinstance(event_type, list) else [event_type]
        self._register(
            HandlerRegistration(handler, event_types=frozenset(c.__name__ for c in classes))
        )

    def on_category(
        self, category: EventCategory | list[EventCategory], handler: EventHandler
    ) -> None:
        """Subscribe to every event of one or more categories."""
        categories = category if isinstance(category, list) else [category]
        self._register(HandlerRegistration(handler, categories=frozenset(categories)))

    def on_all(self, handler: EventHandler) -> None:
        self._register(HandlerRegistration(handler))

    def off(self, handler: EventHandler) -> None:
        """Drop every registration of `handler`.

        Compared with ==, so a bound method registered earlier is matched by
        a fresh reference to the same method.
        """
        self._registrations = [r for r in self._registrations if r.handler != handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver `event` to matching subscribers in registration order.

        Returns the exceptions raised by subscribers, if any.
        """
        errors: list[Exception] = []
        for registration in self._registrations:
            if not registration.matches(event):
                continue
            try:
                registration.handler(event)
            except Exception as e:
                logger.exception(
                    "Subscriber %r failed on %s", registration.handler, event.event_type
                )
                errors.append(e)
        return errors

    @property
    def handler_count(self) -> int:
        return len(self._registrations)

"""Observers that receive migration diagnostics."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, runtime_checkable

from .models import EventKind, MigrationEvent

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@runtime_checkable
class MigrationObserver(Protocol):
    """Anything that accepts migration events."""

    def on_event(self, event: MigrationEvent) -> None: ...


class LoggingObserver:
    """Forwards events to a standard library logger."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("libedgeidb.migration")

    def on_event(self, event: MigrationEvent) -> None:
        level = _LEVELS.get(event.level, logging.INFO)
        self.logger.log(level, "%s", event.message, extra={"event": event.kind.value})


class RecordingObserver:
    """Keeps every event in memory, for tests and diagnostic dumps."""

    def __init__(self) -> None:
        self.events: List[MigrationEvent] = []

    def on_event(self, event: MigrationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[MigrationEvent]:
        return [event for event in self.events if event.kind == kind]


class CompositeObserver:
    """Fans events out to several observers."""

    def __init__(self, *observers: MigrationObserver) -> None:
        self.observers = list(observers)

    def on_event(self, event: MigrationEvent) -> None:
        for observer in self.observers:
            observer.on_event(event)

"""
In-process notifications emitted after a record has been reconciled.

Provides:
- MessageReceived: an incoming message was created or re-applied
- StatusUpdated: a status change was persisted (old_status is None for placeholders)
- Notifier: fans each event out to the listeners registered for its type

Listener failures are logged and isolated; they never undo a reconciliation
that has already been committed.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class MessageReceived:
    record: Any
    created: bool = True


@dataclass
class StatusUpdated:
    record: Any
    old_status: Optional[str]
    new_status: str

    @property
    def is_delivered(self) -> bool:
        return self.new_status == "delivered"

    @property
    def is_read(self) -> bool:
        return self.new_status == "read"

    @property
    def is_failed(self) -> bool:
        return self.new_status == "failed"

    @property
    def is_deleted(self) -> bool:
        return self.new_status == "deleted"


class Notifier:
    """Synchronous fan-out of reconciliation events to registered listeners."""

    def __init__(self):
        self._listeners: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Callable[[Any], None]) -> None:
        self._listeners[event_type].append(listener)
        logger.debug(f"Listener registered for {event_type.__name__}: {listener!r}")

    def unsubscribe(self, event_type: type, listener: Callable[[Any], None]) -> None:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, event: Any) -> None:
        for listener in list(self._listeners.get(type(event), [])):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Listener {listener!r} failed for {type(event).__name__}",
                    extra={"wa_message_id": getattr(event.record, "wa_message_id", None)},
                )


# Global notifier used by the background jobs
notifier = Notifier()

"""In-process event dispatching with vetoable events.

Handlers are plain callables registered per event name. They are invoked
synchronously, in registration order, with the same mutable event object,
so a handler can modify the event's payload or veto the guarded action by
setting ``is_valid`` to False.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """Base event passed to handlers."""
    pass


@dataclass
class CancellableEvent(Event):
    """Event whose guarded action only proceeds while ``is_valid`` is True."""
    is_valid: bool = True


E = TypeVar("E", bound=Event)
EventHandler = Callable[[Event], None]


class EventDispatcher:
    """Registry of event handlers keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, name: str, handler: EventHandler) -> None:
        """Register a handler for an event name.

        Args:
            name: Event name
            handler: Callable receiving the event object
        """
        self._handlers[name].append(handler)

    def off(self, name: str, handler: EventHandler) -> bool:
        """Remove a previously registered handler.

        Returns:
            True if the handler was registered
        """
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def has_handlers(self, name: str) -> bool:
        return bool(self._handlers.get(name))

    def trigger(self, name: str, event: E) -> E:
        """Pass the event to every handler registered for ``name``.

        Handler exceptions propagate to the triggering code.

        Returns:
            The (possibly modified) event
        """
        handlers = list(self._handlers.get(name, []))
        if handlers:
            logger.debug(
                "Triggering event",
                extra={"event": name, "handlers": len(handlers)},
            )
        for handler in handlers:
            handler(event)
        return event

    def clear(self, name: Optional[str] = None) -> None:
        """Remove handlers for one event name, or for all of them."""
        if name is None:
            self._handlers.clear()
        else:
            self._handlers.pop(name, None)


# Global dispatcher instance
dispatcher = EventDispatcher()

"""EventBus — job lifecycle notifications from the scheduler to front ends."""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Type alias for event handler callbacks.
EventHandler = Any  # Callable[..., None]


class JobEvent(str, Enum):
    """Events published for every job.

    All payloads carry ``tool``, ``job_id`` and ``message``.  ``progress``
    adds ``progress`` (0-1, non-decreasing) and ``state`` (a ``JobState``);
    ``completed`` adds ``output_path``.  ``completed``, ``error`` and
    ``cancelled`` each fire at most once per job.
    """

    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class EventBus:
    """Publish/subscribe bus carrying ``JobEvent`` notifications.

    The scheduler emits; the CLI (or any other front end) subscribes.
    Event names may be given as ``JobEvent`` members or their string
    values.
    """

    def __init__(self) -> None:
        """Initialise an empty event bus."""
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register a handler for a given event type.

        Subscribing to a name that is not a ``JobEvent`` is allowed but
        logged, since the scheduler will never emit it.

        Args:
            event: The event name to subscribe to (e.g. ``JobEvent.PROGRESS``).
            handler: A callable that will be invoked with the event payload.
        """
        key = _event_key(event)
        if key not in _JOB_EVENT_NAMES:
            logger.warning("Subscribing to unknown event %r", key)
        self._handlers[key].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        """Remove a previously registered handler.

        Args:
            event: The event name.
            handler: The handler to remove.
        """
        try:
            self._handlers[_event_key(event)].remove(handler)
        except ValueError:
            logger.warning("Handler %r was not subscribed to event %r", handler, _event_key(event))

    def emit(self, event: str, **kwargs: Any) -> None:
        """Fire an event, calling all subscribed handlers.

        A failing handler is logged and skipped; the remaining handlers
        still run.  Handlers may unsubscribe themselves while running.

        Args:
            event: The event name to fire.
            **kwargs: The event payload passed to each handler.
        """
        key = _event_key(event)
        for handler in list(self._handlers.get(key, [])):
            try:
                handler(**kwargs)
            except Exception:
                logger.exception("Error in handler %r for event %r", handler, key)


_JOB_EVENT_NAMES: frozenset[str] = frozenset(e.value for e in JobEvent)


def _event_key(event: str) -> str:
    return event.value if isinstance(event, JobEvent) else event

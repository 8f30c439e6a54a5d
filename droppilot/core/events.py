"""In-process event dispatch between the orchestrator and its listeners."""

from __future__ import annotations

import logging
from collections import abc, defaultdict
from typing import Any, TypeVar


logger = logging.getLogger("DropPilot")

_E = TypeVar("_E")


class EventHub:
    """
    Synchronous publish/subscribe hub, keyed by event type.

    A failing listener is logged and doesn't stop the others from being called.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[abc.Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[_E], listener: abc.Callable[[_E], None]) -> None:
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: type[_E], listener: abc.Callable[[_E], None]) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: object) -> None:
        logger.debug(f"Event: {event}")
        for listener in list(self._listeners.get(type(event), ())):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener {listener!r} failed on {type(event).__name__}")

    def clear(self) -> None:
        self._listeners.clear()

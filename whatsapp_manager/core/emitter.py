"""Domain event emitter"""

import asyncio
from typing import Any, Callable, Dict, List

from whatsapp_manager.core.log import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]

DOMAIN_EVENTS = (
    "open",
    "close",
    "error",
    "contact:created",
    "contact:updated",
    "chat:created",
    "chat:updated",
    "chat:pined",
    "chat:archived",
    "chat:muted",
    "chat:deleted",
    "message:created",
    "message:updated",
    "message:status",
    "message:reacted",
    "message:deleted",
)


class EventEmitter:
    """Subscribers for the normalized events

    Listeners may be plain functions or coroutine functions. A listener that
    raises is logged and does not stop the others.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> int:
        """Call every listener of ``event`` in subscription order

        Returns:
            Number of listeners that completed without raising
        """
        delivered = 0
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(f"Listener for {event} failed")
        return delivered

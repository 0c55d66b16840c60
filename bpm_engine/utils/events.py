"""In-process Event Bus

Handlers are plain or async callables ``handler(event_name, payload)``.
Emission awaits handlers in subscription order; a failing handler is logged
and does not affect the others.
"""
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

from .logger import get_logger


logger = get_logger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Publish/subscribe hub for process and domain events"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe; returns an unsubscribe callable"""
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver to every handler subscribed at the time of the call"""
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event handler failed for {event}: {e}",
                    exc_info=True,
                    extra={"action": event}
                )

    def clear(self) -> None:
        self._handlers.clear()

"""
In-process domain event bus.

Emits named refresh signals (``orders``, ``dashboard``, ``customers``) after
committed changes so real-time subscribers (admin dashboard sockets, delivery
app) can reload. Best effort and at-most-once: there is no replay, and a
failing subscriber never affects the emitter or the other subscribers.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ORDERS = "orders"
DASHBOARD = "dashboard"
CUSTOMERS = "customers"

Callback = Callable[[str, Optional[Dict[str, Any]]], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)

    def subscribe(self, name: str, callback: Callback) -> Callable[[], None]:
        """Register a callback; returns an unsubscribe function."""
        self._subscribers[name].append(callback)

        def _unsubscribe():
            if callback in self._subscribers.get(name, []):
                self._subscribers[name].remove(callback)

        return _unsubscribe

    async def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver ``name`` to every subscriber once.

        Returns the number of subscribers that accepted the event.
        """
        delivered = 0
        for callback in list(self._subscribers.get(name, [])):
            try:
                result = callback(name, payload)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(f"[EventBus] Subscriber for '{name}' failed: {e}")
        return delivered

"""
Event Emitter

Observer used by the cart and order-queue stores to signal the
presentation layer. Each emitter has a fixed set of event names;
`on()` returns the disposer that removes the handler again.
"""

import inspect
import logging
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

Disposer = Callable[[], None]


class EventEmitter:
    """Typed event emitter with explicit disposers."""

    def __init__(self, events: Iterable[str]):
        self._handlers: dict[str, list[Callable[..., Any]]] = {name: [] for name in events}

    @property
    def events(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def _check(self, event: str) -> None:
        if event not in self._handlers:
            raise ValueError(f"Unknown event '{event}'. Known events: {sorted(self._handlers)}")

    def on(self, event: str, handler: Callable[..., Any]) -> Disposer:
        """
        Register `handler` for `event`.

        Handlers may be plain functions or coroutine functions.

        Returns:
            Disposer: Call it to remove the handler; calling twice is harmless
        """
        self._check(event)
        self._handlers[event].append(handler)

        def dispose() -> None:
            try:
                self._handlers[event].remove(handler)
            except ValueError:
                pass

        return dispose

    async def emit(self, event: str, *args: Any) -> None:
        """Call every handler of `event`; a failing handler is logged and skipped."""
        self._check(event)
        for handler in list(self._handlers[event]):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler for '{event}' failed")

    def listener_count(self, event: str) -> int:
        self._check(event)
        return len(self._handlers[event])

    def clear(self) -> None:
        for handlers in self._handlers.values():
            handlers.clear()

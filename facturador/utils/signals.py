"""
signals.py — Minimal synchronous observer used for UI-facing events
(totals changed, payment confirmed, delivery failed).

Subscriber errors are logged and never reach the emitter.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Signal:
    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, *args, **kwargs) -> None:
        for callback in list(self._subscribers):
            try:
                callback(*args, **kwargs)
            except Exception:
                logger.exception(f"Subscriber of '{self.name}' failed")

    def __len__(self) -> int:
        return len(self._subscribers)

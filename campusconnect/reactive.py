"""A minimal observable value used for the repositories' local mirrors."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class ObservableState(Generic[T]):
    """Holds a value and notifies subscribers whenever it is replaced.

    Only the owning object calls :meth:`set`; everyone else reads ``value`` or
    subscribes.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.RLock()

    @property
    def value(self) -> T:
        return self._value

    def subscribe(
        self, callback: Callable[[T], None], *, replay: bool = True
    ) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
            current = self._value
        if replay:
            self._call(callback, current)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._call(callback, value)

    def update(self, fn: Callable[[T], T]) -> T:
        """Replace the value with ``fn(value)`` atomically and return it."""
        with self._lock:
            new_value = fn(self._value)
            self._value = new_value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._call(callback, new_value)
        return new_value

    @staticmethod
    def _call(callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("State subscriber raised while handling an update")

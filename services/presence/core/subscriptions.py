"""Listener fan-out with explicit unsubscribe tokens."""
from __future__ import annotations

from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class _Token(Generic[T]):
    def __init__(self, hub: "Listeners[T]", listener: Callable[[T], None]) -> None:
        self._hub = hub
        self._listener = listener

    def unsubscribe(self) -> None:
        self._hub._discard(self._listener)


class Listeners(Generic[T]):
    """Ordered set of callbacks. Emitting iterates over a copy so a listener
    may unsubscribe (itself or others) while being called."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> _Token[T]:
        if listener in self._listeners:
            raise ValueError("listener already subscribed")
        self._listeners.append(listener)
        return _Token(self, listener)

    def emit(self, event: T) -> None:
        for listener in list(self._listeners):
            if listener in self._listeners:
                listener(event)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def _discard(self, listener: Callable[[T], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

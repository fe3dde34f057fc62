"""Owned state holder with subscribe/notify semantics."""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], None]


class Observable(Generic[T]):
    """Holds a value and notifies subscribers whenever it is replaced.

    Subscribers run synchronously, in subscription order, after every
    ``set``. A failing subscriber is logged and does not stop the others.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._subscribers: list[Subscriber] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception(f"Subscriber {callback!r} failed")

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self._value))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

"""Typed observer channels for progress and log delivery."""

from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`; closing it detaches the callback."""

    def __init__(self, channel: "EventChannel", callback: Callable) -> None:
        self._channel = channel
        self._callback = callback
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel._detach(self._callback)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()


class EventChannel(Generic[T]):
    """Synchronous fan-out of values to subscribed callbacks, in emission order."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _detach(self, callback: Callable[[T], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def emit(self, value: T) -> None:
        # Copy so a callback may unsubscribe while being notified.
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Subscriber of %s channel failed", self.name)


__all__ = ["EventChannel", "Subscription"]

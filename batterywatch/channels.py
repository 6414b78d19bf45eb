from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger("batterywatch.channels")


class Subscription:
    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel = cancel
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel()


class Broadcast(Generic[T]):
    """Latest-value broadcast channel.

    A new subscriber is handed the current value (if any) and then every later
    publication. History is never replayed. Publications are delivered in the
    order they were made; a subscriber that raises is logged and skipped.
    """

    def __init__(self, name: str, initial: T | None = None) -> None:
        self.name = name
        self._lock = threading.RLock()
        self._value: T | None = initial
        self._has_value = initial is not None
        self._subscribers: dict[int, Callable[[T], None]] = {}
        self._next_id = 0

    @property
    def value(self) -> T | None:
        with self._lock:
            return self._value

    def publish(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._has_value = True
            for callback in list(self._subscribers.values()):
                self._deliver(callback, value)

    def subscribe(self, callback: Callable[[T], None], *, replay_latest: bool = True) -> Subscription:
        with self._lock:
            sub_id = self._next_id
            self._next_id += 1
            self._subscribers[sub_id] = callback
            if replay_latest and self._has_value:
                self._deliver(callback, self._value)  # type: ignore[arg-type]
        return Subscription(lambda: self._unsubscribe(sub_id))

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _unsubscribe(self, sub_id: int) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)

    def _deliver(self, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("subscriber on channel %s raised", self.name)

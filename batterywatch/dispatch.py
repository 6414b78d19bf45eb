from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Protocol

logger = logging.getLogger("batterywatch.dispatch")

Callback = Callable[[], None]


class TimerHandle:
    """Cancellable reference to a scheduled (one-shot or repeating) callback."""

    def __init__(self, on_cancel: Callable[[TimerHandle], None] | None = None) -> None:
        self._cancelled = threading.Event()
        self._timer: threading.Timer | None = None
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        timer = self._timer
        if timer is not None:
            timer.cancel()
        if self._on_cancel is not None:
            self._on_cancel(self)


class Dispatcher(Protocol):
    """Single delivery context plus timers and off-context workers."""

    def post(self, fn: Callback) -> None: ...

    def call_later(self, delay_s: float, fn: Callback) -> TimerHandle: ...

    def call_every(self, interval_s: float, fn: Callback) -> TimerHandle: ...

    def run_in_background(self, fn: Callback) -> None: ...

    def time(self) -> float: ...


class ThreadDispatcher:
    """Runs every callback on one delivery thread.

    Timers fire on threading.Timer threads and only *post* their callback, so
    subscribers never race each other. Cancellation is re-checked on the
    delivery thread, which makes cancel() deterministic even when the timer has
    already fired.
    """

    def __init__(self, *, name: str = "batterywatch", io_workers: int = 4) -> None:
        self.name = name
        self._queue: queue.Queue[Callback | None] = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max(1, io_workers), thread_name_prefix=f"{name}-io")
        self._thread = threading.Thread(target=self._run, name=f"{name}-delivery", daemon=True)
        self._closed = False
        self._handles: set[TimerHandle] = set()
        self._handles_lock = threading.Lock()
        self._thread.start()

    def time(self) -> float:
        return time.monotonic()

    def is_delivery_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def post(self, fn: Callback) -> None:
        if self._closed:
            logger.debug("dispatcher %s closed; dropping callback", self.name)
            return
        self._queue.put(fn)

    def call_later(self, delay_s: float, fn: Callback) -> TimerHandle:
        handle = TimerHandle(on_cancel=self._forget)
        self._arm(handle, max(0.0, float(delay_s)), lambda: self._fire_once(handle, fn))
        return handle

    def call_every(self, interval_s: float, fn: Callback) -> TimerHandle:
        interval = float(interval_s)
        if interval <= 0:
            raise ValueError("interval_s must be > 0")
        handle = TimerHandle(on_cancel=self._forget)
        start = self.time()

        def _tick(n: int) -> None:
            if handle.cancelled:
                return
            try:
                fn()
            finally:
                # Fixed-rate schedule anchored to the start time avoids drift.
                # A raising callback must not end the schedule.
                next_at = start + interval * (n + 1)
                delay = max(0.0, next_at - self.time())
                self._arm(handle, delay, lambda: _tick(n + 1))

        self._arm(handle, interval, lambda: _tick(1))
        return handle

    def tracked_timers(self) -> int:
        with self._handles_lock:
            return len(self._handles)

    def run_in_background(self, fn: Callback) -> None:
        if self._closed:
            logger.debug("dispatcher %s closed; dropping background work", self.name)
            return
        future = self._executor.submit(fn)
        future.add_done_callback(_log_background_failure)

    def close(self, *, timeout_s: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        with self._handles_lock:
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle.cancel()
        self._queue.put(None)
        self._thread.join(timeout=timeout_s)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _arm(self, handle: TimerHandle, delay_s: float, on_delivery: Callback) -> None:
        if self._closed:
            return

        def _post() -> None:
            if handle.cancelled:
                self._forget(handle)
                return
            self.post(on_delivery)

        timer = threading.Timer(delay_s, _post)
        timer.daemon = True
        handle._timer = timer
        with self._handles_lock:
            self._handles.add(handle)
        # cancel() may have run before the handle was tracked.
        if handle.cancelled:
            self._forget(handle)
            return
        timer.start()

    def _forget(self, handle: TimerHandle) -> None:
        with self._handles_lock:
            self._handles.discard(handle)

    def _fire_once(self, handle: TimerHandle, fn: Callback) -> None:
        self._forget(handle)
        if handle.cancelled:
            return
        handle._cancelled.set()
        fn()

    def _run(self) -> None:
        while True:
            fn = self._queue.get()
            if fn is None:
                return
            try:
                fn()
            except Exception:
                logger.exception("callback failed on dispatcher %s", self.name)


class ManualDispatcher:
    """Deterministic dispatcher driven by a virtual clock.

    Nothing runs until run_pending() or advance() is called. Background work is
    queued alongside posted callbacks, so a whole sample -> send -> completion
    chain resolves inside a single run_pending().
    """

    def __init__(self, *, start: float = 0.0) -> None:
        self._now = float(start)
        self._ready: deque[Callback] = deque()
        self._timers: list[tuple[float, int, TimerHandle, Callback, float | None]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def post(self, fn: Callback) -> None:
        self._ready.append(fn)

    def run_in_background(self, fn: Callback) -> None:
        self._ready.append(fn)

    def call_later(self, delay_s: float, fn: Callback) -> TimerHandle:
        handle = TimerHandle()
        due = self._now + max(0.0, float(delay_s))
        heapq.heappush(self._timers, (due, next(self._seq), handle, fn, None))
        return handle

    def call_every(self, interval_s: float, fn: Callback) -> TimerHandle:
        interval = float(interval_s)
        if interval <= 0:
            raise ValueError("interval_s must be > 0")
        handle = TimerHandle()
        heapq.heappush(self._timers, (self._now + interval, next(self._seq), handle, fn, interval))
        return handle

    def pending_timers(self) -> int:
        return sum(1 for _, _, handle, _, _ in self._timers if not handle.cancelled)

    def run_pending(self) -> int:
        ran = 0
        while self._ready:
            fn = self._ready.popleft()
            ran += 1
            try:
                fn()
            except Exception:
                logger.exception("callback failed on manual dispatcher")
        return ran

    def advance(self, seconds: float) -> None:
        target = self._now + float(seconds)
        self.run_pending()
        while self._timers and self._timers[0][0] <= target:
            due, _, handle, fn, interval = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = due
            if interval is None:
                handle._cancelled.set()
            else:
                heapq.heappush(self._timers, (due + interval, next(self._seq), handle, fn, interval))
            self.post(fn)
            self.run_pending()
        self._now = target


def _log_background_failure(future: Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("background task failed: %r", exc)

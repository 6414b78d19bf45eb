from __future__ import annotations

import logging
import threading
from typing import Callable

from .channels import Broadcast, Subscription
from .dispatch import Dispatcher, TimerHandle
from .models import Sample
from .sensors.base import SafePowerSource

logger = logging.getLogger("batterywatch.sampler")

DEFAULT_SAMPLE_INTERVAL_S = 120.0


class SampleSource:
    """Periodic power-state sampler.

    start() emits one sample right away and then one every interval_s. The
    query runs on a dispatcher worker; the resulting Sample is published back
    on the delivery context. A failed query is skipped and the schedule holds.
    """

    def __init__(
        self,
        source: SafePowerSource,
        dispatcher: Dispatcher,
        *,
        interval_s: float = DEFAULT_SAMPLE_INTERVAL_S,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.source = source
        self.interval_s = float(interval_s)
        self._dispatcher = dispatcher
        self._lock = threading.Lock()
        self._timer: TimerHandle | None = None
        # Bumped on every start/stop so in-flight queries from an older run are dropped.
        self._generation = 0
        self._samples: Broadcast[Sample] = Broadcast("samples")
        self._has_event_feed = source.add_listener(self.notify_power_event)

    @property
    def started(self) -> bool:
        with self._lock:
            return self._timer is not None

    @property
    def has_event_feed(self) -> bool:
        return self._has_event_feed

    def subscribe(self, callback: Callable[[Sample], None]) -> Subscription:
        # Samples are events, not state: never replay the previous one.
        return self._samples.subscribe(callback, replay_latest=False)

    def current_sample(self) -> Sample | None:
        return self.source.current_sample()

    def start(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._stop_locked()
            self._generation += 1
            generation = self._generation
            self._timer = self._dispatcher.call_every(self.interval_s, lambda: self._tick(generation))
        logger.info("power monitoring started (every %.0fs)", self.interval_s)
        self._tick(generation)

    def stop(self) -> None:
        with self._lock:
            if self._timer is None:
                return
            self._stop_locked()
        logger.info("power monitoring stopped")

    def notify_power_event(self) -> None:
        """Re-query and re-emit after a raw level/state change notification."""

        with self._lock:
            if self._timer is None:
                return
            generation = self._generation
        self._tick(generation)

    def _stop_locked(self) -> None:
        assert self._timer is not None
        self._timer.cancel()
        self._timer = None
        self._generation += 1

    def _tick(self, generation: int) -> None:
        self._dispatcher.run_in_background(lambda: self._query(generation))

    def _query(self, generation: int) -> None:
        sample = self.source.current_sample()
        if sample is None:
            logger.debug("power query failed; skipping tick")
            return
        self._dispatcher.post(lambda: self._emit(generation, sample))

    def _emit(self, generation: int, sample: Sample) -> None:
        with self._lock:
            if generation != self._generation:
                return
        self._samples.publish(sample)

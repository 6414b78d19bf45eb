from __future__ import annotations

import logging
import threading
from dataclasses import replace

from .channels import Broadcast, Subscription
from .dispatch import Dispatcher, TimerHandle
from .models import (
    CollectionStatistics,
    CollectionStatus,
    CollectionSummary,
    Collecting,
    Failed,
    Idle,
    Sample,
    Succeeded,
    Transmitting,
)
from .sampler import SampleSource
from .transmitter import SendOutcome, Transmitter

logger = logging.getLogger("batterywatch.orchestrator")

REARM_AFTER_SUCCESS_S = 2.0
REARM_AFTER_FAILURE_S = 5.0


class CollectionOrchestrator:
    """Sequences sampling and transmission and owns collection statistics.

    Status transitions:

        Idle -> Collecting -> Transmitting -> Succeeded -(2s)-> Collecting
                                           -> Failed    -(5s)-> Collecting
        Succeeded | Failed -> Transmitting (new sample before re-arm)
        any  -> Idle (stop)

    A sample that arrives while Succeeded or Failed is still showing is sent
    right away and cancels the pending re-arm. Only one transmission is ever
    in flight; a sample that lands while one is pending is dropped. Nothing
    here raises to callers: delivery failures turn into a Failed status and a
    bumped failure counter.
    """

    def __init__(
        self,
        sampler: SampleSource,
        transmitter: Transmitter,
        dispatcher: Dispatcher,
        *,
        rearm_after_success_s: float = REARM_AFTER_SUCCESS_S,
        rearm_after_failure_s: float = REARM_AFTER_FAILURE_S,
    ) -> None:
        self.sampler = sampler
        self.transmitter = transmitter
        self.rearm_after_success_s = float(rearm_after_success_s)
        self.rearm_after_failure_s = float(rearm_after_failure_s)
        self._dispatcher = dispatcher
        self._lock = threading.RLock()
        self._stats = CollectionStatistics()
        self._in_flight = False
        self._rearm: TimerHandle | None = None
        self.status: Broadcast[CollectionStatus] = Broadcast("status", initial=Idle())
        self.stats: Broadcast[CollectionStatistics] = Broadcast("stats", initial=CollectionStatistics())
        self._sample_sub: Subscription | None = sampler.subscribe(self._on_sample)

    # commands

    def start_collection(self) -> None:
        with self._lock:
            if self._stats.is_active:
                logger.warning("data collection already running")
                return
            self._stats.is_active = True
            self._publish_stats_locked()
            self.status.publish(Collecting())
            logger.info(
                "data collection started (every %.0fs, payloads base64-encoded)",
                self.sampler.interval_s,
            )
            self.sampler.start()

    def stop_collection(self) -> None:
        with self._lock:
            if not self._stats.is_active:
                logger.warning("data collection not running")
                return
            self._stats.is_active = False
            self._cancel_rearm_locked()
            self._publish_stats_locked()
            self.status.publish(Idle())
            self.sampler.stop()
            logger.info(
                "data collection stopped (sent=%s errors=%s)",
                self._stats.total_delivered,
                self._stats.total_failed,
            )

    def reset_statistics(self) -> None:
        with self._lock:
            self._stats.total_delivered = 0
            self._stats.total_failed = 0
            self._stats.last_sample_at = None
            self._publish_stats_locked()
        logger.info("counters reset")

    def close(self) -> None:
        with self._lock:
            if self._stats.is_active:
                self.stop_collection()
            sub, self._sample_sub = self._sample_sub, None
        # Outside our lock: the samples channel calls into _on_sample under its own.
        if sub is not None:
            sub.close()

    # queries

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._stats.is_active

    @property
    def current_status(self) -> CollectionStatus:
        value = self.status.value
        assert value is not None
        return value

    def statistics(self) -> CollectionStatistics:
        with self._lock:
            return replace(self._stats)

    def summary(self) -> CollectionSummary:
        return CollectionSummary.from_statistics(self.statistics())

    # pipeline

    def _on_sample(self, sample: Sample) -> None:
        with self._lock:
            if not self._stats.is_active:
                logger.debug("discarding sample from %s; collection inactive", sample.source_id)
                return
            if self._in_flight:
                logger.warning("transmission still in flight; dropping sample captured at %s", sample.captured_at)
                return
            self._in_flight = True
            self._cancel_rearm_locked()
            self._stats.last_sample_at = sample.captured_at
            self._publish_stats_locked()
            logger.info(
                "new battery data collected: %s - %s",
                sample.level_pct(),
                sample.power_state.value,
            )
            self.status.publish(Transmitting())
        self.transmitter.send(sample, self._on_outcome)

    def _on_outcome(self, outcome: SendOutcome) -> None:
        with self._lock:
            self._in_flight = False
            if outcome.ok:
                self._stats.total_delivered += 1
                status: CollectionStatus = Succeeded(f"Data sent successfully ({self._stats.total_delivered})")
                delay = self.rearm_after_success_s
            else:
                self._stats.total_failed += 1
                reason = outcome.error if outcome.error is not None else "unknown error"
                status = Failed(f"Failed to send data: {reason} (Errors: {self._stats.total_failed})")
                delay = self.rearm_after_failure_s
                logger.error(status.message)
            self._publish_stats_locked()

            # An outcome that lands after stop is counted but leaves the status at Idle.
            if not self._stats.is_active:
                return
            self.status.publish(status)
            self._cancel_rearm_locked()
            self._rearm = self._dispatcher.call_later(delay, self._on_rearm)

    def _on_rearm(self) -> None:
        with self._lock:
            self._rearm = None
            if not self._stats.is_active or self._in_flight:
                return
            self.status.publish(Collecting())

    def _cancel_rearm_locked(self) -> None:
        if self._rearm is not None:
            self._rearm.cancel()
            self._rearm = None

    def _publish_stats_locked(self) -> None:
        self.stats.publish(replace(self._stats))

from __future__ import annotations

import enum
import itertools
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Protocol

from .channels import Broadcast
from .dispatch import Dispatcher, TimerHandle

logger = logging.getLogger("batterywatch.background")

GRANT_NAME = "BatteryDataCollection"
DEFAULT_POLL_INTERVAL_S = 1.0
DEFAULT_SAFETY_THRESHOLD_S = 10.0

GrantHandle = Hashable
ExpirationCallback = Callable[[], None]


class ExecutionHost(Protocol):
    """Host API for time-bounded background execution grants."""

    def request_grant(self, name: str, on_expire: ExpirationCallback) -> GrantHandle | None: ...

    def release_grant(self, handle: GrantHandle) -> None: ...

    def remaining_budget_s(self) -> float: ...


class GrantPhase(str, enum.Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    ENDING = "ending"


@dataclass(frozen=True)
class GrantSnapshot:
    active: bool
    handle: Any = None
    remaining_s: float = 0.0

    def describe(self) -> str:
        if not self.active:
            return "No active background task"
        return f"Background task active (ID: {self.handle})"


NO_GRANT = GrantSnapshot(active=False)


class BackgroundBudgetTracker:
    """Holds at most one execution grant and gives it back before the host
    force-revokes it.

    Every grant mutation happens under one lock; ending goes
    ACTIVE -> ENDING -> ABSENT so a second concurrent end (poll tick vs host
    expiration) is a no-op.
    """

    def __init__(
        self,
        host: ExecutionHost,
        dispatcher: Dispatcher,
        *,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        safety_threshold_s: float = DEFAULT_SAFETY_THRESHOLD_S,
        grant_name: str = GRANT_NAME,
    ) -> None:
        self.host = host
        self.poll_interval_s = float(poll_interval_s)
        self.safety_threshold_s = float(safety_threshold_s)
        self.grant_name = grant_name
        self._dispatcher = dispatcher
        self._lock = threading.RLock()
        self._phase = GrantPhase.ABSENT
        self._handle: GrantHandle | None = None
        self._remaining_s = 0.0
        self._poll: TimerHandle | None = None
        self.grants: Broadcast[GrantSnapshot] = Broadcast("grants", initial=NO_GRANT)

    @property
    def phase(self) -> GrantPhase:
        with self._lock:
            return self._phase

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._phase is GrantPhase.ACTIVE

    @property
    def is_polling(self) -> bool:
        with self._lock:
            return self._poll is not None

    @property
    def remaining_budget_s(self) -> float:
        with self._lock:
            return self._remaining_s

    def describe(self) -> str:
        return self._snapshot().describe()

    # host lifecycle signals

    def on_lose_foreground_priority(self) -> None:
        with self._lock:
            if self._phase is GrantPhase.ACTIVE and self._poll is None:
                # Grant survived a foreground stint; resume watching its budget.
                logger.info("process losing foreground priority again; resuming budget poll")
                self._start_poll_locked()
                self._publish_locked()
                return
        logger.info("process losing foreground priority; requesting background grant")
        self._begin()

    def on_regain_foreground_priority(self) -> None:
        # The grant's fate stays with the host; only the poll stops.
        logger.info("process regained foreground priority; stopping budget poll")
        with self._lock:
            self._stop_poll_locked()
            self._publish_locked()

    def manual_begin(self) -> None:
        self._begin()

    def manual_end(self) -> None:
        self._end("manual")

    # internals

    def _begin(self) -> None:
        with self._lock:
            if self._phase is not GrantPhase.ABSENT:
                logger.warning("background grant already %s; ignoring request", self._phase.value)
                return
            handle = self.host.request_grant(self.grant_name, self._on_host_expire)
            if handle is None:
                logger.warning("host refused background grant; collection continues unprotected")
                self._publish_locked()
                return
            self._phase = GrantPhase.ACTIVE
            self._handle = handle
            self._start_poll_locked()
            self._publish_locked()
        logger.info("background grant started with ID: %s", handle)

    def _on_host_expire(self) -> None:
        logger.warning("background grant expired by host; ending")
        self._end("expired")

    def _end(self, reason: str) -> bool:
        with self._lock:
            if self._phase is not GrantPhase.ACTIVE:
                return False
            self._phase = GrantPhase.ENDING
            handle = self._handle
            self._stop_poll_locked()
        try:
            self.host.release_grant(handle)
        except Exception:
            logger.exception("host release_grant failed for %s", handle)
        with self._lock:
            self._phase = GrantPhase.ABSENT
            self._handle = None
            self._publish_locked()
        logger.info("background grant %s ended (%s)", handle, reason)
        return True

    def _poll_tick(self) -> None:
        with self._lock:
            if self._phase is not GrantPhase.ACTIVE:
                self._stop_poll_locked()
                return
            remaining = float(self.host.remaining_budget_s())
            self._remaining_s = remaining
            low = remaining < self.safety_threshold_s
            if not low:
                self._publish_locked()
                return
        logger.warning("background time running low: %.1fs remaining", remaining)
        self._end("budget")

    def _start_poll_locked(self) -> None:
        self._stop_poll_locked()
        self._remaining_s = _finite(self.host.remaining_budget_s())
        self._poll = self._dispatcher.call_every(self.poll_interval_s, self._poll_tick)

    def _stop_poll_locked(self) -> None:
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None
        self._remaining_s = 0.0

    def _snapshot(self) -> GrantSnapshot:
        with self._lock:
            if self._phase is GrantPhase.ABSENT:
                return NO_GRANT
            return GrantSnapshot(active=True, handle=self._handle, remaining_s=self._remaining_s)

    def _publish_locked(self) -> None:
        self.grants.publish(self._snapshot())


class SimulatedExecutionHost:
    """Execution host for platforms with no native background-task API.

    Each grant gets a fixed budget measured on the dispatcher clock; if the
    holder has not released it when the budget runs out, the expiration
    callback fires on the delivery context.
    """

    def __init__(self, dispatcher: Dispatcher, *, budget_s: float = 30.0) -> None:
        if budget_s <= 0:
            raise ValueError("budget_s must be > 0")
        self.budget_s = float(budget_s)
        self._dispatcher = dispatcher
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._grants: dict[int, tuple[float, TimerHandle]] = {}

    def request_grant(self, name: str, on_expire: ExpirationCallback) -> int:
        handle = next(self._ids)

        def _expire() -> None:
            with self._lock:
                held = handle in self._grants
            if held:
                on_expire()
                # The host reclaims the grant whether or not the holder released it.
                with self._lock:
                    self._grants.pop(handle, None)

        timer = self._dispatcher.call_later(self.budget_s, _expire)
        with self._lock:
            self._grants[handle] = (self._dispatcher.time(), timer)
        logger.debug("granted %s to %r for %.0fs", handle, name, self.budget_s)
        return handle

    def release_grant(self, handle: GrantHandle) -> None:
        with self._lock:
            entry = self._grants.pop(handle, None)  # type: ignore[arg-type]
        if entry is not None:
            entry[1].cancel()

    def remaining_budget_s(self) -> float:
        with self._lock:
            if not self._grants:
                return math.inf
            started = min(start for start, _ in self._grants.values())
        return max(0.0, self.budget_s - (self._dispatcher.time() - started))

    def active_grants(self) -> int:
        with self._lock:
            return len(self._grants)


def _finite(value: float) -> float:
    value = float(value)
    return value if math.isfinite(value) else 0.0

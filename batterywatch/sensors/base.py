from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

from ..models import Sample

logger = logging.getLogger("batterywatch.sensors")

PowerEventListener = Callable[[], None]


class PowerSource(Protocol):
    """Small internal telemetry interface used by the sampler."""

    source_id: str

    def current_sample(self) -> Sample: ...


@runtime_checkable
class EventFeedSource(Protocol):
    """Sources that can push raw level/state change notifications."""

    def add_listener(self, listener: PowerEventListener) -> None: ...


@dataclass
class SafePowerSource:
    """Wraps a source so a failed query yields None instead of raising.

    Repeated identical failures are logged once.
    """

    backend_name: str
    source: PowerSource
    source_id: str = field(init=False)
    _last_error: str | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.source_id = str(getattr(self.source, "source_id", "unknown"))

    def current_sample(self) -> Sample | None:
        try:
            sample = self.source.current_sample()
        except Exception as exc:
            signature = f"{type(exc).__name__}:{exc}"
            if signature != self._last_error:
                logger.warning(
                    "power source '%s' query failed: %s: %s",
                    self.backend_name,
                    type(exc).__name__,
                    exc,
                )
                self._last_error = signature
            return None
        self._last_error = None
        return sample

    def add_listener(self, listener: PowerEventListener) -> bool:
        if not isinstance(self.source, EventFeedSource):
            return False
        self.source.add_listener(listener)
        return True

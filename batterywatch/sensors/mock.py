from __future__ import annotations

import hashlib
import math
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from ..models import PowerState, Sample, utcnow
from .base import PowerEventListener

# One simulated charge cycle: discharge to the floor, then charge back to full.
_DISCHARGE_S = 3 * 60 * 60
_CHARGE_S = 60 * 60
_LEVEL_FLOOR = 0.15
_LOW_POWER_BELOW = 0.20


def _rng_for(source_id: str) -> random.Random:
    seed_bytes = hashlib.sha256(source_id.encode("utf-8")).digest()[:8]
    return random.Random(int.from_bytes(seed_bytes, "big", signed=False))


def _phase_offset(source_id: str) -> float:
    digest = hashlib.sha256(f"{source_id}:phase".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % (_DISCHARGE_S + _CHARGE_S)


@dataclass
class MockPowerSource:
    """Deterministic battery simulation for local runs and tests.

    Level follows a discharge/charge sawtooth with a little per-device noise.
    Listeners added through add_listener are invoked by fire_event().
    """

    source_id: str
    time_fn: Callable[[], float] = time.time
    now_fn: Callable[[], datetime] = utcnow
    _rng: random.Random = field(init=False, repr=False)
    _listeners: list[PowerEventListener] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = _rng_for(self.source_id)

    def current_sample(self) -> Sample:
        t = self.time_fn() + _phase_offset(self.source_id)
        cycle_pos = t % (_DISCHARGE_S + _CHARGE_S)

        if cycle_pos < _DISCHARGE_S:
            level = 1.0 - (1.0 - _LEVEL_FLOOR) * (cycle_pos / _DISCHARGE_S)
            state = PowerState.UNPLUGGED
        else:
            charged = (cycle_pos - _DISCHARGE_S) / _CHARGE_S
            level = _LEVEL_FLOOR + (1.0 - _LEVEL_FLOOR) * math.sqrt(charged)
            state = PowerState.CHARGING

        with self._lock:
            level += self._rng.uniform(-0.005, 0.005)
        level = round(max(0.0, min(1.0, level)), 2)
        if state is PowerState.CHARGING and level >= 1.0:
            state = PowerState.FULL

        return Sample(
            captured_at=self.now_fn(),
            level=level,
            power_state=state,
            source_id=self.source_id,
            low_power_mode=state is PowerState.UNPLUGGED and level < _LOW_POWER_BELOW,
        )

    def add_listener(self, listener: PowerEventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def fire_event(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

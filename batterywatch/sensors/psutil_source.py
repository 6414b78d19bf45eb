from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import psutil

from ..models import PowerState, Sample, utcnow

_PLATFORM_PROFILE = Path("/sys/firmware/acpi/platform_profile")


@dataclass
class PsutilPowerSource:
    """Reads battery level and plug state through psutil.sensors_battery().

    Hosts without a battery (or where psutil has no sensor support) report an
    unknown level and state rather than failing.
    """

    source_id: str
    battery_fn: Callable[[], Any] | None = None
    now_fn: Callable[[], datetime] = utcnow
    profile_path: Path = _PLATFORM_PROFILE

    def current_sample(self) -> Sample:
        battery = self._read_battery()
        if battery is None:
            return Sample(
                captured_at=self.now_fn(),
                level=None,
                power_state=PowerState.UNKNOWN,
                source_id=self.source_id,
                low_power_mode=self._low_power_mode(),
            )

        percent = _as_float(getattr(battery, "percent", None))
        level = None if percent is None else max(0.0, min(1.0, percent / 100.0))
        return Sample(
            captured_at=self.now_fn(),
            level=level,
            power_state=_power_state(getattr(battery, "power_plugged", None), level),
            source_id=self.source_id,
            low_power_mode=self._low_power_mode(),
        )

    def _read_battery(self) -> Any:
        if self.battery_fn is not None:
            return self.battery_fn()
        reader = getattr(psutil, "sensors_battery", None)
        if reader is None:
            return None
        return reader()

    def _low_power_mode(self) -> bool:
        try:
            profile = self.profile_path.read_text(encoding="utf-8").strip().lower()
        except OSError:
            return False
        return profile in {"low-power", "quiet"}


def _power_state(plugged: Any, level: float | None) -> PowerState:
    if plugged is None:
        return PowerState.UNKNOWN
    if not plugged:
        return PowerState.UNPLUGGED
    if level is not None and level >= 1.0:
        return PowerState.FULL
    return PowerState.CHARGING


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None

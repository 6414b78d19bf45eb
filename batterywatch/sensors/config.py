from __future__ import annotations

from .base import PowerSource, SafePowerSource
from .mock import MockPowerSource
from .psutil_source import PsutilPowerSource

_VALID_BACKENDS = {"psutil", "mock"}


class PowerSourceConfigError(ValueError):
    """Invalid power source configuration."""


def build_power_source(*, backend: str, source_id: str) -> SafePowerSource:
    name = (backend or "").strip().lower()
    if name not in _VALID_BACKENDS:
        allowed = ", ".join(sorted(_VALID_BACKENDS))
        raise PowerSourceConfigError(f"unsupported power source backend '{backend}' (allowed: {allowed})")
    if not source_id.strip():
        raise PowerSourceConfigError("source_id must be non-empty")
    return SafePowerSource(backend_name=name, source=_build_backend(name, source_id=source_id))


def _build_backend(name: str, *, source_id: str) -> PowerSource:
    if name == "mock":
        return MockPowerSource(source_id=source_id)
    return PsutilPowerSource(source_id=source_id)

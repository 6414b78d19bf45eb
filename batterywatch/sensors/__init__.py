from .base import EventFeedSource, PowerEventListener, PowerSource, SafePowerSource
from .config import PowerSourceConfigError, build_power_source
from .mock import MockPowerSource
from .psutil_source import PsutilPowerSource

__all__ = [
    "EventFeedSource",
    "MockPowerSource",
    "PowerEventListener",
    "PowerSource",
    "PowerSourceConfigError",
    "PsutilPowerSource",
    "SafePowerSource",
    "build_power_source",
]

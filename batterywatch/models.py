from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias


class PowerState(str, Enum):
    UNKNOWN = "unknown"
    UNPLUGGED = "unplugged"
    CHARGING = "charging"
    FULL = "full"

    @classmethod
    def parse(cls, raw: object) -> PowerState:
        if isinstance(raw, str):
            value = raw.strip().lower()
            for member in cls:
                if member.value == value:
                    return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class Sample:
    """One power-state snapshot.

    level is a 0.0-1.0 fraction, or None when the host cannot report it.
    """

    captured_at: datetime
    level: float | None
    power_state: PowerState
    source_id: str
    low_power_mode: bool = False

    def level_pct(self) -> str:
        if self.level is None or self.level < 0:
            return "Unknown"
        return f"{int(self.level * 100)}%"


# -----------------------------
# Collection status (tagged variant)
# -----------------------------


@dataclass(frozen=True)
class Idle:
    kind = "idle"

    def describe(self) -> str:
        return "Ready to collect data"


@dataclass(frozen=True)
class Collecting:
    kind = "collecting"

    def describe(self) -> str:
        return "Collecting data..."


@dataclass(frozen=True)
class Transmitting:
    kind = "transmitting"

    def describe(self) -> str:
        return "Sending data to server..."


@dataclass(frozen=True)
class Succeeded:
    message: str
    kind = "succeeded"

    def describe(self) -> str:
        return self.message


@dataclass(frozen=True)
class Failed:
    message: str
    kind = "failed"

    def describe(self) -> str:
        return self.message


CollectionStatus: TypeAlias = Idle | Collecting | Transmitting | Succeeded | Failed


@dataclass
class CollectionStatistics:
    """Counters owned by the orchestrator. Readers only ever see copies."""

    is_active: bool = False
    last_sample_at: datetime | None = None
    total_delivered: int = 0
    total_failed: int = 0

    @property
    def total_attempts(self) -> int:
        return self.total_delivered + self.total_failed


@dataclass(frozen=True)
class CollectionSummary:
    is_active: bool
    total_delivered: int
    total_failed: int
    last_sample_at: datetime | None
    success_rate_pct: int

    @classmethod
    def from_statistics(cls, stats: CollectionStatistics) -> CollectionSummary:
        return cls(
            is_active=stats.is_active,
            total_delivered=stats.total_delivered,
            total_failed=stats.total_failed,
            last_sample_at=stats.last_sample_at,
            success_rate_pct=success_rate_pct(stats.total_delivered, stats.total_failed),
        )

    def render(self) -> str:
        last = "Never"
        if self.last_sample_at is not None:
            last = self.last_sample_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        return "\n".join(
            [
                "Data Collection Summary:",
                f"Status: {'Active' if self.is_active else 'Stopped'}",
                f"Total Data Sent: {self.total_delivered}",
                f"Error Count: {self.total_failed}",
                f"Last Collection: {last}",
                f"Success Rate: {self.success_rate_pct}%",
            ]
        )


def success_rate_pct(delivered: int, failed: int) -> int:
    attempts = delivered + failed
    if attempts <= 0:
        return 100
    return int(delivered / attempts * 100)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

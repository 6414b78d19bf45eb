from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml

from .transmitter import DEFAULT_ENDPOINT_URL, DEFAULT_TITLE, DEFAULT_USER_ID

LogFormat = Literal["text", "json"]

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


class ConfigError(ValueError):
    """Raised when agent configuration is invalid."""


@dataclass(frozen=True)
class AgentConfig:
    endpoint_url: str
    device_id: str
    sensor_backend: str

    # Cadence
    sample_interval_s: float
    rearm_after_success_s: float
    rearm_after_failure_s: float

    # Transmission
    transmit_timeout_s: float
    transmit_max_retries: int
    transmit_retry_delay_s: float
    envelope_title: str
    envelope_user_id: int

    # Background grant
    background_poll_interval_s: float
    background_safety_threshold_s: float
    background_budget_s: float
    start_in_background: bool

    # Logging
    log_level: str
    log_format: LogFormat


def default_device_id() -> str:
    """Stable per-host identifier, so restarts report under the same id."""

    return str(uuid.uuid5(uuid.NAMESPACE_DNS, socket.gethostname() or "localhost"))


def load_config_from_env(environ: Mapping[str, str] | None = None) -> AgentConfig:
    env = os.environ if environ is None else environ
    file_values = _load_yaml_defaults(env.get("BATTERYWATCH_CONFIG_PATH"))
    src = _Source(env=env, file_values=file_values)

    log_format = src.text("LOG_FORMAT", "text").lower()
    if log_format not in {"text", "json"}:
        raise ConfigError(f"LOG_FORMAT must be 'text' or 'json' (got {log_format!r})")

    log_level = src.text("LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL is not a logging level: {log_level!r}")

    device_id = src.text("BATTERYWATCH_DEVICE_ID", "") or default_device_id()

    return AgentConfig(
        endpoint_url=src.text("BATTERYWATCH_ENDPOINT_URL", DEFAULT_ENDPOINT_URL),
        device_id=device_id,
        sensor_backend=src.text("SENSOR_BACKEND", "psutil").lower(),
        sample_interval_s=src.positive_float("SAMPLE_INTERVAL_S", 120.0),
        rearm_after_success_s=src.nonnegative_float("REARM_AFTER_SUCCESS_S", 2.0),
        rearm_after_failure_s=src.nonnegative_float("REARM_AFTER_FAILURE_S", 5.0),
        transmit_timeout_s=src.positive_float("TRANSMIT_TIMEOUT_S", 10.0),
        transmit_max_retries=src.nonnegative_int("TRANSMIT_MAX_RETRIES", 2),
        transmit_retry_delay_s=src.nonnegative_float("TRANSMIT_RETRY_DELAY_S", 0.0),
        envelope_title=src.text("ENVELOPE_TITLE", DEFAULT_TITLE),
        envelope_user_id=src.nonnegative_int("ENVELOPE_USER_ID", DEFAULT_USER_ID),
        background_poll_interval_s=src.positive_float("BACKGROUND_POLL_INTERVAL_S", 1.0),
        background_safety_threshold_s=src.nonnegative_float("BACKGROUND_SAFETY_THRESHOLD_S", 10.0),
        background_budget_s=src.positive_float("BACKGROUND_BUDGET_S", 30.0),
        start_in_background=src.flag("START_IN_BACKGROUND", False),
        log_level=log_level,
        log_format=log_format,  # type: ignore[arg-type]
    )


def _load_yaml_defaults(raw_path: str | None) -> dict[str, Any]:
    if not raw_path or not raw_path.strip():
        return {}
    path = Path(raw_path.strip()).expanduser()
    if not path.exists():
        raise ConfigError(f"BATTERYWATCH_CONFIG_PATH does not exist: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config at {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config at {path} must be a YAML object")
    # File keys are the lower-case env names (sample_interval_s: 60).
    return {str(k).strip().upper(): v for k, v in loaded.items()}


@dataclass(frozen=True)
class _Source:
    env: Mapping[str, str]
    file_values: Mapping[str, Any]

    def raw(self, name: str) -> Any:
        value = self.env.get(name)
        if value is not None and value.strip() != "":
            return value.strip()
        return self.file_values.get(name)

    def text(self, name: str, default: str) -> str:
        value = self.raw(name)
        if value is None:
            return default
        return str(value).strip()

    def _number(self, name: str, default: float, *, cast: type) -> Any:
        value = self.raw(name)
        if value is None:
            return default
        if isinstance(value, bool):
            raise ConfigError(f"invalid {name}={value!r}")
        try:
            return cast(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid {name}={value!r}") from exc

    def positive_float(self, name: str, default: float) -> float:
        value = float(self._number(name, default, cast=float))
        if value <= 0:
            raise ConfigError(f"{name} must be > 0 (got {value})")
        return value

    def nonnegative_float(self, name: str, default: float) -> float:
        value = float(self._number(name, default, cast=float))
        if value < 0:
            raise ConfigError(f"{name} must be >= 0 (got {value})")
        return value

    def nonnegative_int(self, name: str, default: int) -> int:
        value = int(self._number(name, default, cast=int))
        if value < 0:
            raise ConfigError(f"{name} must be >= 0 (got {value})")
        return value

    def flag(self, name: str, default: bool) -> bool:
        value = self.raw(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ConfigError(f"invalid {name}={value!r}")

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

import requests

from . import __version__
from .dispatch import Dispatcher
from .models import PowerState, Sample

logger = logging.getLogger("batterywatch.transmitter")

DEFAULT_ENDPOINT_URL = "https://jsonplaceholder.typicode.com/posts"
DEFAULT_TITLE = "Battery Data Collection"
DEFAULT_USER_ID = 1
USER_AGENT = f"batterywatch-agent/{__version__}"
UNKNOWN_LEVEL = -1.0


# -----------------------------
# Errors
# -----------------------------


class TransmitError(RuntimeError):
    retryable = False


class InvalidEndpoint(TransmitError):
    """The configured endpoint URL is not a usable http(s) URL."""


class EncodingFailure(TransmitError):
    """The sample could not be serialized into a transport envelope."""


class TransportFailure(TransmitError):
    """Connection-level failure (DNS, refused, reset, timeout)."""

    retryable = True


class ServerStatusError(TransmitError):
    """The collector answered with a non-2xx status."""

    retryable = True

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Server error with status code: {status_code}")
        self.status_code = int(status_code)
        self.body = body


@dataclass(frozen=True)
class SendOutcome:
    ok: bool
    status_code: int | None
    error: TransmitError | None
    attempts: int


OnComplete = Callable[[SendOutcome], None]


# -----------------------------
# Envelope codec
# -----------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def sample_to_json(sample: Sample) -> dict[str, Any]:
    return {
        "timestamp": _iso(sample.captured_at),
        "batteryLevel": UNKNOWN_LEVEL if sample.level is None else float(sample.level),
        "batteryState": sample.power_state.value,
        "deviceId": sample.source_id,
        "isLowPowerModeEnabled": bool(sample.low_power_mode),
    }


def sample_from_json(data: Mapping[str, Any]) -> Sample:
    raw_level = data.get("batteryLevel")
    level: float | None = None
    if isinstance(raw_level, (int, float)) and not isinstance(raw_level, bool) and raw_level >= 0:
        level = float(raw_level)
    return Sample(
        captured_at=datetime.fromisoformat(str(data["timestamp"])),
        level=level,
        power_state=PowerState.parse(data.get("batteryState")),
        source_id=str(data["deviceId"]),
        low_power_mode=bool(data.get("isLowPowerModeEnabled", False)),
    )


def encode_sample(sample: Sample) -> str:
    """Base64 of the sample's compact JSON form."""

    try:
        blob = json.dumps(sample_to_json(sample), separators=(",", ":"), sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EncodingFailure(f"Failed to encode data: {exc}") from exc
    return base64.b64encode(blob.encode("utf-8")).decode("ascii")


def decode_sample(body: str) -> Sample:
    try:
        raw = base64.b64decode(body.encode("ascii"), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise EncodingFailure(f"Failed to decode data: {exc}") from exc
    if not isinstance(data, dict):
        raise EncodingFailure("decoded sample was not a JSON object")
    return sample_from_json(data)


def build_envelope(sample: Sample, *, title: str = DEFAULT_TITLE, user_id: int = DEFAULT_USER_ID) -> dict[str, Any]:
    return {
        "title": title,
        "body": encode_sample(sample),
        "userId": user_id,
        "timestamp": _iso(sample.captured_at),
    }


def parse_envelope(envelope: Mapping[str, Any]) -> Sample:
    body = envelope.get("body")
    if not isinstance(body, str):
        raise EncodingFailure("envelope body must be a base64 string")
    return decode_sample(body)


def validate_endpoint(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in {"https", "http"} or not parsed.netloc:
        raise InvalidEndpoint(f"Invalid URL provided: {url!r}")
    return url


# -----------------------------
# Transmitter
# -----------------------------


class Transmitter:
    """Delivers samples to the collector with a bounded retry budget.

    Retryable failures (connection errors, non-2xx) are retried up to
    max_retries extra times; endpoint and encoding errors fail immediately.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        endpoint_url: str = DEFAULT_ENDPOINT_URL,
        session: requests.Session | None = None,
        timeout_s: float = 10.0,
        max_retries: int = 2,
        retry_delay_s: float = 0.0,
        title: str = DEFAULT_TITLE,
        user_id: int = DEFAULT_USER_ID,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.endpoint_url = endpoint_url
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.title = title
        self.user_id = user_id
        self._dispatcher = dispatcher
        self._session = session or requests.Session()
        self._sleep = sleep_fn

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def send(self, sample: Sample, on_complete: OnComplete) -> None:
        """Deliver off the delivery context; on_complete runs back on it."""

        def _work() -> None:
            try:
                outcome = self.deliver(sample)
            except Exception as exc:
                # on_complete must always run or the caller stays in flight.
                logger.exception("send crashed unexpectedly")
                error = TransportFailure(f"unexpected {type(exc).__name__}: {exc}")
                outcome = SendOutcome(ok=False, status_code=None, error=error, attempts=1)
            self._dispatcher.post(lambda: on_complete(outcome))

        self._dispatcher.run_in_background(_work)

    def deliver(self, sample: Sample) -> SendOutcome:
        try:
            url = validate_endpoint(self.endpoint_url)
            envelope = build_envelope(sample, title=self.title, user_id=self.user_id)
        except TransmitError as exc:
            logger.error("send aborted: %s", exc)
            return SendOutcome(ok=False, status_code=None, error=exc, attempts=0)

        last_error: TransmitError | None = None
        attempts = 0
        while attempts < self.max_attempts:
            if attempts > 0 and self.retry_delay_s > 0:
                self._sleep(self.retry_delay_s)
            attempts += 1
            try:
                status_code = self._post(url, envelope)
            except TransmitError as exc:
                last_error = exc
                logger.warning("send attempt %d/%d failed: %s", attempts, self.max_attempts, exc)
                if not exc.retryable:
                    break
                continue
            return SendOutcome(ok=True, status_code=status_code, error=None, attempts=attempts)

        return SendOutcome(ok=False, status_code=_status_of(last_error), error=last_error, attempts=attempts)

    def _post(self, url: str, envelope: dict[str, Any]) -> int:
        try:
            resp = self._session.post(
                url,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                data=json.dumps(envelope),
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise TransportFailure(f"{type(exc).__name__}: {exc}") from exc

        if 200 <= resp.status_code < 300:
            logger.info("battery data sent - status %s", resp.status_code)
            logger.debug("server response: %s...", (resp.text or "")[:100])
            return int(resp.status_code)
        raise ServerStatusError(resp.status_code, body=(resp.text or "")[:200])


def _status_of(error: TransmitError | None) -> int | None:
    if isinstance(error, ServerStatusError):
        return error.status_code
    return None

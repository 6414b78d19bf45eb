from __future__ import annotations

import base64
import json
import math
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest
import requests

from batterywatch.dispatch import ManualDispatcher
from batterywatch.models import PowerState, Sample
from batterywatch.transmitter import (
    USER_AGENT,
    EncodingFailure,
    InvalidEndpoint,
    SendOutcome,
    ServerStatusError,
    Transmitter,
    TransportFailure,
    build_envelope,
    decode_sample,
    encode_sample,
    parse_envelope,
)


class _Session:
    """Fake requests.Session: each post() consumes the next scripted result."""

    def __init__(self, results: list[Any]) -> None:
        self._results = list(results)
        self.calls: list[SimpleNamespace] = []

    def post(self, url: str, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(SimpleNamespace(url=url, **kwargs))
        result = self._results[min(len(self.calls), len(self._results)) - 1]
        if isinstance(result, Exception):
            raise result
        return SimpleNamespace(status_code=result, text='{"id": 101}')


def _sample(**overrides: Any) -> Sample:
    values: dict[str, Any] = {
        "captured_at": datetime(2026, 3, 1, 12, 30, 15, 250000, tzinfo=timezone.utc),
        "level": 0.42,
        "power_state": PowerState.UNPLUGGED,
        "source_id": "4f3c2a1e-device",
        "low_power_mode": True,
    }
    values.update(overrides)
    return Sample(**values)


def _transmitter(session: _Session, **kwargs: Any) -> Transmitter:
    kwargs.setdefault("endpoint_url", "https://collector.example.com/posts")
    return Transmitter(ManualDispatcher(), session=session, **kwargs)  # type: ignore[arg-type]


def test_envelope_round_trip_recovers_sample() -> None:
    sample = _sample()
    envelope = build_envelope(sample)

    assert envelope["title"] == "Battery Data Collection"
    assert envelope["userId"] == 1
    assert envelope["timestamp"] == "2026-03-01T12:30:15.250000+00:00"
    assert parse_envelope(envelope) == sample


def test_unknown_level_encodes_as_sentinel_and_decodes_to_none() -> None:
    sample = _sample(level=None, power_state=PowerState.UNKNOWN, low_power_mode=False)
    body = encode_sample(sample)

    data = json.loads(base64.b64decode(body))
    assert data["batteryLevel"] == -1.0
    assert data["batteryState"] == "unknown"
    assert decode_sample(body) == sample


def test_decode_rejects_garbage_body() -> None:
    with pytest.raises(EncodingFailure):
        decode_sample("not base64 !!")


def test_send_retries_transport_failures_then_succeeds() -> None:
    session = _Session([requests.ConnectionError("reset"), requests.Timeout("slow"), 201])
    tx = _transmitter(session)

    outcome = tx.deliver(_sample())

    assert outcome.ok is True
    assert outcome.status_code == 201
    assert outcome.attempts == 3
    assert len(session.calls) == 3


def test_send_reports_server_error_after_three_attempts() -> None:
    session = _Session([500])
    tx = _transmitter(session)

    outcome = tx.deliver(_sample())

    assert outcome.ok is False
    assert outcome.attempts == 3
    assert len(session.calls) == 3
    assert isinstance(outcome.error, ServerStatusError)
    assert outcome.error.status_code == 500
    assert outcome.status_code == 500


def test_transport_failure_is_reported_when_budget_exhausted() -> None:
    session = _Session([requests.ConnectionError("refused")])
    tx = _transmitter(session, max_retries=1)

    outcome = tx.deliver(_sample())

    assert outcome.ok is False
    assert outcome.attempts == 2
    assert isinstance(outcome.error, TransportFailure)
    assert outcome.status_code is None


def test_invalid_endpoint_fails_fast_without_network() -> None:
    session = _Session([200])
    tx = _transmitter(session, endpoint_url="collector.example.com/posts")

    outcome = tx.deliver(_sample())

    assert outcome.ok is False
    assert outcome.attempts == 0
    assert isinstance(outcome.error, InvalidEndpoint)
    assert session.calls == []


def test_encoding_failure_is_terminal() -> None:
    session = _Session([200])
    tx = _transmitter(session)

    outcome = tx.deliver(_sample(level=math.nan))

    assert outcome.ok is False
    assert isinstance(outcome.error, EncodingFailure)
    assert session.calls == []


def test_request_carries_headers_timeout_and_envelope() -> None:
    session = _Session([200])
    tx = _transmitter(session, timeout_s=3.5, title="Power Report", user_id=7)
    sample = _sample()

    assert tx.deliver(sample).ok is True

    call = session.calls[0]
    assert call.url == "https://collector.example.com/posts"
    assert call.headers["Content-Type"] == "application/json"
    assert call.headers["User-Agent"] == USER_AGENT
    assert call.timeout == 3.5

    envelope = json.loads(call.data)
    assert envelope["title"] == "Power Report"
    assert envelope["userId"] == 7
    assert parse_envelope(envelope) == sample


def test_retry_delay_sleeps_between_attempts_only() -> None:
    sleeps: list[float] = []
    session = _Session([503, 503, 204])
    tx = _transmitter(session, retry_delay_s=0.5, sleep_fn=sleeps.append)

    assert tx.deliver(_sample()).ok is True
    assert sleeps == [0.5, 0.5]


def test_send_completes_on_delivery_context() -> None:
    dispatcher = ManualDispatcher()
    session = _Session([200])
    tx = Transmitter(dispatcher, endpoint_url="https://collector.example.com/posts", session=session)  # type: ignore[arg-type]
    outcomes: list[SendOutcome] = []

    tx.send(_sample(), outcomes.append)
    assert outcomes == []
    assert session.calls == []

    dispatcher.run_pending()

    assert len(outcomes) == 1
    assert outcomes[0].ok is True
    assert outcomes[0].attempts == 1


def test_send_reports_failure_when_session_crashes() -> None:
    dispatcher = ManualDispatcher()
    session = _Session([RuntimeError("adapter bug")])
    tx = Transmitter(dispatcher, endpoint_url="https://collector.example.com/posts", session=session)  # type: ignore[arg-type]
    outcomes: list[SendOutcome] = []

    tx.send(_sample(), outcomes.append)
    dispatcher.run_pending()

    assert len(outcomes) == 1
    assert outcomes[0].ok is False
    assert isinstance(outcomes[0].error, TransportFailure)
    assert "adapter bug" in str(outcomes[0].error)

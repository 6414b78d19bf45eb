from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable

import requests
from dotenv import load_dotenv

from .background import BackgroundBudgetTracker, GrantSnapshot, SimulatedExecutionHost
from .config import AgentConfig, ConfigError, load_config_from_env
from .dispatch import Dispatcher, ThreadDispatcher
from .models import CollectionStatus
from .observability import configure_logging
from .orchestrator import CollectionOrchestrator
from .sampler import SampleSource
from .sensors import PowerSourceConfigError, build_power_source
from .transmitter import Transmitter

logger = logging.getLogger("batterywatch")


class Agent:
    """Wires the collection pipeline from an AgentConfig."""

    def __init__(
        self,
        config: AgentConfig,
        dispatcher: Dispatcher,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        source = build_power_source(backend=config.sensor_backend, source_id=config.device_id)
        self.sampler = SampleSource(source, dispatcher, interval_s=config.sample_interval_s)
        self.transmitter = Transmitter(
            dispatcher,
            endpoint_url=config.endpoint_url,
            session=session,
            timeout_s=config.transmit_timeout_s,
            max_retries=config.transmit_max_retries,
            retry_delay_s=config.transmit_retry_delay_s,
            title=config.envelope_title,
            user_id=config.envelope_user_id,
        )
        self.orchestrator = CollectionOrchestrator(
            self.sampler,
            self.transmitter,
            dispatcher,
            rearm_after_success_s=config.rearm_after_success_s,
            rearm_after_failure_s=config.rearm_after_failure_s,
        )
        self.host = SimulatedExecutionHost(dispatcher, budget_s=config.background_budget_s)
        self.tracker = BackgroundBudgetTracker(
            self.host,
            dispatcher,
            poll_interval_s=config.background_poll_interval_s,
            safety_threshold_s=config.background_safety_threshold_s,
        )

    def start(self) -> None:
        self.orchestrator.start_collection()
        if self.config.start_in_background:
            self.tracker.on_lose_foreground_priority()

    def shutdown(self) -> None:
        self.orchestrator.close()
        self.tracker.manual_end()


def _print_status(status: CollectionStatus) -> None:
    print(f"[batterywatch-agent] status={status.kind} {status.describe()}")


def _print_grant(snapshot: GrantSnapshot) -> None:
    print(f"[batterywatch-agent] {snapshot.describe()}")


def install_signal_handlers(
    *,
    stop_event: threading.Event,
    dispatcher: Dispatcher,
    on_background: Callable[[], None],
    on_foreground: Callable[[], None],
    on_summary: Callable[[], None],
) -> None:
    """SIGINT/SIGTERM stop; SIGUSR1/SIGUSR2 emulate losing/regaining foreground priority."""

    def _handle_stop(signum, _frame) -> None:
        logger.info("received signal %s; shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_stop)

    lifecycle = {
        "SIGUSR1": on_background,
        "SIGUSR2": on_foreground,
        "SIGHUP": on_summary,
    }
    for name, action in lifecycle.items():
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        # Signal handlers run on the main thread; hop onto the delivery context.
        signal.signal(sig, lambda _signum, _frame, action=action: dispatcher.post(action))


def main() -> None:
    # Load repo-level .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    parser = argparse.ArgumentParser(description="BatteryWatch agent (power telemetry collection)")
    parser.add_argument(
        "--duration-s",
        type=float,
        default=0.0,
        help="Stop after N seconds (0 runs until SIGINT/SIGTERM)",
    )
    parser.add_argument(
        "--background",
        action="store_true",
        help="Request a background execution grant immediately after start",
    )
    args = parser.parse_args()

    try:
        config = load_config_from_env()
    except ConfigError as exc:
        raise SystemExit(f"[batterywatch-agent] invalid config: {exc}") from exc

    if args.background:
        config = replace(config, start_in_background=True)

    configure_logging(level=config.log_level, log_format=config.log_format, device_id=config.device_id)

    dispatcher = ThreadDispatcher(name="batterywatch")
    try:
        agent = Agent(config, dispatcher)
    except PowerSourceConfigError as exc:
        dispatcher.close()
        raise SystemExit(f"[batterywatch-agent] invalid power source config: {exc}") from exc

    agent.orchestrator.status.subscribe(_print_status)
    agent.tracker.grants.subscribe(_print_grant, replay_latest=False)

    stop_event = threading.Event()
    install_signal_handlers(
        stop_event=stop_event,
        dispatcher=dispatcher,
        on_background=agent.tracker.on_lose_foreground_priority,
        on_foreground=agent.tracker.on_regain_foreground_priority,
        on_summary=lambda: print(agent.orchestrator.summary().render()),
    )

    print(
        "[batterywatch-agent] device_id=%s endpoint=%s sensors=%s interval=%ss budget=%ss"
        % (
            config.device_id,
            config.endpoint_url,
            config.sensor_backend,
            config.sample_interval_s,
            config.background_budget_s,
        )
    )

    dispatcher.post(agent.start)
    deadline = time.monotonic() + args.duration_s if args.duration_s > 0 else None
    while not stop_event.wait(timeout=1.0):
        if deadline is not None and time.monotonic() >= deadline:
            break

    done = threading.Event()

    def _shutdown() -> None:
        try:
            agent.shutdown()
        finally:
            done.set()

    dispatcher.post(_shutdown)
    done.wait(timeout=5.0)
    print(agent.orchestrator.summary().render())
    dispatcher.close()


if __name__ == "__main__":
    main()

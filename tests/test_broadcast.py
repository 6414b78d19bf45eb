from __future__ import annotations

from batterywatch.channels import Broadcast


def test_late_subscriber_gets_latest_value_only() -> None:
    channel: Broadcast[int] = Broadcast("numbers")
    channel.publish(1)
    channel.publish(2)

    seen: list[int] = []
    channel.subscribe(seen.append)
    channel.publish(3)

    assert seen == [2, 3]
    assert channel.value == 3


def test_empty_channel_does_not_replay() -> None:
    channel: Broadcast[str] = Broadcast("empty")
    seen: list[str] = []

    channel.subscribe(seen.append)

    assert seen == []
    assert channel.value is None


def test_replay_can_be_disabled() -> None:
    channel: Broadcast[str] = Broadcast("events", initial="boot")
    seen: list[str] = []

    channel.subscribe(seen.append, replay_latest=False)
    channel.publish("tick")

    assert seen == ["tick"]


def test_raising_subscriber_does_not_starve_others() -> None:
    channel: Broadcast[int] = Broadcast("numbers")
    seen: list[int] = []

    def _bad(_value: int) -> None:
        raise RuntimeError("subscriber bug")

    channel.subscribe(_bad)
    channel.subscribe(seen.append)
    channel.publish(7)

    assert seen == [7]


def test_closed_subscription_stops_delivery() -> None:
    channel: Broadcast[int] = Broadcast("numbers")
    seen: list[int] = []

    sub = channel.subscribe(seen.append)
    channel.publish(1)
    sub.close()
    sub.close()
    channel.publish(2)

    assert seen == [1]
    assert channel.subscriber_count() == 0

from __future__ import annotations

import pytest

from forge_agent.observability.events import RunEvent, RunEventChannel, RunEventKind


def test_subscribers_receive_only_their_kind() -> None:
    channel = RunEventChannel()
    logs: list[str] = []
    everything: list[RunEventKind] = []
    channel.subscribe(RunEventKind.LOG, lambda event: logs.append(event.text))
    channel.subscribe(None, lambda event: everything.append(event.kind))

    channel.status("Classifying...")
    channel.log("Intent: edit")
    channel.diff(["Diff preview (a.py):", "+x"])

    assert logs == ["Intent: edit"]
    assert everything == [RunEventKind.STATUS, RunEventKind.LOG, RunEventKind.DIFF]


def test_subscriber_errors_are_captured_not_raised() -> None:
    channel = RunEventChannel()
    received: list[str] = []

    def _broken(event: RunEvent) -> None:
        raise RuntimeError("renderer crashed")

    channel.subscribe("log", _broken)
    channel.subscribe("log", lambda event: received.append(event.text))

    errors = channel.publish(RunEvent(RunEventKind.LOG, text="still delivered"))

    assert received == ["still delivered"]
    assert len(errors) == 1
    assert errors[0].target == "_broken"
    assert channel.dispatch_errors()[0].message == "renderer crashed"


def test_unsubscribe_stops_delivery() -> None:
    channel = RunEventChannel()
    seen: list[str] = []
    token = channel.subscribe(RunEventKind.LOG, lambda event: seen.append(event.text))
    channel.log("one")
    assert channel.unsubscribe(token)
    assert not channel.unsubscribe(token)
    channel.log("two")
    assert seen == ["one"]


def test_replay_is_bounded_and_filterable() -> None:
    channel = RunEventChannel(buffer_size=3)
    for index in range(5):
        channel.log(f"line {index}")
    channel.stream_start("summary")

    assert channel.log_lines() == ("line 3", "line 4")
    assert [event.kind for event in channel.replay(limit=1)] == [RunEventKind.STREAM_START]
    assert channel.replay(limit=0) == ()


def test_stream_events_carry_text() -> None:
    channel = RunEventChannel()
    channel.stream_start("summary")
    channel.stream_append("- did a thing")
    channel.stream_end()

    kinds = [event.kind for event in channel.replay()]
    assert kinds == [RunEventKind.STREAM_START, RunEventKind.STREAM_APPEND, RunEventKind.STREAM_END]
    assert channel.replay(kind="stream_append")[0].text == "- did a thing"


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        RunEventChannel(buffer_size=0)
    channel = RunEventChannel()
    with pytest.raises(ValueError):
        channel.subscribe(RunEventKind.LOG, "not callable")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        channel.publish("log")  # type: ignore[arg-type]

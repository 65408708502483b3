"""
Tests for the replay event stream
"""

import json

from browser2video.replay_log import Click, ReplayLog, StepStart, event_to_dict


def test_events_are_relative_to_start():
    log = ReplayLog(start_ms=0)
    log.click(10, 20)
    event = log.events[0]
    assert isinstance(event, Click)
    assert event.ts > 0


def test_subscribers_receive_events_until_unsubscribed():
    log = ReplayLog()
    received = []
    unsubscribe = log.subscribe(received.append)

    log.cursor_move(1, 2)
    unsubscribe()
    log.cursor_move(3, 4)

    assert [(e.x, e.y) for e in received] == [(1, 2)]
    assert len(log.events) == 2


def test_failing_subscriber_does_not_stop_others():
    log = ReplayLog()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    log.subscribe(broken)
    log.subscribe(received.append)
    log.key_press("Enter")

    assert received[0].key == "Enter"


def test_event_to_dict_puts_type_first():
    data = event_to_dict(StepStart(index=1, caption="Open", ts=5))
    assert list(data)[0] == "type"
    assert data == {"type": "stepStart", "index": 1, "caption": "Open", "ts": 5}


def test_write_jsonl(tmp_path):
    log = ReplayLog()
    log.step_start(1, "Open")
    log.audio("Hello", 1200)
    log.step_end(1)

    path = log.write_jsonl(tmp_path / "replay.jsonl")
    lines = [json.loads(line) for line in path.read_text().splitlines()]

    assert [line["type"] for line in lines] == ["stepStart", "audio", "stepEnd"]
    assert lines[1]["durationMs"] == 1200


def test_empty_log_writes_nothing(tmp_path):
    assert ReplayLog().write_jsonl(tmp_path / "replay.jsonl") is None
    assert not (tmp_path / "replay.jsonl").exists()


def test_clear():
    log = ReplayLog()
    log.click(1, 1)
    log.clear()
    assert log.events == ()

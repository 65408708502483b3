"""
Tests for WebVTT captions
"""

import json

from browser2video.captions import (
    StepRecord,
    format_vtt_time,
    generate_webvtt,
    regenerate_captions,
    steps_from_metadata,
)


def test_format_vtt_time():
    assert format_vtt_time(0) == "00:00:00.000"
    assert format_vtt_time(1500) == "00:00:01.500"
    assert format_vtt_time(3661500) == "01:01:01.500"


def test_one_cue_per_step():
    steps = [
        StepRecord(1, "Open the app", 0, 1200),
        StepRecord(2, "Create a note", 1200, 4850),
    ]
    vtt = generate_webvtt(steps)

    assert vtt.startswith("WEBVTT\n\n")
    assert "00:00:00.000 --> 00:00:01.200\nStep 1: Open the app\n" in vtt
    assert "00:00:01.200 --> 00:00:04.850\nStep 2: Create a note\n" in vtt


def test_no_steps_gives_header_only():
    assert generate_webvtt([]) == "WEBVTT\n\n"


def test_regenerate_from_run_json(tmp_path):
    run_json = tmp_path / "run.json"
    run_json.write_text(json.dumps({
        "mode": "human",
        "steps": [StepRecord(1, "Login", 100, 900).to_metadata()],
    }))

    path = regenerate_captions(str(run_json))

    assert path == str(tmp_path / "captions.vtt")
    assert "Step 1: Login" in (tmp_path / "captions.vtt").read_text()
    assert steps_from_metadata(run_json) == [StepRecord(1, "Login", 100, 900)]

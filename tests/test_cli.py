"""
Tests for the command line interface
"""

import json
from unittest.mock import patch

from click.testing import CliRunner

from main import cli, load_scenario


def test_captions_command(tmp_path):
    run_json = tmp_path / "run.json"
    run_json.write_text(json.dumps({
        "steps": [{"index": 1, "caption": "Open", "startMs": 0, "endMs": 1000}],
    }))

    result = CliRunner().invoke(cli, ["captions", str(run_json)])

    assert result.exit_code == 0
    assert "Step 1: Open" in (tmp_path / "captions.vtt").read_text()


def test_compose_rejects_mismatched_offsets(tmp_path):
    a = tmp_path / "a.webm"
    b = tmp_path / "b.webm"
    a.write_bytes(b"")
    b.write_bytes(b"")

    result = CliRunner().invoke(cli, ["compose", str(a), str(b), "-o", str(tmp_path / "out.mp4"),
                                      "--offsets", "0"])

    assert result.exit_code != 0
    assert "one offset per input" in result.output


def test_check_command_runs():
    result = CliRunner().invoke(cli, ["check"])
    assert result.exit_code == 0
    assert "Environment" in result.output


def test_load_scenario_requires_async_function(tmp_path):
    good = tmp_path / "good.py"
    good.write_text("async def scenario(session):\n    pass\n")
    assert load_scenario(good).__name__ == "scenario"

    bad = tmp_path / "bad.py"
    bad.write_text("def scenario(session):\n    pass\n")
    result = CliRunner().invoke(cli, ["run", str(bad)])
    assert result.exit_code != 0
    assert "async def scenario" in result.output


def test_compose_passes_crop(tmp_path):
    a = tmp_path / "a.webm"
    a.write_bytes(b"")
    result_dict = {"output_path": str(tmp_path / "out.mp4"), "inputs": [str(a)], "layout": "auto", "duration": 1.0}

    with patch("browser2video.compositor.compose_videos", return_value=result_dict) as compose_videos:
        result = CliRunner().invoke(cli, ["compose", str(a), "-o", str(tmp_path / "out.mp4"),
                                          "--crop", "0,56,1280,664"])

    assert result.exit_code == 0, result.output
    crop = compose_videos.call_args.kwargs["css_crop"]
    assert (crop.x, crop.y, crop.width, crop.height, crop.viewport_width) == (0, 56, 1280, 664, 1280)


def test_compose_rejects_bad_crop(tmp_path):
    a = tmp_path / "a.webm"
    a.write_bytes(b"")

    result = CliRunner().invoke(cli, ["compose", str(a), "-o", str(tmp_path / "out.mp4"), "--crop", "1,2,3"])

    assert result.exit_code != 0
    assert "x,y,width,height" in result.output

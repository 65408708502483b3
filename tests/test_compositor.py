"""
Tests for ffmpeg argument construction and composition control flow
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from browser2video.compositor import (
    CssCrop,
    VideoCompositor,
    build_xstack_filter,
    is_fps_mode_unsupported,
    vsync_fallback_args,
)
from browser2video.errors import CompositionError
from browser2video.layout import Layout


def filter_graph(args):
    return args[args.index("-filter_complex") + 1]


@pytest.fixture
def compositor(no_ffmpeg_check):
    return VideoCompositor("ffmpeg")


@pytest.fixture
def ffmpeg_run():
    with patch("browser2video.compositor.subprocess.run") as run, \
            patch("browser2video.compositor.probe_duration_seconds", return_value=3.0):
        run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield run


def test_single_input_is_reencoded(compositor, ffmpeg_run, tmp_path):
    result = compositor.compose(["pane-0.webm"], tmp_path / "run.mp4")

    assert ffmpeg_run.call_count == 1
    cmd = ffmpeg_run.call_args[0][0]
    assert cmd[0] == "ffmpeg"
    assert "fps=60,format=yuv420p" in cmd
    assert "-filter_complex" not in cmd
    assert result.layout == "single"
    assert result.duration == 3.0
    assert result.used_vsync_fallback is False


def test_empty_inputs_raise(compositor):
    with pytest.raises(CompositionError):
        compositor.compose([], Path("run.mp4"))


def test_row_layout_pads_later_panes(compositor, tmp_path):
    args = compositor.build_stack_args(["a.webm", "b.webm"], tmp_path / "out.mp4",
                                       Layout.row(), start_offsets=[0, 1500])
    graph = filter_graph(args)

    assert "[0:v]setpts=PTS-STARTPTS,fps=60[s0]" in graph
    assert "[1:v]tpad=start_duration=1500ms,setpts=PTS-STARTPTS,fps=60[s1]" in graph
    assert "[s0][s1]hstack=inputs=2:shortest=1[v]" in graph
    assert args[args.index("-fps_mode") + 1] == "cfr"


def test_column_layout_uses_vstack(compositor, tmp_path):
    args = compositor.build_stack_args(["a.webm", "b.webm"], tmp_path / "out.mp4", Layout.column())
    assert "vstack=inputs=2" in filter_graph(args)


def test_auto_layout_tiles_with_xstack(compositor, tmp_path):
    inputs = ["a.webm", "b.webm", "c.webm"]
    args = compositor.build_stack_args(inputs, tmp_path / "out.mp4", Layout.auto())
    assert "xstack=inputs=3:layout=0_0|w0_0|0_h0" in filter_graph(args)


def test_build_xstack_filter_two_columns():
    labels = ["[s0]", "[s1]", "[s2]", "[s3]"]
    assert build_xstack_filter(labels, 2) == (
        "[s0][s1][s2][s3]xstack=inputs=4:layout=0_0|w0_0|0_h0|w0_h0:shortest=1[v]"
    )


def test_template_spanning_pane_is_scaled(compositor, tmp_path):
    layout = Layout.from_template([[0, 1], [0, 2]])
    args = compositor.build_template_args(
        ["a.webm", "b.webm", "c.webm"], tmp_path / "out.mp4", layout,
        start_offsets=[0, 200, 400], cell_size=(640, 360),
    )
    graph = filter_graph(args)

    assert "[0:v]setpts=PTS-STARTPTS,fps=60,scale=640:720[s0]" in graph
    assert "[1:v]tpad=start_duration=200ms,setpts=PTS-STARTPTS,fps=60[s1]" in graph
    assert "layout=0_0|640_0|640_360" in graph


def test_template_skips_missing_pane_indices(compositor, tmp_path):
    layout = Layout.from_template([[0, 2]])
    args = compositor.build_template_args(["a.webm", "b.webm", "c.webm"], tmp_path / "out.mp4",
                                          layout, cell_size=(640, 360))
    assert args.count("-i") == 2
    assert args[args.index("c.webm") - 1] == "-i"
    graph = filter_graph(args)
    assert "[1:v]" in graph and "[s2]" in graph
    assert "xstack=inputs=2:layout=0_0|640_0" in graph


def test_template_with_single_input_is_still_composed(compositor, ffmpeg_run, tmp_path):
    with patch("browser2video.compositor.probe_size", return_value=(640, 360)):
        result = compositor.compose(["a.webm"], tmp_path / "out.mp4", Layout.from_template([[0, 0]]))
    assert result.layout == "template"
    assert "scale=1280:360" in filter_graph(ffmpeg_run.call_args[0][0])


def test_template_without_probe_size_fails(compositor, tmp_path):
    with patch("browser2video.compositor.probe_size", return_value=(0, 0)):
        with pytest.raises(CompositionError):
            compositor.build_template_args(["a.webm", "b.webm"], tmp_path / "out.mp4",
                                           Layout.from_template([[0, 1]]))


def test_css_crop_scales_to_recorded_pixels():
    crop = CssCrop(x=10, y=20, width=300, height=200, viewport_width=1280)
    assert crop.filter(2560) == ",crop=600:400:20:40"
    assert crop.filter(1280) == ",crop=300:200:10:20"


def test_css_crop_parse():
    assert CssCrop.parse("0,56,1280,664") == CssCrop(0, 56, 1280, 664)
    assert CssCrop.parse("0,0,640,360,640").viewport_width == 640
    with pytest.raises(ValueError):
        CssCrop.parse("0,0,640")


def test_fps_mode_fallback_retries_with_vsync(compositor, ffmpeg_run, tmp_path):
    ffmpeg_run.side_effect = [
        subprocess.CalledProcessError(1, "ffmpeg", stderr="Unrecognized option 'fps_mode'."),
        MagicMock(returncode=0, stdout="", stderr=""),
    ]
    result = compositor.compose(["a.webm", "b.webm"], tmp_path / "out.mp4", Layout.row())

    assert result.used_vsync_fallback is True
    retry = ffmpeg_run.call_args_list[1][0][0]
    assert "-fps_mode" not in retry
    r_idx = retry.index("-r")
    assert retry[r_idx:r_idx + 4] == ["-r", "60", "-vsync", "cfr"]


def test_other_ffmpeg_errors_raise(compositor, ffmpeg_run, tmp_path):
    ffmpeg_run.side_effect = subprocess.CalledProcessError(1, "ffmpeg", stderr="Invalid data found")
    with pytest.raises(CompositionError, match="Invalid data found"):
        compositor.compose(["a.webm", "b.webm"], tmp_path / "out.mp4", Layout.row())


def test_is_fps_mode_unsupported():
    assert is_fps_mode_unsupported("Unrecognized option 'fps_mode'")
    assert is_fps_mode_unsupported("Option not found: fps_mode")
    assert not is_fps_mode_unsupported("Unrecognized option 'foo'")
    assert not is_fps_mode_unsupported(None)


def test_vsync_fallback_args_keeps_other_arguments():
    args = ["-y", "-i", "a.webm", "-r", "60", "-fps_mode", "cfr", "-c:v", "libx264", "out.mp4"]
    assert vsync_fallback_args(args) == [
        "-y", "-i", "a.webm", "-r", "60", "-vsync", "cfr", "-c:v", "libx264", "out.mp4"
    ]


def test_missing_ffmpeg_raises():
    with patch("browser2video.media.shutil.which", return_value=None):
        with pytest.raises(RuntimeError, match="FFmpeg not found"):
            VideoCompositor("no-such-ffmpeg")

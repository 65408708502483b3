"""
Tests for thumbnail generation and poster embedding
"""

import io
import subprocess
from unittest.mock import patch

from PIL import Image

from browser2video.thumbnail import embed_poster_frame, save_thumbnail


def png_bytes(size):
    buffer = io.BytesIO()
    Image.new("RGBA", size, (30, 30, 46, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_hidpi_screenshot_is_scaled_down(tmp_path):
    output = save_thumbnail(png_bytes((2560, 1440)), tmp_path / "thumbnail.png")

    with Image.open(output) as image:
        assert image.size == (1280, 720)
        assert image.mode == "RGB"


def test_small_screenshot_keeps_size(tmp_path):
    output = save_thumbnail(png_bytes((800, 500)), tmp_path / "thumbnail.png")
    with Image.open(output) as image:
        assert image.size == (800, 500)


def test_failed_embed_leaves_video_untouched(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"original")
    with patch("browser2video.thumbnail.subprocess.run",
               side_effect=subprocess.CalledProcessError(1, "ffmpeg", stderr="no")):
        assert embed_poster_frame(video, tmp_path / "thumbnail.png") is False
    assert video.read_bytes() == b"original"
    assert not (tmp_path / "run.mp4.tmp.mp4").exists()


def test_embed_marks_attached_picture(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"original")

    def fake_run(cmd, **kwargs):
        (tmp_path / "run.mp4.tmp.mp4").write_bytes(b"with poster")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    with patch("browser2video.thumbnail.subprocess.run", side_effect=fake_run) as run:
        assert embed_poster_frame(video, tmp_path / "thumbnail.png") is True

    cmd = run.call_args[0][0]
    assert cmd[cmd.index("-disposition:v:1") + 1] == "attached_pic"
    assert video.read_bytes() == b"with poster"

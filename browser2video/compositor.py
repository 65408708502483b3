"""
Video composition module using FFmpeg.

Merges N independently recorded pane videos into one time-aligned MP4.
Later-starting panes are padded at the front by their creation offset so
that all streams share the earliest pane's time origin, then the streams
are stacked (row/column), tiled (grid) or placed on a grid template where
a pane may span several cells.
"""
import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence
from dataclasses import dataclass

from config.settings import VIDEO_FPS, VIDEO_CODEC, VIDEO_PRESET, VIDEO_CRF, PIXEL_FORMAT
from .errors import CompositionError
from .layout import Layout, pane_boxes
from .media import check_ffmpeg, probe_duration_seconds, probe_size

logger = logging.getLogger(__name__)


@dataclass
class CompositionResult:
    """Result of a video composition."""
    output_path: str
    inputs: list[str]
    layout: str
    duration: float
    used_vsync_fallback: bool = False


@dataclass
class CssCrop:
    """Crop rectangle in CSS pixels, scaled to the recorded pixel size."""
    x: int
    y: int
    width: int
    height: int
    viewport_width: int = 1280

    @classmethod
    def parse(cls, value: str) -> "CssCrop":
        """Parse "x,y,width,height" or "x,y,width,height,viewport_width"."""
        parts = [int(p) for p in value.split(",")]
        if len(parts) not in (4, 5):
            raise ValueError(f"Expected x,y,width,height[,viewport_width], got {value!r}")
        return cls(*parts)

    def filter(self, actual_width: int) -> str:
        scale = round(actual_width / self.viewport_width) if actual_width > 0 else 1
        scale = max(scale, 1)
        return (f",crop={self.width * scale}:{self.height * scale}"
                f":{self.x * scale}:{self.y * scale}")


def is_fps_mode_unsupported(stderr: str) -> bool:
    """Recognize ffmpeg builds that predate the -fps_mode option."""
    stderr = stderr or ""
    return "fps_mode" in stderr and (
        "Unrecognized option" in stderr or "Option not found" in stderr
    )


def vsync_fallback_args(args: list[str]) -> list[str]:
    """Swap `-fps_mode cfr` for the older `-vsync cfr`, placed right after `-r <fps>`."""
    fallback = []
    skip = False
    for i, arg in enumerate(args):
        if skip:
            skip = False
            continue
        if arg == "-fps_mode" and i + 1 < len(args) and args[i + 1] == "cfr":
            skip = True
            continue
        fallback.append(arg)

    if "-r" in fallback:
        r_idx = fallback.index("-r")
        fallback[r_idx + 2:r_idx + 2] = ["-vsync", "cfr"]
    return fallback


class VideoCompositor:
    """Composes pane recordings with ffmpeg filter graphs."""

    def __init__(self, ffmpeg: str = "ffmpeg", fps: int = VIDEO_FPS):
        self.ffmpeg = ffmpeg
        self.fps = fps
        self._check_ffmpeg()

    def _check_ffmpeg(self):
        check_ffmpeg(self.ffmpeg)

    def encoder_args(self) -> list[str]:
        """Constant-frame-rate H.264 output settings shared by every path."""
        return [
            "-r", str(self.fps),
            "-fps_mode", "cfr",
            "-c:v", VIDEO_CODEC,
            "-preset", VIDEO_PRESET,
            "-crf", str(VIDEO_CRF),
            "-pix_fmt", PIXEL_FORMAT,
            "-movflags", "+faststart",
        ]

    def compose(self, inputs: Sequence, output_path: Path,
                layout: Optional[Layout] = None,
                start_offsets: Optional[Sequence[int]] = None,
                css_crop: Optional[CssCrop] = None) -> CompositionResult:
        """
        Compose N pane videos into one.

        Args:
            inputs: Raw recordings in pane order
            output_path: Destination MP4
            layout: Arrangement (auto grid when None)
            start_offsets: Per-input creation offset in ms relative to the earliest pane
            css_crop: Optional crop applied to every stream

        Returns:
            CompositionResult with output details

        Raises:
            CompositionError: no inputs, or ffmpeg failed
        """
        layout = Layout.parse(layout)
        inputs = [str(p) for p in inputs]
        if not inputs:
            raise CompositionError("No input recordings to compose")

        if len(inputs) == 1 and layout.kind != "template":
            return self.reencode(inputs[0], output_path)

        if layout.kind == "template":
            args = self.build_template_args(inputs, output_path, layout, start_offsets, css_crop)
        else:
            args = self.build_stack_args(inputs, output_path, layout, start_offsets, css_crop)

        logger.info("Compositing %d pane(s) with %s layout", len(inputs), layout.kind)
        used_fallback = self._run(args)
        return self._result(output_path, inputs, layout.kind, used_fallback)

    def reencode(self, input_path, output_path: Path) -> CompositionResult:
        """Re-encode a single WebM recording to a constant 60fps MP4."""
        args = [
            "-y",
            "-i", str(input_path),
            "-vf", f"fps={self.fps},format={PIXEL_FORMAT}",
            *self.encoder_args(),
            str(output_path),
        ]
        used_fallback = self._run(args)
        return self._result(output_path, [str(input_path)], "single", used_fallback)

    def fallback_encode(self, input_path, output_path: Path):
        """Plain H.264 re-encode used when composition itself failed."""
        cmd = [
            self.ffmpeg, "-y", "-i", str(input_path),
            "-c:v", VIDEO_CODEC, "-preset", VIDEO_PRESET, "-crf", str(VIDEO_CRF),
            "-pix_fmt", PIXEL_FORMAT, "-movflags", "+faststart",
            str(output_path),
        ]
        subprocess.run(cmd, capture_output=True, text=True, check=True)

    def _stream_chain(self, input_idx: int, label: str, offset_ms: int,
                      crop_filter: str = "", scale_filter: str = "") -> str:
        tpad = f"tpad=start_duration={offset_ms}ms," if offset_ms > 0 else ""
        return (f"[{input_idx}:v]{tpad}setpts=PTS-STARTPTS,fps={self.fps}"
                f"{crop_filter}{scale_filter}[{label}]")

    def build_stack_args(self, inputs: list[str], output_path: Path, layout: Layout,
                         start_offsets: Optional[Sequence[int]] = None,
                         css_crop: Optional[CssCrop] = None) -> list[str]:
        """Filter graph for row (hstack), column (vstack) and grid (xstack) layouts."""
        offsets = list(start_offsets or [])
        crop_filter = css_crop.filter(probe_size(Path(inputs[0]), self.ffmpeg)[0]) if css_crop else ""

        labels = []
        filter_parts = []
        for i in range(len(inputs)):
            label = f"s{i}"
            labels.append(f"[{label}]")
            offset = offsets[i] if i < len(offsets) else 0
            filter_parts.append(self._stream_chain(i, label, offset, crop_filter))

        n = len(inputs)
        if layout.kind == "row":
            filter_parts.append(f"{''.join(labels)}hstack=inputs={n}:shortest=1[v]")
        elif layout.kind == "column":
            filter_parts.append(f"{''.join(labels)}vstack=inputs={n}:shortest=1[v]")
        else:
            filter_parts.append(build_xstack_filter(labels, layout.columns_for(n)))

        args = ["-y"]
        for path in inputs:
            args += ["-i", path]
        args += [
            "-filter_complex", ";".join(filter_parts),
            "-map", "[v]",
            *self.encoder_args(),
            str(output_path),
        ]
        return args

    def build_template_args(self, inputs: list[str], output_path: Path, layout: Layout,
                            start_offsets: Optional[Sequence[int]] = None,
                            css_crop: Optional[CssCrop] = None,
                            cell_size: Optional[tuple[int, int]] = None) -> list[str]:
        """
        Filter graph for a grid template.

        The single-cell size is probed from the first input; a pane that
        occupies several cells is scaled to the merged area and every pane
        is placed with absolute pixel coordinates.
        """
        cell_w, cell_h = cell_size or probe_size(Path(inputs[0]), self.ffmpeg)
        if not cell_w or not cell_h:
            raise CompositionError("Could not probe input dimensions for the grid template")

        offsets = list(start_offsets or [])
        boxes = pane_boxes(layout.template)
        pane_indices = [idx for idx in sorted(boxes) if 0 <= idx < len(inputs)]
        crop_filter = css_crop.filter(cell_w) if css_crop else ""

        labels = []
        filter_parts = []
        positions = []
        for position, idx in enumerate(pane_indices):
            box = boxes[idx]
            spans = box.col_span > 1 or box.row_span > 1
            scale_filter = f",scale={box.col_span * cell_w}:{box.row_span * cell_h}" if spans else ""
            offset = offsets[idx] if idx < len(offsets) else 0

            label = f"s{idx}"
            labels.append(f"[{label}]")
            filter_parts.append(self._stream_chain(position, label, offset, crop_filter, scale_filter))
            positions.append(f"{box.min_col * cell_w}_{box.min_row * cell_h}")

        filter_parts.append(
            f"{''.join(labels)}xstack=inputs={len(pane_indices)}"
            f":layout={'|'.join(positions)}:shortest=1[v]"
        )

        args = ["-y"]
        for idx in pane_indices:
            args += ["-i", inputs[idx]]
        args += [
            "-filter_complex", ";".join(filter_parts),
            "-map", "[v]",
            *self.encoder_args(),
            str(output_path),
        ]
        return args

    def _run(self, args: list[str]) -> bool:
        """Run ffmpeg; retry once with -vsync when -fps_mode is unsupported. Returns True if retried."""
        try:
            subprocess.run([self.ffmpeg, *args], capture_output=True, text=True, check=True)
            return False
        except subprocess.CalledProcessError as e:
            if not is_fps_mode_unsupported(e.stderr):
                raise CompositionError(f"FFmpeg error: {(e.stderr or '')[-2000:]}") from e
            logger.info("ffmpeg does not support -fps_mode, retrying with -vsync")

        try:
            subprocess.run([self.ffmpeg, *vsync_fallback_args(args)],
                           capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise CompositionError(f"FFmpeg error: {(e.stderr or '')[-2000:]}") from e
        return True

    def _result(self, output_path: Path, inputs: list[str], layout: str,
                used_fallback: bool) -> CompositionResult:
        duration = probe_duration_seconds(Path(output_path), self.ffmpeg)
        if duration > 0:
            logger.info("Output duration: %.2fs", duration)
        return CompositionResult(
            output_path=str(output_path),
            inputs=inputs,
            layout=layout,
            duration=duration,
            used_vsync_fallback=used_fallback,
        )


def build_xstack_filter(labels: list[str], cols: int) -> str:
    """xstack filter tiling equally sized streams into `cols` columns."""
    layout_parts = []
    for i in range(len(labels)):
        col = i % cols
        row = i // cols
        x = "+".join(["w0"] * col) if col else "0"
        y = "+".join(["h0"] * row) if row else "0"
        layout_parts.append(f"{x}_{y}")
    return (f"{''.join(labels)}xstack=inputs={len(labels)}"
            f":layout={'|'.join(layout_parts)}:shortest=1[v]")


def compose_videos(inputs: Sequence, output_path: Path, layout=None,
                   start_offsets: Optional[Sequence[int]] = None,
                   ffmpeg: str = "ffmpeg", css_crop: Optional[CssCrop] = None) -> dict:
    """
    Convenience function to compose pane recordings.

    Args:
        inputs: Raw recordings
        output_path: Destination MP4
        layout: Layout or loose layout value ("row", "grid:3", [[0, 1], [0, 2]])
        start_offsets: Per-input offsets in ms
        ffmpeg: ffmpeg binary
        css_crop: Optional crop in CSS pixels applied to every stream

    Returns:
        Result dict with output path and duration
    """
    compositor = VideoCompositor(ffmpeg=ffmpeg)
    result = compositor.compose(inputs, Path(output_path), Layout.parse(layout), start_offsets, css_crop)
    return {
        "output_path": result.output_path,
        "inputs": result.inputs,
        "layout": result.layout,
        "duration": result.duration,
    }

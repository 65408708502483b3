"""
Small ffmpeg/ffprobe helpers shared by the compositor, narrator and poster code.
"""
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional

SIZE_PATTERN = re.compile(r"Stream.*Video:.* (\d{3,5})x(\d{3,5})")
DURATION_PATTERN = re.compile(r"Duration:\s*(\d{2}):(\d{2}):(\d{2})\.(\d+)")


def check_ffmpeg(ffmpeg: str = "ffmpeg"):
    """Verify FFmpeg is available."""
    if not shutil.which(ffmpeg):
        raise RuntimeError(f"FFmpeg not found ({ffmpeg}). Please install FFmpeg.")


def sibling_tool(ffmpeg: Optional[str], name: str) -> str:
    """
    Locate ffprobe/ffplay next to a custom ffmpeg binary.

    Falls back to the bare tool name (resolved through PATH).
    """
    if ffmpeg:
        path = Path(ffmpeg)
        if path.parent != Path("."):
            candidate = path.parent / f"{name}{path.suffix}"
            if candidate.exists():
                return str(candidate)
    return name


def probe_size(video: Path, ffmpeg: str = "ffmpeg") -> tuple[int, int]:
    """Read the video stream dimensions from `ffmpeg -i` output; (0, 0) if unknown."""
    result = subprocess.run(
        [ffmpeg, "-hide_banner", "-i", str(video)],
        capture_output=True, text=True
    )
    match = SIZE_PATTERN.search((result.stderr or "") + (result.stdout or ""))
    if not match:
        return 0, 0
    return int(match.group(1)), int(match.group(2))


def probe_duration_seconds(media: Path, ffmpeg: str = "ffmpeg") -> float:
    """Get media file duration in seconds (0 if it cannot be determined)."""
    cmd = [
        sibling_tool(ffmpeg, "ffprobe"), "-v", "error",
        "-show_entries", "format=duration",
        "-of", "csv=p=0",
        str(media)
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        return float(result.stdout.strip())
    except (OSError, subprocess.CalledProcessError, ValueError):
        pass

    # No ffprobe: parse the "Duration:" banner of ffmpeg itself
    try:
        result = subprocess.run([ffmpeg, "-i", str(media)], capture_output=True, text=True)
    except OSError:
        return 0
    match = DURATION_PATTERN.search(result.stderr or "")
    if not match:
        return 0
    hours, minutes, seconds, frac = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + int(frac) / 10 ** len(frac)

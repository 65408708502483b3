"""
Thumbnail module.

Turns the final pane screenshot into thumbnail.png and embeds it into the
MP4 as a poster frame (attached picture) with FFmpeg.
"""
import io
import logging
import subprocess
from pathlib import Path
from typing import Optional

from PIL import Image

from config.settings import THUMBNAIL_MAX_SIZE

logger = logging.getLogger(__name__)


def save_thumbnail(screenshot: bytes, output: Path,
                   max_size: tuple[int, int] = THUMBNAIL_MAX_SIZE) -> Path:
    """
    Save a PNG screenshot as a thumbnail no larger than max_size.

    Hi-DPI captures are scaled down, keeping the aspect ratio.
    """
    output = Path(output)
    with Image.open(io.BytesIO(screenshot)) as image:
        image = image.convert("RGB")
        image.thumbnail(max_size)
        image.save(output, format="PNG")
    return output


def embed_poster_frame(video: Path, thumbnail: Path, ffmpeg: str = "ffmpeg") -> bool:
    """
    Attach the thumbnail to the video as its cover image, in place.

    Returns:
        True when embedded; False on failure (the video is left untouched)
    """
    video = Path(video)
    tmp = Path(f"{video}.tmp.mp4")
    cmd = [
        ffmpeg, "-y",
        "-i", str(video),
        "-i", str(thumbnail),
        "-map", "0", "-map", "1",
        "-c", "copy",
        "-disposition:v:1", "attached_pic",
        str(tmp)
    ]
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("Poster frame not embedded: %s", getattr(e, "stderr", None) or e)
        tmp.unlink(missing_ok=True)
        return False

    tmp.replace(video)
    return True


def thumbnail_from_video(video: Path, output: Path, timestamp: float = 0.0,
                         ffmpeg: str = "ffmpeg") -> Optional[Path]:
    """Grab a single frame from a video as a PNG thumbnail (used by the compose command)."""
    cmd = [
        ffmpeg, "-y",
        "-ss", str(timestamp),
        "-i", str(video),
        "-vframes", "1",
        "-vf", f"scale='min({THUMBNAIL_MAX_SIZE[0]},iw)':-2",
        str(output)
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        logger.warning("Thumbnail extraction failed: %s", result.stderr[-500:])
        return None
    return Path(output)

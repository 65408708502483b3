"""
Live mirroring of a pane through the Chrome DevTools screencast.

Frames are pushed to a callback as they arrive; each frame is acknowledged
without waiting, and a mirror that cannot start is logged and skipped.
"""
import base64
import logging
from typing import Callable, Optional
from dataclasses import dataclass

from .errors import best_effort, fire_and_forget

logger = logging.getLogger(__name__)

SCREENCAST_PARAMS = {
    "format": "jpeg",
    "quality": 70,
    "maxWidth": 1280,
    "maxHeight": 960,
    "everyNthFrame": 2,
}


@dataclass
class ScreencastFrame:
    data: bytes
    timestamp: Optional[float]
    width: Optional[int]
    height: Optional[int]


FrameCallback = Callable[[ScreencastFrame], None]


class ScreencastMirror:
    """Streams JPEG frames of one page to a callback."""

    def __init__(self, page, on_frame: FrameCallback):
        self.page = page
        self.on_frame = on_frame
        self._cdp = None
        self.frames = 0

    async def start(self) -> Optional["ScreencastMirror"]:
        """Begin streaming; returns None (and logs) if the screencast cannot start."""
        try:
            self._cdp = await self.page.context.new_cdp_session(self.page)
            self._cdp.on("Page.screencastFrame", self._on_screencast_frame)
            await self._cdp.send("Page.startScreencast", SCREENCAST_PARAMS)
        except Exception as e:
            logger.warning("Live mirror unavailable: %s", e)
            self._cdp = None
            return None
        return self

    def _on_screencast_frame(self, params: dict):
        cdp = self._cdp
        if cdp is None:
            return
        fire_and_forget(
            cdp.send("Page.screencastFrameAck", {"sessionId": params["sessionId"]}),
            "screencast ack",
        )
        metadata = params.get("metadata") or {}
        frame = ScreencastFrame(
            data=base64.b64decode(params["data"]),
            timestamp=metadata.get("timestamp"),
            width=metadata.get("deviceWidth"),
            height=metadata.get("deviceHeight"),
        )
        self.frames += 1
        try:
            self.on_frame(frame)
        except Exception as e:
            logger.warning("Mirror frame callback failed: %s", e)

    async def stop(self):
        if self._cdp is None:
            return
        cdp, self._cdp = self._cdp, None
        await best_effort(cdp.send("Page.stopScreencast"), "screencast stop")
        await best_effort(cdp.detach(), "screencast detach")

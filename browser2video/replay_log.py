"""
Replay log: the visual event stream of a session.

Cursor moves, clicks, key presses, step boundaries and narration clips are
appended here with a timestamp relative to the session start. Live
subscribers (e.g. a mirroring player) get each event as it is emitted; the
buffered stream can be written out as JSONL for offline replay.
"""
import json
import logging
import time
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CursorMove:
    x: int
    y: int
    ts: int
    type: str = "cursorMove"


@dataclass(frozen=True)
class Click:
    x: int
    y: int
    ts: int
    type: str = "click"


@dataclass(frozen=True)
class KeyPress:
    key: str
    ts: int
    type: str = "keyPress"


@dataclass(frozen=True)
class StepStart:
    index: int
    caption: str
    ts: int
    type: str = "stepStart"


@dataclass(frozen=True)
class StepEnd:
    index: int
    ts: int
    type: str = "stepEnd"


@dataclass(frozen=True)
class AudioCue:
    label: str
    durationMs: int
    ts: int
    type: str = "audio"


ReplayEvent = Union[CursorMove, Click, KeyPress, StepStart, StepEnd, AudioCue]
ReplayCallback = Callable[[ReplayEvent], None]


def event_to_dict(event: ReplayEvent) -> dict:
    """Serialize an event with its type tag first, as written to replay.jsonl."""
    data = asdict(event)
    return {"type": data.pop("type"), **data}


class ReplayLog:
    """Append-only event stream with synchronous subscribers."""

    def __init__(self, start_ms: Optional[float] = None):
        self.start_ms = start_ms if start_ms is not None else time.time() * 1000
        self._events: list[ReplayEvent] = []
        self._subscribers: list[ReplayCallback] = []

    def now(self) -> int:
        """Milliseconds since the session started."""
        return int(time.time() * 1000 - self.start_ms)

    @property
    def events(self) -> tuple:
        return tuple(self._events)

    def subscribe(self, callback: ReplayCallback) -> Callable[[], None]:
        """Register a live subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: ReplayEvent):
        self._events.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Replay subscriber failed on %s: %s", event.type, e)

    def cursor_move(self, x: int, y: int):
        self.emit(CursorMove(x=x, y=y, ts=self.now()))

    def click(self, x: int, y: int):
        self.emit(Click(x=x, y=y, ts=self.now()))

    def key_press(self, key: str):
        self.emit(KeyPress(key=key, ts=self.now()))

    def step_start(self, index: int, caption: str):
        self.emit(StepStart(index=index, caption=caption, ts=self.now()))

    def step_end(self, index: int):
        self.emit(StepEnd(index=index, ts=self.now()))

    def audio(self, label: str, duration_ms: int):
        self.emit(AudioCue(label=label, durationMs=duration_ms, ts=self.now()))

    def clear(self):
        self._events = []

    def write_jsonl(self, path: Path) -> Optional[Path]:
        """Write buffered events as newline-delimited JSON. Nothing is written for an empty log."""
        if not self._events:
            return None
        path = Path(path)
        lines = [json.dumps(event_to_dict(e)) for e in self._events]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

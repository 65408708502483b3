"""
Process terminal: a recorded page that shows the output of a plain subprocess.

Lighter than the PTY bridge: there is no terminal emulation, output is
appended to a styled page and to <pane>.log, and send() writes whole
lines to the process stdin.
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from config.settings import PTY_MAX_BUFFER
from .actor import sleep_ms
from .errors import best_effort, fire_and_forget
from .motion import merge_delays, pick_ms
from .panes import PageAttachable

logger = logging.getLogger(__name__)

APPEND_SCRIPT = "t => window.__b2v_append && window.__b2v_append(t)"
ECHO_SCRIPT = "t => window.__b2v_echoInput && window.__b2v_echoInput(t)"
STARTUP_GRACE_MS = 300
AFTER_SEND_MS = 300
READ_CHUNK = 4096


class ProcessTerminal(PageAttachable):
    """A `sh -c` subprocess rendered into a page."""

    def __init__(self, page, log_path: Path, command: Optional[str] = None,
                 mode: str = "human", delays: Optional[dict] = None):
        self.page = page
        self.command = command
        self.log_path = Path(log_path)
        self.mode = mode
        self.delays = merge_delays(mode, delays)
        self.process: Optional[asyncio.subprocess.Process] = None
        self._chunks: list[str] = []
        self._size = 0
        self._reader: Optional[asyncio.Task] = None

    @property
    def output(self) -> str:
        """Retained output, trimmed from the front once it exceeds PTY_MAX_BUFFER characters."""
        return "".join(self._chunks)

    def attached_page(self):
        return self.page

    async def start(self):
        self.log_path.write_text("", encoding="utf-8")
        if not self.command:
            return
        self.process = await asyncio.create_subprocess_exec(
            "sh", "-c", self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._reader = asyncio.ensure_future(self._pump())
        await sleep_ms(STARTUP_GRACE_MS)

    async def _pump(self):
        while True:
            data = await self.process.stdout.read(READ_CHUNK)
            if not data:
                return
            self._push(data.decode("utf-8", errors="replace"))

    def _push(self, text: str):
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(text)
        self._chunks.append(text)
        self._size += len(text)
        while self._size > PTY_MAX_BUFFER and len(self._chunks) > 1:
            self._size -= len(self._chunks.pop(0))
        fire_and_forget(self.page.evaluate(APPEND_SCRIPT, text), "terminal output")

    async def send(self, text: str):
        """
        Send one line to the process.

        In human mode the line is first typed visibly, character by
        character, on the terminal page.
        """
        if self.process is None:
            return
        line = text if text.endswith("\n") else text + "\n"

        if self.mode == "human":
            key_delay = pick_ms(self.delays["key_delay"])
            for ch in text.rstrip("\n"):
                await best_effort(self.page.evaluate(ECHO_SCRIPT, ch), "terminal echo")
                await sleep_ms(key_delay)
            await best_effort(self.page.evaluate(ECHO_SCRIPT, "\n"), "terminal echo")
            await sleep_ms(50)

        if self.process.stdin and not self.process.stdin.is_closing():
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
        await sleep_ms(AFTER_SEND_MS)

    async def close(self):
        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            await best_effort(asyncio.wait_for(self.process.wait(), 5), "terminal process exit")
        if self._reader:
            self._reader.cancel()

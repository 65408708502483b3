"""
Pseudo-terminal bridge.

A small websockets server that serves an xterm.js page per terminal (and a
grid page holding several of them in iframes) and connects each page to a
real shell running on a PTY. Keystrokes arrive as binary frames, resize
requests as JSON text frames; PTY output is broadcast to the page and to
any read-only observers, which first receive the retained output buffer.
"""
import asyncio
import fcntl
import html
import json
import logging
import math
import os
import pty
import signal
import struct
import tempfile
import termios
import time
from http import HTTPStatus
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode, urlsplit, parse_qs

from websockets.asyncio.server import serve, ServerConnection
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from config.settings import PTY_MAX_BUFFER, PTY_INITIAL_SIZE, TERMINAL_BACKGROUND
from .errors import best_effort

logger = logging.getLogger(__name__)

XTERM_CDN = "https://cdn.jsdelivr.net/npm/@xterm/xterm@5.5.0"
FIT_ADDON_CDN = "https://cdn.jsdelivr.net/npm/@xterm/addon-fit@0.10.0"
READ_CHUNK = 65536
INIT_FILE_TTL_S = 2.0
REAP_TIMEOUT_S = 2.0
REAP_POLL_S = 0.05

SHELL_INIT = "\n".join([
    'PS1="\\$ "',
    'PROMPT_COMMAND=\'printf "\\033]0;Shell\\007"\'',
    'trap \'case "$BASH_COMMAND" in "$PROMPT_COMMAND") ;; '
    '*) printf "\\033]0;%s\\007" "$BASH_COMMAND";; esac\' DEBUG',
    'export VIMINIT="syntax on | set number | filetype on | set background=dark"',
]) + "\n"

TERMINAL_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8">
<link rel="stylesheet" href="__XTERM__/css/xterm.css">
<script src="__XTERM__/lib/xterm.js"></script>
<script src="__FIT__/lib/addon-fit.js"></script>
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  html { height: 100%; }
  body { background: __BG__; color: #d4d4d4; overflow: hidden; height: 100%; display: flex; flex-direction: column; }
  .bar { background: #2d2d2d; color: #cccccc; padding: 4px 12px; font-size: 12px;
         border-bottom: 1px solid #3e3e3e; flex-shrink: 0; font-family: system-ui, sans-serif; }
  .bar.hidden { display: none; }
  #term { flex: 1; min-height: 0; padding: 4px; }
</style></head><body>
  <div class="bar" id="titlebar">__TITLE__</div>
  <div id="term" data-testid="__TEST_ID__" data-b2v-ws-state="connecting"></div>
  <script>
    var inIframe = window !== window.top;
    if (inIframe) document.getElementById('titlebar').classList.add('hidden');
    var observeMode = new URLSearchParams(window.location.search).get('mode') === 'observe';
    var el = document.getElementById('term');
    var term = new Terminal({
      convertEol: false, cursorBlink: !observeMode,
      fontFamily: 'ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, monospace',
      fontSize: 13, lineHeight: 1.15, disableStdin: observeMode
    });
    var fit = new FitAddon.FitAddon();
    term.loadAddon(fit);
    term.open(el);
    window.__b2vTerm = term;

    var encoder = new TextEncoder();
    var ws = new WebSocket(__WS_URL__);
    ws.binaryType = 'arraybuffer';

    function fitTerminal() {
      try { fit.fit(); } catch (e) { return; }
      if (observeMode || ws.readyState !== WebSocket.OPEN) return;
      ws.send(JSON.stringify({ type: 'resize', cols: term.cols, rows: term.rows }));
    }

    ws.onopen = function() { el.dataset.b2vWsState = 'open'; fitTerminal(); term.focus(); };
    ws.onmessage = function(ev) {
      if (ev.data instanceof ArrayBuffer) term.write(new Uint8Array(ev.data));
    };
    ws.onerror = function() { el.dataset.b2vWsState = 'error'; };
    ws.onclose = function(e) { el.dataset.b2vWsState = 'closed:' + (e.code || '?'); };

    if (!observeMode) {
      term.onData(function(data) {
        if (ws.readyState === WebSocket.OPEN) ws.send(encoder.encode(data));
      });
    }
    term.onTitleChange(function(t) {
      if (t) document.getElementById('titlebar').textContent = t;
    });
    new ResizeObserver(function() { fitTerminal(); }).observe(el);
  </script>
</body></html>
"""

GRID_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8">
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  html, body { height: 100%; background: #181818; overflow: hidden; }
  #grid { display: grid; gap: 2px; width: 100%; height: 100%;
          grid-template-columns: repeat(__COLS__, 1fr); grid-template-rows: repeat(__ROWS__, 1fr);
          grid-template-areas: __AREAS__; }
  .cell { display: flex; flex-direction: column; min-width: 0; min-height: 0; background: __BG__; }
  .cell .title { background: #2d2d2d; color: #ccc; font: 12px system-ui, sans-serif;
                 padding: 3px 10px; border-bottom: 1px solid #3e3e3e; }
  .cell iframe { flex: 1; border: 0; width: 100%; }
</style></head><body>
<div id="grid">
__CELLS__
</div>
</body></html>
"""


def set_winsize(fd: int, rows: int, cols: int):
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def parse_resize(text: str) -> Optional[tuple[int, int]]:
    """(cols, rows) from a {"type": "resize"} message, None for anything else."""
    try:
        message = json.loads(text)
    except ValueError:
        return None
    if not isinstance(message, dict) or message.get("type") != "resize":
        return None
    cols, rows = message.get("cols"), message.get("rows")
    if not isinstance(cols, (int, float)) or not isinstance(rows, (int, float)):
        return None
    return int(cols), int(rows)


def grid_areas(grid: Optional[list], count: int) -> tuple[int, int, str]:
    """CSS grid columns, rows and grid-template-areas for a pane template (or an auto grid)."""
    if not grid:
        cols = math.ceil(math.sqrt(count))
        rows = math.ceil(count / cols)
        grid = [[r * cols + c if r * cols + c < count else count - 1 for c in range(cols)]
                for r in range(rows)]
    area_rows = [" ".join(f"p{idx}" for idx in row) for row in grid]
    return len(grid[0]), len(grid), " ".join(f'"{row}"' for row in area_rows)


class PtySession:
    """One shell (or command) on a pseudo-terminal, with its retained output."""

    def __init__(self, cmd: Optional[str] = None, size: tuple[int, int] = PTY_INITIAL_SIZE):
        self.cmd = cmd
        self.clients: set = set()
        self.primary: Optional[ServerConnection] = None
        self.buffer: list[bytes] = []
        self.buffer_size = 0
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._init_file: Optional[Path] = None
        self._reaper: Optional[asyncio.Future] = None

        argv = self._argv(cmd)
        cols, rows = size
        env = {
            **os.environ,
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
        }
        self.pid, self.fd = pty.fork()
        if self.pid == 0:  # child
            try:
                os.execvpe(argv[0], argv, env)
            finally:
                os._exit(127)

        set_winsize(self.fd, rows, cols)
        loop = asyncio.get_running_loop()
        loop.add_reader(self.fd, self._on_readable)
        if self._init_file:
            loop.call_later(INIT_FILE_TTL_S, self._init_file.unlink, True)
        self._pump = asyncio.ensure_future(self._broadcast())

    def _argv(self, cmd: Optional[str]) -> list[str]:
        if cmd:
            return ["bash", "-lc", cmd]
        with tempfile.NamedTemporaryFile("w", prefix="b2v-bashrc-", suffix=".sh", delete=False) as f:
            f.write(SHELL_INIT)
        self._init_file = Path(f.name)
        return ["bash", "--init-file", f.name, "-i"]

    def _on_readable(self):
        try:
            data = os.read(self.fd, READ_CHUNK)
        except OSError:
            data = b""
        if not data:
            # EOF/EIO: the process has exited
            asyncio.get_running_loop().remove_reader(self.fd)
            self._queue.put_nowait(None)
            return
        self._retain(data)
        self._queue.put_nowait(data)

    def _retain(self, data: bytes):
        self.buffer.append(data)
        self.buffer_size += len(data)
        while self.buffer_size > PTY_MAX_BUFFER and len(self.buffer) > 1:
            self.buffer_size -= len(self.buffer.pop(0))

    async def _broadcast(self):
        while True:
            data = await self._queue.get()
            if data is None:
                return
            for client in list(self.clients):
                try:
                    await client.send(data)
                except ConnectionClosed:
                    self.clients.discard(client)

    def write(self, data: bytes):
        if not self.closed:
            os.write(self.fd, data)

    def resize(self, cols: int, rows: int):
        if not self.closed:
            set_winsize(self.fd, rows, cols)

    def close(self):
        if self.closed:
            return
        self.closed = True
        loop = asyncio.get_running_loop()
        loop.remove_reader(self.fd)
        self._pump.cancel()
        try:
            os.kill(self.pid, signal.SIGHUP)
        except ProcessLookupError:
            pass
        self._reaper = loop.run_in_executor(None, self._reap)
        try:
            os.close(self.fd)
        except OSError:
            pass
        if self._init_file:
            self._init_file.unlink(missing_ok=True)

    def _reap(self):
        """Wait for the child to exit after SIGHUP, escalating to SIGKILL."""
        deadline = time.monotonic() + REAP_TIMEOUT_S
        try:
            while time.monotonic() < deadline:
                pid, _ = os.waitpid(self.pid, os.WNOHANG)
                if pid:
                    return
                time.sleep(REAP_POLL_S)
            logger.debug("PTY child %d ignored SIGHUP; killing", self.pid)
            os.kill(self.pid, signal.SIGKILL)
            os.waitpid(self.pid, 0)
        except (ProcessLookupError, ChildProcessError):
            pass

    async def wait_closed(self):
        if self._reaper is not None:
            await self._reaper


class TerminalBridge:
    """Session-owned terminal server: started on first use, closed in finish()."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self.port = port
        self._server = None
        self._sessions: dict[str, PtySession] = {}
        self._anonymous: list[PtySession] = []

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def base_http_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def base_ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> "TerminalBridge":
        if self._server is None:
            self._server = await serve(self._handle, self.host, self.port,
                                       process_request=self._process_request)
            self.port = self._server.sockets[0].getsockname()[1]
            logger.info("Terminal bridge listening on %s", self.base_http_url)
        return self

    async def close(self):
        sessions = [*self._sessions.values(), *self._anonymous]
        for session in sessions:
            session.close()
        await asyncio.gather(*(s.wait_closed() for s in sessions))
        self._sessions.clear()
        self._anonymous.clear()
        if self._server is not None:
            self._server.close()
            await best_effort(self._server.wait_closed(), "terminal bridge shutdown")
            self._server = None

    def terminal_url(self, cmd: Optional[str] = None, test_id: str = "xterm-term-0",
                     title: Optional[str] = None, mode: Optional[str] = None) -> str:
        params = {"testId": test_id, "title": title or cmd or "Shell"}
        if cmd:
            params["cmd"] = cmd
        if mode:
            params["mode"] = mode
        return f"{self.base_http_url}/terminal?{urlencode(params)}"

    def grid_url(self, panes: list[dict], grid: Optional[list] = None) -> str:
        """
        URL of a grid page.

        Args:
            panes: [{"testId", "title", "cmd"}] in pane order
            grid: Optional template of pane indices (repeated index = span)
        """
        config = {"panes": panes, "grid": grid}
        return f"{self.base_http_url}/terminal-grid?{urlencode({'config': json.dumps(config)})}"

    # -- HTTP --------------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request):
        url = urlsplit(request.path)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}

        if url.path == "/term":
            return None  # continue with the websocket handshake
        if url.path == "/terminal":
            return self._html(self._terminal_page(query))
        if url.path == "/terminal-grid":
            try:
                config = json.loads(query["config"])
            except (KeyError, ValueError):
                return connection.respond(HTTPStatus.BAD_REQUEST, "Invalid config parameter\n")
            return self._html(self._grid_page(config))
        return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")

    @staticmethod
    def _html(body: str) -> Response:
        payload = body.encode("utf-8")
        headers = Headers([
            ("Content-Type", "text/html; charset=utf-8"),
            ("Content-Length", str(len(payload))),
            ("Connection", "close"),
        ])
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, payload)

    def _terminal_page(self, query: dict) -> str:
        test_id = query.get("testId", "xterm-term-0")
        cmd = query.get("cmd")
        mode = query.get("mode")
        ws_params = {"testId": test_id}
        if cmd and mode != "observe":
            ws_params["cmd"] = cmd
        if mode:
            ws_params["mode"] = mode
        ws_url = f"{self.base_ws_url}/term?{urlencode(ws_params)}"
        return (TERMINAL_PAGE
                .replace("__XTERM__", XTERM_CDN)
                .replace("__FIT__", FIT_ADDON_CDN)
                .replace("__BG__", TERMINAL_BACKGROUND)
                .replace("__TITLE__", html.escape(query.get("title") or cmd or "Shell"))
                .replace("__TEST_ID__", html.escape(test_id, quote=True))
                .replace("__WS_URL__", json.dumps(ws_url)))

    def _grid_page(self, config: dict) -> str:
        panes = config.get("panes") or []
        cols, rows, areas = grid_areas(config.get("grid"), len(panes))
        cells = []
        for i, pane in enumerate(panes):
            src = self.terminal_url(pane.get("cmd"), pane.get("testId", f"xterm-term-{i}"), pane.get("title"))
            title = html.escape(pane.get("title") or pane.get("cmd") or "Shell")
            cells.append(
                f'<div class="cell" style="grid-area: p{i}"><div class="title">{title}</div>'
                f'<iframe name="term-{i}" src="{html.escape(src, quote=True)}"></iframe></div>'
            )
        return (GRID_PAGE
                .replace("__COLS__", str(cols))
                .replace("__ROWS__", str(rows))
                .replace("__AREAS__", areas)
                .replace("__BG__", TERMINAL_BACKGROUND)
                .replace("__CELLS__", "\n".join(cells)))

    # -- websocket ---------------------------------------------------------

    async def _handle(self, connection: ServerConnection):
        query = {k: v[0] for k, v in parse_qs(urlsplit(connection.request.path).query).items()}
        test_id = query.get("testId")
        if query.get("mode") == "observe":
            await self._observe(connection, test_id)
            return

        cmd = query.get("cmd")
        await connection.send(f"[b2v] connected: {cmd or 'shell'}\r\n".encode("utf-8"))
        session = PtySession(cmd)
        session.primary = connection
        session.clients.add(connection)
        if test_id:
            self._sessions[test_id] = session
        else:
            self._anonymous.append(session)

        try:
            async for message in connection:
                if isinstance(message, str):
                    size = parse_resize(message)
                    if size:
                        session.resize(*size)
                else:
                    session.write(message)
        except ConnectionClosed:
            pass
        except OSError as e:
            logger.debug("PTY write failed for %s: %s", test_id or cmd, e)
        finally:
            session.primary = None
            session.clients.discard(connection)
            if not session.clients:
                session.close()
                if test_id:
                    self._sessions.pop(test_id, None)
                elif session in self._anonymous:
                    self._anonymous.remove(session)

    async def _observe(self, connection: ServerConnection, test_id: Optional[str]):
        session = self._sessions.get(test_id or "")
        if session is None:
            await connection.send(f"[b2v] PTY not found: {test_id}\r\n".encode("utf-8"))
            await connection.close()
            return

        for chunk in list(session.buffer):
            await connection.send(chunk)
        session.clients.add(connection)
        try:
            await connection.wait_closed()
        finally:
            session.clients.discard(connection)
            if not session.clients and session.primary is None:
                session.close()
                self._sessions.pop(test_id, None)

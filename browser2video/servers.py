"""
Managed web servers for scenarios.

Starts the app under test before any pane opens it: a shell command (with
PORT set), a Next.js or Vite dev server, or a static file server. The
returned ManagedServer is stopped by registering `server.stop` with
`Session.add_cleanup`, so it outlives the recording and is released last.
"""
import asyncio
import functools
import logging
import os
import signal
import socket
import threading
from dataclasses import dataclass
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Awaitable, Callable, Optional

from config.settings import SERVER_READY_TIMEOUT_MS, SERVER_STOP_TIMEOUT_MS, SERVER_OUTPUT_LIMIT
from .errors import ServerStartError, best_effort

logger = logging.getLogger(__name__)

SERVER_TYPES = ("command", "next", "vite", "static")
PORT_POLL_S = 0.2
READ_CHUNK = 4096


@dataclass
class ServerConfig:
    """How to start the app under test."""
    type: str
    cmd: Optional[str] = None
    root: Optional[str] = None
    port: Optional[int] = None
    ready_pattern: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        return cls(
            type=data["type"],
            cmd=data.get("cmd"),
            root=data.get("root"),
            port=data.get("port"),
            ready_pattern=data.get("readyPattern") or data.get("ready_pattern"),
        )


@dataclass
class ManagedServer:
    """A running server and the coroutine function that stops it."""
    base_url: str
    stop: Callable[[], Awaitable[None]]
    output: Callable[[], str] = lambda: ""


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_for_port(host: str, port: int, timeout_ms: int = SERVER_READY_TIMEOUT_MS):
    """Poll until a TCP connection to host:port succeeds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    while loop.time() < deadline:
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            await asyncio.sleep(PORT_POLL_S)
            continue
        writer.close()
        await best_effort(writer.wait_closed(), "port probe close")
        return
    raise ServerStartError(f"Server did not start on {host}:{port} within {timeout_ms}ms")


class _OutputTail:
    """Last SERVER_OUTPUT_LIMIT characters of a server's combined output."""

    def __init__(self, ready_pattern: Optional[str] = None):
        self.text = ""
        self.ready_pattern = ready_pattern
        self.ready = asyncio.Event()

    def push(self, chunk: str):
        self.text = (self.text + chunk)[-SERVER_OUTPUT_LIMIT:]
        if self.ready_pattern and self.ready_pattern in self.text:
            self.ready.set()


async def start_command_server(cmd: str, port: int, ready_pattern: Optional[str] = None,
                               cwd: Optional[str] = None,
                               timeout_ms: int = SERVER_READY_TIMEOUT_MS) -> ManagedServer:
    """
    Run `sh -c cmd` with PORT set and wait until it is ready.

    Ready means ready_pattern appeared in its output when one is given,
    otherwise that 127.0.0.1:port accepts connections.

    Raises:
        ServerStartError: the process exited or did not become ready in time
    """
    process = await asyncio.create_subprocess_exec(
        "sh", "-c", cmd,
        cwd=cwd,
        env={**os.environ, "PORT": str(port)},
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    tail = _OutputTail(ready_pattern)

    async def pump():
        while True:
            data = await process.stdout.read(READ_CHUNK)
            if not data:
                return
            tail.push(data.decode("utf-8", errors="replace"))

    reader = asyncio.ensure_future(pump())

    async def stop():
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGINT)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), SERVER_STOP_TIMEOUT_MS / 1000)
            except asyncio.TimeoutError:
                logger.debug("Server %r ignored SIGINT; killing", cmd)
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await process.wait()
        reader.cancel()

    if ready_pattern:
        ready = asyncio.ensure_future(tail.ready.wait())
    else:
        ready = asyncio.ensure_future(wait_for_port("127.0.0.1", port, timeout_ms))
    exited = asyncio.ensure_future(process.wait())

    try:
        done, _ = await asyncio.wait({ready, exited}, timeout=timeout_ms / 1000,
                                     return_when=asyncio.FIRST_COMPLETED)
        if ready in done:
            ready.result()
        elif exited in done:
            await asyncio.wait({reader}, timeout=1)
            raise ServerStartError(
                f"Server command exited with code {process.returncode}: {tail.text[-2000:]}"
            )
        else:
            what = f'output "{ready_pattern}"' if ready_pattern else f"listen on port {port}"
            raise ServerStartError(f"Server did not {what} within {timeout_ms}ms")
    except BaseException:
        await stop()
        raise
    finally:
        ready.cancel()
        exited.cancel()

    base_url = f"http://localhost:{port}"
    logger.info("Server ready at %s (%s)", base_url, cmd)
    return ManagedServer(base_url, stop, lambda: tail.text)


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        logger.debug("static %s - %s", self.address_string(), format % args)


async def start_static_server(root: str, port: Optional[int] = None) -> ManagedServer:
    """Serve a directory over HTTP from a background thread."""
    root_path = Path(root)
    if not root_path.is_dir():
        raise ServerStartError(f"Static root is not a directory: {root}")

    handler = functools.partial(_QuietHandler, directory=str(root_path))
    server = ThreadingHTTPServer(("127.0.0.1", port or 0), handler)
    thread = threading.Thread(target=server.serve_forever, name="b2v-static", daemon=True)
    thread.start()
    port = server.server_address[1]

    async def stop():
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, server.shutdown)
        server.server_close()
        thread.join(timeout=SERVER_STOP_TIMEOUT_MS / 1000)

    base_url = f"http://localhost:{port}"
    logger.info("Serving %s at %s", root_path, base_url)
    return ManagedServer(base_url, stop)


async def start_server(config) -> Optional[ManagedServer]:
    """
    Start a server from a ServerConfig (or an equivalent dict).

    Returns None when no config is given. Register `server.stop` with
    `session.add_cleanup` so the server is released at the end of finish().
    """
    if not config:
        return None
    if isinstance(config, dict):
        config = ServerConfig.from_dict(config)

    if config.type == "command":
        if not config.cmd or not config.port:
            raise ServerStartError("command servers need both cmd and port")
        return await start_command_server(config.cmd, config.port, config.ready_pattern, config.root)
    if config.type == "next":
        port = config.port or get_free_port()
        return await start_command_server(f"npx next dev --port {port}", port, "Ready", config.root)
    if config.type == "vite":
        port = config.port or get_free_port()
        return await start_command_server(f"npx vite --port {port} --strictPort", port, cwd=config.root)
    if config.type == "static":
        return await start_static_server(config.root or ".", config.port)
    raise ValueError(f"Unknown server type: {config.type} (expected one of {', '.join(SERVER_TYPES)})")

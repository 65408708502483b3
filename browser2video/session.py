"""
Session module - owns the browser, the panes and the run artifacts.

A session launches Chromium, opens recorded panes (browser pages, process
terminals, PTY terminals and terminal grids), times the scenario's steps
and, in finish(), turns everything into run.mp4, captions.vtt, run.json
and thumbnail.png.
"""
import asyncio
import html
import inspect
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from playwright.async_api import async_playwright

from config.settings import (
    ARTIFACTS_DIR, BROWSER_VIEWPORT, CHROMIUM_ARGS, FFMPEG_PATH, FINAL_FRAME_FLUSH_MS,
    GRID_VIEWPORT, NAVIGATION_TIMEOUT_MS, PAGE_BACKGROUND, TERMINAL_BACKGROUND,
    TERMINAL_VIEWPORT, XTERM_VIEWPORT, env_overrides, running_under_pytest,
)
from .actor import Actor, sleep_ms
from .captions import StepRecord, write_webvtt
from .compositor import VideoCompositor
from .errors import SessionError, best_effort, fire_and_forget
from .layout import Layout
from .mirror import ScreencastMirror
from .motion import MODES
from .narrator import AudioEvent, NarrationOptions, NoopAudioDirector, create_audio_director, mix_audio_into_video
from .overlays import FAST_MODE_INIT_SCRIPT, HIDE_CURSOR_INIT_SCRIPT, PROCESS_TERMINAL_HTML
from .panes import PageAttachable, Pane
from .process_terminal import ProcessTerminal
from .pty_bridge import TerminalBridge
from .replay_log import ReplayLog
from .servers import ManagedServer, start_server
from .terminal_actor import GridFocus, TerminalActor
from .thumbnail import embed_poster_frame, save_thumbnail

logger = logging.getLogger(__name__)

WS_OPEN_TIMEOUT_MS = 15000
GRID_IFRAME_TIMEOUT_MS = 10000
FRAME_LOOKUP_ATTEMPTS = 20


@dataclass
class SessionOptions:
    """Session settings; None means "take it from the environment or the default"."""
    mode: Optional[str] = None
    record: Optional[bool] = None
    headed: Optional[bool] = None
    output_dir: Optional[Path] = None
    layout: Union[Layout, str, list, dict, None] = None
    ffmpeg_path: Optional[str] = None
    delays: Optional[dict] = None
    cdp_port: Optional[int] = None
    narration: Optional[NarrationOptions] = None
    save_replay: bool = False
    name: Optional[str] = None


@dataclass
class SessionResult:
    """What finish() produced."""
    video: Optional[Path]
    thumbnail: Optional[Path]
    subtitles: Path
    metadata: Path
    artifact_dir: Path
    duration_ms: int
    steps: list[StepRecord] = field(default_factory=list)
    audio_events: list[AudioEvent] = field(default_factory=list)
    replay: Optional[Path] = None


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _safe_name(command: Optional[str]) -> str:
    name = re.sub(r"[^a-zA-Z0-9_-]", "-", command or "shell")
    return re.sub(r"-+", "-", name).strip("-")[:30] or "shell"


class Session:
    """One recording run."""

    def __init__(self, options: Optional[SessionOptions] = None):
        options = options or SessionOptions()
        env = env_overrides()
        under_pytest = running_under_pytest()

        self.mode = _first_set(options.mode, env.get("mode"), "fast" if under_pytest else "human")
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode: {self.mode!r} (expected one of {', '.join(MODES)})")
        self.record = _first_set(options.record, env.get("record"), not under_pytest)
        self.headed = _first_set(options.headed, env.get("headed"), self.mode == "human")
        self.cdp_port = _first_set(options.cdp_port, env.get("cdp_port"))
        self.ffmpeg = _first_set(options.ffmpeg_path, env.get("ffmpeg_path"), FFMPEG_PATH)
        self.layout = Layout.parse(options.layout)
        self.delays = options.delays
        self.save_replay = options.save_replay
        self.narration = self._resolve_narration(options.narration, env)

        if options.output_dir:
            self.artifact_dir = Path(options.output_dir)
        else:
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            self.artifact_dir = ARTIFACTS_DIR / f"{options.name or 'run'}-{stamp}"

        self.replay = ReplayLog()
        self.audio = NoopAudioDirector()
        self.start_ms = time.time() * 1000
        self.browser = None
        self._playwright = None
        self._bridge: Optional[TerminalBridge] = None
        self._panes: dict[str, Pane] = {}
        self._pane_counter = 0
        self._terminal_counter = 0
        self._steps: list[StepRecord] = []
        self._cleanups: list[Callable] = []
        self._started = False
        self._finished = False

    def _resolve_narration(self, explicit: Optional[NarrationOptions], env: dict) -> Optional[NarrationOptions]:
        narration = explicit
        if narration is None and self.mode == "human" and env.get("narrate"):
            narration = NarrationOptions(enabled=True)
        if narration is not None and env.get("narration"):
            narration = replace(narration, **env["narration"])
        return narration

    async def __aenter__(self) -> "Session":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        if self._started and not self._finished:
            await self.finish()

    async def start(self) -> "Session":
        """Launch Chromium and prepare the artifact directory."""
        if self._started:
            return self
        self.artifact_dir.mkdir(parents=True, exist_ok=True)

        args = list(CHROMIUM_ARGS)
        if self.cdp_port:
            args.append(f"--remote-debugging-port={self.cdp_port}")

        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(headless=not self.headed, args=args)

        self.start_ms = time.time() * 1000
        self.replay = ReplayLog(self.start_ms)
        self.audio = create_audio_director(
            self.narration, self.start_ms, ffmpeg=self.ffmpeg,
            on_event=lambda event: self.replay.audio(event.label, event.duration_ms),
        )
        self._started = True
        logger.info("Session started (mode=%s, record=%s, headed=%s) -> %s",
                    self.mode, self.record, self.headed, self.artifact_dir)
        return self

    def _require_started(self):
        if not self._started:
            raise SessionError("Session not started; call start() first")
        if self._finished:
            raise SessionError("Session already finished")

    # -- panes -------------------------------------------------------------

    def _next_pane_id(self) -> str:
        pane_id = f"pane-{self._pane_counter}"
        self._pane_counter += 1
        return pane_id

    async def _new_pane(self, kind: str, label: str, viewport: dict) -> Pane:
        """Create a context (recording from now on when enabled) and its page."""
        pane_id = self._next_pane_id()
        context_options = {"viewport": viewport}
        raw_video_path = None
        if self.record:
            context_options["record_video_dir"] = str(self.artifact_dir / "raw")
            context_options["record_video_size"] = viewport
            raw_video_path = self.artifact_dir / f"{pane_id}.raw.webm"

        context = await self.browser.new_context(**context_options)
        created_at_ms = time.time() * 1000
        page = await context.new_page()
        self._watch_console(page, label)
        return Pane(pane_id, kind, label, viewport, created_at_ms, context, page, raw_video_path)

    def _register(self, pane: Pane):
        self._panes[pane.id] = pane
        logger.debug("Registered %s pane %s (%s)", pane.kind, pane.id, pane.label)

    def _watch_console(self, page, label: str):
        def on_console(message):
            if message.type == "error":
                logger.error("[%s] console: %s", label, message.text)

        page.on("console", on_console)
        page.on("pageerror", lambda error: logger.error("[%s] page error: %s", label, error))

    async def _prepare_page(self, page):
        if self.mode == "fast":
            await page.add_init_script(FAST_MODE_INIT_SCRIPT)
        else:
            await page.add_init_script(HIDE_CURSOR_INIT_SCRIPT)

    def _new_actor(self, page, actor_class=Actor, **kwargs) -> Actor:
        actor = actor_class(page, self.mode, delays=self.delays, replay=self.replay, **kwargs)
        actor.attach_audio(self.audio)
        if self.narration:
            actor.set_voice(self.narration.voice)
        return actor

    def _keep_cursor(self, page, actor: Actor):
        """Re-inject the cursor overlay whenever the main frame navigates."""
        if not actor.human:
            return

        def on_navigated(frame):
            if frame == page.main_frame:
                fire_and_forget(actor.inject_cursor(), "cursor injection")

        page.on("framenavigated", on_navigated)

    async def open_page(self, url: Optional[str] = None, viewport: Optional[dict] = None,
                        label: Optional[str] = None) -> tuple[object, Actor]:
        """
        Open a recorded browser pane.

        Args:
            url: Page to load (blank page when omitted)
            viewport: {"width", "height"}; 1280x720 by default
            label: Name shown in logs and run.json

        Returns:
            (page, actor) tuple
        """
        self._require_started()
        viewport = viewport or BROWSER_VIEWPORT
        label = label or url or "Browser"
        pane = await self._new_pane("browser", label, viewport)
        page = pane.page

        await page.evaluate(f"() => {{ document.documentElement.style.background = '{PAGE_BACKGROUND}'; }}")
        await self._prepare_page(page)

        actor = self._new_actor(page)
        self._keep_cursor(page, actor)
        if url:
            await page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
            await actor.inject_cursor()

        pane.actor = actor
        pane.actors.append(actor)
        self._register(pane)
        return page, actor

    async def open_terminal(self, command: Optional[str] = None, viewport: Optional[dict] = None,
                            label: Optional[str] = None) -> ProcessTerminal:
        """Open a recorded pane showing a plain subprocess; output also goes to <pane>.log."""
        self._require_started()
        viewport = viewport or TERMINAL_VIEWPORT
        label = label or command or "Terminal"
        pane = await self._new_pane("terminal", label, viewport)

        await pane.page.set_content(
            PROCESS_TERMINAL_HTML.format(background=TERMINAL_BACKGROUND, title=html.escape(label)),
            wait_until="domcontentloaded",
        )
        terminal = ProcessTerminal(pane.page, self.artifact_dir / f"{pane.id}.log", command,
                                   mode=self.mode, delays=self.delays)
        await terminal.start()

        pane.terminal = terminal
        self._register(pane)
        return terminal

    async def _terminal_bridge(self) -> TerminalBridge:
        if self._bridge is None:
            self._bridge = await TerminalBridge().start()
            self.add_cleanup(self._bridge.close)
        return self._bridge

    async def _wait_terminal_ready(self, actor: TerminalActor, dom, selector: str, command: Optional[str]):
        await dom.wait_for_selector(f'{selector}[data-b2v-ws-state="open"]', timeout=WS_OPEN_TIMEOUT_MS)
        if command:
            await actor.wait_for_text(["[b2v] connected"], timeout=WS_OPEN_TIMEOUT_MS)
        else:
            await actor.wait_for_prompt(timeout=WS_OPEN_TIMEOUT_MS)

    async def create_terminal(self, command: Optional[str] = None, viewport: Optional[dict] = None,
                              label: Optional[str] = None) -> TerminalActor:
        """
        Open a recorded xterm.js pane attached to a real shell on a PTY.

        Without a command an interactive bash is started; the returned actor
        is ready once the prompt (or the command's first output) is visible.
        """
        self._require_started()
        bridge = await self._terminal_bridge()
        viewport = viewport or XTERM_VIEWPORT
        label = label or command or "Shell"
        test_id = f"xterm-term-{self._terminal_counter}-{_safe_name(command)}"
        self._terminal_counter += 1

        pane = await self._new_pane("terminal", label, viewport)
        page = pane.page
        await self._prepare_page(page)
        await page.goto(bridge.terminal_url(command, test_id, label),
                        wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)

        selector = f'[data-testid="{test_id}"]'
        actor = self._new_actor(page, TerminalActor, selector=selector)
        await self._wait_terminal_ready(actor, page, selector, command)
        self._keep_cursor(page, actor)
        await actor.inject_cursor()

        pane.actor = actor
        pane.actors.append(actor)
        self._register(pane)
        return actor

    async def _grid_frame(self, page, name: str):
        await page.wait_for_selector(f'iframe[name="{name}"]', timeout=GRID_IFRAME_TIMEOUT_MS)
        for _ in range(FRAME_LOOKUP_ATTEMPTS):
            frame = page.frame(name=name)
            if frame is not None:
                return frame
            await sleep_ms(250)
        raise SessionError(f"Terminal iframe {name!r} did not attach")

    async def create_terminal_grid(self, terminals: list[dict], viewport: Optional[dict] = None,
                                   grid: Optional[list] = None) -> list[TerminalActor]:
        """
        Open one recorded pane holding several PTY terminals.

        Args:
            terminals: [{"command": ..., "label": ...}] in display order
            viewport: Size of the grid page
            grid: Optional index template, e.g. [[0, 1], [0, 2]]

        Returns:
            One TerminalActor per terminal, sharing a single focus tracker
        """
        self._require_started()
        if not terminals:
            raise ValueError("create_terminal_grid needs at least one terminal")
        bridge = await self._terminal_bridge()
        viewport = viewport or GRID_VIEWPORT

        configs = []
        for spec in terminals:
            command = spec.get("command")
            configs.append({
                "testId": f"xterm-term-{self._terminal_counter}-{_safe_name(command)}",
                "title": spec.get("label") or command or "Shell",
                "cmd": command,
            })
            self._terminal_counter += 1

        label = " | ".join(c["title"] for c in configs)
        pane = await self._new_pane("terminal", label, viewport)
        page = pane.page
        await self._prepare_page(page)
        await page.goto(bridge.grid_url(configs, grid),
                        wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)

        focus = GridFocus()
        actors = []
        for i, config in enumerate(configs):
            name = f"term-{i}"
            frame = await self._grid_frame(page, name)
            selector = f'[data-testid="{config["testId"]}"]'
            actor = self._new_actor(page, TerminalActor, selector=selector, frame=frame,
                                    iframe_name=name, grid_focus=focus)
            await self._wait_terminal_ready(actor, frame, selector, config["cmd"])
            actors.append(actor)

        self._keep_cursor(page, actors[0])
        await actors[0].inject_cursor()

        pane.actor = actors[0]
        pane.actors.extend(actors)
        self._register(pane)
        return actors

    # -- steps -------------------------------------------------------------

    def _first_actor(self) -> Optional[Actor]:
        for pane in self._panes.values():
            if pane.actor is not None:
                return pane.actor
        return None

    async def step(self, caption: str, body: Callable[[], Awaitable], narration: Optional[str] = None) -> StepRecord:
        """
        Run one captioned step.

        With narration in human mode the speech runs concurrently with the
        body, and the step ends when both have finished.
        """
        index = len(self._steps) + 1
        start_ms = self.replay.now()
        logger.info("[Step %d] %s", index, caption)
        self.replay.step_start(index, caption)

        narrate = bool(narration) and self.mode == "human"
        if narrate:
            await self.audio.warmup(narration)

        work = [body()]
        if narrate:
            work.append(self.audio.speak(narration))
        await asyncio.gather(*work)

        actor = self._first_actor()
        if actor is not None and actor.human:
            await actor.breathe()

        end_ms = self.replay.now()
        self.replay.step_end(index)
        record = StepRecord(index, caption, start_ms, end_ms)
        self._steps.append(record)
        return record

    @property
    def steps(self) -> list[StepRecord]:
        return list(self._steps)

    # -- accessors ---------------------------------------------------------

    def _pane(self, pane_id: Optional[str] = None) -> Pane:
        if pane_id is None:
            if not self._panes:
                raise SessionError("No panes open")
            return next(iter(self._panes.values()))
        try:
            return self._panes[pane_id]
        except KeyError:
            raise SessionError(f"Unknown pane: {pane_id}") from None

    def get_actor(self, pane_id: Optional[str] = None) -> Optional[Actor]:
        return self._pane(pane_id).actor

    def get_page(self, target: Union[str, PageAttachable, None] = None):
        """Page behind a pane id, or behind any page-backed object (actor, terminal, pane)."""
        if isinstance(target, PageAttachable):
            return target.attached_page()
        return self._pane(target).attached_page()

    def get_terminal(self, pane_id: Optional[str] = None) -> Optional[ProcessTerminal]:
        return self._pane(pane_id).terminal

    def get_terminal_output(self, pane_id: Optional[str] = None) -> str:
        terminal = self.get_terminal(pane_id)
        return terminal.output if terminal else ""

    def panes_summary(self) -> list[dict]:
        return [pane.summary() for pane in self._panes.values()]

    def add_cleanup(self, fn: Callable):
        """Register a callable (sync or async) run at the very end of finish()."""
        self._cleanups.append(fn)

    async def start_server(self, config) -> Optional[ManagedServer]:
        """Start the app under test; it is stopped with the other cleanups in finish()."""
        server = await start_server(config)
        if server is not None:
            self.add_cleanup(server.stop)
        return server

    async def start_mirror(self, pane_id: Optional[str], on_frame) -> Optional[ScreencastMirror]:
        """Stream a pane's frames to on_frame until finish(); None if unavailable."""
        mirror = await ScreencastMirror(self._pane(pane_id).page, on_frame).start()
        if mirror is not None:
            self.add_cleanup(mirror.stop)
        return mirror

    # -- finish ------------------------------------------------------------

    async def finish(self) -> SessionResult:
        """
        Close everything and write the artifacts.

        Order: thumbnail screenshot, final frame flush, close panes and the
        browser, save raw videos, compose run.mp4, mix narration, embed the
        poster frame, write captions and metadata, run cleanups.

        Raises:
            SessionError: if called twice
        """
        if self._finished:
            raise SessionError("Session already finished")
        self._finished = True

        duration_ms = self.replay.now()
        panes = list(self._panes.values())
        video_path = self.artifact_dir / "run.mp4" if self.record else None
        subtitles_path = self.artifact_dir / "captions.vtt"
        metadata_path = self.artifact_dir / "run.json"
        thumbnail_path = None
        audio_events = []
        video_ready = False
        replay_path = None

        try:
            if self.record and panes:
                thumbnail_path = await self._capture_thumbnail(panes)
                await sleep_ms(FINAL_FRAME_FLUSH_MS)

            for pane in panes:
                await self._close_pane(pane)
            if self.browser is not None:
                await best_effort(self.browser.close(), "browser close")
            if self._playwright is not None:
                await best_effort(self._playwright.stop(), "playwright stop")

            if video_path is not None:
                self._compose(panes, video_path)

            audio_events = self.audio.events
            video_ready = video_path is not None and video_path.exists()
            if audio_events and video_ready:
                logger.info("Mixing %d audio event(s) into the video", len(audio_events))
                try:
                    mix_audio_into_video(video_path, audio_events, self.ffmpeg)
                except Exception as e:
                    logger.error("Audio mix failed, keeping the silent video: %s", e)

            if thumbnail_path is not None and video_ready:
                try:
                    embed_poster_frame(video_path, thumbnail_path, self.ffmpeg)
                except Exception as e:
                    logger.warning("Could not embed poster frame: %s", e)

            write_webvtt(self._steps, subtitles_path)
            metadata = self._metadata(duration_ms, video_path, subtitles_path, audio_events)
            metadata_path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")

            if self.save_replay:
                replay_path = self.replay.write_jsonl(self.artifact_dir / "replay.jsonl")
        finally:
            await self._run_cleanups()

        logger.info("Session finished in %.1fs -> %s", duration_ms / 1000, self.artifact_dir)
        return SessionResult(
            video=video_path if video_ready else None,
            thumbnail=thumbnail_path,
            subtitles=subtitles_path,
            metadata=metadata_path,
            artifact_dir=self.artifact_dir,
            duration_ms=duration_ms,
            steps=list(self._steps),
            audio_events=audio_events,
            replay=replay_path,
        )

    async def _capture_thumbnail(self, panes: list[Pane]) -> Optional[Path]:
        """Screenshot every pane so its last frame is painted; the first one becomes the thumbnail."""
        thumbnail = None
        for pane in panes:
            try:
                shot = await pane.page.screenshot(type="png")
                if thumbnail is None:
                    thumbnail = save_thumbnail(shot, self.artifact_dir / "thumbnail.png")
            except Exception as e:
                logger.debug("Final screenshot of %s failed: %s", pane.id, e)
        return thumbnail

    async def _close_pane(self, pane: Pane):
        if pane.terminal is not None:
            await best_effort(pane.terminal.close(), f"terminal close ({pane.id})")

        if self.record and pane.raw_video_path is not None:
            try:
                await pane.page.close()
                if pane.page.video:
                    await pane.page.video.save_as(pane.raw_video_path)
            except Exception as e:
                logger.error("Could not save video for %s: %s", pane.label, e)

        await best_effort(pane.context.close(), f"context close ({pane.id})")

    def _compose(self, panes: list[Pane], video_path: Path):
        recorded = [p for p in panes if p.raw_video_path is not None and p.raw_video_path.exists()]
        if not recorded:
            logger.warning("No pane recordings were saved; run.mp4 not produced")
            return

        earliest = min(p.created_at_ms for p in recorded)
        offsets = [int(p.created_at_ms - earliest) for p in recorded]
        raw_paths = [p.raw_video_path for p in recorded]

        try:
            compositor = VideoCompositor(self.ffmpeg)
        except RuntimeError as e:
            logger.error("%s; raw recordings kept in %s", e, self.artifact_dir)
            return

        try:
            compositor.compose(raw_paths, video_path, self.layout, offsets)
        except Exception as e:
            logger.warning("Composition failed (%s); encoding the first pane only", e)
            try:
                compositor.fallback_encode(raw_paths[0], video_path)
            except Exception as e2:
                logger.error("Fallback encode failed: %s", e2)
                video_path.unlink(missing_ok=True)

        if video_path.exists():
            for path in raw_paths:
                path.unlink(missing_ok=True)
            shutil.rmtree(self.artifact_dir / "raw", ignore_errors=True)

    def _metadata(self, duration_ms: int, video_path: Optional[Path], subtitles_path: Path,
                  audio_events: list[AudioEvent]) -> dict:
        metadata = {
            "mode": self.mode,
            "durationMs": duration_ms,
            "steps": [s.to_metadata() for s in self._steps],
        }
        if video_path is not None:
            metadata["videoPath"] = str(video_path)
        metadata["subtitlesPath"] = str(subtitles_path)
        metadata["recordMode"] = "screencast" if self.record else "none"
        metadata["panes"] = self.panes_summary()
        if audio_events:
            metadata["audioEvents"] = [e.to_metadata() for e in audio_events]
        metadata["timestamp"] = datetime.now(timezone.utc).isoformat()
        return metadata

    async def _run_cleanups(self):
        for fn in self._cleanups:
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.debug("Cleanup %r failed: %s", fn, e)
        self._cleanups.clear()


async def create_session(options: Optional[SessionOptions] = None, **kwargs) -> Session:
    """
    Create and start a session.

    Keyword arguments are SessionOptions fields and are used only when no
    options object is given.
    """
    if options is None:
        options = SessionOptions(**kwargs)
    return await Session(options).start()

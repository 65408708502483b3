"""
Interaction actor: drives one browser surface like a person would.

In human mode every pointer action travels along a WindMouse path with
eased per-step delays, clicks show a ripple and keystrokes are paced; in
fast mode the same calls run with zero delays and no cosmetic effects.
Cursor moves, clicks and key presses are streamed to the session's
ReplayLog when one is attached.
"""
import asyncio
import logging
import random
import time
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.settings import ELEMENT_TIMEOUT_MS, IFRAME_BOX_TTL_MS
from .errors import ElementNotFoundError, OptionNotFoundError, SessionError, best_effort
from .motion import (
    Point, merge_delays, pick_ms, eased_step_ms, wind_mouse, linear_path,
    spiral_duration_ms, spiral_path, round_half_up,
)
from .overlays import CURSOR_OVERLAY_SCRIPT, SCROLL_SCRIPT, WINDOW_SCROLL_SCRIPT
from .panes import PageAttachable
from .replay_log import ReplayLog

logger = logging.getLogger(__name__)

XTERM_TEXTAREA = ".xterm-helper-textarea"
OPTION_SELECTOR = '[role="option"]'
WORD_BOUNDARY_CHARS = (" ", "@", ".")
SELECT_TEXT_TIMEOUT_MS = 5000
LOCATOR_SCROLL_TIMEOUT_MS = 10000


async def sleep_ms(ms: float):
    if ms > 0:
        await asyncio.sleep(ms / 1000)


def _center(box: dict) -> Point:
    return (round_half_up(box["x"] + box["width"] / 2),
            round_half_up(box["y"] + box["height"] / 2))


class Actor(PageAttachable):
    """Scripted user for one page (or one iframe of a page)."""

    def __init__(self, page, mode: str = "human", delays: Optional[dict] = None,
                 frame=None, replay: Optional[ReplayLog] = None,
                 cursor_id: str = "default", voice: Optional[str] = None,
                 speed: Optional[float] = None, rng: Optional[random.Random] = None):
        """
        Initialize an actor.

        Args:
            page: Playwright page that receives mouse and keyboard input
            mode: "human" or "fast"
            delays: Per-delay (min_ms, max_ms) overrides
            frame: Frame used for selector lookups (the page when omitted)
            replay: Event log receiving cursor/click/key events
            cursor_id: Which overlay cursor (color) this actor moves
            voice: Default narration voice
            speed: Default narration speed
            rng: Random source for cursor paths
        """
        self.page = page
        self.mode = mode
        self.delays = merge_delays(mode, delays)
        self.replay = replay
        self.cursor_id = cursor_id
        self.voice = voice
        self.speed = speed
        self.rng = rng
        self._context = frame or page
        self.cursor_x = 0
        self.cursor_y = 0
        self._audio = None

        self._embedded = False
        self._iframe_selector: Optional[str] = None
        self._iframe_viewport: Optional[dict] = None
        self._iframe_box: Optional[tuple[float, float, float]] = None
        self._iframe_box_at = 0.0

    @property
    def human(self) -> bool:
        return self.mode == "human"

    def attached_page(self):
        return self.page

    def _delay(self, name: str) -> int:
        return pick_ms(self.delays[name])

    async def _pause(self, name: str):
        await sleep_ms(self._delay(name))

    # -- embedding ---------------------------------------------------------

    def embed(self, iframe_selector: str, viewport: dict):
        """
        Report replay coordinates in the space of an embedding iframe.

        Used when the scenario page is shown inside a host page at a
        different scale; cursor overlay injection is skipped while embedded.
        """
        self._embedded = True
        self._iframe_selector = iframe_selector
        self._iframe_viewport = viewport
        self._iframe_box = None

    async def _refresh_iframe_box(self):
        if not self._embedded or not self._iframe_selector or not self._iframe_viewport:
            return
        now = time.monotonic() * 1000
        if self._iframe_box and now - self._iframe_box_at < IFRAME_BOX_TTL_MS:
            return
        el = await self.page.query_selector(self._iframe_selector)
        if not el:
            return
        box = await el.bounding_box()
        if not box or not box["width"]:
            return
        self._iframe_box = (box["x"], box["y"], box["width"] / self._iframe_viewport["width"])
        self._iframe_box_at = now

    def _replay_xy(self, x: int, y: int) -> Point:
        if not self._iframe_box:
            return x, y
        ox, oy, scale = self._iframe_box
        return round_half_up((x - ox) / scale), round_half_up((y - oy) / scale)

    def _emit_cursor_move(self, x: int, y: int):
        if self.replay:
            self.replay.cursor_move(*self._replay_xy(x, y))

    def _emit_click(self, x: int, y: int):
        if self.replay:
            self.replay.click(*self._replay_xy(x, y))

    # -- narration ---------------------------------------------------------

    def attach_audio(self, director):
        """Attach the session's audio director so the actor can narrate."""
        self._audio = director

    def set_voice(self, voice: str, speed: Optional[float] = None):
        self.voice = voice
        if speed is not None:
            self.speed = speed

    def _require_audio(self):
        if self._audio is None:
            raise SessionError("No audio director attached; create actors through the session")
        return self._audio

    async def warmup(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        """Pre-generate narration audio with this actor's voice defaults."""
        await self._require_audio().warmup(text, voice=voice or self.voice, speed=speed or self.speed)

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        await self._require_audio().speak(text, voice=voice or self.voice, speed=speed or self.speed)

    # -- cursor ------------------------------------------------------------

    async def inject_cursor(self):
        """Install the cursor overlay (human mode, not embedded)."""
        if not self.human or self._embedded:
            return
        await best_effort(self.page.evaluate(CURSOR_OVERLAY_SCRIPT), "cursor injection")

    async def _overlay(self, expression: str):
        await best_effort(self.page.evaluate(expression), "cursor overlay")

    async def _move_along(self, points: list[Point], factor: float = 1.0):
        step = self._delay("mouse_move_step")
        n = len(points)
        for i, (x, y) in enumerate(points):
            await self.page.mouse.move(x, y)
            await self._overlay(f"window.__b2v_moveCursor?.({x}, {y}, '{self.cursor_id}')")
            self._emit_cursor_move(x, y)
            await sleep_ms(eased_step_ms(step, i, n, factor))

    async def _travel_to(self, target: Point):
        points = wind_mouse((self.cursor_x, self.cursor_y), target, rng=self.rng)
        await self._move_along(points)

    async def _click_effect(self, x: int, y: int):
        await self._overlay(f"window.__b2v_clickEffect?.({x}, {y})")
        self._emit_click(x, y)
        await self._pause("click_effect")

    async def move_cursor_to(self, x: float, y: float):
        """Move the visible cursor smoothly to page coordinates (human mode only)."""
        if not self.human:
            return
        await self._refresh_iframe_box()
        target = (round_half_up(x), round_half_up(y))
        await self._travel_to(target)
        self.cursor_x, self.cursor_y = target

    # -- element lookup ----------------------------------------------------

    async def _wait_visible(self, selector: str, timeout: int = ELEMENT_TIMEOUT_MS,
                            fallback_to_page: bool = False):
        try:
            el = await self._context.wait_for_selector(selector, state="visible", timeout=timeout)
        except PlaywrightTimeoutError as e:
            if not fallback_to_page or self._context is self.page:
                raise ElementNotFoundError(selector, timeout) from e
            try:
                el = await self.page.wait_for_selector(selector, state="visible", timeout=timeout)
            except PlaywrightTimeoutError as e2:
                raise ElementNotFoundError(selector, timeout) from e2
        if el is None:
            raise ElementNotFoundError(selector, timeout)
        return el

    async def _box(self, el, selector: str) -> dict:
        box = await el.bounding_box()
        if not box:
            raise ElementNotFoundError(selector, 0)
        return box

    async def _scroll_into_view(self, el, smooth: Optional[bool] = None):
        behavior = "smooth" if (self.human if smooth is None else smooth) else "auto"
        await el.evaluate("(e, b) => e.scrollIntoView({block: 'center', behavior: b})", behavior)
        await self._pause("after_scroll_into_view")

    async def _move_to(self, selector: str) -> Point:
        await self._refresh_iframe_box()
        el = await self._wait_visible(selector, fallback_to_page=True)
        await self._scroll_into_view(el)
        target = _center(await self._box(el, selector))
        if self.human:
            await self._travel_to(target)
        self.cursor_x, self.cursor_y = target
        return target

    # -- pointer operations ------------------------------------------------

    async def hover(self, selector: str):
        await self._move_to(selector)

    async def _press_at(self, x: int, y: int):
        if self.human:
            await self._click_effect(x, y)
            await self.page.mouse.down()
            await self._pause("click_hold")
            await self.page.mouse.up()
            await self._pause("after_click")
        else:
            await self.page.mouse.click(x, y)

    async def click(self, selector: str):
        """Move to an element's center and click it."""
        x, y = await self._move_to(selector)
        await self._press_at(x, y)

    async def click_at(self, x: float, y: float):
        """Click page coordinates (canvas, terminal and other selector-less targets)."""
        await self.move_cursor_to(x, y)
        await self._press_at(round_half_up(x), round_half_up(y))

    async def click_locator(self, locator):
        """Move to a Playwright locator's center and click it."""
        await locator.scroll_into_view_if_needed(timeout=LOCATOR_SCROLL_TIMEOUT_MS)
        box = await locator.bounding_box()
        if box:
            await self.move_cursor_to(box["x"] + box["width"] / 2, box["y"] + box["height"] / 2)
        await locator.click(force=True)

    async def goto(self, url: str):
        """Navigate; the session re-injects the cursor on navigation."""
        await self._context.goto(url, wait_until="networkidle")

    async def wait_for(self, selector: str, timeout: int = ELEMENT_TIMEOUT_MS):
        await self._wait_visible(selector, timeout)

    # -- keyboard ----------------------------------------------------------

    async def type(self, selector: str, text: str, speak=None):
        """
        Type text into an input or an xterm.js terminal.

        Args:
            selector: Input element or terminal container
            text: Characters to type ("\\n" presses Enter in terminals)
            speak: True to narrate the typed text, or a string to narrate
                instead; narration starts with the first keystroke and is
                awaited together with the typing
        """
        speak_text = text if speak is True else (speak or None)
        narration: Optional[asyncio.Future] = None

        def on_type_start():
            nonlocal narration
            if speak_text:
                narration = asyncio.ensure_future(self.speak(speak_text))

        try:
            await self._type_impl(selector, text, on_type_start)
        except BaseException:
            if narration:
                narration.cancel()
            raise
        if narration:
            await narration

    async def _type_impl(self, selector: str, text: str, on_type_start):
        textarea = await self._context.query_selector(f"{selector} {XTERM_TEXTAREA}")
        if textarea:
            await textarea.focus()
            on_type_start()
            char_delay = self._delay("key_delay")
            for ch in text:
                if ch == "\n":
                    await self.page.keyboard.press("Enter")
                else:
                    await self.page.keyboard.type(ch, delay=0)
                await sleep_ms(char_delay)
            await self._pause("after_type")
            return

        await self.click(selector)
        await self._pause("before_type")
        on_type_start()

        if not self.human:
            await self._context.type(selector, text, delay=0)
            return

        key_delay = self._delay("key_delay")
        for ch in text:
            await self.page.keyboard.type(ch, delay=key_delay)
            if ch in WORD_BOUNDARY_CHARS:
                await self._pause("key_boundary_pause")
        await self._pause("after_type")

    async def type_and_enter(self, selector: str, text: str):
        await self.type(selector, text + "\n")

    async def press_key(self, key: str):
        """Press a key (TUI / terminal use), then pause briefly in human mode."""
        await self.page.keyboard.press(key)
        if self.replay:
            self.replay.key_press(key)
        if self.human:
            await self.breathe()

    async def breathe(self):
        await self._pause("breathe")

    # -- dropdowns and scrolling -------------------------------------------

    async def select_option(self, trigger_selector: str, option_text: str):
        """
        Open a dropdown and pick the option whose trimmed text matches.

        Raises:
            OptionNotFoundError: no visible option has that text
        """
        await self.click(trigger_selector)
        await self._pause("select_open")
        await self._wait_visible(OPTION_SELECTOR)
        await self._pause("select_option")

        for option in await self._context.query_selector_all(OPTION_SELECTOR):
            text = await option.evaluate("el => el.textContent?.trim()")
            if text != option_text:
                continue
            target = _center(await self._box(option, OPTION_SELECTOR))
            if self.human:
                await self._travel_to(target)
                await self._click_effect(*target)
            self.cursor_x, self.cursor_y = target
            await option.click()
            await self._pause("after_click")
            return
        raise OptionNotFoundError(option_text)

    async def scroll(self, selector: Optional[str], delta_y: int):
        """
        Scroll an element's scroll container, or the window when selector is None.

        The container is the element itself when scrollable, else a
        scroll-area viewport inside it, else its first scrollable
        descendant, else the element.
        """
        behavior = "smooth" if self.human else "auto"
        if selector:
            await self._move_to(selector)
            await self._context.evaluate(
                SCROLL_SCRIPT, {"selector": selector, "deltaY": delta_y, "behavior": behavior}
            )
        else:
            await self._context.evaluate(WINDOW_SCROLL_SCRIPT, {"deltaY": delta_y, "behavior": behavior})
        await sleep_ms(600 if self.human else 50)

    # -- drags and drawing -------------------------------------------------

    async def drag_coords(self, start: tuple[float, float], end: tuple[float, float]):
        """Press at start, sweep to end along an eased straight line, release."""
        await self._refresh_iframe_box()
        start = (round_half_up(start[0]), round_half_up(start[1]))
        end = (round_half_up(end[0]), round_half_up(end[1]))

        if self.human:
            await self._travel_to(start)

        await self.page.mouse.move(*start)
        await self.page.mouse.down()
        self._emit_click(*start)
        await self._pause("click_hold")

        sweep = linear_path(start, end, 25 if self.human else 5)
        if self.human:
            await self._move_along(sweep)
        else:
            for x, y in sweep:
                await self.page.mouse.move(x, y)

        await self._pause("after_click")
        await self.page.mouse.up()
        self.cursor_x, self.cursor_y = end
        await self._pause("after_drag")

    async def drag(self, from_selector: str, to_selector: str):
        """Drag from one element's center to another's."""
        start = _center(await self._box(await self._wait_visible(from_selector), from_selector))
        end = _center(await self._box(await self._wait_visible(to_selector), to_selector))
        await self.drag_coords(start, end)

    async def drag_by_offset(self, selector: str, dx: int, dy: int):
        el = await self._wait_visible(selector)
        await self._scroll_into_view(el)
        x, y = _center(await self._box(el, selector))
        await self.drag_coords((x, y), (x + dx, y + dy))

    async def select_text(self, from_selector: str, to_selector: Optional[str] = None):
        """Drag-select from the top-left of one element to the bottom-right of another (or itself)."""
        from_el = await self._wait_visible(from_selector, SELECT_TEXT_TIMEOUT_MS)
        await self._scroll_into_view(from_el)
        from_box = await self._box(from_el, from_selector)
        start = (from_box["x"] + 2, from_box["y"] + 2)

        to_box = from_box
        if to_selector:
            to_el = await self._wait_visible(to_selector, SELECT_TEXT_TIMEOUT_MS)
            to_box = await self._box(to_el, to_selector)
        end = (to_box["x"] + to_box["width"] - 2, to_box["y"] + to_box["height"] - 2)
        await self.drag_coords(start, end)

    async def draw(self, canvas_selector: str, points: list[tuple[float, float]]):
        """
        Draw a stroke on a canvas.

        Args:
            canvas_selector: Canvas element
            points: Stroke points normalized to 0-1 over the canvas box;
                fewer than two points draws nothing
        """
        canvas = await self._wait_visible(canvas_selector)
        box = await self._box(canvas, canvas_selector)
        stroke = [
            (round_half_up(box["x"] + px * box["width"]), round_half_up(box["y"] + py * box["height"]))
            for px, py in points
        ]
        if len(stroke) < 2:
            return

        if self.human:
            await self._travel_to(stroke[0])

        await self.page.mouse.move(*stroke[0])
        await self.page.mouse.down()
        for prev, point in zip(stroke, stroke[1:]):
            segment = linear_path(prev, point, 12 if self.human else 1)
            if self.human:
                await self._move_along(segment, factor=2)
            else:
                for x, y in segment:
                    await self.page.mouse.move(x, y)
        await self.page.mouse.up()

        self.cursor_x, self.cursor_y = stroke[-1]
        await self._pause("after_drag")

    async def circle_around(self, selector: str, duration_ms: Optional[int] = None):
        """
        Circle the cursor around an element in a 1.5-turn spiral (human mode only).

        The duration scales with the element size unless given.
        """
        if not self.human:
            return
        await self._refresh_iframe_box()
        el = await self._wait_visible(selector)
        await self._scroll_into_view(el, smooth=True)
        box = await self._box(el, selector)

        cx = box["x"] + box["width"] / 2
        cy = box["y"] + box["height"] / 2
        rx = box["width"] / 2 + 18
        ry = box["height"] / 2 + 14
        r_start, r_end = 0.7, 1.0

        entry = (round_half_up(cx + rx * r_start), round_half_up(cy))
        await self._travel_to(entry)

        duration = duration_ms or spiral_duration_ms(rx, ry, r_start, r_end)
        steps = max(40, duration // 20)
        step_delay = duration / steps

        prev = entry
        for point in spiral_path((cx, cy), rx, ry, steps, r_start, r_end, rng=self.rng):
            if point != prev:
                await self.page.mouse.move(*point)
                await self._overlay(f"window.__b2v_moveCursor?.({point[0]}, {point[1]}, '{self.cursor_id}')")
                self._emit_cursor_move(*point)
                prev = point
            await sleep_ms(step_delay)

        self.cursor_x, self.cursor_y = prev

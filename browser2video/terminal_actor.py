"""
Terminal actor: a selector-free actor bound to one xterm.js terminal.

Works both for a standalone terminal page and for a terminal living in an
iframe of a grid page; in the grid case the actor clicks its iframe first
whenever keyboard focus is elsewhere.
"""
from typing import Optional

from .actor import Actor, XTERM_TEXTAREA, sleep_ms
from .motion import round_half_up

# Joins the rendered xterm rows with newlines so prompt detection can look at the last line
ROWS_TEXT_SCRIPT = """
(sel) => {
  const root = document.querySelector(sel);
  if (!root) return null;
  const rows = root.querySelector('.xterm-rows');
  if (!rows) return String(root.textContent || '');
  return Array.from(rows.children).map((r) => r.textContent || '').join('\\n');
}
"""

PROMPT_CHECK = """
  const lines = (text || '').split('\\n');
  for (let i = lines.length - 1; i >= 0; i--) {
    const line = lines[i].trim();
    if (!line) continue;
    return line.endsWith('$') || line.endsWith('#') || line.includes('$ ');
  }
  return false;
"""

WAIT_FOR_TEXT_SCRIPT = f"""
([sel, includes]) => {{
  const text = ({ROWS_TEXT_SCRIPT})(sel);
  if (text === null) return false;
  return includes.every((s) => text.includes(s));
}}
"""

WAIT_FOR_PROMPT_SCRIPT = f"""
(sel) => {{
  const text = ({ROWS_TEXT_SCRIPT})(sel);
  if (text === null) return false;
  {PROMPT_CHECK}
}}
"""

IFRAME_RECT_SCRIPT = """
(el) => { const r = el.getBoundingClientRect(); return {x: r.x, y: r.y, width: r.width, height: r.height}; }
"""


def _prompt_visible(text: str) -> bool:
    for line in reversed(text.split("\n")):
        line = line.strip()
        if not line:
            continue
        return line.endswith("$") or line.endswith("#") or "$ " in line
    return False


class GridFocus:
    """Which terminal iframe of a grid page currently has keyboard focus."""

    def __init__(self):
        self.focused: Optional[str] = None


class TerminalActor(Actor):
    """Actor scoped to one terminal; every method targets that terminal."""

    def __init__(self, page, mode: str = "human", selector: str = ".xterm",
                 frame=None, iframe_name: Optional[str] = None,
                 grid_focus: Optional[GridFocus] = None, **kwargs):
        super().__init__(page, mode, frame=frame, **kwargs)
        self.selector = selector
        self.iframe_name = iframe_name
        self._dom = frame or page
        self._grid_focus = grid_focus or GridFocus()
        self._read_watermark = 0

    async def _iframe_rect(self) -> dict:
        return await self.page.eval_on_selector(f'iframe[name="{self.iframe_name}"]', IFRAME_RECT_SCRIPT)

    async def click_relative(self, rel_x: float, rel_y: float = 0.5):
        """
        Click a point inside the terminal.

        Args:
            rel_x: Horizontal position, 0 (left) to 1 (right)
            rel_y: Vertical position, 0 (top) to 1 (bottom)
        """
        offset_x = offset_y = 0.0
        if self.iframe_name:
            rect = await self._iframe_rect()
            offset_x, offset_y = rect["x"], rect["y"]

        box = await self._dom.eval_on_selector(self.selector, IFRAME_RECT_SCRIPT)
        x = round_half_up(offset_x + box["x"] + box["width"] * rel_x)
        y = round_half_up(offset_y + box["y"] + box["height"] * rel_y)
        await self.click_at(x, y)
        if self.iframe_name:
            self._grid_focus.focused = self.iframe_name

    async def _ensure_focus(self):
        if not self.iframe_name or self._grid_focus.focused == self.iframe_name:
            return
        rect = await self._iframe_rect()
        await self.click_at(rect["x"] + rect["width"] / 2, rect["y"] + rect["height"] / 2)
        self._grid_focus.focused = self.iframe_name

    async def _type_into_terminal(self, text: str):
        textarea = await self._dom.query_selector(f"{self.selector} {XTERM_TEXTAREA}")
        if textarea:
            await textarea.focus()
        char_delay = self._delay("key_delay")
        for ch in text:
            if ch == "\n":
                await self.page.keyboard.press("Enter")
            else:
                await self.page.keyboard.type(ch, delay=0)
            await sleep_ms(char_delay)
        await self._pause("after_type")

    async def type_text(self, text: str):
        """Type into this terminal; newlines press Enter."""
        await self._ensure_focus()
        await self._type_into_terminal(text)

    async def type_line(self, text: str):
        """Type a command and press Enter."""
        await self.type_text(text + "\n")

    async def press_key(self, key: str):
        await self._ensure_focus()
        await super().press_key(key)

    async def wait_for_text(self, includes: list[str], timeout: int = 20000):
        """Wait until every string in includes is rendered in the terminal."""
        await self._dom.wait_for_function(WAIT_FOR_TEXT_SCRIPT, arg=[self.selector, includes], timeout=timeout)

    async def wait_for_prompt(self, timeout: int = 30000):
        """Wait for a shell prompt ($ or #) on the last non-empty line."""
        await self._dom.wait_for_function(WAIT_FOR_PROMPT_SCRIPT, arg=self.selector, timeout=timeout)

    async def is_busy(self) -> bool:
        """True while a command is running (no prompt on the last non-empty line)."""
        text = await self._dom.evaluate(ROWS_TEXT_SCRIPT, self.selector)
        if text is None:
            return True
        return not _prompt_visible(text)

    async def wait_until_idle(self, timeout: int = 30000):
        await self.wait_for_prompt(timeout)

    async def _rows_text(self) -> str:
        return await self._dom.evaluate(ROWS_TEXT_SCRIPT, self.selector) or ""

    async def read(self) -> str:
        """All rendered terminal text; moves the read_new watermark to the end."""
        text = await self._rows_text()
        self._read_watermark = len(text.split("\n"))
        return text

    async def read_new(self) -> str:
        """Lines rendered since the previous read()/read_new() (everything on first call)."""
        lines = (await self._rows_text()).split("\n")
        new_lines = lines[self._read_watermark:]
        self._read_watermark = len(lines)
        return "\n".join(new_lines)

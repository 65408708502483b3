"""
Exceptions and best-effort helpers shared across browser2video.
"""
import asyncio
import logging
from typing import Awaitable, Optional

logger = logging.getLogger(__name__)

# Strong references to fire-and-forget tasks until they finish
_background_tasks: set = set()


class Browser2VideoError(Exception):
    """Base class for browser2video errors."""


class ElementNotFoundError(Browser2VideoError):
    """A target element did not become visible within the wait timeout."""

    def __init__(self, selector: str, timeout_ms: int):
        super().__init__(f"Element not found: {selector} (waited {timeout_ms}ms)")
        self.selector = selector
        self.timeout_ms = timeout_ms


class OptionNotFoundError(Browser2VideoError):
    """No dropdown option matched the requested text."""

    def __init__(self, option_text: str):
        super().__init__(f'Option "{option_text}" not found')
        self.option_text = option_text


class NarrationError(Browser2VideoError):
    """The text-to-speech service rejected a request."""


class CompositionError(Browser2VideoError):
    """ffmpeg could not produce the composed video."""


class SessionError(Browser2VideoError):
    """Session used in the wrong state (not started, already finished, unknown pane)."""


class ServerStartError(Browser2VideoError):
    """A managed web server did not become ready."""


async def best_effort(awaitable: Awaitable, what: str) -> Optional[object]:
    """
    Await something whose failure must never abort the caller.

    Errors are logged at debug level and swallowed; the result is returned
    on success and None otherwise.
    """
    try:
        return await awaitable
    except Exception as e:
        logger.debug("Ignored failure in %s: %s", what, e)
        return None


def fire_and_forget(awaitable: Awaitable, what: str) -> asyncio.Task:
    """Schedule a best-effort call without waiting for it."""
    task = asyncio.ensure_future(best_effort(awaitable, what))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task

"""
Tests for the scripted actor against a mocked Playwright page
"""

import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser2video.actor import Actor
from browser2video.errors import ElementNotFoundError, OptionNotFoundError, SessionError
from browser2video.overlays import SCROLL_SCRIPT
from browser2video.replay_log import Click, CursorMove, KeyPress, ReplayLog
from browser2video.terminal_actor import TerminalActor


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("browser2video.actor.sleep_ms", new=AsyncMock()), \
            patch("browser2video.terminal_actor.sleep_ms", new=AsyncMock()):
        yield


def make_element(box=None, text=None):
    el = MagicMock()
    el.bounding_box = AsyncMock(return_value=box or {"x": 100, "y": 50, "width": 200, "height": 40})
    el.evaluate = AsyncMock(return_value=text)
    el.click = AsyncMock()
    el.focus = AsyncMock()
    return el


@pytest.fixture
def page():
    page = MagicMock()
    page.wait_for_selector = AsyncMock(return_value=make_element())
    page.query_selector = AsyncMock(return_value=None)
    page.query_selector_all = AsyncMock(return_value=[])
    page.evaluate = AsyncMock()
    page.type = AsyncMock()
    page.goto = AsyncMock()
    page.mouse.move = AsyncMock()
    page.mouse.down = AsyncMock()
    page.mouse.up = AsyncMock()
    page.mouse.click = AsyncMock()
    page.keyboard.type = AsyncMock()
    page.keyboard.press = AsyncMock()
    return page


@pytest.mark.asyncio
async def test_fast_click_hits_element_center(page):
    actor = Actor(page, "fast")
    await actor.click("#save")

    page.wait_for_selector.assert_awaited_with("#save", state="visible", timeout=3000)
    page.mouse.click.assert_awaited_once_with(200, 70)
    assert (actor.cursor_x, actor.cursor_y) == (200, 70)


@pytest.mark.asyncio
async def test_human_click_moves_cursor_and_logs_events(page):
    replay = ReplayLog()
    actor = Actor(page, "human", replay=replay, rng=random.Random(3))
    await actor.click("#save")

    moves = [e for e in replay.events if isinstance(e, CursorMove)]
    clicks = [e for e in replay.events if isinstance(e, Click)]
    assert (moves[-1].x, moves[-1].y) == (200, 70)
    assert [(c.x, c.y) for c in clicks] == [(200, 70)]
    page.mouse.move.assert_awaited_with(200, 70)
    page.mouse.down.assert_awaited_once()
    page.mouse.up.assert_awaited_once()
    page.mouse.click.assert_not_called()


@pytest.mark.asyncio
async def test_missing_element_raises(page):
    page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 3000ms exceeded")
    actor = Actor(page, "fast")

    with pytest.raises(ElementNotFoundError, match="#missing"):
        await actor.click("#missing")


@pytest.mark.asyncio
async def test_fast_type_fills_in_one_call(page):
    actor = Actor(page, "fast")
    await actor.type("#name", "Ada Lovelace")

    page.mouse.click.assert_awaited_once()
    page.type.assert_awaited_once_with("#name", "Ada Lovelace", delay=0)


@pytest.mark.asyncio
async def test_type_into_xterm_presses_enter_for_newlines(page):
    page.query_selector.return_value = make_element()
    actor = Actor(page, "fast")
    await actor.type(".xterm", "ls\n")

    assert [c.args[0] for c in page.keyboard.type.await_args_list] == ["l", "s"]
    page.keyboard.press.assert_awaited_once_with("Enter")


@pytest.mark.asyncio
async def test_type_with_narration_awaits_speech(page):
    audio = MagicMock()
    audio.speak = AsyncMock()
    actor = Actor(page, "fast")
    actor.attach_audio(audio)

    await actor.type("#name", "hello", speak=True)

    audio.speak.assert_awaited_once_with("hello", voice=None, speed=None)


@pytest.mark.asyncio
async def test_speak_without_audio_director_raises(page):
    with pytest.raises(SessionError):
        await Actor(page, "fast").speak("hello")


@pytest.mark.asyncio
async def test_select_option_not_found(page):
    page.query_selector_all.return_value = [make_element(text="Red"), make_element(text="Green")]
    actor = Actor(page, "fast")

    with pytest.raises(OptionNotFoundError, match='Option "Blue" not found'):
        await actor.select_option("#color", "Blue")


@pytest.mark.asyncio
async def test_select_option_clicks_matching_option(page):
    blue = make_element(text="Blue")
    page.query_selector_all.return_value = [make_element(text="Red"), blue]
    actor = Actor(page, "fast")

    await actor.select_option("#color", "Blue")

    blue.click.assert_awaited_once()


@pytest.mark.asyncio
async def test_press_key_is_logged(page):
    replay = ReplayLog()
    actor = Actor(page, "fast", replay=replay)
    await actor.press_key("Escape")

    page.keyboard.press.assert_awaited_once_with("Escape")
    assert isinstance(replay.events[-1], KeyPress)


@pytest.mark.asyncio
async def test_fast_drag_sweeps_between_points(page):
    actor = Actor(page, "fast")
    await actor.drag_coords((10, 10), (110, 60))

    moves = [c.args for c in page.mouse.move.await_args_list]
    assert moves[0] == (10, 10)
    assert moves[-1] == (110, 60)
    page.mouse.down.assert_awaited_once()
    page.mouse.up.assert_awaited_once()
    assert (actor.cursor_x, actor.cursor_y) == (110, 60)


@pytest.mark.asyncio
async def test_draw_needs_two_points(page):
    actor = Actor(page, "fast")
    await actor.draw("canvas", [(0.5, 0.5)])
    page.mouse.down.assert_not_called()


@pytest.mark.asyncio
async def test_circle_around_is_human_only(page):
    actor = Actor(page, "fast")
    await actor.circle_around("#logo")
    page.wait_for_selector.assert_not_called()


@pytest.mark.asyncio
async def test_window_scroll(page):
    actor = Actor(page, "fast")
    await actor.scroll(None, 400)
    args = page.evaluate.await_args[0]
    assert args[1] == {"deltaY": 400, "behavior": "auto"}


@pytest.mark.asyncio
async def test_cursor_overlay_only_in_human_mode(page):
    await Actor(page, "fast").inject_cursor()
    page.evaluate.assert_not_called()

    await Actor(page, "human").inject_cursor()
    page.evaluate.assert_awaited_once()


@pytest.mark.asyncio
async def test_terminal_read_new_returns_unseen_lines(page):
    page.evaluate.side_effect = ["$ ls", "$ ls\nREADME.md\n$ "]
    terminal = TerminalActor(page, "fast", selector='[data-testid="xterm-term-0"]')

    assert await terminal.read() == "$ ls"
    assert await terminal.read_new() == "README.md\n$ "


@pytest.mark.asyncio
async def test_terminal_busy_until_prompt(page):
    terminal = TerminalActor(page, "fast")

    page.evaluate.return_value = "$ make build\ncompiling..."
    assert await terminal.is_busy() is True

    page.evaluate.return_value = "$ make build\ncompiling...\ndone\n$ "
    assert await terminal.is_busy() is False


@pytest.mark.asyncio
async def test_element_scroll_targets_container(page):
    actor = Actor(page, "fast")
    await actor.scroll("#results", 300)

    page.wait_for_selector.assert_awaited_with("#results", state="visible", timeout=3000)
    page.evaluate.assert_awaited_with(SCROLL_SCRIPT, {"selector": "#results", "deltaY": 300, "behavior": "auto"})


@pytest.mark.asyncio
async def test_drag_by_offset_starts_at_element_center(page):
    actor = Actor(page, "fast")
    await actor.drag_by_offset("#slider-thumb", 40, -20)

    moves = [c.args for c in page.mouse.move.await_args_list]
    assert moves[0] == (200, 70)
    assert moves[-1] == (240, 50)


@pytest.mark.asyncio
async def test_select_text_within_one_element(page):
    actor = Actor(page, "fast")
    await actor.select_text("p.intro")

    moves = [c.args for c in page.mouse.move.await_args_list]
    assert moves[0] == (102, 52)
    assert moves[-1] == (298, 88)


@pytest.mark.asyncio
async def test_select_text_across_elements(page):
    page.wait_for_selector.side_effect = [
        make_element(),
        make_element(box={"x": 100, "y": 200, "width": 300, "height": 50}),
    ]
    actor = Actor(page, "fast")
    await actor.select_text("p.first", "p.last")

    moves = [c.args for c in page.mouse.move.await_args_list]
    assert moves[0] == (102, 52)
    assert moves[-1] == (398, 248)


def embed_in_half_size_iframe(page, x=100, y=50):
    iframe = make_element(box={"x": x, "y": y, "width": 640, "height": 360})
    page.query_selector.return_value = iframe
    return iframe


@pytest.mark.asyncio
async def test_embedded_replay_coordinates_are_scaled(page):
    embed_in_half_size_iframe(page)
    replay = ReplayLog()
    actor = Actor(page, "fast", replay=replay)
    actor.embed("#stage", {"width": 1280, "height": 720})

    await actor.drag_coords((300, 250), (400, 250))

    clicks = [e for e in replay.events if isinstance(e, Click)]
    assert [(c.x, c.y) for c in clicks] == [(400, 400)]
    page.mouse.down.assert_awaited_once()
    assert page.mouse.move.await_args_list[0].args == (300, 250)


@pytest.mark.asyncio
async def test_iframe_box_cached_until_ttl(page):
    embed_in_half_size_iframe(page)
    replay = ReplayLog()
    actor = Actor(page, "fast", replay=replay)
    actor.embed("#stage", {"width": 1280, "height": 720})

    with patch("browser2video.actor.time") as clock:
        clock.monotonic.return_value = 10.0
        await actor.drag_coords((300, 250), (310, 250))
        clock.monotonic.return_value = 11.5
        await actor.drag_coords((300, 250), (310, 250))
        assert page.query_selector.await_count == 1

        embed_in_half_size_iframe(page, x=0, y=0)
        clock.monotonic.return_value = 12.5
        await actor.drag_coords((300, 250), (310, 250))
        assert page.query_selector.await_count == 2

    clicks = [(e.x, e.y) for e in replay.events if isinstance(e, Click)]
    assert clicks == [(400, 400), (400, 400), (600, 500)]


@pytest.mark.asyncio
async def test_embedded_actor_skips_cursor_overlay(page):
    actor = Actor(page, "human")
    actor.embed("#stage", {"width": 1280, "height": 720})
    await actor.inject_cursor()
    page.evaluate.assert_not_called()

"""
Pytest configuration and fixtures for browser2video tests
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep B2V_* variables and API keys from the developer's shell out of the tests"""
    import os

    for name in list(os.environ):
        if name.startswith("B2V_"):
            monkeypatch.delenv(name)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def make_page():
    page = MagicMock()
    page.evaluate = AsyncMock()
    page.add_init_script = AsyncMock()
    page.goto = AsyncMock()
    page.set_content = AsyncMock()
    page.close = AsyncMock()
    page.screenshot = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.video = None
    page.on = MagicMock()
    return page


@pytest.fixture
def fake_playwright():
    """async_playwright() replaced by mocks: one browser, one context per pane"""
    pages = []
    contexts = []

    async def new_context(**kwargs):
        page = make_page()
        context = MagicMock()
        context.kwargs = kwargs
        context.new_page = AsyncMock(return_value=page)
        context.close = AsyncMock()
        pages.append(page)
        contexts.append(context)
        return context

    browser = MagicMock()
    browser.new_context = AsyncMock(side_effect=new_context)
    browser.close = AsyncMock()

    pw = MagicMock()
    pw.chromium.launch = AsyncMock(return_value=browser)
    pw.stop = AsyncMock()

    starter = MagicMock()
    starter.start = AsyncMock(return_value=pw)

    with patch("browser2video.session.async_playwright", return_value=starter):
        yield SimpleNamespace(playwright=pw, browser=browser, pages=pages, contexts=contexts)


@pytest.fixture
def no_ffmpeg_check():
    with patch("browser2video.compositor.check_ffmpeg"):
        yield

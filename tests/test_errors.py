"""
Tests for error types and best-effort helpers
"""

import asyncio

import pytest

from browser2video.errors import (
    Browser2VideoError,
    ElementNotFoundError,
    OptionNotFoundError,
    best_effort,
    fire_and_forget,
)


def test_error_messages():
    err = ElementNotFoundError("#save", 3000)
    assert isinstance(err, Browser2VideoError)
    assert "#save" in str(err)
    assert err.timeout_ms == 3000
    assert str(OptionNotFoundError("Blue")) == 'Option "Blue" not found'


@pytest.mark.asyncio
async def test_best_effort_returns_result_or_none():
    async def ok():
        return 42

    async def fails():
        raise RuntimeError("closed")

    assert await best_effort(ok(), "ok") == 42
    assert await best_effort(fails(), "fails") is None


@pytest.mark.asyncio
async def test_fire_and_forget_swallows_failures():
    async def fails():
        raise RuntimeError("detached")

    task = fire_and_forget(fails(), "ack")
    await asyncio.sleep(0)
    await task
    assert task.result() is None

"""Tests for haven_monitor.stream.throttle.Throttle."""
import asyncio

import pytest

from haven_monitor.stream.throttle import Throttle


@pytest.mark.asyncio
async def test_first_trigger_fires_immediately() -> None:
    calls = []
    throttle = Throttle(0.05, lambda: calls.append(1))

    throttle.trigger()

    assert calls == [1]
    throttle.close()


@pytest.mark.asyncio
async def test_triggers_inside_window_fire_once_on_close() -> None:
    calls = []
    throttle = Throttle(0.05, lambda: calls.append(1))

    for _ in range(10):
        throttle.trigger()
    assert len(calls) == 1
    await asyncio.sleep(0.08)

    assert len(calls) == 2
    throttle.close()


@pytest.mark.asyncio
async def test_quiet_window_does_not_fire_trailing_call() -> None:
    calls = []
    throttle = Throttle(0.03, lambda: calls.append(1))

    throttle.trigger()
    await asyncio.sleep(0.1)
    assert len(calls) == 1

    throttle.trigger()
    assert len(calls) == 2
    throttle.close()


@pytest.mark.asyncio
async def test_closed_throttle_ignores_triggers() -> None:
    calls = []
    throttle = Throttle(0.03, lambda: calls.append(1))
    throttle.trigger()
    throttle.trigger()

    throttle.close()
    await asyncio.sleep(0.06)
    throttle.trigger()

    assert calls == [1]


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_the_throttle() -> None:
    calls = []

    def flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("listener exploded")

    throttle = Throttle(0.02, flaky)
    throttle.trigger()
    throttle.trigger()
    await asyncio.sleep(0.06)

    assert len(calls) == 2
    throttle.close()

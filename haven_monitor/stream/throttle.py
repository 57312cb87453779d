import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger(__name__)


class Throttle:
    """
    Leading and trailing edge throttle on the running event loop.

    The first trigger fires immediately and opens a window of `interval`
    seconds. Triggers inside the window collapse into a single call when the
    window closes, which opens the next window. Must be used from the loop thread.
    """

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._pending = False
        self._closed = False

    def trigger(self) -> None:
        if self._closed:
            return
        if self._handle is None:
            self._fire()
            return
        self._pending = True

    def _open_window(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.interval, self._window_closed)

    def _window_closed(self) -> None:
        self._handle = None
        if self._pending and not self._closed:
            self._pending = False
            self._fire()

    def _fire(self) -> None:
        self._open_window()
        try:
            self.callback()
        except Exception as e:
            log.error(f"Throttled callback failed: {e}", exc_info=True)

    def cancel(self) -> None:
        """Drops any pending trailing call; later triggers fire again."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = False

    def close(self) -> None:
        self.cancel()
        self._closed = True
